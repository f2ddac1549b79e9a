"""
Payment Processing Module

Applies a repayment to a loan's outstanding balance. Every payment is one
atomic unit under the loan's record lock: the receipt number, the repayment
record, the loan update and, on payoff, the borrower's promotion commit
together or not at all.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple, Union
import uuid

from .applications import parse_amount
from .audit import AuditTrail, AuditEventType
from .borrowers import BorrowerManager, CreditRating
from .errors import LoanNotPayable, ValidationError
from .events import DomainEvent, EventDispatcher
from .identifiers import IdentifierAllocator
from .lifecycle import LoanStatus, check_loan_transition
from .loans import Loan, LoanManager, PaymentMethod, Repayment, normalize_payment_method
from .logging_config import get_logger, log_action

logger = get_logger(__name__)


@dataclass
class PaymentResult:
    repayment: Repayment
    loan: Loan
    credit_rating_change: Optional[Tuple[CreditRating, CreditRating]] = None

    @property
    def loan_closed(self) -> bool:
        return self.loan.status == LoanStatus.CLOSED


def _payment_date(value: Union[date, datetime, str, None]) -> date:
    if value is None:
        return date.today()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    raise ValidationError(f"Invalid payment date: {value!r}", {"field": "payment_date"})


class PaymentProcessor:
    """
    Records repayments against loans
    """

    def __init__(self, loans: LoanManager, borrowers: BorrowerManager,
                 identifiers: IdentifierAllocator, audit_trail: AuditTrail,
                 dispatcher: EventDispatcher, receipt_prefix: str = "REC",
                 payment_interval_days: int = 30):
        self.loans = loans
        self.borrowers = borrowers
        self.identifiers = identifiers
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher
        self.receipt_prefix = receipt_prefix
        self.payment_interval_days = payment_interval_days
        self.storage = loans.storage

    def _require_payable(self, loan_id: str) -> Loan:
        loan = self.loans.require(loan_id)
        if not loan.is_payable:
            raise LoanNotPayable(loan_id, loan.status)
        return loan

    def record_payment(
        self,
        loan_id: str,
        amount,
        payment_date=None,
        method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        notes: Optional[str] = None
    ) -> PaymentResult:
        """
        Apply a payment to a loan

        The applied portion is capped at the outstanding balance; any excess
        is recorded on the repayment as unapplied and is not refunded. At a
        zero balance the loan closes and the borrower is promoted one step.

        Args:
            loan_id: Loan receiving the payment
            amount: Amount received, must be positive
            payment_date: Date the money was received (defaults to today)
            method: PaymentMethod or its name in any case ("Cash")
            notes: Free-text note stored on the repayment

        Returns:
            PaymentResult with the stored repayment and the updated loan

        Raises:
            InvalidAmount, ValidationError, LoanNotFound, LoanNotPayable
        """
        amount = parse_amount(amount, "amount")
        method = normalize_payment_method(method)
        paid_on = _payment_date(payment_date)

        loan = self._require_payable(loan_id)
        self.borrowers.require(loan.borrower_id)

        with self.storage.locked(self.loans.table_name, loan_id):
            loan = self._require_payable(loan_id)

            with self.storage.locked(self.borrowers.table_name, loan.borrower_id):
                borrower = self.borrowers.require(loan.borrower_id)

                with self.storage.atomic():
                    receipt_number, receipt_sequence = self.identifiers.next_number(self.receipt_prefix)

                    previous_balance = loan.outstanding_balance
                    applied = min(amount, previous_balance)
                    unapplied = amount - applied
                    new_balance = previous_balance - applied

                    now = datetime.now(timezone.utc)
                    repayment = Repayment(
                        id=str(uuid.uuid4()),
                        created_at=now,
                        updated_at=now,
                        receipt_number=receipt_number,
                        receipt_sequence=receipt_sequence,
                        loan_id=loan.id,
                        borrower_id=loan.borrower_id,
                        amount=amount,
                        applied_amount=applied,
                        unapplied_amount=unapplied,
                        balance_after=new_balance,
                        payment_date=paid_on,
                        method=method,
                        notes=notes,
                    )
                    self.loans.insert_repayment(repayment)

                    loan.outstanding_balance = new_balance
                    loan.amount_paid = loan.amount_paid + applied
                    loan.last_payment_date = paid_on
                    loan.touch()

                    rating_change = None
                    if new_balance.is_positive():
                        loan.next_payment_date = date.today() + timedelta(days=self.payment_interval_days)
                        loan.next_payment_amount = loan.monthly_payment
                    else:
                        check_loan_transition(loan.status, LoanStatus.CLOSED)
                        loan.status = LoanStatus.CLOSED
                        loan.next_payment_date = None
                        loan.next_payment_amount = None
                        loan.closed_at = now
                        rating_change = self.borrowers.set_rating(
                            borrower, borrower.credit_rating.promote()
                        )

                    self.loans.save(loan)

        self._after_commit(loan, repayment, previous_balance, borrower, rating_change)
        return PaymentResult(repayment, loan, rating_change)

    def _after_commit(self, loan: Loan, repayment: Repayment, previous_balance,
                      borrower, rating_change) -> None:
        resource = f"loan:{loan.id}"

        if repayment.unapplied_amount.is_positive():
            log_action(
                logger, "warning",
                f"Overpayment on {loan.loan_number}: {repayment.unapplied_amount.to_string()} left unapplied",
                action="record_payment", resource=resource,
                extra={"receipt_number": repayment.receipt_number,
                       "unapplied_amount": str(repayment.unapplied_amount.amount)}
            )

        self.audit_trail.log_event(
            AuditEventType.REPAYMENT_RECORDED, "loan", loan.id,
            {
                "repayment_id": repayment.id,
                "receipt_number": repayment.receipt_number,
                "amount": repayment.amount,
                "applied_amount": repayment.applied_amount,
                "unapplied_amount": repayment.unapplied_amount,
                "previous_balance": previous_balance,
                "balance_after": repayment.balance_after,
                "method": repayment.method,
            }
        )
        self.dispatcher.emit(DomainEvent.REPAYMENT_RECORDED, "loan", loan.id, {
            "loan_number": loan.loan_number,
            "borrower_id": loan.borrower_id,
            "receipt_number": repayment.receipt_number,
            "amount": str(repayment.amount.amount),
            "balance_after": str(repayment.balance_after.amount),
            "method": repayment.method.value,
        })
        log_action(
            logger, "info",
            f"Payment {repayment.receipt_number} of {repayment.amount.to_string()} recorded on {loan.loan_number}",
            action="record_payment", resource=resource,
            extra={"balance_after": str(repayment.balance_after.amount)}
        )

        if loan.status == LoanStatus.CLOSED:
            self.audit_trail.log_event(
                AuditEventType.LOAN_CLOSED, "loan", loan.id,
                {"loan_number": loan.loan_number, "receipt_number": repayment.receipt_number}
            )
            self.dispatcher.emit(DomainEvent.LOAN_CLOSED, "loan", loan.id, {
                "loan_number": loan.loan_number,
                "borrower_id": loan.borrower_id,
            })
            log_action(logger, "info", f"Loan {loan.loan_number} paid off and closed",
                       action="close_loan", resource=resource)

        if rating_change:
            self.borrowers.record_rating_change(borrower, rating_change, "loan_paid_off")
