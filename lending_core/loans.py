"""
Loan Module

Loan and repayment records plus the LoanManager that creates, reads and
disburses loans. Loans are created only by the approval workflow and their
balances are changed only by the payment processor.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional
import uuid

from .amortization import AmortizationResult, Installment, schedule
from .audit import AuditTrail, AuditEventType
from .currency import Money
from .errors import LoanNotFound, ValidationError
from .events import DomainEvent, EventDispatcher
from .identifiers import IdentifierAllocator
from .lifecycle import (
    ACTIVE_FAMILY, TERMINAL_LOAN_STATUSES, LoanStatus,
    check_loan_transition, normalize_loan_status, reporting_status,
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

logger = get_logger(__name__)


class PaymentMethod(Enum):
    """How a repayment was received"""
    CASH = "CASH"
    MOBILE_MONEY = "MOBILE_MONEY"
    BANK_TRANSFER = "BANK_TRANSFER"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.strip().upper().replace(' ', '_').replace('-', '_')
            for member in cls:
                if member.value == key:
                    return member
        return None


def normalize_payment_method(value) -> PaymentMethod:
    if value is None:
        return PaymentMethod.CASH
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ValidationError(f"Unknown payment method: {value!r}", {"field": "method"})


@dataclass
class Loan(StorageRecord):
    """Priced loan with its running balance"""
    loan_number: str
    application_id: str
    borrower_id: str
    principal: Money
    interest_rate: Decimal              # annual percentage, e.g. 15
    term_months: int
    monthly_payment: Money
    total_amount: Money
    total_interest: Money
    outstanding_balance: Money
    status: LoanStatus = LoanStatus.APPROVED
    next_payment_date: Optional[date] = None
    next_payment_amount: Optional[Money] = None
    first_payment_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    amount_paid: Optional[Money] = None
    purpose: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    table = "loans"

    def __post_init__(self):
        self.status = normalize_loan_status(self.status)
        if self.amount_paid is None:
            self.amount_paid = Money.zero(self.principal.currency)

    @property
    def is_payable(self) -> bool:
        return self.status in ACTIVE_FAMILY

    @property
    def is_closed(self) -> bool:
        return self.status in TERMINAL_LOAN_STATUSES

    def reporting_status(self, as_of: Optional[date] = None) -> LoanStatus:
        return reporting_status(self, as_of)


@dataclass
class Repayment(StorageRecord):
    """Immutable record of money received against a loan"""
    receipt_number: str
    receipt_sequence: int
    loan_id: str
    borrower_id: str
    amount: Money
    applied_amount: Money
    unapplied_amount: Money
    balance_after: Money
    payment_date: date
    method: PaymentMethod = PaymentMethod.CASH
    notes: Optional[str] = None

    table = "repayments"


class LoanManager:
    """
    Creates and reads loans and their repayment ledgers
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 identifiers: IdentifierAllocator, dispatcher: EventDispatcher,
                 prefix: str = "LN", payment_interval_days: int = 30):
        self.storage = storage
        self.audit_trail = audit_trail
        self.identifiers = identifiers
        self.dispatcher = dispatcher
        self.prefix = prefix
        self.payment_interval_days = payment_interval_days
        self.table_name = Loan.table
        self.repayments_table = Repayment.table

    def create_loan(self, application, terms: AmortizationResult,
                    today: Optional[date] = None) -> Loan:
        """
        Build and store the loan for an approved application

        Must run inside the approval transaction; the caller audits the
        creation once it has committed.
        """
        today = today or date.today()
        now = datetime.now(timezone.utc)
        first_due = today + timedelta(days=self.payment_interval_days)

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number=self.identifiers.next_id(self.prefix),
            application_id=application.id,
            borrower_id=application.borrower_id,
            principal=terms.principal,
            interest_rate=terms.annual_rate,
            term_months=terms.term_months,
            monthly_payment=terms.monthly_payment,
            total_amount=terms.total_amount,
            total_interest=terms.total_interest,
            outstanding_balance=terms.total_amount,
            status=LoanStatus.APPROVED,
            next_payment_date=first_due,
            next_payment_amount=terms.monthly_payment,
            first_payment_date=first_due,
            purpose=application.purpose,
        )
        self.save(loan)
        return loan

    def disburse_loan(self, loan_id: str) -> Loan:
        """Mark an APPROVED loan as ACTIVE once the funds are paid out"""
        loan = self.require(loan_id)
        check_loan_transition(loan.status, LoanStatus.ACTIVE)

        with self.storage.locked(self.table_name, loan_id):
            loan = self.require(loan_id)
            check_loan_transition(loan.status, LoanStatus.ACTIVE)
            with self.storage.atomic():
                loan.status = LoanStatus.ACTIVE
                loan.disbursed_at = datetime.now(timezone.utc)
                loan.touch()
                self.save(loan)

        self.audit_trail.log_event(
            AuditEventType.LOAN_DISBURSED, "loan", loan.id,
            {"loan_number": loan.loan_number, "amount": loan.principal}
        )
        self.dispatcher.emit(DomainEvent.LOAN_DISBURSED, "loan", loan.id, {
            "loan_number": loan.loan_number,
            "borrower_id": loan.borrower_id,
            "amount": str(loan.principal.amount),
        })
        log_action(logger, "info", f"Loan {loan.loan_number} disbursed",
                   action="disburse_loan", resource=f"loan:{loan.id}")
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.table_name, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(loan_id)
        return loan

    def get_loan_by_number(self, loan_number: str) -> Optional[Loan]:
        matches = self.storage.find(self.table_name, {"loan_number": loan_number})
        if matches:
            return Loan.from_dict(matches[0])
        return None

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        loans = [Loan.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if status is not None:
            status = normalize_loan_status(status)
            loans = [loan for loan in loans if loan.status == status]
        loans.sort(key=lambda loan: (loan.created_at, loan.loan_number))
        return loans

    def get_borrower_loans(self, borrower_id: str) -> List[Loan]:
        loans = [Loan.from_dict(data) for data in self.storage.find(self.table_name, {"borrower_id": borrower_id})]
        loans.sort(key=lambda loan: (loan.created_at, loan.loan_number))
        return loans

    def save(self, loan: Loan) -> None:
        self.storage.save(self.table_name, loan.id, loan.to_dict())

    def insert_repayment(self, repayment: Repayment) -> None:
        """Append a repayment; existing repayments are never overwritten"""
        if self.storage.exists(self.repayments_table, repayment.id):
            raise ValidationError(f"Repayment {repayment.id} already recorded",
                                  {"repayment_id": repayment.id})
        self.storage.save(self.repayments_table, repayment.id, repayment.to_dict())

    def get_repayments(self, loan_id: str) -> List[Repayment]:
        """Repayment ledger of a loan in receipt order"""
        repayments = [
            Repayment.from_dict(data)
            for data in self.storage.find(self.repayments_table, {"loan_id": loan_id})
        ]
        repayments.sort(key=lambda repayment: repayment.receipt_sequence)
        return repayments

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """Installment schedule of a loan, starting at its first due date"""
        loan = self.require(loan_id)
        start = loan.first_payment_date or (loan.created_at.date() + timedelta(days=self.payment_interval_days))
        return schedule(loan.principal.amount, loan.interest_rate, loan.term_months, start,
                        loan.principal.currency)
