"""
Application Approval Workflow

Turns a PENDING application into exactly one priced loan, or rejects it.
Each approval is one atomic unit: the loan, the application update and the
borrower's first-loan rating baseline commit together or not at all.

Lock order is always application, then borrower, then the storage
transaction. Audit entries and domain events are written only after commit.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .amortization import amortize
from .applications import ApplicationManager, LoanApplication, parse_amount
from .audit import AuditTrail, AuditEventType
from .borrowers import BorrowerManager, CreditRating
from .errors import (
    ApplicationAlreadyProcessed, ApplicationNotPending, ValidationError,
)
from .events import DomainEvent, EventDispatcher
from .lifecycle import (
    TERMINAL_APPLICATION_STATUSES, ApplicationStatus, check_application_transition,
)
from .loans import Loan, LoanManager
from .logging_config import get_logger, log_action
from .rates import RatePolicy

logger = get_logger(__name__)


@dataclass
class ApprovalResult:
    application: LoanApplication
    loan: Loan
    credit_rating_change: Optional[Tuple[CreditRating, CreditRating]] = None


@dataclass(frozen=True)
class BulkApprovalSuccess:
    application_id: str
    loan_id: str
    loan_number: str


@dataclass(frozen=True)
class BulkApprovalFailure:
    application_id: str
    error: str
    error_type: str


@dataclass
class BulkApprovalResult:
    successful: List[BulkApprovalSuccess] = field(default_factory=list)
    failed: List[BulkApprovalFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "successful": [
                {"application_id": item.application_id, "loan_id": item.loan_id}
                for item in self.successful
            ],
            "failed": [
                {"application_id": item.application_id, "error": item.error}
                for item in self.failed
            ],
        }


class ApprovalWorkflow:
    """
    Approves and rejects loan applications
    """

    def __init__(self, applications: ApplicationManager, loans: LoanManager,
                 borrowers: BorrowerManager, rate_policy: RatePolicy,
                 audit_trail: AuditTrail, dispatcher: EventDispatcher):
        self.applications = applications
        self.loans = loans
        self.borrowers = borrowers
        self.rate_policy = rate_policy
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher
        self.storage = applications.storage

    def _require_pending(self, application_id: str) -> LoanApplication:
        application = self.applications.require(application_id)
        if application.status in TERMINAL_APPLICATION_STATUSES:
            raise ApplicationAlreadyProcessed(application_id, application.status)
        if application.status != ApplicationStatus.PENDING:
            raise ApplicationNotPending(application_id, application.status)
        return application

    def approve(self, application_id: str, approved_amount=None,
                rate_override=None) -> ApprovalResult:
        """
        Approve a PENDING application and create its loan

        Args:
            application_id: Application to approve
            approved_amount: Principal to lend; defaults to the requested amount
            rate_override: Rate to use instead of the application's requested
                rate; honoured only when it is a tier rate

        Raises:
            ApplicationNotFound, InvalidAmount, BorrowerNotFound
            ApplicationAlreadyProcessed: the application is APPROVED or REJECTED
            ApplicationNotPending: the application is UNDER_REVIEW. This is the
                parent of ApplicationAlreadyProcessed, so catch it to handle
                every not-pending case
        """
        application = self._require_pending(application_id)
        if approved_amount is None:
            principal = application.requested_amount
        else:
            principal = parse_amount(approved_amount, "approved_amount")

        override = rate_override if rate_override is not None else application.requested_rate
        rate = self.rate_policy.resolve_rate(principal.amount, override)
        terms = amortize(principal.amount, rate, application.term_months, principal.currency)
        self.borrowers.require(application.borrower_id)

        with self.storage.locked(self.applications.table_name, application_id):
            application = self._require_pending(application_id)
            check_application_transition(application.status, ApplicationStatus.APPROVED)

            with self.storage.locked(self.borrowers.table_name, application.borrower_id):
                borrower = self.borrowers.require(application.borrower_id)

                with self.storage.atomic():
                    loan = self.loans.create_loan(application, terms)

                    application.status = ApplicationStatus.APPROVED
                    application.reviewed_at = datetime.now(timezone.utc)
                    application.approved_amount = principal
                    application.loan_id = loan.id
                    application.touch()
                    self.applications.save(application)

                    rating_change = None
                    if len(self.loans.get_borrower_loans(borrower.id)) == 1:
                        rating_change = self.borrowers.set_rating(
                            borrower, borrower.credit_rating.at_least(CreditRating.FAIR)
                        )

        self.audit_trail.log_event(
            AuditEventType.LOAN_CREATED, "loan", loan.id,
            {
                "loan_number": loan.loan_number,
                "application_id": application.id,
                "principal": loan.principal,
                "interest_rate": loan.interest_rate,
                "term_months": loan.term_months,
                "monthly_payment": loan.monthly_payment,
                "total_amount": loan.total_amount,
            }
        )
        self.audit_trail.log_event(
            AuditEventType.APPLICATION_APPROVED, "application", application.id,
            {"application_number": application.application_number, "loan_id": loan.id,
             "approved_amount": principal}
        )
        if rating_change:
            self.borrowers.record_rating_change(borrower, rating_change, "first_loan")

        self.dispatcher.emit(DomainEvent.LOAN_CREATED, "loan", loan.id, {
            "loan_number": loan.loan_number,
            "borrower_id": loan.borrower_id,
            "principal": str(loan.principal.amount),
            "monthly_payment": str(loan.monthly_payment.amount),
            "next_payment_date": loan.next_payment_date.isoformat(),
        })
        self.dispatcher.emit(DomainEvent.APPLICATION_APPROVED, "application", application.id, {
            "application_number": application.application_number,
            "borrower_id": application.borrower_id,
            "loan_id": loan.id,
            "loan_number": loan.loan_number,
        })
        log_action(
            logger, "info",
            f"Application {application.application_number} approved as loan {loan.loan_number}",
            action="approve_application", resource=f"application:{application.id}",
            extra={"loan_id": loan.id, "principal": str(principal.amount), "rate": str(rate)}
        )
        return ApprovalResult(application, loan, rating_change)

    def reject(self, application_id: str, reason: str) -> LoanApplication:
        """
        Reject a PENDING application with a non-empty reason

        Raises:
            ValidationError, ApplicationNotFound, ApplicationAlreadyProcessed,
            ApplicationNotPending
        """
        reason = (reason or '').strip()
        if not reason:
            raise ValidationError("Rejection reason is required", {"field": "reason"})

        self._require_pending(application_id)

        with self.storage.locked(self.applications.table_name, application_id):
            application = self._require_pending(application_id)
            check_application_transition(application.status, ApplicationStatus.REJECTED)

            with self.storage.atomic():
                application.status = ApplicationStatus.REJECTED
                application.reviewed_at = datetime.now(timezone.utc)
                application.rejection_reason = reason
                application.touch()
                self.applications.save(application)

        self.audit_trail.log_event(
            AuditEventType.APPLICATION_REJECTED, "application", application.id,
            {"application_number": application.application_number, "reason": reason}
        )
        self.dispatcher.emit(DomainEvent.APPLICATION_REJECTED, "application", application.id, {
            "application_number": application.application_number,
            "borrower_id": application.borrower_id,
            "reason": reason,
        })
        log_action(logger, "info", f"Application {application.application_number} rejected",
                   action="reject_application", resource=f"application:{application.id}",
                   extra={"reason": reason})
        return application

    def bulk_approve(self, application_ids: Iterable[str],
                     approved_amount=None) -> BulkApprovalResult:
        """
        Approve each application independently

        One failure never stops the batch; it is recorded against its
        application id and the loop moves on.
        """
        if isinstance(application_ids, str):
            raise ValidationError("application_ids must be a list of ids, not a single string",
                                  {"field": "application_ids"})
        application_ids = list(application_ids or [])
        if not application_ids:
            raise ValidationError("At least one application id is required",
                                  {"field": "application_ids"})

        result = BulkApprovalResult()
        for application_id in application_ids:
            try:
                approval = self.approve(application_id, approved_amount)
            except Exception as e:
                log_action(logger, "error", f"Bulk approval failed for {application_id}: {e}",
                           action="bulk_approve", resource=f"application:{application_id}",
                           extra={"error_type": type(e).__name__})
                result.failed.append(BulkApprovalFailure(application_id, str(e), type(e).__name__))
            else:
                result.successful.append(BulkApprovalSuccess(
                    application_id, approval.loan.id, approval.loan.loan_number
                ))

        log_action(logger, "info",
                   f"Bulk approval finished: {len(result.successful)} approved, {len(result.failed)} failed",
                   action="bulk_approve")
        return result
