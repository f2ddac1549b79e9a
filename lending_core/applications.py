"""
Loan Application Module

Application intake and queries. Approval and rejection live in the
approvals module; this module owns the application record itself.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Money, to_decimal
from .errors import ApplicationNotFound, InvalidAmount, ValidationError
from .events import DomainEvent, EventDispatcher
from .identifiers import IdentifierAllocator
from .lifecycle import ApplicationStatus, normalize_application_status
from .logging_config import get_logger, log_action
from .rates import RatePolicy
from .storage import StorageInterface, StorageRecord

logger = get_logger(__name__)


@dataclass
class LoanApplication(StorageRecord):
    """A borrower's request for a loan"""
    application_number: str
    borrower_id: str
    requested_amount: Money
    term_months: int
    purpose: str
    status: ApplicationStatus = ApplicationStatus.PENDING
    requested_rate: Optional[Decimal] = None
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    approved_amount: Optional[Money] = None
    rejection_reason: Optional[str] = None
    loan_id: Optional[str] = None
    collateral: Optional[str] = None
    guarantor_name: Optional[str] = None
    guarantor_phone: Optional[str] = None

    table = "loan_applications"

    def __post_init__(self):
        self.status = normalize_application_status(self.status)

    @property
    def is_pending(self) -> bool:
        return self.status == ApplicationStatus.PENDING


@dataclass(frozen=True)
class ApplicationStatistics:
    total: int
    pending: int
    under_review: int
    approved: int
    rejected: int
    total_requested: Money
    approval_rate: Decimal  # percentage, two decimal places


def parse_amount(value, field: str) -> Money:
    """Positive Money from user input, else InvalidAmount"""
    try:
        amount = Money.of(value)
    except ValueError:
        raise InvalidAmount(value, field)
    if not amount.is_positive():
        raise InvalidAmount(value, field)
    return amount


def parse_term(value) -> int:
    """Whole number of months >= 1 from an int or a digit string"""
    if isinstance(value, int) and not isinstance(value, bool):
        term = value
    elif isinstance(value, str) and value.strip().isdigit():
        term = int(value.strip())
    else:
        raise ValidationError(f"Invalid term: {value!r}", {"field": "term_months"})
    if term < 1:
        raise ValidationError(f"Term must be at least 1 month, got {term}", {"field": "term_months"})
    return term


class ApplicationManager:
    """
    Manages loan application intake and lookups
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 identifiers: IdentifierAllocator, dispatcher: EventDispatcher,
                 rate_policy: RatePolicy, prefix: str = "APP"):
        self.storage = storage
        self.audit_trail = audit_trail
        self.identifiers = identifiers
        self.dispatcher = dispatcher
        self.rate_policy = rate_policy
        self.prefix = prefix
        self.table_name = LoanApplication.table

    def submit_application(
        self,
        borrower_id: str,
        requested_amount,
        term_months,
        purpose: str,
        requested_rate=None,
        collateral: Optional[str] = None,
        guarantor_name: Optional[str] = None,
        guarantor_phone: Optional[str] = None
    ) -> LoanApplication:
        """
        Create a PENDING application

        A requested rate is kept only when it is one of the tier rates; any
        other value is dropped and the tier rate applies at approval.

        Raises:
            InvalidAmount: requested_amount is not a positive amount
            ValidationError: bad term or empty purpose
            BorrowerNotFound: unknown borrower (checked by the caller)
        """
        amount = parse_amount(requested_amount, "requested_amount")
        term = parse_term(term_months)
        purpose = (purpose or '').strip()
        if not purpose:
            raise ValidationError("Loan purpose is required", {"field": "purpose"})

        rate = None
        if requested_rate not in (None, ''):
            if self.rate_policy.is_canonical(requested_rate):
                rate = to_decimal(requested_rate)
            else:
                log_action(logger, "warning", "Dropping non-canonical requested rate",
                           action="submit_application",
                           extra={"requested_rate": str(requested_rate)})

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            application = LoanApplication(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                application_number=self.identifiers.next_id(self.prefix),
                borrower_id=borrower_id,
                requested_amount=amount,
                term_months=term,
                purpose=purpose,
                requested_rate=rate,
                submitted_at=now,
                collateral=collateral,
                guarantor_name=guarantor_name,
                guarantor_phone=guarantor_phone,
            )
            self.save(application)

        self.audit_trail.log_event(
            AuditEventType.APPLICATION_SUBMITTED, "application", application.id,
            {
                "application_number": application.application_number,
                "borrower_id": borrower_id,
                "requested_amount": amount,
                "term_months": term,
            }
        )
        self.dispatcher.emit(DomainEvent.APPLICATION_SUBMITTED, "application", application.id, {
            "application_number": application.application_number,
            "borrower_id": borrower_id,
            "requested_amount": str(amount.amount),
        })
        log_action(logger, "info", f"Application {application.application_number} submitted",
                   action="submit_application", resource=f"application:{application.id}")
        return application

    def get_application(self, application_id: str) -> Optional[LoanApplication]:
        data = self.storage.load(self.table_name, application_id)
        if data:
            return LoanApplication.from_dict(data)
        return None

    def require(self, application_id: str) -> LoanApplication:
        application = self.get_application(application_id)
        if application is None:
            raise ApplicationNotFound(application_id)
        return application

    def save(self, application: LoanApplication) -> None:
        self.storage.save(self.table_name, application.id, application.to_dict())

    def list_applications(self, status: Optional[ApplicationStatus] = None) -> List[LoanApplication]:
        """Applications, oldest first, optionally filtered by status"""
        applications = [LoanApplication.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if status is not None:
            status = normalize_application_status(status)
            applications = [a for a in applications if a.status == status]
        applications.sort(key=lambda a: (a.created_at, a.application_number))
        return applications

    def get_pending_applications(self) -> List[LoanApplication]:
        return self.list_applications(ApplicationStatus.PENDING)

    def get_statistics(self) -> ApplicationStatistics:
        applications = self.list_applications()
        counts: Dict[ApplicationStatus, int] = {status: 0 for status in ApplicationStatus}
        total_requested = Money.zero()
        for application in applications:
            counts[application.status] += 1
            total_requested = total_requested + application.requested_amount

        total = len(applications)
        if total:
            approval_rate = (Decimal(counts[ApplicationStatus.APPROVED]) * 100 / Decimal(total)).quantize(
                Decimal('0.01'), rounding=ROUND_HALF_UP)
        else:
            approval_rate = Decimal('0.00')

        return ApplicationStatistics(
            total=total,
            pending=counts[ApplicationStatus.PENDING],
            under_review=counts[ApplicationStatus.UNDER_REVIEW],
            approved=counts[ApplicationStatus.APPROVED],
            rejected=counts[ApplicationStatus.REJECTED],
            total_requested=total_requested,
            approval_rate=approval_rate,
        )
