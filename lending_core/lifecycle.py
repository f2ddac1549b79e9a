"""
Loan Lifecycle Module

Closed status sets for applications and loans, the allowed transitions
between them, and normalization of status strings read from storage or
supplied by callers.
"""

from datetime import date, datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from .errors import InvalidTransition, ValidationError
from .logging_config import get_logger

logger = get_logger(__name__)


class _NormalizedEnum(Enum):
    """Enum accepting its values in any case, with spaces or dashes for underscores"""

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.strip().upper().replace(' ', '_').replace('-', '_')
            for member in cls:
                if member.value == key:
                    return member
        return None


class ApplicationStatus(_NormalizedEnum):
    """Loan application status"""
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class LoanStatus(_NormalizedEnum):
    """
    Loan status

    OVERDUE is a reporting label derived from the due date; it is never
    persisted.
    """
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    COMPLETED = "COMPLETED"
    CLOSED = "CLOSED"


APPLICATION_TRANSITIONS: Dict[ApplicationStatus, FrozenSet[ApplicationStatus]] = {
    ApplicationStatus.PENDING: frozenset({ApplicationStatus.APPROVED, ApplicationStatus.REJECTED}),
    ApplicationStatus.UNDER_REVIEW: frozenset(),
    ApplicationStatus.APPROVED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
}

LOAN_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.APPROVED: frozenset({LoanStatus.ACTIVE, LoanStatus.CLOSED, LoanStatus.COMPLETED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.CLOSED, LoanStatus.COMPLETED}),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.CLOSED: frozenset(),
}

TERMINAL_APPLICATION_STATUSES = frozenset({ApplicationStatus.APPROVED, ApplicationStatus.REJECTED})
TERMINAL_LOAN_STATUSES = frozenset({LoanStatus.COMPLETED, LoanStatus.CLOSED})

# Persisted loan statuses that accept payments
ACTIVE_FAMILY = frozenset({LoanStatus.APPROVED, LoanStatus.ACTIVE})


def normalize_application_status(value: Union[ApplicationStatus, str]) -> ApplicationStatus:
    try:
        return ApplicationStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown application status: {value!r}", {"status": str(value)})


def normalize_loan_status(value: Union[LoanStatus, str]) -> LoanStatus:
    """
    Normalize a loan status to its persisted form

    "Closed", "closed" and "CLOSED" all map to CLOSED. A stored OVERDUE is a
    legacy derived label and maps back to ACTIVE.
    """
    try:
        status = LoanStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown loan status: {value!r}", {"status": str(value)})

    if status is LoanStatus.OVERDUE:
        logger.warning("Normalizing persisted OVERDUE loan status to ACTIVE")
        return LoanStatus.ACTIVE
    return status


def can_transition_application(current: ApplicationStatus, target: ApplicationStatus) -> bool:
    return target in APPLICATION_TRANSITIONS.get(current, frozenset())


def can_transition_loan(current: LoanStatus, target: LoanStatus) -> bool:
    return target in LOAN_TRANSITIONS.get(current, frozenset())


def check_application_transition(current: ApplicationStatus, target: ApplicationStatus) -> None:
    if not can_transition_application(current, target):
        raise InvalidTransition("application", current, target)


def check_loan_transition(current: LoanStatus, target: LoanStatus) -> None:
    if not can_transition_loan(current, target):
        raise InvalidTransition("loan", current, target)


def is_payable(status: LoanStatus) -> bool:
    return status in ACTIVE_FAMILY


def as_date(value) -> date:
    """Reduce a datetime to its date; plain dates pass through"""
    if isinstance(value, datetime):
        return value.date()
    return value


def reporting_status(loan, as_of: Optional[date] = None) -> LoanStatus:
    """Persisted status, or OVERDUE for a payable loan past its due date"""
    as_of = as_date(as_of) if as_of else date.today()
    if (loan.status in ACTIVE_FAMILY
            and loan.outstanding_balance.is_positive()
            and loan.next_payment_date is not None
            and loan.next_payment_date < as_of):
        return LoanStatus.OVERDUE
    return loan.status
