"""
Domain exception hierarchy for the lending core.

Validation problems are raised before anything is written, state problems are
detected before a write transaction is opened, so a raised LendingError never
leaves partial state behind.
"""

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base exception for all lending core errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigurationError(LendingError, ValueError):
    """Raised when configuration (e.g. the rate tier table) is malformed"""


# Validation -----------------------------------------------------------------

class ValidationError(LendingError, ValueError):
    """Bad input shape or range. No mutation is attempted."""


class InvalidAmount(ValidationError):
    """Raised for a non-positive or unparseable monetary amount"""

    def __init__(self, amount: Any, field: str = "amount"):
        super().__init__(
            f"Invalid {field}: {amount!r} (must be a positive amount)",
            {"field": field, "value": str(amount)}
        )


class InvalidLoanTerms(LendingError, ArithmeticError):
    """Raised when principal, rate or term cannot be amortized"""


# Lookups --------------------------------------------------------------------

class NotFoundError(LendingError, LookupError):
    """Unknown entity identifier"""

    entity_type = "entity"

    def __init__(self, entity_id: str):
        super().__init__(
            f"{self.entity_type.capitalize()} '{entity_id}' not found",
            {f"{self.entity_type}_id": entity_id}
        )
        self.entity_id = entity_id


class ApplicationNotFound(NotFoundError):
    entity_type = "application"


class LoanNotFound(NotFoundError):
    entity_type = "loan"


class BorrowerNotFound(NotFoundError):
    entity_type = "borrower"


# State ----------------------------------------------------------------------

class DomainStateError(LendingError):
    """Operation not permitted in the entity's current lifecycle state"""


class InvalidTransition(DomainStateError):
    """A status transition outside the lifecycle table"""

    def __init__(self, entity_type: str, current: Any, target: Any):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"Cannot move {entity_type} from {current_value} to {target_value}",
            {"entity_type": entity_type, "current": current_value, "target": target_value}
        )


class ApplicationNotPending(DomainStateError):
    """Approval or rejection attempted on an application that is not PENDING"""

    def __init__(self, application_id: str, status: Any):
        status_value = getattr(status, "value", status)
        super().__init__(
            f"Application '{application_id}' is {status_value}, not PENDING",
            {"application_id": application_id, "status": status_value}
        )


class ApplicationAlreadyProcessed(ApplicationNotPending):
    """The application already reached APPROVED or REJECTED"""


class LoanNotPayable(DomainStateError):
    """Payment attempted on a loan outside the active family"""

    def __init__(self, loan_id: str, status: Any):
        status_value = getattr(status, "value", status)
        super().__init__(
            f"Loan '{loan_id}' is {status_value} and cannot accept payments",
            {"loan_id": loan_id, "status": status_value}
        )
