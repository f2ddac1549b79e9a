"""
Borrower Registry Module

Borrower profiles and the credit-rating ladder. Ratings only move up
automatically: the first approved loan lifts a borrower to FAIR and every
loan paid off promotes one step.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple
import re
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import BorrowerNotFound, ValidationError
from .events import DomainEvent, EventDispatcher
from .identifiers import IdentifierAllocator
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PHONE_PATTERN = re.compile(r'^\+?\d{7,15}$')


class CreditRating(Enum):
    """Ordered credit rating, lowest first"""
    NO_CREDIT = "NO_CREDIT"
    POOR = "POOR"
    FAIR = "FAIR"
    GOOD = "GOOD"
    EXCELLENT = "EXCELLENT"

    @property
    def rank(self) -> int:
        return _RATING_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, CreditRating):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, CreditRating):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, CreditRating):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, CreditRating):
            return NotImplemented
        return self.rank >= other.rank

    def promote(self) -> 'CreditRating':
        """One step up after a payoff; NO_CREDIT joins at FAIR, EXCELLENT stays"""
        if self in (CreditRating.NO_CREDIT, CreditRating.POOR):
            return CreditRating.FAIR
        if self is CreditRating.EXCELLENT:
            return self
        return _RATING_ORDER[self.rank + 1]

    def at_least(self, floor: 'CreditRating') -> 'CreditRating':
        return floor if self < floor else self


_RATING_ORDER = [
    CreditRating.NO_CREDIT,
    CreditRating.POOR,
    CreditRating.FAIR,
    CreditRating.GOOD,
    CreditRating.EXCELLENT,
]


@dataclass
class Borrower(StorageRecord):
    """Borrower profile"""
    borrower_number: str
    first_name: str
    last_name: str
    phone: str
    email: Optional[str] = None
    credit_rating: CreditRating = CreditRating.NO_CREDIT

    table = "borrowers"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


def normalize_phone(phone: str) -> str:
    return re.sub(r'[\s\-()]', '', phone or '')


class BorrowerManager:
    """
    Registers borrowers and applies credit-rating changes
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 identifiers: IdentifierAllocator, dispatcher: EventDispatcher,
                 prefix: str = "B"):
        self.storage = storage
        self.audit_trail = audit_trail
        self.identifiers = identifiers
        self.dispatcher = dispatcher
        self.prefix = prefix
        self.table_name = Borrower.table

    def register_borrower(self, first_name: str, last_name: str, phone: str,
                          email: Optional[str] = None) -> Borrower:
        """
        Register a new borrower at NO_CREDIT

        Raises:
            ValidationError: Missing names, malformed phone or email, or the
                phone number already belongs to another borrower
        """
        borrower, created = self._register(first_name, last_name, phone, email, reuse_existing=False)
        return borrower

    def find_or_register(self, first_name: str, last_name: str, phone: str,
                         email: Optional[str] = None) -> Tuple[Borrower, bool]:
        """Return the borrower owning this phone number, registering one if none does"""
        return self._register(first_name, last_name, phone, email, reuse_existing=True)

    def _register(self, first_name, last_name, phone, email, reuse_existing):
        first_name = (first_name or '').strip()
        last_name = (last_name or '').strip()
        phone = normalize_phone(phone)
        email = email.strip() if email else None

        if not first_name or not last_name:
            raise ValidationError("Borrower first and last name are required")
        if not PHONE_PATTERN.match(phone):
            raise ValidationError(f"Invalid phone number: {phone!r}", {"field": "phone"})
        if email and not EMAIL_PATTERN.match(email):
            raise ValidationError(f"Invalid email format: {email!r}", {"field": "email"})

        with self.storage.locked("borrower_phone", phone):
            existing = self.get_borrower_by_phone(phone)
            if existing is not None:
                if reuse_existing:
                    return existing, False
                raise ValidationError(
                    f"Phone number {phone} is already registered",
                    {"field": "phone", "borrower_id": existing.id}
                )

            now = datetime.now(timezone.utc)
            with self.storage.atomic():
                borrower = Borrower(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    borrower_number=self.identifiers.next_id(self.prefix),
                    first_name=first_name,
                    last_name=last_name,
                    phone=phone,
                    email=email,
                )
                self.save(borrower)

        self.audit_trail.log_event(
            AuditEventType.BORROWER_REGISTERED, "borrower", borrower.id,
            {"borrower_number": borrower.borrower_number, "credit_rating": borrower.credit_rating}
        )
        self.dispatcher.emit(DomainEvent.BORROWER_REGISTERED, "borrower", borrower.id,
                             {"borrower_number": borrower.borrower_number})
        log_action(logger, "info", f"Registered borrower {borrower.borrower_number}",
                   action="register_borrower", resource=f"borrower:{borrower.id}")
        return borrower, True

    def get_borrower(self, borrower_id: str) -> Optional[Borrower]:
        data = self.storage.load(self.table_name, borrower_id)
        if data:
            return Borrower.from_dict(data)
        return None

    def require(self, borrower_id: str) -> Borrower:
        borrower = self.get_borrower(borrower_id)
        if borrower is None:
            raise BorrowerNotFound(borrower_id)
        return borrower

    def get_borrower_by_phone(self, phone: str) -> Optional[Borrower]:
        matches = self.storage.find(self.table_name, {"phone": normalize_phone(phone)})
        if matches:
            return Borrower.from_dict(matches[0])
        return None

    def list_borrowers(self) -> List[Borrower]:
        borrowers = [Borrower.from_dict(data) for data in self.storage.load_all(self.table_name)]
        borrowers.sort(key=lambda borrower: borrower.borrower_number)
        return borrowers

    def save(self, borrower: Borrower) -> None:
        self.storage.save(self.table_name, borrower.id, borrower.to_dict())

    def set_rating(self, borrower: Borrower, rating: CreditRating) -> Optional[Tuple[CreditRating, CreditRating]]:
        """
        Store a new rating inside the caller's transaction

        Returns (old, new) when the rating changed, None otherwise. Ratings
        never move down here.
        """
        old = borrower.credit_rating
        if rating <= old:
            return None
        borrower.credit_rating = rating
        borrower.touch()
        self.save(borrower)
        return old, rating

    def record_rating_change(self, borrower: Borrower, change: Tuple[CreditRating, CreditRating],
                             reason: str) -> None:
        """Audit and publish a committed rating change"""
        old, new = change
        self.audit_trail.log_event(
            AuditEventType.CREDIT_RATING_CHANGED, "borrower", borrower.id,
            {"old_rating": old, "new_rating": new, "reason": reason}
        )
        self.dispatcher.emit(DomainEvent.CREDIT_RATING_CHANGED, "borrower", borrower.id,
                             {"old_rating": old.value, "new_rating": new.value, "reason": reason})
        log_action(logger, "info",
                   f"Credit rating of {borrower.borrower_number} changed {old.value} -> {new.value}",
                   action="credit_rating_changed", resource=f"borrower:{borrower.id}",
                   extra={"reason": reason})
