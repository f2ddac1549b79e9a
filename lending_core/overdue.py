"""
Overdue Classification Module

Derives arrears from loan fields at read time. Nothing here writes to
storage: OVERDUE is a reporting label, computed from the next payment date
and the as-of date supplied by the caller.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from .amortization import add_months
from .currency import Money
from .errors import ValidationError
from .lifecycle import ACTIVE_FAMILY, LoanStatus, as_date


@dataclass(frozen=True)
class OverdueBucket:
    label: str
    min_days: int
    max_days: Optional[int]  # inclusive; None = unbounded

    def contains(self, days: int) -> bool:
        return days >= self.min_days and (self.max_days is None or days <= self.max_days)


OVERDUE_BUCKETS: Tuple[OverdueBucket, ...] = (
    OverdueBucket("1-7", 1, 7),
    OverdueBucket("8-30", 8, 30),
    OverdueBucket("30+", 31, None),
)


def bucket_for(days_overdue: int) -> OverdueBucket:
    """Bucket for a day count; anything up to 7 days falls in the first bucket"""
    for bucket in OVERDUE_BUCKETS:
        if bucket.max_days is None or days_overdue <= bucket.max_days:
            return bucket
    return OVERDUE_BUCKETS[-1]


class OverdueOrdering(Enum):
    """Sort order of an overdue listing"""
    DAYS_OVERDUE = "daysOverdue"  # most overdue first
    DUE_DATE = "dueDate"          # oldest due date first

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.strip().replace('_', '').replace('-', '').lower()
            for member in cls:
                if member.value.lower() == key:
                    return member
        return None


@dataclass(frozen=True)
class MissedCycle:
    cycle: int
    due_date: date
    amount: Money
    days_overdue: int


@dataclass(frozen=True)
class OverdueRecord:
    loan_id: str
    loan_number: str
    borrower_id: str
    status: LoanStatus
    outstanding_balance: Money
    monthly_payment: Money
    next_payment_date: date
    days_overdue: int
    bucket: str
    cycles_overdue: int
    missed_cycles: Tuple[MissedCycle, ...] = ()

    @property
    def reporting_status(self) -> LoanStatus:
        return LoanStatus.OVERDUE


@dataclass(frozen=True)
class OverdueSummary:
    total_loans: int
    total_outstanding: Money
    total_cycles: int
    average_days_overdue: Decimal
    by_bucket: Dict[str, int] = field(default_factory=dict)


def is_overdue(loan, as_of: date) -> bool:
    as_of = as_date(as_of)
    return (
        loan.status in ACTIVE_FAMILY
        and loan.outstanding_balance.is_positive()
        and loan.next_payment_date is not None
        and loan.next_payment_date < as_of
    )


def missed_cycles(loan, as_of: date) -> List[MissedCycle]:
    """
    One entry per installment the outstanding balance still covers

    Cycle 1 is due on the next payment date; each earlier cycle is one month
    before. Every cycle is one monthly payment except the last, which takes
    the remainder so the amounts sum to the outstanding balance.
    """
    as_of = as_date(as_of)
    balance = loan.outstanding_balance
    payment = loan.monthly_payment

    if payment.is_positive():
        count = int((balance.amount / payment.amount).to_integral_value(rounding=ROUND_CEILING))
    else:
        count = 1
    count = max(count, 1)

    cycles = []
    for k in range(count):
        due_date = add_months(loan.next_payment_date, -k)
        if k == count - 1:
            amount = balance - payment * (count - 1) if payment.is_positive() else balance
        else:
            amount = payment
        cycles.append(MissedCycle(
            cycle=k + 1,
            due_date=due_date,
            amount=amount,
            days_overdue=max(0, (as_of - due_date).days),
        ))
    return cycles


def classify_loan(loan, as_of: date) -> Optional[OverdueRecord]:
    as_of = as_date(as_of)
    if not is_overdue(loan, as_of):
        return None

    days = (as_of - loan.next_payment_date).days
    cycles = missed_cycles(loan, as_of)
    return OverdueRecord(
        loan_id=loan.id,
        loan_number=loan.loan_number,
        borrower_id=loan.borrower_id,
        status=loan.status,
        outstanding_balance=loan.outstanding_balance,
        monthly_payment=loan.monthly_payment,
        next_payment_date=loan.next_payment_date,
        days_overdue=days,
        bucket=bucket_for(days).label,
        cycles_overdue=len(cycles),
        missed_cycles=tuple(cycles),
    )


def classify(loans: Iterable, as_of: date, order_by) -> List[OverdueRecord]:
    """
    Overdue records for the given loans as of a date

    Loans that are closed, fully paid, or not yet due are left out. The
    ordering has no default and must be chosen by the caller.
    """
    if order_by is None:
        raise ValidationError("An overdue ordering is required", {"field": "order_by"})
    try:
        ordering = OverdueOrdering(order_by)
    except ValueError:
        raise ValidationError(f"Unknown overdue ordering: {order_by!r}", {"field": "order_by"})

    as_of = as_date(as_of)
    records = [record for record in (classify_loan(loan, as_of) for loan in loans) if record]

    if ordering is OverdueOrdering.DAYS_OVERDUE:
        records.sort(key=lambda r: (-r.days_overdue, r.loan_number))
    else:
        records.sort(key=lambda r: (r.next_payment_date, r.loan_number))
    return records


def summarize(records: Iterable[OverdueRecord]) -> OverdueSummary:
    records = list(records)
    by_bucket = {bucket.label: 0 for bucket in OVERDUE_BUCKETS}
    total_outstanding = Money.zero()
    total_cycles = 0
    total_days = 0

    for record in records:
        by_bucket[record.bucket] += 1
        total_outstanding = total_outstanding + record.outstanding_balance
        total_cycles += record.cycles_overdue
        total_days += record.days_overdue

    if records:
        average = (Decimal(total_days) / Decimal(len(records))).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    else:
        average = Decimal('0.00')

    return OverdueSummary(
        total_loans=len(records),
        total_outstanding=total_outstanding,
        total_cycles=total_cycles,
        average_days_overdue=average,
        by_bucket=by_bucket,
    )
