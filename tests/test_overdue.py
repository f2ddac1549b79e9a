"""
Tests for overdue classification

Classification is a pure read over loan fields; these tests build loans
directly instead of going through the workflow.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from lending_core.currency import Money
from lending_core.errors import ValidationError
from lending_core.lifecycle import LoanStatus
from lending_core.loans import Loan
from lending_core.overdue import (
    OVERDUE_BUCKETS, OverdueOrdering, bucket_for, classify, classify_loan,
    is_overdue, missed_cycles, summarize,
)

AS_OF = date(2024, 7, 31)


def make_loan(number="LN001", due=date(2024, 7, 1), balance=500000, monthly=90258,
              status=LoanStatus.ACTIVE):
    now = datetime.now(timezone.utc)
    return Loan(
        id=f"loan-{number}", created_at=now, updated_at=now,
        loan_number=number, application_id=f"app-{number}", borrower_id="b-1",
        principal=Money(1000000), interest_rate=Decimal('15'), term_months=12,
        monthly_payment=Money(monthly), total_amount=Money(1083096), total_interest=Money(83096),
        outstanding_balance=Money(balance), status=status,
        next_payment_date=due, next_payment_amount=Money(monthly),
    )


class TestBuckets:

    @pytest.mark.parametrize("days,label", [
        (1, "1-7"), (7, "1-7"), (8, "8-30"), (10, "8-30"), (30, "8-30"), (31, "30+"), (400, "30+"),
    ])
    def test_boundaries(self, days, label):
        assert bucket_for(days).label == label

    def test_labels(self):
        assert [bucket.label for bucket in OVERDUE_BUCKETS] == ["1-7", "8-30", "30+"]

    def test_record_bucket_from_days(self):
        record = classify_loan(make_loan(due=date(2024, 7, 21)), AS_OF)
        assert record.days_overdue == 10
        assert record.bucket == "8-30"
        assert record.reporting_status is LoanStatus.OVERDUE


class TestEligibility:
    """Which loans count as overdue"""

    def test_due_today_is_not_overdue(self):
        assert not is_overdue(make_loan(due=AS_OF), AS_OF)
        assert is_overdue(make_loan(due=date(2024, 7, 30)), AS_OF)

    def test_approved_and_active_both_count(self):
        assert is_overdue(make_loan(status=LoanStatus.APPROVED), AS_OF)
        assert is_overdue(make_loan(status=LoanStatus.ACTIVE), AS_OF)

    def test_excluded_loans(self):
        loans = [
            make_loan("LN001", status=LoanStatus.CLOSED),
            make_loan("LN002", status=LoanStatus.COMPLETED),
            make_loan("LN003", balance=0),
            make_loan("LN004", due=date(2024, 8, 15)),
            make_loan("LN005", due=None),
        ]
        assert classify(loans, AS_OF, "daysOverdue") == []

    def test_classification_does_not_modify_loans(self):
        loan = make_loan()
        classify([loan], AS_OF, "dueDate")
        assert loan.status is LoanStatus.ACTIVE


class TestOrdering:

    def setup_method(self):
        self.loans = [
            make_loan("LN003", due=date(2024, 7, 21)),
            make_loan("LN001", due=date(2024, 5, 1)),
            make_loan("LN004", due=date(2024, 7, 21)),
            make_loan("LN002", due=date(2024, 7, 28)),
        ]

    def test_days_overdue_descending(self):
        records = classify(self.loans, AS_OF, OverdueOrdering.DAYS_OVERDUE)
        assert [r.loan_number for r in records] == ["LN001", "LN003", "LN004", "LN002"]
        assert [r.days_overdue for r in records] == [91, 10, 10, 3]

    def test_due_date_ascending(self):
        records = classify(self.loans, AS_OF, OverdueOrdering.DUE_DATE)
        assert [r.loan_number for r in records] == ["LN001", "LN003", "LN004", "LN002"]

    def test_ties_break_on_loan_number(self):
        reversed_input = list(reversed(self.loans))
        records = classify(reversed_input, AS_OF, "daysOverdue")
        assert [r.loan_number for r in records][1:3] == ["LN003", "LN004"]

    @pytest.mark.parametrize("value,expected", [
        ("daysOverdue", OverdueOrdering.DAYS_OVERDUE),
        ("days_overdue", OverdueOrdering.DAYS_OVERDUE),
        ("DAYS-OVERDUE", OverdueOrdering.DAYS_OVERDUE),
        ("dueDate", OverdueOrdering.DUE_DATE),
        ("due_date", OverdueOrdering.DUE_DATE),
    ])
    def test_string_orderings(self, value, expected):
        assert OverdueOrdering(value) is expected

    @pytest.mark.parametrize("order_by", [None, "", "amount", 3])
    def test_ordering_is_required(self, order_by):
        with pytest.raises(ValidationError):
            classify(self.loans, AS_OF, order_by)


class TestMissedCycles:

    def test_remainder_goes_to_last_cycle(self):
        cycles = missed_cycles(make_loan(balance=250, monthly=100, due=date(2024, 7, 15)), AS_OF)

        assert [c.cycle for c in cycles] == [1, 2, 3]
        assert [c.amount for c in cycles] == [Money(100), Money(100), Money(50)]
        assert [c.due_date for c in cycles] == [date(2024, 7, 15), date(2024, 6, 15), date(2024, 5, 15)]
        assert [c.days_overdue for c in cycles] == [16, 46, 77]

    def test_exact_multiple(self):
        cycles = missed_cycles(make_loan(balance=300, monthly=100), AS_OF)
        assert [c.amount for c in cycles] == [Money(100)] * 3

    def test_amounts_sum_to_balance(self):
        loan = make_loan(balance=992838, monthly=90258)
        cycles = missed_cycles(loan, AS_OF)
        assert len(cycles) == 11
        assert sum((c.amount for c in cycles), Money.zero()) == loan.outstanding_balance

    def test_zero_monthly_payment_is_one_cycle(self):
        cycles = missed_cycles(make_loan(balance=5000, monthly=0), AS_OF)
        assert len(cycles) == 1
        assert cycles[0].amount == Money(5000)

    def test_record_counts_cycles(self):
        record = classify_loan(make_loan(balance=250, monthly=100), AS_OF)
        assert record.cycles_overdue == 3
        assert len(record.missed_cycles) == 3


class TestSummary:

    def test_summarize(self):
        records = classify([
            make_loan("LN001", due=date(2024, 7, 28), balance=100000),  # 3 days
            make_loan("LN002", due=date(2024, 7, 21), balance=200000),  # 10 days
            make_loan("LN003", due=date(2024, 6, 1), balance=300000),   # 60 days
        ], AS_OF, "dueDate")

        summary = summarize(records)

        assert summary.total_loans == 3
        assert summary.total_outstanding == Money(600000)
        assert summary.by_bucket == {"1-7": 1, "8-30": 1, "30+": 1}
        assert summary.average_days_overdue == Decimal('24.33')
        assert summary.total_cycles == sum(r.cycles_overdue for r in records)

    def test_empty_summary(self):
        summary = summarize([])
        assert summary.total_loans == 0
        assert summary.total_outstanding.is_zero()
        assert summary.average_days_overdue == Decimal('0.00')
        assert summary.by_bucket == {"1-7": 0, "8-30": 0, "30+": 0}


class TestDatetimeAsOf:
    """A datetime as-of is read as its calendar date"""

    def test_classify_accepts_datetime(self):
        loans = [make_loan("LN001", due=date(2024, 7, 21)), make_loan("LN002", due=date(2024, 7, 31))]

        records = classify(loans, datetime(2024, 7, 31, 23, 59), "daysOverdue")

        assert [r.loan_number for r in records] == ["LN001"]
        assert records[0].days_overdue == 10
        assert records[0].bucket == "8-30"

    def test_single_loan_helpers_accept_datetime(self):
        loan = make_loan(balance=250, monthly=100, due=date(2024, 7, 15))
        as_of = datetime(2024, 7, 31, 8, 0, tzinfo=timezone.utc)

        assert is_overdue(loan, as_of)
        assert classify_loan(loan, as_of).days_overdue == 16
        assert [c.days_overdue for c in missed_cycles(loan, as_of)] == [16, 46, 77]
