"""
Amortization Module

Level-payment (annuity) pricing of a loan: monthly payment, total payable,
total interest, and the month-by-month installment schedule. All arithmetic
is Decimal; the monthly payment is rounded once, to the whole currency unit.
"""

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import List

from .currency import Currency, DEFAULT_CURRENCY, Money, to_decimal
from .errors import InvalidLoanTerms

MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')


@dataclass(frozen=True)
class AmortizationResult:
    """Priced loan terms"""
    principal: Money
    annual_rate: Decimal
    term_months: int
    monthly_payment: Money
    total_amount: Money
    total_interest: Money


@dataclass(frozen=True)
class Installment:
    """One row of an amortization schedule"""
    number: int
    due_date: date
    payment: Money
    principal_part: Money
    interest_part: Money
    remaining_balance: Money


def add_months(start_date: date, months: int) -> date:
    """Add (or with a negative count, subtract) months, clamping to month end"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_percent) -> Decimal:
    return to_decimal(annual_rate_percent) / HUNDRED / MONTHS_PER_YEAR


def _validate_terms(principal, annual_rate_percent, term_months):
    try:
        principal_value = to_decimal(principal)
        rate_value = to_decimal(annual_rate_percent)
    except ValueError as e:
        raise InvalidLoanTerms(str(e))

    if isinstance(term_months, bool) or not isinstance(term_months, int):
        raise InvalidLoanTerms(f"Term must be a whole number of months, got {term_months!r}")
    if term_months < 1:
        raise InvalidLoanTerms(f"Term must be at least 1 month, got {term_months}",
                               {"term_months": term_months})
    if principal_value <= 0:
        raise InvalidLoanTerms(f"Principal must be positive, got {principal_value}",
                               {"principal": str(principal_value)})
    if rate_value < 0:
        raise InvalidLoanTerms(f"Rate cannot be negative, got {rate_value}",
                               {"annual_rate": str(rate_value)})
    return principal_value, rate_value


def amortize(principal, annual_rate_percent, term_months: int,
             currency: Currency = DEFAULT_CURRENCY) -> AmortizationResult:
    """
    Price a loan with the annuity formula

    monthly = P * r * (1 + r)^n / ((1 + r)^n - 1), r = annual / 100 / 12;
    a zero rate spreads the principal evenly. total = monthly * n.

    Raises:
        InvalidLoanTerms: term < 1, principal <= 0 or negative rate
    """
    principal_value, rate_value = _validate_terms(principal, annual_rate_percent, term_months)
    n = Decimal(term_months)
    r = monthly_rate(rate_value)

    if r == 0:
        exact_payment = principal_value / n
    else:
        factor = (Decimal('1') + r) ** term_months
        exact_payment = principal_value * (r * factor) / (factor - Decimal('1'))

    quantum = currency.quantum
    payment = exact_payment.quantize(quantum, rounding=ROUND_HALF_UP)

    # Rounding down must never leave the installments short of the principal
    if payment * n < principal_value:
        payment = (principal_value / n).quantize(quantum, rounding=ROUND_CEILING)

    total = payment * n
    principal_money = Money(principal_value, currency)
    total_money = Money(total, currency)

    return AmortizationResult(
        principal=principal_money,
        annual_rate=rate_value,
        term_months=term_months,
        monthly_payment=Money(payment, currency),
        total_amount=total_money,
        total_interest=total_money - principal_money,
    )


def schedule(principal, annual_rate_percent, term_months: int, start_date: date,
             currency: Currency = DEFAULT_CURRENCY) -> List[Installment]:
    """
    Installment schedule, one row per month starting at start_date

    Interest accrues on the declining balance. The final row settles the
    remaining balance and absorbs the rounding remainder, so principal parts
    sum to the principal and payments sum to the total amount.
    """
    terms = amortize(principal, annual_rate_percent, term_months, currency)
    r = monthly_rate(terms.annual_rate)
    zero = Money.zero(currency)

    balance = terms.principal
    paid = zero
    rows = []

    for number in range(1, term_months + 1):
        due_date = add_months(start_date, number - 1)

        if number == term_months:
            principal_part = balance
            payment = terms.total_amount - paid
            interest_part = payment - principal_part
        else:
            payment = terms.monthly_payment
            interest_part = balance * r
            principal_part = payment - interest_part
            if principal_part > balance:
                principal_part = balance
                interest_part = payment - principal_part

        balance = balance - principal_part
        paid = paid + payment
        rows.append(Installment(
            number=number,
            due_date=due_date,
            payment=payment,
            principal_part=principal_part,
            interest_part=interest_part,
            remaining_balance=balance,
        ))

    return rows
