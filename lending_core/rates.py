"""
Interest Rate Tiering Module

Maps a principal to its annual interest rate. Tiers are half-open
intervals [lower, upper) over the principal; the last tier is unbounded.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

from .currency import Money, to_decimal
from .errors import ConfigurationError, InvalidAmount
from .logging_config import get_logger, log_action

logger = get_logger(__name__)


DEFAULT_RATE_TABLE: Dict[str, Union[int, str]] = {
    "<500000": 20,
    "500000-2000000": 15,
    "2000000-5000000": 12,
    ">=5000000": 10,
}

_BELOW = re.compile(r'^<\s*([\d_,]+)$')
_RANGE = re.compile(r'^([\d_,]+)\s*-\s*([\d_,]+)$')
_AT_LEAST = re.compile(r'^>=\s*([\d_,]+)$')


def _bound(text: str) -> Decimal:
    return Decimal(text.replace(',', '').replace('_', ''))


@dataclass(frozen=True)
class RateTier:
    """One principal band: lower inclusive, upper exclusive (None = unbounded)"""
    lower: Decimal
    upper: Optional[Decimal]
    rate: Decimal

    def contains(self, principal: Decimal) -> bool:
        if principal < self.lower:
            return False
        return self.upper is None or principal < self.upper

    def label(self) -> str:
        if self.upper is None:
            return f">={self.lower}"
        if self.lower == 0:
            return f"<{self.upper}"
        return f"{self.lower}-{self.upper}"


def parse_tier_key(key: str) -> Tuple[Decimal, Optional[Decimal]]:
    """Parse "<X", "A-B" or ">=X" into (lower, upper)"""
    key = key.strip()
    match = _BELOW.match(key)
    if match:
        return Decimal('0'), _bound(match.group(1))
    match = _RANGE.match(key)
    if match:
        return _bound(match.group(1)), _bound(match.group(2))
    match = _AT_LEAST.match(key)
    if match:
        return _bound(match.group(1)), None
    raise ConfigurationError(f"Malformed rate tier key: {key!r}", {"key": key})


class RatePolicy:
    """
    Principal to annual rate mapping

    Deterministic and side-effect free. Rates are percentages (15 means 15%).
    """

    def __init__(self, tiers: List[RateTier]):
        self.tiers = self._validate(tiers)

    @staticmethod
    def _validate(tiers: List[RateTier]) -> Tuple[RateTier, ...]:
        if not tiers:
            raise ConfigurationError("Rate table must define at least one tier")

        ordered = sorted(tiers, key=lambda tier: tier.lower)
        if ordered[0].lower != 0:
            raise ConfigurationError(
                "Rate table must start at 0", {"first_lower": str(ordered[0].lower)}
            )

        for current, following in zip(ordered, ordered[1:]):
            if current.upper is None or current.upper != following.lower:
                raise ConfigurationError(
                    "Rate tiers must be contiguous without gaps or overlaps",
                    {"tier": current.label(), "next": following.label()}
                )

        if ordered[-1].upper is not None:
            raise ConfigurationError(
                "Last rate tier must be unbounded", {"tier": ordered[-1].label()}
            )

        for tier in ordered:
            if tier.upper is not None and tier.upper <= tier.lower:
                raise ConfigurationError("Empty rate tier", {"tier": tier.label()})
            if tier.rate < 0:
                raise ConfigurationError("Negative rate", {"tier": tier.label(), "rate": str(tier.rate)})

        return tuple(ordered)

    @classmethod
    def from_table(cls, table: Dict[str, Union[int, str, Decimal]]) -> 'RatePolicy':
        """Build a policy from {"<500000": 20, "500000-2000000": 15, ...}"""
        tiers = []
        for key, rate in table.items():
            lower, upper = parse_tier_key(str(key))
            try:
                rate_value = to_decimal(rate)
            except ValueError:
                raise ConfigurationError(f"Invalid rate for tier {key!r}: {rate!r}", {"key": key})
            tiers.append(RateTier(lower, upper, rate_value))
        return cls(tiers)

    @classmethod
    def default(cls) -> 'RatePolicy':
        return cls.from_table(DEFAULT_RATE_TABLE)

    @property
    def canonical_rates(self) -> Tuple[Decimal, ...]:
        return tuple(tier.rate for tier in self.tiers)

    def to_table(self) -> Dict[str, str]:
        return {tier.label(): str(tier.rate) for tier in self.tiers}

    def tier_for(self, principal) -> RateTier:
        amount = _principal(principal)
        for tier in self.tiers:
            if tier.contains(amount):
                return tier
        # Unreachable for a validated table
        raise ConfigurationError(f"No rate tier covers {amount}")

    def rate_for(self, principal) -> Decimal:
        """Annual rate percentage for a principal; raises InvalidAmount if <= 0"""
        return self.tier_for(principal).rate

    def is_canonical(self, rate) -> bool:
        try:
            value = to_decimal(rate)
        except ValueError:
            return False
        return value in self.canonical_rates

    def resolve_rate(self, principal, override=None) -> Decimal:
        """
        Rate to price a loan with

        An override is honoured only when it equals one of the tier rates;
        any other override is ignored and the tier rate is used.
        """
        computed = self.rate_for(principal)
        if override is None:
            return computed

        if self.is_canonical(override):
            return to_decimal(override)

        log_action(
            logger, "warning", "Ignoring non-canonical rate override",
            action="resolve_rate",
            extra={"override": str(override), "rate": str(computed)}
        )
        return computed


def _principal(principal) -> Decimal:
    try:
        amount = to_decimal(principal)
    except ValueError:
        raise InvalidAmount(principal, "principal")
    if amount <= 0:
        raise InvalidAmount(principal, "principal")
    return amount


_default_policy = RatePolicy.default()


def rate_for(principal) -> Decimal:
    """Tier rate under the default table"""
    return _default_policy.rate_for(principal)
