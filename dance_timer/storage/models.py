"""
Data models for storage layer.

Defines pricing rules, their price tiers and the dance history ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple


@dataclass(frozen=True)
class PriceTier:
    """A metered unit: ``duration_minutes`` of music costs ``price``."""
    duration_minutes: float
    price: float
    sort_order: int = 0
    id: Optional[int] = None
    rule_id: Optional[int] = None


@dataclass(frozen=True)
class PricingRule:
    """A named price plan (e.g. "4 min / 20") with its tiers.

    Only one rule is the default at any time; the repository enforces it.
    """
    name: str
    is_default: bool = False
    tiers: Tuple[PriceTier, ...] = field(default_factory=tuple)
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def sorted_tiers(self) -> Tuple[PriceTier, ...]:
        """Tiers ordered by ascending duration."""
        return tuple(sorted(self.tiers, key=lambda tier: tier.duration_minutes))


@dataclass(frozen=True)
class DanceRecord:
    """Immutable record of one finished dance session.

    The rule name and id are a snapshot taken when the session started, so
    later edits or deletes of the rule never change history.
    """
    start_time: datetime
    end_time: datetime
    duration_seconds: int
    cost: float
    pricing_rule_name: str
    pricing_rule_id: int
    id: Optional[int] = None


def validate_tier(duration_minutes: float, price: float) -> PriceTier:
    """Build a tier from user input, rejecting values the engine cannot bill.

    Args:
        duration_minutes: Length of one metered unit in minutes
        price: Price of one unit

    Returns:
        A new PriceTier

    Raises:
        ValueError: If the duration is not positive or the price is negative
    """
    if duration_minutes is None or duration_minutes <= 0:
        raise ValueError("duration_minutes must be > 0")
    if price is None or price < 0:
        raise ValueError("price must be >= 0")
    return PriceTier(duration_minutes=float(duration_minutes), price=float(price))
