"""
Half-song midpoint billing with a stop grace window.

Converts elapsed dance seconds into a charged song count and a cost.

Billing rules:
1. The metered unit is one song, taken from the shortest price tier
2. A song is charged once its midpoint is passed: floor(t / period + 0.5)
3. Cost = charged songs * price per song
4. Right after a song boundary a short grace window keeps the cost at the
   previous song's amount, so reaction delay when stopping is not billed

Example, 4 minutes per song at 20:
    0:00-1:59 -> 0, 2:00-5:59 -> 20, 6:00-9:59 -> 40 ...
"""

import math
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Tuple

from dance_timer.storage.models import PriceTier

# Stop buffer after each song boundary, in seconds
GRACE_PERIOD_SECONDS = 30


@dataclass(frozen=True)
class BillingQuote:
    """Every billing output for one elapsed instant."""
    elapsed_seconds: int
    song_count: int
    cost: float
    raw_cost: float
    current_song_index: int
    is_in_grace_period: bool
    grace_remaining_seconds: int
    grace_saved_amount: float


def billing_tier(tiers: Sequence[PriceTier]) -> Optional[PriceTier]:
    """Return the tier used for billing: the one with the shortest duration."""
    if not tiers:
        return None
    return sorted(tiers, key=lambda tier: tier.duration_minutes)[0]


def song_duration_seconds(tiers: Sequence[PriceTier]) -> int:
    """Length of the metered period in whole seconds (0 means no billing)."""
    tier = billing_tier(tiers)
    if tier is None:
        return 0
    return int(round(tier.duration_minutes * 60))


def charged_units(elapsed_seconds: int, period_seconds: int) -> int:
    """Songs charged at ``elapsed_seconds`` under midpoint billing."""
    if period_seconds <= 0:
        return 0
    return int(math.floor(elapsed_seconds / period_seconds + 0.5))


def calculate_raw(elapsed_seconds: int, tiers: Sequence[PriceTier]) -> float:
    """Midpoint-billed cost without the grace window.

    Args:
        elapsed_seconds: Elapsed dance time
        tiers: Price tiers of the active rule (any order)

    Returns:
        Cost in currency units, 0 when there is nothing to bill
    """
    tier = billing_tier(tiers)
    period = song_duration_seconds(tiers)
    if tier is None or period <= 0:
        return 0.0
    return charged_units(elapsed_seconds, period) * tier.price


def calculate_cost(
    elapsed_seconds: int,
    tiers: Sequence[PriceTier],
    grace_seconds: int = GRACE_PERIOD_SECONDS
) -> float:
    """Cost with the grace window applied. This is the amount that is billed.

    Args:
        elapsed_seconds: Elapsed dance time
        tiers: Price tiers of the active rule
        grace_seconds: Stop buffer after each song boundary

    Returns:
        Grace-adjusted cost
    """
    effective = effective_seconds(elapsed_seconds, tiers, grace_seconds)
    return calculate_raw(effective, tiers)


def effective_grace_seconds(
    tiers: Sequence[PriceTier],
    grace_seconds: int = GRACE_PERIOD_SECONDS
) -> int:
    """Grace window length, capped at half a song.

    Past the midpoint the next song is already charged, so the window can
    never be longer than that.
    """
    period = song_duration_seconds(tiers)
    if period <= 0:
        return 0
    return min(grace_seconds, period // 2)


def is_in_grace_period(
    elapsed_seconds: int,
    tiers: Sequence[PriceTier],
    grace_seconds: int = GRACE_PERIOD_SECONDS
) -> bool:
    """True within ``[k * period, k * period + grace)`` for k >= 1.

    The start of the first song is never a grace window.
    """
    period = song_duration_seconds(tiers)
    if period <= 0 or elapsed_seconds == 0:
        return False
    seconds_into_song = elapsed_seconds % period
    grace = effective_grace_seconds(tiers, grace_seconds)
    return elapsed_seconds >= period and seconds_into_song < grace


def effective_seconds(
    elapsed_seconds: int,
    tiers: Sequence[PriceTier],
    grace_seconds: int = GRACE_PERIOD_SECONDS
) -> int:
    """Elapsed seconds used for billing: one second before the boundary while in grace."""
    if not is_in_grace_period(elapsed_seconds, tiers, grace_seconds):
        return elapsed_seconds
    period = song_duration_seconds(tiers)
    return (elapsed_seconds // period) * period - 1


def grace_remaining_seconds(
    elapsed_seconds: int,
    tiers: Sequence[PriceTier],
    grace_seconds: int = GRACE_PERIOD_SECONDS
) -> int:
    """Seconds left in the current grace window, 0 outside of it."""
    if not is_in_grace_period(elapsed_seconds, tiers, grace_seconds):
        return 0
    period = song_duration_seconds(tiers)
    return effective_grace_seconds(tiers, grace_seconds) - elapsed_seconds % period


def grace_saved_amount(
    elapsed_seconds: int,
    tiers: Sequence[PriceTier],
    grace_seconds: int = GRACE_PERIOD_SECONDS
) -> float:
    """Amount the grace window keeps off the bill, 0 outside of it."""
    if not is_in_grace_period(elapsed_seconds, tiers, grace_seconds):
        return 0.0
    return (
        calculate_raw(elapsed_seconds, tiers)
        - calculate_cost(elapsed_seconds, tiers, grace_seconds)
    )


def current_song_index(elapsed_seconds: int, tiers: Sequence[PriceTier]) -> int:
    """0-based index of the song being played.

    Not grace-adjusted: boundary feedback must follow real time even while
    the bill is held back.
    """
    period = song_duration_seconds(tiers)
    if period <= 0 or elapsed_seconds == 0:
        return 0
    return elapsed_seconds // period


def song_count(
    elapsed_seconds: int,
    tiers: Sequence[PriceTier],
    grace_seconds: int = GRACE_PERIOD_SECONDS
) -> int:
    """Songs charged so far, always in step with ``calculate_cost``."""
    period = song_duration_seconds(tiers)
    if period <= 0:
        return 0
    return charged_units(effective_seconds(elapsed_seconds, tiers, grace_seconds), period)


def quote(
    elapsed_seconds: int,
    tiers: Sequence[PriceTier],
    grace_seconds: int = GRACE_PERIOD_SECONDS
) -> BillingQuote:
    """Compute all billing outputs for one instant."""
    return BillingQuote(
        elapsed_seconds=elapsed_seconds,
        song_count=song_count(elapsed_seconds, tiers, grace_seconds),
        cost=calculate_cost(elapsed_seconds, tiers, grace_seconds),
        raw_cost=calculate_raw(elapsed_seconds, tiers),
        current_song_index=current_song_index(elapsed_seconds, tiers),
        is_in_grace_period=is_in_grace_period(elapsed_seconds, tiers, grace_seconds),
        grace_remaining_seconds=grace_remaining_seconds(elapsed_seconds, tiers, grace_seconds),
        grace_saved_amount=grace_saved_amount(elapsed_seconds, tiers, grace_seconds),
    )


@dataclass(frozen=True)
class TimelineMarks:
    """Song midpoints (where a new charge starts) up to ``max_minutes``.

    Iterating yields ``(midpoint_minutes, cumulative_cost)`` pairs. Every
    iteration starts over, so the same object can be drawn repeatedly.
    """
    tiers: Tuple[PriceTier, ...]
    max_minutes: float = 60.0

    def __iter__(self) -> Iterator[Tuple[float, float]]:
        tier = billing_tier(self.tiers)
        if tier is None or song_duration_seconds(self.tiers) <= 0:
            return
        minutes = tier.duration_minutes
        index = 0
        while True:
            midpoint = index * minutes + minutes / 2
            if midpoint > self.max_minutes:
                break
            yield midpoint, (index + 1) * tier.price
            index += 1


def timeline_marks(tiers: Sequence[PriceTier], max_minutes: float = 60.0) -> TimelineMarks:
    """Charge points for progress displays."""
    return TimelineMarks(tuple(tiers), max_minutes)
