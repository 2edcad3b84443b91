"""Display helpers shared by the CLI renderers."""

from datetime import datetime
from typing import Sequence

from dance_timer.storage.models import PriceTier

from .billing import GRACE_PERIOD_SECONDS, quote
from .timer_state import Finished, Idle, Running, TimerState


def format_duration(seconds: int) -> str:
    """Format elapsed seconds as ``M:SS`` (minutes are not wrapped at 60)."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def format_cost(cost: float, symbol: str = "¥") -> str:
    if float(cost).is_integer():
        return f"{symbol}{int(cost)}"
    return f"{symbol}{cost:.1f}"


def format_start_time(value: datetime) -> str:
    return value.strftime("%H:%M")


def _songs(count: int) -> str:
    return "1 song" if count == 1 else f"{count} songs"


def billing_summary_text(
    elapsed_seconds: int,
    tiers: Sequence[PriceTier],
    grace_seconds: int = GRACE_PERIOD_SECONDS,
    symbol: str = "¥"
) -> str:
    """One-line billing status, e.g. ``Grace 7s · 2 songs · ¥40``.

    Empty when there is no rule to bill with.
    """
    if not tiers:
        return ""
    billing = quote(elapsed_seconds, tiers, grace_seconds)
    cost = format_cost(billing.cost, symbol)
    if billing.is_in_grace_period:
        return f"Grace {billing.grace_remaining_seconds}s · {_songs(billing.song_count)} · {cost}"
    if billing.song_count == 0:
        return f"Under 1 song · {cost}"
    return f"{_songs(billing.song_count)} · {cost}"


def describe_state(state: TimerState, symbol: str = "¥") -> str:
    """Short human-readable description of a timer snapshot."""
    if isinstance(state, Idle):
        return "Ready"
    if isinstance(state, Running):
        status = "Paused" if state.is_paused else "Dancing"
        text = f"{status} {format_duration(state.elapsed_seconds)} · {state.rule_name}"
        summary = billing_summary_text(state.elapsed_seconds, state.tiers, symbol=symbol)
        if summary:
            text += f" · {summary}"
        if state.is_auto_started:
            text += " (auto)"
        return text
    if isinstance(state, Finished):
        text = (
            f"Finished {format_duration(state.duration_seconds)} · "
            f"{_songs(state.song_count)} · {format_cost(state.cost, symbol)}"
        )
        if state.is_grace_applied:
            text += " (grace applied)"
        return text
    raise TypeError(f"Unknown timer state: {state!r}")
