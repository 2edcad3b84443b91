"""
Observable timer state.

A closed sum type: every snapshot is exactly one of ``Idle``, ``Running`` or
``Finished``. Snapshots are frozen and replaced wholesale on every change so
readers never see fields computed at two different instants.
"""

from dataclasses import dataclass, field
from typing import Tuple, Union

from dance_timer.storage.models import PriceTier


@dataclass(frozen=True)
class Idle:
    """No session."""


@dataclass(frozen=True)
class Running:
    """A live (possibly paused) session."""
    elapsed_seconds: int = 0
    current_song_index: int = 0
    cost: float = 0.0
    song_count: int = 0
    start_time_millis: int = 0
    tiers: Tuple[PriceTier, ...] = field(default_factory=tuple)
    rule_name: str = ""
    rule_id: int = 0
    is_paused: bool = False
    is_in_grace_period: bool = False
    grace_remaining_seconds: int = 0
    is_auto_started: bool = False


@dataclass(frozen=True)
class Finished:
    """Summary of the session that just ended."""
    duration_seconds: int
    cost: float
    song_count: int
    rule_name: str
    rule_id: int
    start_time_millis: int
    end_time_millis: int
    is_grace_applied: bool = False
    saved_amount: float = 0.0


TimerState = Union[Idle, Running, Finished]

IDLE = Idle()
