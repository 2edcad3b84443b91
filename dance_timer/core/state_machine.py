"""
Timer state machine.

Owns the single dance session and turns commands (start, tick, pause,
resume, stop, cancel_auto, acknowledge) into immutable ``TimerState``
snapshots.

Elapsed time is always derived from the monotonic anchor recorded at start,
never accumulated tick by tick, so a late or missing tick cannot drift the
bill. Two independent loops drive ``tick()``:
1. A fine loop every ``tick_interval_seconds`` for smooth updates
2. A coarse backup loop every ``backup_tick_interval_seconds`` that also
   revives the fine loop if it has died

Both feed the same idempotent handler.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Set, Tuple

import structlog

from dance_timer.config.loader import TimerSettings
from dance_timer.storage.models import DanceRecord, PriceTier, PricingRule

from .billing import BillingQuote, quote
from .clock import Clock, SystemClock
from .resources import TimingLease
from .timer_state import IDLE, Finished, Running, TimerState

logger = structlog.get_logger(__name__)

NO_RULE_NAME = "No rule configured"

StateObserver = Callable[[TimerState], None]


class RuleSource(Protocol):
    async def get_default_rule_with_tiers(self) -> Optional[PricingRule]: ...


class HistorySink(Protocol):
    async def insert(self, record: DanceRecord) -> int: ...


class Feedback(Protocol):
    """Haptic (or audible) pulse; fire-and-forget."""

    def vibrate(self) -> None: ...


class BoundaryPreference(Protocol):
    @property
    def vibrate_on_unit_boundary(self) -> bool: ...


class NullFeedback:
    def vibrate(self) -> None:
        pass


@dataclass
class Session:
    """Mutable bookkeeping for the active session. Never exposed to observers."""
    start_monotonic_millis: int
    start_wall_clock_millis: int
    tiers: Tuple[PriceTier, ...] = field(default_factory=tuple)
    rule_name: str = NO_RULE_NAME
    rule_id: int = 0
    paused_elapsed_seconds: int = 0
    is_paused: bool = False
    is_auto_started: bool = False
    last_reached_song_index: int = -1


class TimerStateMachine:
    """Single-writer owner of the dance session.

    All commands must be called from the event loop thread. Invalid
    commands are ignored and return False.

    Example::

        machine = TimerStateMachine(AsyncRuleStore(rules), AsyncHistoryStore(history))
        machine.subscribe(render)
        await machine.start()
        ...
        machine.stop()
        await machine.drain()
    """

    def __init__(
        self,
        rule_store: RuleSource,
        history_store: HistorySink,
        clock: Optional[Clock] = None,
        feedback: Optional[Feedback] = None,
        preferences: Optional[BoundaryPreference] = None,
        settings: Optional[TimerSettings] = None,
        lease: Optional[TimingLease] = None,
    ) -> None:
        self._rule_store = rule_store
        self._history_store = history_store
        self._clock = clock or SystemClock()
        self._feedback = feedback or NullFeedback()
        self._preferences = preferences
        self._settings = settings or TimerSettings()
        self._lease = lease or TimingLease(max_hold_seconds=self._settings.wake_lock_max_seconds)

        self._state: TimerState = IDLE
        self._session: Optional[Session] = None
        self._starting = False
        self._observers: List[StateObserver] = []
        self._tick_task: Optional[asyncio.Task] = None
        self._backup_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    # -- observation ----------------------------------------------------------

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return isinstance(self._state, Running)

    @property
    def lease(self) -> TimingLease:
        return self._lease

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Register ``observer`` for every new snapshot; returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    # -- commands -------------------------------------------------------------

    async def start(self, is_auto: bool = False) -> bool:
        """Start a session priced with the current default rule.

        A missing or unreadable rule never blocks timing: the session runs
        at zero cost instead.
        """
        if self._session is not None or self._starting:
            logger.debug("command_ignored", command="start", state=type(self._state).__name__)
            return False

        self._starting = True
        try:
            rule = await self._load_default_rule()
        finally:
            self._starting = False

        if rule is None:
            tiers: Tuple[PriceTier, ...] = ()
            rule_name, rule_id = NO_RULE_NAME, 0
        else:
            tiers = rule.sorted_tiers
            rule_name, rule_id = rule.name, rule.id or 0

        self._session = Session(
            start_monotonic_millis=self._clock.monotonic_millis(),
            start_wall_clock_millis=self._clock.wall_clock_millis(),
            tiers=tiers,
            rule_name=rule_name,
            rule_id=rule_id,
            is_auto_started=is_auto,
        )
        self._lease.acquire()
        self._feedback.vibrate()
        self._publish(self._running_snapshot(self._session, 0))
        self._start_ticking()
        logger.info("timer_started", rule=rule_name, tiers=len(tiers), auto=is_auto)
        return True

    def tick(self) -> bool:
        """Recompute the running snapshot from the monotonic anchor.

        Safe to call any number of times from any tick source.
        """
        session = self._session
        if session is None or session.is_paused:
            return False

        elapsed = self._elapsed_seconds(session)
        snapshot = self._running_snapshot(session, elapsed)

        song_index = snapshot.current_song_index
        if song_index > session.last_reached_song_index and song_index > 0:
            session.last_reached_song_index = song_index
            logger.debug("song_boundary_reached", song_index=song_index, elapsed=elapsed)
            if self._vibrate_on_boundary():
                self._feedback.vibrate()

        self._publish(snapshot)
        return True

    def pause(self) -> bool:
        session = self._session
        if session is None or session.is_paused:
            logger.debug("command_ignored", command="pause")
            return False

        self._stop_ticking()
        elapsed = self._elapsed_seconds(session)
        session.paused_elapsed_seconds = elapsed
        session.is_paused = True
        self._lease.release()
        self._publish(self._running_snapshot(session, elapsed))
        self._feedback.vibrate()
        logger.info("timer_paused", elapsed=elapsed)
        return True

    def resume(self) -> bool:
        session = self._session
        if session is None or not session.is_paused:
            logger.debug("command_ignored", command="resume")
            return False

        # Rebase so elapsed continues from the frozen value
        session.start_monotonic_millis = (
            self._clock.monotonic_millis() - session.paused_elapsed_seconds * 1000
        )
        session.is_paused = False
        self._lease.acquire()
        self._publish(self._running_snapshot(session, session.paused_elapsed_seconds))
        self._feedback.vibrate()
        self._start_ticking()
        logger.info("timer_resumed", elapsed=session.paused_elapsed_seconds)
        return True

    def stop(self) -> bool:
        """Finish the session and hand the record to the history store.

        The Finished state is entered immediately; the insert runs in the
        background and its failure is only logged.
        """
        session = self._session
        if session is None:
            logger.debug("command_ignored", command="stop")
            return False

        self._stop_ticking()
        elapsed = self._elapsed_seconds(session)
        end_wall_clock = self._clock.wall_clock_millis()
        final = quote(elapsed, session.tiers, self._settings.grace_seconds)

        self._session = None
        self._feedback.vibrate()
        self._publish(Finished(
            duration_seconds=elapsed,
            cost=final.cost,
            song_count=final.song_count,
            rule_name=session.rule_name,
            rule_id=session.rule_id,
            start_time_millis=session.start_wall_clock_millis,
            end_time_millis=end_wall_clock,
            is_grace_applied=final.is_in_grace_period,
            saved_amount=final.grace_saved_amount,
        ))

        record = DanceRecord(
            start_time=datetime.fromtimestamp(session.start_wall_clock_millis / 1000),
            end_time=datetime.fromtimestamp(end_wall_clock / 1000),
            duration_seconds=elapsed,
            cost=final.cost,
            pricing_rule_name=session.rule_name,
            pricing_rule_id=session.rule_id,
        )
        self._spawn(self._persist(record))
        self._lease.release()
        logger.info(
            "timer_stopped",
            elapsed=elapsed,
            cost=final.cost,
            songs=final.song_count,
            grace_applied=final.is_in_grace_period,
        )
        return True

    def cancel_auto(self) -> bool:
        """Discard an auto-started session inside its confirmation window."""
        session = self._session
        if session is None or not session.is_auto_started:
            logger.debug("command_ignored", command="cancel_auto")
            return False

        # The window may have closed since the last tick
        elapsed = self._elapsed_seconds(session)
        if elapsed >= self._settings.auto_confirm_seconds:
            self._publish(self._running_snapshot(session, elapsed))
            logger.debug("command_ignored", command="cancel_auto", reason="window_closed")
            return False

        self._stop_ticking()
        self._session = None
        self._feedback.vibrate()
        self._publish(IDLE)
        self._lease.release()
        logger.info("auto_start_cancelled")
        return True

    def acknowledge(self) -> bool:
        """Dismiss the Finished summary."""
        if not isinstance(self._state, Finished):
            return False
        self._publish(IDLE)
        return True

    async def drain(self) -> None:
        """Wait for background work such as history inserts to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def close(self) -> None:
        """Stop the tick loops and drop the lease without ending the session."""
        self._stop_ticking()
        self._lease.release()

    # -- internals ------------------------------------------------------------

    async def _load_default_rule(self) -> Optional[PricingRule]:
        try:
            return await self._rule_store.get_default_rule_with_tiers()
        except Exception:
            logger.exception("default_rule_lookup_failed")
            return None

    def _elapsed_seconds(self, session: Session) -> int:
        if session.is_paused:
            return session.paused_elapsed_seconds
        delta = self._clock.monotonic_millis() - session.start_monotonic_millis
        return max(0, delta // 1000)

    def _running_snapshot(self, session: Session, elapsed: int) -> Running:
        if session.is_auto_started and elapsed >= self._settings.auto_confirm_seconds:
            session.is_auto_started = False
            logger.debug("auto_start_confirmed", elapsed=elapsed)

        billing: BillingQuote = quote(elapsed, session.tiers, self._settings.grace_seconds)
        return Running(
            elapsed_seconds=elapsed,
            current_song_index=billing.current_song_index,
            cost=billing.cost,
            song_count=billing.song_count,
            start_time_millis=session.start_wall_clock_millis,
            tiers=session.tiers,
            rule_name=session.rule_name,
            rule_id=session.rule_id,
            is_paused=session.is_paused,
            is_in_grace_period=billing.is_in_grace_period,
            grace_remaining_seconds=billing.grace_remaining_seconds,
            is_auto_started=session.is_auto_started,
        )

    def _vibrate_on_boundary(self) -> bool:
        if self._preferences is None:
            return True
        return self._preferences.vibrate_on_unit_boundary

    def _publish(self, state: TimerState) -> None:
        self._state = state
        for observer in list(self._observers):
            try:
                observer(state)
            except Exception:
                logger.exception("state_observer_failed", observer=repr(observer))

    def _start_ticking(self) -> None:
        self._stop_ticking()
        loop = asyncio.get_running_loop()
        self._tick_task = loop.create_task(self._tick_loop(), name="dance-timer-tick")
        self._backup_task = loop.create_task(self._backup_loop(), name="dance-timer-backup-tick")

    def _stop_ticking(self) -> None:
        for task in (self._tick_task, self._backup_task):
            if task is not None and not task.done():
                task.cancel()
        self._tick_task = None
        self._backup_task = None

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.tick_interval_seconds)
            self._safe_tick()

    async def _backup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.backup_tick_interval_seconds)
            if self._session is None or self._session.is_paused:
                continue
            if self._tick_task is None or self._tick_task.done():
                logger.warning("tick_loop_revived")
                self._tick_task = asyncio.get_running_loop().create_task(
                    self._tick_loop(), name="dance-timer-tick"
                )
            self._safe_tick()

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            logger.exception("tick_failed")

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, record: DanceRecord) -> None:
        try:
            record_id = await self._history_store.insert(record)
        except Exception:
            logger.exception(
                "history_insert_failed",
                duration_seconds=record.duration_seconds,
                cost=record.cost,
            )
            return
        logger.info("history_saved", record_id=record_id, cost=record.cost)
