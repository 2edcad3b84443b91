"""Exclusive timing lease held while a session is actively counting."""

import asyncio
from typing import Any, Callable, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

# Hard upper bound for one hold, in case a release is ever missed
DEFAULT_MAX_HOLD_SECONDS = 60 * 60


class Cancellable(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    """Anything with ``call_later``; an asyncio event loop qualifies."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Cancellable: ...


class TimingLease:
    """Wake-lock equivalent owned by the timer state machine.

    Acquired on start/resume, released on pause/stop/cancel. A hold that
    outlives ``max_hold_seconds`` releases itself.
    """

    def __init__(
        self,
        name: str = "dance_timer",
        max_hold_seconds: float = DEFAULT_MAX_HOLD_SECONDS,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        if max_hold_seconds <= 0:
            raise ValueError("max_hold_seconds must be > 0")
        self.name = name
        self.max_hold_seconds = max_hold_seconds
        self._scheduler = scheduler
        self._expiry: Optional[Cancellable] = None
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Take the lease, restarting the safety timeout if already held."""
        if self._expiry is not None:
            self._expiry.cancel()
        scheduler = self._scheduler or asyncio.get_running_loop()
        self._expiry = scheduler.call_later(self.max_hold_seconds, self._expire)
        if not self._held:
            logger.debug("timing_lease_acquired", lease=self.name)
        self._held = True

    def release(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        if self._held:
            logger.debug("timing_lease_released", lease=self.name)
        self._held = False

    def _expire(self) -> None:
        self._expiry = None
        if self._held:
            logger.warning(
                "timing_lease_expired",
                lease=self.name,
                max_hold_seconds=self.max_hold_seconds,
            )
        self._held = False
