"""
Trigger gesture detection for the two hardware buttons.

Two recognition modes:
1. Sustained hold: keep a button down for ``hold_threshold_ms``
2. Rapid repeat: press a button ``repeat_count`` times within
   ``repeat_window_ms``

Button A maps to the primary trigger (start/resume), button B to the
secondary trigger (stop).
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from dance_timer.config.preferences import TriggerMode

from .clock import Clock, SystemClock
from .resources import Cancellable, Scheduler

logger = structlog.get_logger(__name__)

DEFAULT_HOLD_THRESHOLD_MS = 1500
DEFAULT_REPEAT_WINDOW_MS = 600
DEFAULT_REPEAT_COUNT = 3


class Button(Enum):
    A = "a"  # volume up
    B = "b"  # volume down


class KeyAction(Enum):
    DOWN = "down"
    UP = "up"


@dataclass
class _PendingHold:
    handle: Optional[Cancellable]
    fired: bool = False


class TriggerGestureDetector:
    """Turns raw button events into primary/secondary triggers.

    Only one mode is active at a time. Switching modes drops any half-made
    gesture.
    """

    def __init__(
        self,
        on_primary: Callable[[], Any],
        on_secondary: Callable[[], Any],
        mode: TriggerMode = TriggerMode.SUSTAINED_HOLD,
        hold_threshold_ms: int = DEFAULT_HOLD_THRESHOLD_MS,
        repeat_window_ms: int = DEFAULT_REPEAT_WINDOW_MS,
        repeat_count: int = DEFAULT_REPEAT_COUNT,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._callbacks = {Button.A: on_primary, Button.B: on_secondary}
        self._mode = mode
        self.hold_threshold_ms = hold_threshold_ms
        self.repeat_window_ms = repeat_window_ms
        self.repeat_count = repeat_count
        self._scheduler = scheduler
        self._clock = clock or SystemClock()
        self._holds: Dict[Button, _PendingHold] = {}
        self._presses: Dict[Button, List[int]] = {Button.A: [], Button.B: []}

    @property
    def mode(self) -> TriggerMode:
        return self._mode

    @mode.setter
    def mode(self, mode: TriggerMode) -> None:
        if mode != self._mode:
            logger.info("trigger_mode_changed", old=self._mode.value, new=mode.value)
        self._mode = mode
        self.reset()

    def on_event(
        self,
        button: Button,
        action: KeyAction,
        timestamp_ms: Optional[int] = None
    ) -> bool:
        """Feed one button event.

        Args:
            button: Which button
            action: Press or release
            timestamp_ms: Event time in monotonic milliseconds; read from the
                clock when omitted

        Returns:
            True if the event was consumed by gesture recognition
        """
        if self._mode is TriggerMode.SUSTAINED_HOLD:
            return self._on_hold_event(button, action)
        if timestamp_ms is None:
            timestamp_ms = self._clock.monotonic_millis()
        return self._on_repeat_event(button, action, timestamp_ms)

    def reset(self) -> None:
        """Cancel pending holds and forget press history."""
        for hold in self._holds.values():
            if hold.handle is not None:
                hold.handle.cancel()
        self._holds.clear()
        for presses in self._presses.values():
            presses.clear()

    def _on_hold_event(self, button: Button, action: KeyAction) -> bool:
        if action is KeyAction.DOWN:
            # Auto-repeat DOWNs while held, or after the hold already fired
            if button in self._holds:
                return True
            scheduler = self._scheduler or asyncio.get_running_loop()
            handle = scheduler.call_later(
                self.hold_threshold_ms / 1000, self._fire_hold, button
            )
            self._holds[button] = _PendingHold(handle=handle)
            return True

        hold = self._holds.pop(button, None)
        if hold is not None and hold.handle is not None:
            hold.handle.cancel()
        return True

    def _fire_hold(self, button: Button) -> None:
        hold = self._holds.get(button)
        if hold is None or hold.fired:
            return
        hold.fired = True
        hold.handle = None
        self._trigger(button)

    def _on_repeat_event(self, button: Button, action: KeyAction, now: int) -> bool:
        if action is KeyAction.UP:
            return False

        presses = self._presses[button]
        presses.append(now)
        presses[:] = [t for t in presses if now - t <= self.repeat_window_ms]
        if len(presses) >= self.repeat_count:
            presses.clear()
            self._trigger(button)
            return True
        return False

    def _trigger(self, button: Button) -> None:
        logger.debug("gesture_triggered", button=button.value, mode=self._mode.value)
        self._callbacks[button]()
