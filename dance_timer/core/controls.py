"""Wiring between trigger gestures, screen events and the timer state machine."""

import asyncio
from typing import Callable, Optional, Set

import structlog

from dance_timer.config.loader import TimerSettings
from dance_timer.config.preferences import PreferenceStore

from .clock import Clock
from .gestures import Button, KeyAction, TriggerGestureDetector
from .resources import Scheduler
from .state_machine import TimerStateMachine
from .timer_state import Finished, Idle, Running

logger = structlog.get_logger(__name__)


class TriggerBindings:
    """Maps the primary trigger to start/resume and the secondary to stop."""

    def __init__(
        self,
        machine: TimerStateMachine,
        preferences: PreferenceStore,
        settings: Optional[TimerSettings] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        settings = settings or TimerSettings()
        self.machine = machine
        self.preferences = preferences
        self.detector = TriggerGestureDetector(
            on_primary=self.on_primary,
            on_secondary=self.on_secondary,
            mode=preferences.trigger_mode,
            hold_threshold_ms=settings.hold_threshold_ms,
            repeat_window_ms=settings.repeat_window_ms,
            repeat_count=settings.repeat_count,
            scheduler=scheduler,
            clock=clock,
        )
        self._pending: Set[asyncio.Task] = set()

    def on_key(self, button: Button, action: KeyAction, timestamp_ms: Optional[int] = None) -> bool:
        return self.detector.on_event(button, action, timestamp_ms)

    def on_primary(self) -> None:
        state = self.machine.state
        if isinstance(state, (Idle, Finished)):
            self._spawn(self.machine.start())
        elif isinstance(state, Running) and state.is_paused:
            self.machine.resume()

    def on_secondary(self) -> None:
        if isinstance(self.machine.state, Running):
            self.machine.stop()

    def on_screen_off(self) -> bool:
        """Auto-start when the screen turns off, if the user enabled it."""
        if not self.preferences.auto_start_on_screen_off:
            return False
        if not isinstance(self.machine.state, Idle):
            return False
        logger.info("screen_off_auto_start")
        self._spawn(self.machine.start(is_auto=True))
        return True

    def on_focus_lost(self) -> None:
        self.detector.reset()

    def reload_preferences(self) -> None:
        self.preferences.reload()
        self.detector.mode = self.preferences.trigger_mode

    async def drain(self) -> None:
        """Wait for start commands issued by triggers to complete."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


class KeyboardControls:
    """Terminal keys mapped onto trigger events and timer commands.

    ``a`` and ``b`` are presses of the two trigger buttons. A terminal only
    reports key presses, never releases, so each one is a DOWN immediately
    followed by an UP: the rapid repeat gesture works, a sustained hold does
    not.
    """

    BUTTON_KEYS = {"a": Button.A, "b": Button.B}

    HELP = (
        "a/b trigger buttons, s start/resume, p pause, x stop, "
        "c cancel auto-start, q quit"
    )

    def __init__(self, bindings: TriggerBindings, on_quit: Optional[Callable[[], None]] = None) -> None:
        self.bindings = bindings
        self._on_quit = on_quit

    def on_char(self, char: str) -> bool:
        """Handle one key; returns False for keys with no binding."""
        key = char.lower()
        button = self.BUTTON_KEYS.get(key)
        if button is not None:
            self.bindings.on_key(button, KeyAction.DOWN)
            self.bindings.on_key(button, KeyAction.UP)
            return True

        machine = self.bindings.machine
        if key == "s":
            self.bindings.on_primary()
        elif key == "x":
            self.bindings.on_secondary()
        elif key == "p":
            machine.pause()
        elif key == "c":
            machine.cancel_auto()
        elif key == "q":
            if self._on_quit is not None:
                self._on_quit()
        else:
            return False
        logger.debug("key_handled", key=key)
        return True
