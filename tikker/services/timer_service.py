"""
Timer Service - Core time tracking logic.

Architecture Decision: Observer Pattern (Qt Signals)
The service emits signals when state changes, keeping it decoupled from UI.

States:  idle -> running -> {paused, stopped}
         paused -> {running, stopped}
         stopped -> idle (reset)

Only active time is tracked: the total is the sum of all running segments,
paused intervals are excluded. Transitions from an illegal state return False
and change nothing.
"""

import datetime
import logging
from typing import Callable, Optional

from PySide6.QtCore import QObject, QTimer, Signal

from tikker.domain.models import TimerBinding, TimerState, TimerStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime.datetime]


def format_time(seconds: float, show_seconds: bool = True) -> str:
    """Format a duration as HH:MM:SS (or HH:MM)"""
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if show_seconds:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{hours:02d}:{minutes:02d}"


def _seconds_between(start: Optional[datetime.datetime], end: datetime.datetime) -> float:
    if start is None:
        return 0.0
    return max(0.0, (end - start).total_seconds())


class TimerService(QObject):
    """
    The time tracking state machine. Knows nothing about the server or the UI.
    """

    # Signals
    state_changed = Signal()
    tick = Signal(str, float)  # (formatted_time, total_seconds)
    started = Signal()
    paused = Signal()
    resumed = Signal()
    stopped = Signal(float)  # final total_seconds
    was_reset = Signal()
    reminder = Signal(str)  # "still running" message

    def __init__(self, clock: Clock = datetime.datetime.now, show_seconds: bool = True,
                 show_notifications: bool = True, notification_interval: int = 30):
        """
        Args:
            clock: source of "now"; replaced in tests
            show_seconds: whether tick text includes seconds
            show_notifications: emit `reminder` while running
            notification_interval: minutes between reminders
        """
        super().__init__()
        self.clock = clock
        self.show_seconds = show_seconds
        self.show_notifications = show_notifications

        self._state = TimerState()
        self._banked_seconds: float = 0.0  # finished running segments of this cycle

        # Display refresh, fires every second while running
        self.timer = QTimer(self)
        self.timer.setInterval(1000)
        self.timer.timeout.connect(self._on_tick)

        self.reminder_timer = QTimer(self)
        self.reminder_timer.setInterval(max(1, notification_interval) * 60 * 1000)
        self.reminder_timer.timeout.connect(self._on_reminder)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def status(self) -> TimerStatus:
        return self._state.status

    @property
    def binding(self) -> Optional[TimerBinding]:
        return self._state.binding

    def is_running(self) -> bool:
        return self._state.status == TimerStatus.RUNNING

    def is_active(self) -> bool:
        """Running or paused, i.e. a cycle is in progress"""
        return self._state.status in (TimerStatus.RUNNING, TimerStatus.PAUSED)

    def total_elapsed(self) -> float:
        """Active seconds so far in this cycle, computed at call time"""
        if self._state.status == TimerStatus.RUNNING:
            live = self._banked_seconds + _seconds_between(self._state.resume_time, self.clock())
            return max(live, self._state.total_elapsed_time)
        return self._state.total_elapsed_time

    def snapshot(self) -> TimerState:
        """Serializable copy with the live values brought up to date"""
        state = self._state.model_copy(deep=True)
        if state.status == TimerStatus.RUNNING:
            state.elapsed_since_last_resume = _seconds_between(state.resume_time, self.clock())
            state.total_elapsed_time = self.total_elapsed()
        return state

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self, binding: Optional[TimerBinding] = None) -> bool:
        """Start a new cycle. Only legal from idle."""
        if self._state.status != TimerStatus.IDLE:
            return False

        now = self.clock()
        if binding is not None and binding.begin is None:
            binding = binding.model_copy(update={"begin": now})

        self._banked_seconds = 0.0
        self._state = TimerState(
            status=TimerStatus.RUNNING,
            start_time=now,
            resume_time=now,
            binding=binding,
        )
        self._start_intervals()
        logger.debug(f"Timer started at {now.isoformat()}")
        self.started.emit()
        self.state_changed.emit()
        return True

    def pause(self) -> bool:
        """Freeze the total. Only legal while running."""
        if self._state.status != TimerStatus.RUNNING:
            return False

        now = self.clock()
        self._banked_seconds = max(
            self._banked_seconds + _seconds_between(self._state.resume_time, now),
            self._state.total_elapsed_time,
        )
        self._state.status = TimerStatus.PAUSED
        self._state.pause_time = now
        self._state.resume_time = None
        self._state.elapsed_since_last_resume = 0.0
        self._state.total_elapsed_time = self._banked_seconds

        self._stop_intervals()
        self.paused.emit()
        self.state_changed.emit()
        return True

    def resume(self) -> bool:
        """
        Begin a new running segment. Only legal while paused.

        The paused interval is not added to the total.
        """
        if self._state.status != TimerStatus.PAUSED:
            return False

        now = self.clock()
        paused_for = _seconds_between(self._state.pause_time, now)
        logger.debug(f"Timer resumed after {paused_for:.0f}s pause (not tracked)")

        self._state.status = TimerStatus.RUNNING
        self._state.pause_time = None
        self._state.resume_time = now
        self._state.elapsed_since_last_resume = 0.0

        self._start_intervals()
        self.resumed.emit()
        self.state_changed.emit()
        return True

    def stop(self) -> bool:
        """
        Finish the cycle and emit the final active duration.
        Legal while running or paused.
        """
        if self._state.status not in (TimerStatus.RUNNING, TimerStatus.PAUSED):
            return False

        now = self.clock()
        if self._state.status == TimerStatus.RUNNING:
            self._banked_seconds = max(
                self._banked_seconds + _seconds_between(self._state.resume_time, now),
                self._state.total_elapsed_time,
            )

        self._state.status = TimerStatus.STOPPED
        self._state.start_time = None
        self._state.pause_time = None
        self._state.resume_time = None
        self._state.end_time = now
        self._state.elapsed_since_last_resume = 0.0
        self._state.total_elapsed_time = self._banked_seconds

        self._stop_intervals()
        logger.debug(f"Timer stopped, {self._banked_seconds:.0f}s tracked")
        self.stopped.emit(self._banked_seconds)
        self.state_changed.emit()
        return True

    def reset(self) -> bool:
        """Back to idle from any state, dropping counters and the binding"""
        self._stop_intervals()
        self._banked_seconds = 0.0
        self._state = TimerState()
        self.was_reset.emit()
        self.state_changed.emit()
        return True

    def restore(self, snapshot: Optional[TimerState]) -> None:
        """
        Apply a persisted snapshot after a restart.

        Time that passed while the application was not running was never
        observed, so the timer always comes back idle.
        """
        if snapshot is not None and snapshot.status in (TimerStatus.RUNNING, TimerStatus.PAUSED):
            logger.info(
                f"Discarding persisted {snapshot.status.value} timer "
                f"({snapshot.total_elapsed_time:.0f}s); timer restored as idle"
            )
        self.reset()

    def bind(self, binding: TimerBinding) -> None:
        """Point a running or paused cycle at a different binding"""
        if binding.begin is None:
            binding = binding.model_copy(update={"begin": self.clock()})
        self._state.binding = binding
        self.state_changed.emit()

    def update_binding(self, **updates) -> None:
        """Edit description/tags etc. of what is being timed"""
        if self._state.binding is None:
            return
        self._state.binding = self._state.binding.model_copy(update=updates)
        self.state_changed.emit()

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------

    def _start_intervals(self):
        self.timer.start()
        if self.show_notifications:
            self.reminder_timer.start()

    def _stop_intervals(self):
        self.timer.stop()
        self.reminder_timer.stop()

    def _on_tick(self):
        """Called every second to refresh the display value"""
        if self._state.status != TimerStatus.RUNNING:
            return

        now = self.clock()
        since_resume = _seconds_between(self._state.resume_time, now)
        self._state.elapsed_since_last_resume = since_resume
        self._state.total_elapsed_time = max(
            self._banked_seconds + since_resume,
            self._state.total_elapsed_time,
        )
        total = self._state.total_elapsed_time
        self.tick.emit(format_time(total, self.show_seconds), total)

    def _on_reminder(self):
        if self._state.status != TimerStatus.RUNNING or not self.show_notifications:
            return
        self.reminder.emit(f"Timer running for {format_time(self.total_elapsed(), self.show_seconds)}")
