"""
Tests for the timer state machine.

All time comes from a FakeClock, so no test depends on wall-clock speed.
"""

import pytest

from tikker.domain.models import BindingKind, TimerBinding, TimerState, TimerStatus
from tikker.services.timer_service import TimerService, format_time


def timer_in(status: TimerStatus, clock) -> TimerService:
    """A fresh timer driven into the given state through legal transitions"""
    timer = TimerService(clock=clock, show_notifications=False)
    if status == TimerStatus.IDLE:
        return timer
    timer.start()
    clock.advance(5)
    if status == TimerStatus.PAUSED:
        timer.pause()
    elif status == TimerStatus.STOPPED:
        timer.stop()
    return timer


class TestFormatTime:

    def test_hours_minutes_seconds(self):
        assert format_time(3725) == "01:02:05"

    def test_without_seconds(self):
        assert format_time(3725, show_seconds=False) == "01:02"

    def test_negative_is_clamped(self):
        assert format_time(-4) == "00:00:00"

    def test_more_than_a_day(self):
        assert format_time(26 * 3600) == "26:00:00"


class TestTimerTracking:
    """Only running segments are counted"""

    def test_pause_interval_is_not_tracked(self, timer, clock):
        timer.start()
        clock.advance(10)
        timer.pause()
        clock.advance(5)
        timer.resume()
        clock.advance(10)

        assert timer.total_elapsed() == 20
        timer.stop()
        assert timer.total_elapsed() == 20

    def test_total_is_frozen_while_paused(self, timer, clock):
        timer.start()
        clock.advance(30)
        timer.pause()
        clock.advance(600)
        assert timer.total_elapsed() == 30

    def test_total_is_live_while_running(self, timer, clock):
        timer.start()
        clock.advance(7)
        assert timer.total_elapsed() == 7
        clock.advance(3)
        assert timer.total_elapsed() == 10

    def test_several_pause_cycles_accumulate(self, timer, clock):
        timer.start()
        for _ in range(3):
            clock.advance(10)
            timer.pause()
            clock.advance(100)
            timer.resume()
        clock.advance(10)
        assert timer.total_elapsed() == 40

    def test_stop_from_paused_keeps_banked_total(self, timer, clock):
        timer.start()
        clock.advance(12)
        timer.pause()
        clock.advance(50)
        timer.stop()
        assert timer.total_elapsed() == 12

    def test_stopped_signal_carries_final_total(self, timer, clock):
        totals = []
        timer.stopped.connect(totals.append)
        timer.start()
        clock.advance(42)
        timer.stop()
        assert totals == [42]

    def test_tick_never_decreases(self, timer, clock):
        ticks = []
        timer.tick.connect(lambda text, total: ticks.append(total))
        timer.start()
        clock.advance(5)
        timer._on_tick()
        clock.advance(-3)  # clock stepped backwards
        timer._on_tick()
        assert ticks == [5, 5]

    def test_tick_text_uses_display_setting(self, clock):
        timer = TimerService(clock=clock, show_seconds=False, show_notifications=False)
        texts = []
        timer.tick.connect(lambda text, total: texts.append(text))
        timer.start()
        clock.advance(3660)
        timer._on_tick()
        assert texts == ["01:01"]


class TestTimerTransitions:
    """Exhaustive (state, action) table"""

    LEGAL = {
        (TimerStatus.IDLE, "start"): TimerStatus.RUNNING,
        (TimerStatus.RUNNING, "pause"): TimerStatus.PAUSED,
        (TimerStatus.RUNNING, "stop"): TimerStatus.STOPPED,
        (TimerStatus.PAUSED, "resume"): TimerStatus.RUNNING,
        (TimerStatus.PAUSED, "stop"): TimerStatus.STOPPED,
    }

    @pytest.mark.parametrize("status", list(TimerStatus))
    @pytest.mark.parametrize("action", ["start", "pause", "resume", "stop"])
    def test_transition(self, status, action, clock):
        timer = timer_in(status, clock)
        before = timer.snapshot()

        result = getattr(timer, action)()

        expected = self.LEGAL.get((status, action))
        if expected is None:
            assert result is False
            assert timer.snapshot() == before
        else:
            assert result is True
            assert timer.status == expected

    @pytest.mark.parametrize("status", list(TimerStatus))
    def test_reset_is_legal_from_every_state(self, status, clock):
        timer = timer_in(status, clock)
        assert timer.reset() is True
        assert timer.status == TimerStatus.IDLE
        assert timer.total_elapsed() == 0
        assert timer.binding is None

    def test_stop_clears_cycle_timestamps(self, timer, clock):
        timer.start()
        clock.advance(3)
        timer.stop()
        state = timer.snapshot()
        assert state.start_time is None
        assert state.pause_time is None
        assert state.resume_time is None
        assert state.end_time == clock.now

    def test_state_changed_fires_per_transition(self, timer, clock):
        changes = []
        timer.state_changed.connect(lambda: changes.append(timer.status))
        timer.start()
        timer.pause()
        timer.pause()  # illegal, no signal
        timer.resume()
        timer.stop()
        timer.reset()
        assert changes == [
            TimerStatus.RUNNING,
            TimerStatus.PAUSED,
            TimerStatus.RUNNING,
            TimerStatus.STOPPED,
            TimerStatus.IDLE,
        ]


class TestTimerBinding:

    def test_start_stamps_binding_begin(self, timer, clock):
        timer.start(TimerBinding(kind=BindingKind.TIMESHEET, entity_id=9))
        assert timer.binding.entity_id == 9
        assert timer.binding.begin == clock.now

    def test_update_binding(self, timer):
        timer.start(TimerBinding(kind=BindingKind.TIMESHEET, entity_id=9))
        timer.update_binding(description="Refactoring")
        assert timer.binding.description == "Refactoring"
        assert timer.binding.entity_id == 9

    def test_bind_replaces_binding_and_keeps_cycle(self, timer, clock):
        timer.start(TimerBinding(kind=BindingKind.TIMESHEET, entity_id=9))
        clock.advance(40)
        timer.pause()

        timer.bind(TimerBinding(kind=BindingKind.TASK, entity_id=70))

        assert (timer.binding.kind, timer.binding.entity_id) == (BindingKind.TASK, 70)
        assert timer.binding.begin == clock.now
        assert timer.status == TimerStatus.PAUSED
        assert timer.total_elapsed() == 40

    def test_update_binding_without_binding_is_noop(self, timer):
        timer.update_binding(description="ignored")
        assert timer.binding is None


class TestTimerSnapshot:

    def test_snapshot_brings_running_values_up_to_date(self, timer, clock):
        timer.start()
        clock.advance(90)
        state = timer.snapshot()
        assert state.status == TimerStatus.RUNNING
        assert state.total_elapsed_time == 90
        assert state.elapsed_since_last_resume == 90

    def test_snapshot_is_a_copy(self, timer):
        timer.start(TimerBinding(kind=BindingKind.TASK, entity_id=1))
        state = timer.snapshot()
        state.binding.entity_id = 99
        assert timer.binding.entity_id == 1

    @pytest.mark.parametrize("status", [TimerStatus.RUNNING, TimerStatus.PAUSED, TimerStatus.STOPPED])
    def test_restore_always_comes_back_idle(self, timer, status):
        snapshot = TimerState(status=status, total_elapsed_time=300)
        timer.restore(snapshot)
        assert timer.status == TimerStatus.IDLE
        assert timer.total_elapsed() == 0

    def test_restore_without_snapshot(self, timer):
        timer.restore(None)
        assert timer.status == TimerStatus.IDLE


class TestReminder:

    def test_reminder_only_while_running(self, clock):
        timer = TimerService(clock=clock, show_notifications=True, notification_interval=1)
        messages = []
        timer.reminder.connect(messages.append)

        timer._on_reminder()
        timer.start()
        clock.advance(65)
        timer._on_reminder()
        timer.pause()
        timer._on_reminder()

        assert messages == ["Timer running for 00:01:05"]
        timer.reset()

    def test_reminder_disabled(self, timer, clock):
        messages = []
        timer.reminder.connect(messages.append)
        timer.start()
        timer._on_reminder()
        assert messages == []
