"""Tests for RepeatingTimer and RssiPoller."""

import threading

import pytest

from gattmanager.rssi import RepeatingTimer, RssiPoller

from tests.conftest import ManualTimerFactory


class TestRepeatingTimer:
    """Daemon-thread repeating timer."""

    def test_ticks_until_cancelled(self):
        """Test that the function runs repeatedly and stops after cancel."""
        ticked = threading.Event()
        calls = []

        def _tick():
            calls.append(1)
            if len(calls) >= 2:
                ticked.set()

        timer = RepeatingTimer(0.01, _tick)
        timer.start()
        assert ticked.wait(2.0)
        timer.cancel()
        timer.join(2.0)
        assert not timer.is_alive

    def test_exception_in_tick_keeps_running(self):
        """Test that a failing tick is logged and the timer continues."""
        ticked = threading.Event()
        calls = []

        def _tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("tick failure")
            ticked.set()

        timer = RepeatingTimer(0.01, _tick)
        timer.start()
        try:
            assert ticked.wait(2.0)
        finally:
            timer.cancel()
            timer.join(2.0)

    def test_rejects_non_positive_interval(self):
        """Test interval validation."""
        with pytest.raises(ValueError):
            RepeatingTimer(0, lambda: None)

    def test_join_from_timer_thread_returns(self):
        """Test that joining from inside a tick does not deadlock."""
        done = threading.Event()
        holder = {}

        def _tick():
            holder["timer"].cancel()
            holder["timer"].join(0.5)
            done.set()

        holder["timer"] = RepeatingTimer(0.01, _tick)
        holder["timer"].start()
        assert done.wait(2.0)
        holder["timer"].join(2.0)


class TestRssiPoller:
    """Poller state around its timer."""

    def test_tick_passes_poller(self):
        """Test that each timer tick invokes the callback with the poller."""
        factory = ManualTimerFactory()
        seen = []
        poller = RssiPoller(2.0, seen.append, factory)
        poller.start()
        factory.last.fire(times=2)

        assert seen == [poller, poller]
        assert poller.ticks == 2
        assert factory.last.interval == 2.0

    def test_cancel_blocks_further_ticks(self):
        """Test that after cancel no tick reaches the callback."""
        factory = ManualTimerFactory()
        seen = []
        poller = RssiPoller(1.0, seen.append, factory)
        poller.start()
        poller.cancel()
        poller.cancel()

        factory.last.function()
        assert seen == []
        assert poller.cancelled
        assert factory.last.cancelled

    def test_join_delegates_to_timer(self):
        """Test that join reaches the underlying timer."""
        factory = ManualTimerFactory()
        poller = RssiPoller(1.0, lambda _poller: None, factory)
        poller.join()
        assert factory.last.joined

    def test_is_alive_follows_timer(self):
        """Test that the poller reports whether its timer thread is still running."""
        factory = ManualTimerFactory()
        poller = RssiPoller(1.0, lambda _poller: None, factory)
        assert not poller.is_alive
        poller.start()
        assert poller.is_alive
        poller.cancel()
        assert not poller.is_alive
