import logging
import threading
import time

import pytest

from ldapzones.errors import DirectoryError
from ldapzones.scheduler import RefreshScheduler, SchedulerState


def _wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_start_runs_initial_refresh_synchronously():
    calls = []
    s = RefreshScheduler(lambda: calls.append(threading.current_thread()), interval=0)

    s.start()

    assert calls == [threading.current_thread()]
    assert s.state is SchedulerState.RUNNING
    s.stop()
    assert s.state is SchedulerState.STOPPED


def test_initial_failure_propagates_and_returns_to_idle():
    def boom():
        raise DirectoryError("connecting to ldap://x: Can't contact LDAP server")

    s = RefreshScheduler(boom, interval=0.01)

    with pytest.raises(DirectoryError):
        s.start()
    assert s.state is SchedulerState.IDLE


def test_start_twice_is_rejected():
    s = RefreshScheduler(lambda: None, interval=0)
    s.start()

    with pytest.raises(RuntimeError):
        s.start()
    s.stop()


def test_periodic_loop_repeats_until_stopped():
    calls = []
    s = RefreshScheduler(lambda: calls.append(1), interval=0.01)
    s.start()

    assert _wait_until(lambda: len(calls) >= 3)
    s.stop()
    count = len(calls)
    time.sleep(0.05)

    assert len(calls) == count
    assert s.state is SchedulerState.STOPPED


def test_stop_interrupts_long_wait_promptly():
    s = RefreshScheduler(lambda: None, interval=3600)
    s.start()

    started = time.monotonic()
    s.stop(timeout=2)

    assert time.monotonic() - started < 1.0


def test_periodic_failures_are_logged_and_counted(caplog):
    outcomes = [None, DirectoryError("down"), DirectoryError("down"), None]
    calls = []

    def refresh():
        calls.append(1)
        outcome = outcomes[min(len(calls) - 1, len(outcomes) - 1)]
        if outcome is not None:
            raise outcome

    s = RefreshScheduler(refresh, interval=0)
    s.start()

    with caplog.at_level(logging.WARNING, logger="ldapzones.scheduler"):
        assert s.refresh_now() is False
        assert s.refresh_now() is False
    assert s.consecutive_failures == 2
    assert isinstance(s.last_error, DirectoryError)
    assert "keeping previous snapshot" in caplog.text

    assert s.refresh_now() is True
    assert s.consecutive_failures == 0
    assert s.last_error is None
    s.stop()


def test_refresh_now_after_stop_is_noop():
    calls = []
    s = RefreshScheduler(lambda: calls.append(1), interval=0)
    s.start()
    s.stop()

    assert s.refresh_now() is False
    assert calls == [1]
