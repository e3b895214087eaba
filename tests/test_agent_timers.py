from __future__ import annotations

import threading
import time

import pytest

from agent.timers import RepeatingTimer


def _wait_for(predicate, timeout_s: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def test_timer_fires_repeatedly_until_cancelled() -> None:
    calls: list[float] = []
    timer = RepeatingTimer(0.01, lambda: calls.append(time.monotonic()))
    timer.start()

    assert _wait_for(lambda: len(calls) >= 3)

    timer.cancel()
    timer.join(1.0)
    count = len(calls)
    time.sleep(0.05)

    assert timer.active is False
    assert len(calls) == count


def test_no_callback_starts_after_cancel_returns() -> None:
    lock = threading.RLock()
    calls: list[int] = []
    timer = RepeatingTimer(0.01, lambda: calls.append(1), lock=lock)

    with lock:
        timer.start()
        # The worker can wake up but must block on the lock until cancel.
        time.sleep(0.05)
        timer.cancel()

    timer.join(1.0)
    assert calls == []


def test_cancel_from_inside_callback() -> None:
    calls: list[int] = []
    timer: RepeatingTimer

    def _once() -> None:
        calls.append(1)
        timer.cancel()

    timer = RepeatingTimer(0.01, _once)
    timer.start()
    timer_thread_done = _wait_for(lambda: calls != [] and not timer.active)
    time.sleep(0.05)

    assert timer_thread_done
    assert calls == [1]


def test_callback_errors_do_not_stop_timer(capsys) -> None:
    calls: list[int] = []

    def _flaky() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    timer = RepeatingTimer(0.01, _flaky, name="flaky")
    timer.start()
    try:
        assert _wait_for(lambda: len(calls) >= 2)
    finally:
        timer.cancel()

    assert "flaky callback failed" in capsys.readouterr().out


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RepeatingTimer(0, lambda: None)
