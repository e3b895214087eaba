from __future__ import annotations

import threading
from typing import Callable, Protocol


class Timer(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...

    @property
    def active(self) -> bool: ...


class RepeatingTimer:
    """Fire `callback` every `interval_s` seconds on a worker thread.

    The callback runs while holding `lock`, and the cancelled flag is checked
    again after the lock is acquired. `cancel()` takes the same lock, so once
    it returns no callback can start.
    """

    def __init__(
        self,
        interval_s: float,
        callback: Callable[[], None],
        *,
        lock: threading.RLock | None = None,
        name: str = "relay-timer",
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.interval_s = float(interval_s)
        self.callback = callback
        self.name = name
        self._lock = lock or threading.RLock()
        self._stop: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def active(self) -> bool:
        stop = self._stop
        return stop is not None and not stop.is_set()

    def start(self) -> None:
        with self._lock:
            if self.active:
                return
            stop = threading.Event()
            self._stop = stop
            self._thread = threading.Thread(target=self._run, args=(stop,), name=self.name, daemon=True)
            self._thread.start()

    def cancel(self) -> None:
        with self._lock:
            if self._stop is not None:
                self._stop.set()

    def join(self, timeout_s: float | None = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout_s)

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval_s):
            with self._lock:
                if stop.is_set():
                    return
                try:
                    self.callback()
                except Exception as exc:
                    print(f"[relay-agent] {self.name} callback failed: {exc!r}")
