from __future__ import annotations

import threading
from typing import Callable


class TimerHandle:
    def __init__(self, timer: threading.Timer):
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()

    @property
    def active(self) -> bool:
        return self._timer.is_alive()


class ThreadingScheduler:
    """Runs delayed callbacks on daemon ``threading.Timer`` threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, float(delay)), callback)
        timer.daemon = True
        timer.start()
        return TimerHandle(timer)
