"""Delayed-call scheduling for reconnect backoff."""

import threading
from typing import Callable, Protocol


class ScheduledCall(Protocol):
    def cancel(self) -> None:
        """Prevent the call from running if it has not started."""
        ...


class Scheduler(Protocol):
    def call_later(self, delay_seconds: float, fn: Callable[[], None]) -> ScheduledCall:
        """Run fn once after delay_seconds."""
        ...


class ThreadingScheduler:
    """Scheduler backed by daemon threading.Timer instances."""

    def call_later(self, delay_seconds: float, fn: Callable[[], None]) -> ScheduledCall:
        timer = threading.Timer(delay_seconds, fn)
        timer.name = "reconnect-timer"
        timer.daemon = True
        timer.start()
        return timer
