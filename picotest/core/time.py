"""Shared deadlines for operations that span several instances."""

import time
import threading
from dataclasses import dataclass, field
from typing import Optional


def monotonic() -> float:
    return time.monotonic()


@dataclass
class Deadline:
    """Absolute point in monotonic time shared by cooperating waiters.

    Every waiter derives its own per-attempt timeout from ``remaining()``, so
    N instances probed against one deadline take at most ``timeout`` in
    total, never N times it.
    """

    timeout: float
    name: str = "deadline"
    started: float = field(default_factory=monotonic)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def after(cls, timeout: float, name: str = "deadline") -> "Deadline":
        if timeout < 0:
            raise ValueError(f"Deadline timeout must not be negative: {timeout}")
        return cls(timeout=timeout, name=name)

    @property
    def expires_at(self) -> float:
        return self.started + self.timeout

    def remaining(self) -> float:
        if self._cancelled.is_set():
            return 0.0
        return max(0.0, self.expires_at - monotonic())

    def elapsed(self) -> float:
        return monotonic() - self.started

    def is_expired(self) -> bool:
        return self.remaining() <= 0.0

    def cancel(self) -> None:
        """Expire the deadline early, waking up every ``sleep()`` caller."""
        self._cancelled.set()

    def clamp(self, requested: Optional[float]) -> float:
        """Clamp a per-attempt timeout to what is left of the deadline."""
        remaining = self.remaining()
        if requested is None:
            return remaining
        return min(requested, remaining)

    def sleep(self, interval: float) -> bool:
        """Sleep ``interval`` seconds or until the deadline, whichever is first.

        Returns False when the deadline is exhausted.
        """
        wait_for = self.clamp(interval)
        if wait_for > 0:
            self._cancelled.wait(wait_for)
        return not self.is_expired()
