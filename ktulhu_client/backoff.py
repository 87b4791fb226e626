"""Exponential reconnect backoff."""

import random
from typing import Callable, Optional

DEFAULT_INITIAL_DELAY = 0.5  # seconds
DEFAULT_MAX_DELAY = 8.0  # seconds


class Backoff:
    """Doubling delay between reconnect attempts, capped and reset on success.

    After n consecutive failures the delay used is ``min(initial * 2**(n-1), maximum)``.
    With ``jitter`` (0..1) a random share of that delay is subtracted, so the
    result never exceeds the cap.
    """

    def __init__(
        self,
        initial: float = DEFAULT_INITIAL_DELAY,
        maximum: float = DEFAULT_MAX_DELAY,
        factor: float = 2.0,
        jitter: float = 0.0,
        rand: Optional[Callable[[], float]] = None,
    ):
        if initial <= 0 or maximum < initial:
            raise ValueError("Backoff requires 0 < initial <= maximum")
        if not 0.0 <= jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.jitter = jitter
        self._rand = rand or random.random
        self._current = initial
        self.failures = 0

    @property
    def current(self) -> float:
        """Delay the next failure will wait, before jitter."""
        return self._current

    def delay_for(self, failures: int) -> float:
        """Delay after ``failures`` consecutive failures (1-based)."""
        if failures < 1:
            return 0.0
        return min(self.initial * self.factor ** (failures - 1), self.maximum)

    def next_delay(self) -> float:
        """Return the delay to wait now and advance to the next one."""
        delay = self._current
        self.failures += 1
        self._current = min(self._current * self.factor, self.maximum)
        if self.jitter:
            delay -= delay * self.jitter * self._rand()
        return delay

    def reset(self) -> None:
        self._current = self.initial
        self.failures = 0
