"""Exponential reconnect backoff with jitter"""

import random
import threading

from .const import RECONNECT_FACTOR, RECONNECT_MAX_DELAY, RECONNECT_MIN_DELAY


class Backoff:
    """Geometric delay between reconnect attempts (thread-safe).

    duration() returns the delay for the current failure and advances the
    state for the next one. With jitter enabled the returned delay is drawn
    between the current step and the next step, so successive delays never
    decrease and never exceed max_delay.
    """

    def __init__(self, min_delay: float = RECONNECT_MIN_DELAY, max_delay: float = RECONNECT_MAX_DELAY,
                 factor: float = RECONNECT_FACTOR, jitter: bool = True):
        if min_delay <= 0 or max_delay < min_delay:
            raise ValueError("Backoff requires 0 < min_delay <= max_delay")
        if factor < 1:
            raise ValueError("Backoff factor must be >= 1")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.factor = factor
        self.jitter = jitter
        self.current_delay = min_delay
        self._lock = threading.Lock()

    def duration(self) -> float:
        with self._lock:
            current = self.current_delay
            following = min(current * self.factor, self.max_delay)
            self.current_delay = following
            if self.jitter and following > current:
                return random.uniform(current, following)
            return current

    def reset(self):
        with self._lock:
            self.current_delay = self.min_delay
