"""Time-bounded cache for the last device status (thread-safe)"""

import threading
import time
from typing import Callable, Optional, Tuple

from .models import StatusData


class StatusCache:
    """Single-entry cache; an entry older than its TTL reads as absent"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: Optional[StatusData] = None
        self._expires_at = 0.0

    def get(self) -> Tuple[Optional[StatusData], bool]:
        with self._lock:
            if self._snapshot is None:
                return None, False
            if self._clock() >= self._expires_at:
                self._snapshot = None
                return None, False
            return self._snapshot, True

    def set(self, snapshot: StatusData, ttl: float):
        with self._lock:
            self._snapshot = snapshot
            self._expires_at = self._clock() + ttl

    def delete(self):
        with self._lock:
            self._snapshot = None
            self._expires_at = 0.0
