"""Per-client throttling for the authentication endpoints."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict


class LoginThrottle:
    """Sliding-window attempt counter keyed by client address and path.

    State lives in process memory, so each worker throttles independently.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._attempts: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._clock = clock

    def hit(self, key: str, max_attempts: int, window_seconds: int) -> tuple[bool, int]:
        """Record one attempt and return `(allowed, retry_after_seconds)`."""
        now = self._clock()
        with self._lock:
            attempts = self._attempts[key]
            while attempts and attempts[0] <= now - window_seconds:
                attempts.popleft()
            if len(attempts) >= max_attempts:
                return False, max(1, int(window_seconds - (now - attempts[0])))
            attempts.append(now)
        return True, 0

    def reset(self) -> None:
        with self._lock:
            self._attempts.clear()
