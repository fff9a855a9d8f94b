"""Background thread that periodically deactivates expired grants."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from sqlmodel import Session

from ..permissions import PermissionService
from ..repositories import Repositories

_LOGGER = logging.getLogger("learning_platform.sweeper")


class PermissionSweeper:
    """Run `PermissionService.sweep_expired` every `interval_seconds`.

    Each run opens its own session from `session_factory`. A failed run is
    logged and the next one is attempted on schedule.
    """

    def __init__(self, session_factory: Callable[[], Session], interval_seconds: int):
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_count: Optional[int] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running or self._interval <= 0:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="permission-sweeper", daemon=True)
        self._thread.start()
        _LOGGER.info("Permission sweeper started (every %ss)", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        _LOGGER.info("Permission sweeper stopped")

    def run_once(self) -> int:
        with self._session_factory() as session:
            count = PermissionService(Repositories(session)).sweep_expired()
        self.last_count = count
        self.last_error = None
        return count

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.run_once()
            except Exception as exc:
                self.last_error = str(exc)
                _LOGGER.exception("Permission sweep failed")
