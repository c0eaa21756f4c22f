"""
Billing Run Coordinator

Process-local mutual exclusion plus a minimum-interval throttle for the
billing cron entry point. Cross-process exclusion is out of scope; a single
logical cron actor is assumed.
"""

import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


logger = logging.getLogger(__name__)


class RunAdmission(str, Enum):
    """Outcome of asking to start a billing run."""
    ADMITTED = "admitted"
    ALREADY_RUNNING = "already_running"
    TOO_SOON = "too_soon"

    @property
    def http_status(self) -> int:
        return {
            RunAdmission.ADMITTED: 200,
            RunAdmission.ALREADY_RUNNING: 409,
            RunAdmission.TOO_SOON: 429,
        }[self]


class RunCoordinator:
    """
    Owns the ``running`` flag and ``last_run_at`` timestamp.

    The check and the flag update happen under one lock so concurrent
    callers cannot both be admitted. The throttle counts from the start of
    the previous run whether it succeeded or failed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._running = False
        self._last_run_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_run_at(self) -> Optional[datetime]:
        return self._last_run_at

    def acquire(self, now: datetime, min_interval_seconds: float) -> RunAdmission:
        with self._lock:
            if self._running:
                return RunAdmission.ALREADY_RUNNING

            if self._last_run_at is not None:
                elapsed = now - self._last_run_at
                if elapsed < timedelta(seconds=min_interval_seconds):
                    return RunAdmission.TOO_SOON

            self._running = True
            self._last_run_at = now
            return RunAdmission.ADMITTED

    def try_acquire(self, now: datetime, min_interval_seconds: float) -> bool:
        return self.acquire(now, min_interval_seconds) == RunAdmission.ADMITTED

    def release(self) -> None:
        """Clear the running flag. Safe to call when not running."""
        with self._lock:
            self._running = False
