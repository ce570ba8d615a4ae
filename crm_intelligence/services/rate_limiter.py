"""
Fixed-window admission gate for completion-service calls.

Each key gets ``quota`` admissions per ``window_seconds``. The first
admission (or the first one after the window has passed) opens a new
window; rejected calls never extend it. One lock guards every
read-modify-write so two concurrent checks for the same key can never
both take the last slot. The lock is held only for the check itself,
never across repository or completion I/O.
"""

import math
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from crm_intelligence.middleware.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_QUOTA = 20
DEFAULT_WINDOW_SECONDS = 3600


@dataclass
class RateLimitEntry:
    key: str
    count: int
    window_reset_at: float


@dataclass(frozen=True)
class Admission:
    admitted: bool
    key: str
    count: int
    quota: int
    reset_at: float
    now: float

    @property
    def remaining(self) -> int:
        return max(0, self.quota - self.count)

    @property
    def retry_after_seconds(self) -> int:
        return max(0, math.ceil(self.reset_at - self.now))

    @property
    def reset_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc)


class FixedWindowRateLimiter:
    """Per-key fixed-window counter with an injectable clock."""

    def __init__(
        self,
        quota: int = DEFAULT_QUOTA,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if quota < 1:
            raise ValueError("quota must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.quota = quota
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def check(self, key: str, now: Optional[float] = None) -> Admission:
        """Admit or reject one call for ``key``, reserving the slot if admitted."""
        if now is None:
            now = self._clock()

        with self._lock:
            entry = self._entries.get(key)

            if entry is None or now > entry.window_reset_at:
                entry = RateLimitEntry(key=key, count=1, window_reset_at=now + self.window_seconds)
                self._entries[key] = entry
                admitted = True
            elif entry.count < self.quota:
                entry.count += 1
                admitted = True
            else:
                admitted = False

            admission = Admission(
                admitted=admitted,
                key=key,
                count=entry.count,
                quota=self.quota,
                reset_at=entry.window_reset_at,
                now=now,
            )

        if not admitted:
            logger.warning(
                "rate_limit_rejected",
                key=key,
                quota=self.quota,
                retry_after_seconds=admission.retry_after_seconds,
            )
        return admission

    def admit(self, key: str, now: Optional[float] = None) -> bool:
        return self.check(key, now).admitted

    def entry(self, key: str) -> Optional[RateLimitEntry]:
        """Snapshot of a key's entry (copy, safe to inspect)."""
        with self._lock:
            entry = self._entries.get(key)
            return replace(entry) if entry else None

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)
