"""Sliding-window limiter for payment attempts."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from config import RateLimitSettings
from core.exceptions import RateLimitExceeded
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class _Record:
    requests: List[float] = field(default_factory=list)
    blocked_until: Optional[float] = None


class RateLimiter:
    """
    Allows ``max_requests`` attempts per identifier inside ``window_seconds``.

    Going over the limit blocks the identifier for a full window.

    Thread Safety:
        - All state is guarded by one lock
    """

    def __init__(
        self,
        settings: Optional[RateLimitSettings] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.settings = settings or RateLimitSettings()
        self._clock = clock
        self._records: Dict[str, _Record] = {}
        self._last_prune = self._clock()
        self._lock = threading.Lock()

    def is_allowed(self, identifier: str) -> bool:
        """Record one attempt; False if the identifier is over its limit."""
        now = self._clock()
        window = self.settings.window_seconds

        with self._lock:
            if now - self._last_prune >= window:
                self._prune(now)

            record = self._records.setdefault(identifier, _Record())

            if record.blocked_until is not None:
                if now < record.blocked_until:
                    return False
                record.blocked_until = None
                record.requests = []

            record.requests = [ts for ts in record.requests if now - ts < window]

            if len(record.requests) >= self.settings.max_requests:
                record.blocked_until = now + window
                logger.warning(f"Rate limit reached for {identifier}, blocked for {window:.0f}s")
                return False

            record.requests.append(now)
            return True

    def check(self, identifier: str) -> None:
        """
        Like is_allowed() but raises.

        Raises:
            RateLimitExceeded: With the seconds left until the block lifts
        """
        if not self.is_allowed(identifier):
            raise RateLimitExceeded(identifier, self.remaining_seconds(identifier))

    def remaining_seconds(self, identifier: str) -> float:
        with self._lock:
            record = self._records.get(identifier)
            if record is None or record.blocked_until is None:
                return 0.0
            return max(0.0, record.blocked_until - self._clock())

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._records.pop(identifier, None)

    def _is_stale(self, record: _Record, now: float) -> bool:
        if record.blocked_until is not None:
            return now >= record.blocked_until
        return all(now - ts >= self.settings.window_seconds for ts in record.requests)

    def _prune(self, now: float) -> int:
        # Caller holds _lock
        stale = [key for key, record in self._records.items() if self._is_stale(record, now)]
        for key in stale:
            del self._records[key]
        self._last_prune = now
        return len(stale)

    def cleanup(self) -> int:
        """
        Drop records with a lifted block or no attempt left in the window.

        is_allowed() also does this at most once per window, so the table
        only holds identifiers seen recently.

        Returns:
            Number of records removed
        """
        with self._lock:
            return self._prune(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
