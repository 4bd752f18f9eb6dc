import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from config import Settings

DEFAULT_BOT_PATTERNS = (
    r"\bcurl/",
    r"\bwget/",
    r"python-requests",
    r"scrapy",
    r"headlesschrome",
)


class DenyReason(str, Enum):
    rate_limit = "RATE_LIMIT"
    bot = "BOT"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None
    remaining: int = 0
    reset_in_secs: float = 0.0

    def is_denied(self) -> bool:
        return not self.allowed

    def is_rate_limit(self) -> bool:
        return self.reason == DenyReason.rate_limit


class RateLimiter:
    """Token bucket per identity plus a user-agent bot check.

    Each identity starts with ``capacity`` tokens and gains ``refill`` tokens
    every ``interval_secs`` up to ``capacity``.
    """

    def __init__(
        self,
        capacity: int = 10,
        refill: int = 10,
        interval_secs: float = 3600,
        bot_patterns: tuple[str, ...] = DEFAULT_BOT_PATTERNS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0 or refill <= 0 or interval_secs <= 0:
            raise ValueError("Rate limit capacity, refill and interval must be positive")
        self.capacity = capacity
        self.refill = refill
        self.interval_secs = interval_secs
        self._bots = [re.compile(p, re.IGNORECASE) for p in bot_patterns]
        self._clock = clock
        self._buckets: dict[str, tuple[float, float]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        return cls(
            capacity=settings.rate_limit_capacity,
            refill=settings.rate_limit_refill,
            interval_secs=settings.rate_limit_interval_secs,
        )

    def protect(
        self, identity: str, requested: int = 1, user_agent: Optional[str] = None
    ) -> Decision:
        if user_agent and any(p.search(user_agent) for p in self._bots):
            return Decision(allowed=False, reason=DenyReason.bot)

        with self._lock:
            now = self._clock()
            tokens, updated = self._buckets.get(identity, (float(self.capacity), now))
            intervals = int((now - updated) // self.interval_secs)
            if intervals:
                tokens = min(float(self.capacity), tokens + intervals * self.refill)
                updated += intervals * self.interval_secs
            reset_in = max(0.0, updated + self.interval_secs - now)

            if tokens < requested:
                self._buckets[identity] = (tokens, updated)
                return Decision(
                    allowed=False,
                    reason=DenyReason.rate_limit,
                    remaining=int(tokens),
                    reset_in_secs=reset_in,
                )
            tokens -= requested
            self._buckets[identity] = (tokens, updated)
            return Decision(allowed=True, remaining=int(tokens), reset_in_secs=reset_in)


class Throttle:
    """At most ``limit`` acquisitions per key in each fixed ``period`` window."""

    def __init__(
        self,
        limit: int,
        period_secs: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit <= 0 or period_secs <= 0:
            raise ValueError("Throttle limit and period must be positive")
        self.limit = limit
        self.period_secs = period_secs
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.period_secs:
                started, count = now, 0
            if count >= self.limit:
                self._windows[key] = (started, count)
                return False
            self._windows[key] = (started, count + 1)
            return True

    def retry_after(self, key: str) -> float:
        with self._lock:
            window = self._windows.get(key)
            if not window:
                return 0.0
            started, _count = window
            return max(0.0, started + self.period_secs - self._clock())
