"""
Rate limiter domain service - Fixed-window attempt counting.

Guards document uploads and contact-code checks with a per-key attempt
budget. Any other keyed budget, such as a login form, can share it.

Window semantics
================

- First attempt for a key, or first attempt after ``window_end``:
  count resets to 1, ``window_end = now + window``, attempt allowed.
- Attempt inside an active window:
  count >= max_attempts -> denied, count unchanged
  otherwise             -> count + 1, allowed

The limiter holds no parameters itself; each call site passes its own
``max_attempts`` and ``window`` (usually through a RateLimitPolicy).
Atomicity per key is provided by the RateLimitStore adapter.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .ports import Clock, RateLimitBucket, RateLimitStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Named attempt budget for one kind of sensitive operation."""

    name: str
    max_attempts: int
    window: timedelta

    def key(self, identifier: str) -> str:
        return f"{self.name}:{identifier}"


@dataclass
class RateLimiter:
    """
    Domain service for fixed-window rate limiting.

    Denials are returned as ``False``, never raised, so the request layer
    can render its own "try again later" message.
    """

    store: RateLimitStore
    clock: Clock = field(default=_utcnow)

    def check_and_record_attempt(self, key: str, max_attempts: int, window: timedelta) -> bool:
        """
        Record an attempt for ``key`` if the budget allows it.

        Args:
            key: Arbitrary bucket identifier (e.g. "login:203.0.113.7")
            max_attempts: Attempts allowed per window
            window: Window duration, started by the first attempt

        Returns:
            True if the attempt is allowed, False if the budget is spent
        """
        now = self.clock()

        def transition(bucket: RateLimitBucket | None) -> tuple[RateLimitBucket | None, bool]:
            if bucket is None or now > bucket.window_end:
                return RateLimitBucket(count=1, window_end=now + window), True
            if bucket.count >= max_attempts:
                return bucket, False
            return RateLimitBucket(count=bucket.count + 1, window_end=bucket.window_end), True

        allowed = self.store.update(key, transition)
        if not allowed:
            logger.warning("Rate limit exceeded for key %s", key)
        return allowed

    def reset(self, key: str) -> None:
        """Clear a bucket immediately (e.g. forgive failed logins on success)."""
        self.store.delete(key)

    def check(self, policy: RateLimitPolicy, identifier: str) -> bool:
        """Record an attempt under a named policy."""
        return self.check_and_record_attempt(
            policy.key(identifier), policy.max_attempts, policy.window
        )

    def clear(self, policy: RateLimitPolicy, identifier: str) -> None:
        self.reset(policy.key(identifier))

    def retry_after(self, key: str) -> timedelta | None:
        """Time left in the key's window, or None when no window is active."""
        bucket = self.store.get(key)
        if bucket is None:
            return None
        remaining = bucket.window_end - self.clock()
        if remaining <= timedelta(0):
            return None
        return remaining

    def purge_expired(self) -> int:
        """Drop buckets whose window has ended."""
        return self.store.purge_expired(self.clock())
