"""
In-memory rate-limit store - Implements RateLimitStore protocol.

Buckets live in a process-local dict and are lost on restart. Each key
maps onto one of a fixed set of lock stripes, so the read-modify-write
of a bucket is atomic per key while unrelated keys rarely contend.
"""

import threading
from datetime import datetime
from typing import Any

from trustplane.domain.ports import BucketTransition, RateLimitBucket


class InMemoryRateLimitStore:
    """
    Implements RateLimitStore protocol with striped locks.

    Uses structural subtyping - no explicit inheritance from Protocol.
    """

    def __init__(self, stripes: int = 64) -> None:
        self._buckets: dict[str, RateLimitBucket] = {}
        self._stripes = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._stripes[hash(key) % len(self._stripes)]

    def update(self, key: str, transition: BucketTransition) -> Any:
        with self._lock_for(key):
            bucket, result = transition(self._buckets.get(key))
            if bucket is None:
                self._buckets.pop(key, None)
            else:
                self._buckets[key] = bucket
            return result

    def get(self, key: str) -> RateLimitBucket | None:
        with self._lock_for(key):
            return self._buckets.get(key)

    def delete(self, key: str) -> None:
        with self._lock_for(key):
            self._buckets.pop(key, None)

    def purge_expired(self, now: datetime) -> int:
        purged = 0
        for key in list(self._buckets):
            with self._lock_for(key):
                bucket = self._buckets.get(key)
                if bucket is not None and now > bucket.window_end:
                    del self._buckets[key]
                    purged += 1
        return purged

    def __len__(self) -> int:
        return len(self._buckets)
