"""Local caches with hit/miss stats.

VerdictCache holds definitive breach verdicts keyed by digest, so repeated
evaluations of the same password skip the network. RateLimitCache is the
local, advisory mirror of rate-limit authority answers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from access_guard.models import RateLimitPolicy, RateLimitRecord

V = TypeVar("V")


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0

    @property
    def total(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        return self.hits / self.total if self.total else 0.0

    def to_dict(self) -> dict:
        return {"hits": self.hits, "misses": self.misses, "hit_rate": round(self.hit_rate, 3)}


class VerdictCache(Generic[V]):
    """In-memory TTL cache with size limit. Keys must already be digests."""

    def __init__(self, ttl_seconds: int = 3600, max_size: int = 10_000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._store: dict[str, tuple[V, float]] = {}
        self.stats = CacheStats()

    def get(self, key: str) -> Optional[V]:
        entry = self._store.get(key)
        if entry and (time.monotonic() - entry[1]) < self.ttl:
            self.stats.hits += 1
            return entry[0]
        if entry:
            del self._store[key]
        self.stats.misses += 1
        return None

    def put(self, key: str, value: V) -> None:
        if len(self._store) >= self.max_size:
            # Evict oldest entry
            oldest = min(self._store, key=lambda k: self._store[k][1])
            del self._store[oldest]
        self._store[key] = (value, time.monotonic())

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


class RateLimitCache:
    """Per (action, identifier) records. Never consulted to grant access.

    Expired records are dropped by purge_expired(); past max_size the least
    recently attempted record is evicted.
    """

    def __init__(self, clock: Callable[[], float] = time.time, max_size: int = 10_000):
        self._clock = clock
        self.max_size = max_size
        self._records: dict[str, RateLimitRecord] = {}
        self._policies: dict[str, RateLimitPolicy] = {}

    @staticmethod
    def key(action: str, identifier: str) -> str:
        return f"{action}:{identifier}"

    def get(self, action: str, identifier: str) -> Optional[RateLimitRecord]:
        return self._records.get(self.key(action, identifier))

    def is_expired(self, record: RateLimitRecord, policy: RateLimitPolicy) -> bool:
        """A record expires once its window has elapsed and any block has run out."""
        now = self._clock()
        return now - record.window_start > policy.window_seconds and now >= record.blocked_until

    def record_attempt(
        self, identifier: str, action: str, policy: RateLimitPolicy, violation: bool,
    ) -> RateLimitRecord:
        """Count one attempt. An expired record is replaced, not merged."""
        now = self._clock()
        k = self.key(action, identifier)
        self._policies[action] = policy
        existing = self._records.get(k)
        if existing is None or self.is_expired(existing, policy):
            if existing is None and len(self._records) >= self.max_size:
                self._make_room()
            record = RateLimitRecord(
                identifier=identifier, action=action, attempts=1,
                window_start=now, last_attempt=now, blocked=violation,
            )
            self._records[k] = record
            return record
        existing.attempts += 1
        existing.last_attempt = now
        existing.blocked = existing.blocked or violation
        return existing

    def purge_expired(self) -> int:
        """Drop every expired record. Returns how many were removed."""
        expired = [
            k for k, r in self._records.items()
            if r.action in self._policies and self.is_expired(r, self._policies[r.action])
        ]
        for k in expired:
            del self._records[k]
        return len(expired)

    def _make_room(self) -> None:
        if self.purge_expired():
            return
        oldest = min(self._records, key=lambda k: self._records[k].last_attempt)
        del self._records[oldest]

    def records(self) -> list[RateLimitRecord]:
        return list(self._records.values())

    def clear(self) -> None:
        self._records.clear()
        self._policies.clear()

    def __len__(self) -> int:
        return len(self._records)
