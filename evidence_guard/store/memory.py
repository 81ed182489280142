"""In-process rate-limit store for single-instance deployments and tests."""
from __future__ import annotations

import heapq
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from evidence_guard.errors import StoreTimeoutError
from evidence_guard.models import DEFAULT_BLOCK_REASON, Block, HitRecord, Violation

T = TypeVar("T")
Partition = Tuple[str, str]


class _MemoryUnit:
    """Stages writes for one partition and applies them on commit."""

    def __init__(self, store: "InMemoryRateLimitStore") -> None:
        self._store = store
        self._hits: List[HitRecord] = []
        self._blocks: Dict[Partition, Block] = {}
        self._violations: List[Violation] = []

    def count_hits_since(self, key: str, action: str, since: datetime) -> int:
        committed = self._store._count_committed((key, action), since)
        pending = sum(
            1
            for hit in self._hits
            if hit.key == key and hit.action == action and hit.timestamp >= since
        )
        return committed + pending

    def insert_hit(
        self, key: str, action: str, timestamp: datetime, user_agent: Optional[str] = None
    ) -> None:
        self._hits.append(HitRecord(key, action, timestamp, user_agent))

    def get_block(self, key: str, action: str) -> Optional[Block]:
        partition = (key, action)
        if partition in self._blocks:
            return self._blocks[partition]
        with self._store._lock:
            return self._store._blocks.get(partition)

    def get_active_block(self, key: str, action: str, now: datetime) -> Optional[Block]:
        block = self.get_block(key, action)
        if block is None or not block.is_active(now):
            return None
        return block

    def upsert_block(
        self,
        key: str,
        action: str,
        blocked_until: datetime,
        reason: str = DEFAULT_BLOCK_REASON,
        violation_count: int = 1,
    ) -> None:
        existing = self.get_block(key, action)
        created_at = existing.created_at if existing else None
        self._blocks[(key, action)] = Block(
            key=key,
            action=action,
            blocked_until=blocked_until,
            reason=reason,
            violation_count=violation_count,
            created_at=created_at,
        )

    def insert_violation(
        self,
        key: str,
        action: str,
        timestamp: datetime,
        attempt_count: int,
        details: Dict[str, Any],
        user_agent: Optional[str] = None,
    ) -> None:
        self._violations.append(
            Violation(key, action, timestamp, attempt_count, dict(details), user_agent)
        )

    def commit(self) -> None:
        with self._store._lock:
            for hit in self._hits:
                self._store._hits.setdefault((hit.key, hit.action), []).append(hit)
            self._store._blocks.update(self._blocks)
            self._store._violations.extend(self._violations)


class InMemoryRateLimitStore:
    """Thread-safe store keeping hits, blocks and violations in dictionaries.

    Each partition has its own lock so units for different ``(key, action)``
    pairs run in parallel while units for the same pair are serialized.
    """

    def __init__(self, timeout_seconds: float = 5.0) -> None:
        self._timeout = timeout_seconds
        self._hits: Dict[Partition, List[HitRecord]] = {}
        self._blocks: Dict[Partition, Block] = {}
        self._violations: List[Violation] = []
        self._lock = Lock()
        # Partition lock plus the number of callers holding or waiting on it.
        self._partition_locks: Dict[Partition, List[Any]] = {}

    def _claim_partition(self, partition: Partition) -> Lock:
        with self._lock:
            entry = self._partition_locks.setdefault(partition, [Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _release_partition(self, partition: Partition) -> None:
        with self._lock:
            entry = self._partition_locks[partition]
            entry[1] -= 1
            if not entry[1]:
                del self._partition_locks[partition]

    def _count_committed(self, partition: Partition, since: datetime) -> int:
        with self._lock:
            return sum(1 for hit in self._hits.get(partition, ()) if hit.timestamp >= since)

    def run_atomic(self, key: str, action: str, fn: Callable[[_MemoryUnit], T]) -> T:
        partition = (key, action)
        lock = self._claim_partition(partition)
        try:
            if not lock.acquire(timeout=self._timeout):
                raise StoreTimeoutError(
                    f"Timed out after {self._timeout}s waiting for rate-limit partition"
                )
            try:
                unit = _MemoryUnit(self)
                result = fn(unit)
                unit.commit()
                return result
            finally:
                lock.release()
        finally:
            self._release_partition(partition)

    def count_hits_since(self, key: str, action: str, since: datetime) -> int:
        return self._count_committed((key, action), since)

    def insert_hit(
        self, key: str, action: str, timestamp: datetime, user_agent: Optional[str] = None
    ) -> None:
        self.run_atomic(key, action, lambda unit: unit.insert_hit(key, action, timestamp, user_agent))

    def get_block(self, key: str, action: str) -> Optional[Block]:
        with self._lock:
            return self._blocks.get((key, action))

    def get_active_block(self, key: str, action: str, now: datetime) -> Optional[Block]:
        block = self.get_block(key, action)
        if block is None or not block.is_active(now):
            return None
        return block

    def upsert_block(
        self,
        key: str,
        action: str,
        blocked_until: datetime,
        reason: str = DEFAULT_BLOCK_REASON,
        violation_count: int = 1,
    ) -> None:
        self.run_atomic(
            key,
            action,
            lambda unit: unit.upsert_block(key, action, blocked_until, reason, violation_count),
        )

    def insert_violation(
        self,
        key: str,
        action: str,
        timestamp: datetime,
        attempt_count: int,
        details: Dict[str, Any],
        user_agent: Optional[str] = None,
    ) -> None:
        self.run_atomic(
            key,
            action,
            lambda unit: unit.insert_violation(
                key, action, timestamp, attempt_count, details, user_agent
            ),
        )

    def delete_hits_older_than(self, cutoff: datetime) -> int:
        deleted = 0
        with self._lock:
            for partition in list(self._hits):
                hits = self._hits[partition]
                kept = [hit for hit in hits if hit.timestamp >= cutoff]
                deleted += len(hits) - len(kept)
                if kept:
                    self._hits[partition] = kept
                else:
                    del self._hits[partition]
        return deleted

    def count_all_hits_since(self, since: datetime) -> int:
        with self._lock:
            return sum(
                1 for hits in self._hits.values() for hit in hits if hit.timestamp >= since
            )

    def distinct_keys_since(self, since: datetime) -> int:
        with self._lock:
            return len(
                {
                    key
                    for (key, _action), hits in self._hits.items()
                    if any(hit.timestamp >= since for hit in hits)
                }
            )

    def violations_since(self, since: datetime) -> List[Violation]:
        with self._lock:
            return [v for v in self._violations if v.timestamp >= since]

    def recent_hits(self, limit: int) -> List[HitRecord]:
        with self._lock:
            every_hit = [hit for hits in self._hits.values() for hit in hits]
        return heapq.nlargest(limit, every_hit, key=lambda hit: hit.timestamp)

    def recent_violations(self, limit: int) -> List[Violation]:
        with self._lock:
            violations = list(self._violations)
        return heapq.nlargest(limit, violations, key=lambda v: v.timestamp)
