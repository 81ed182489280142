"""Port interfaces for rate-limit persistence."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from evidence_guard.models import Block, HitRecord, Violation

T = TypeVar("T")


class RateLimitUnit(Protocol):
    """Operations on a single ``(key, action)`` partition inside one transaction.

    Everything written through a unit commits together when the enclosing
    ``run_atomic`` call returns, or is discarded if it raises.
    """

    def count_hits_since(self, key: str, action: str, since: datetime) -> int:
        """Count hits with ``timestamp >= since``."""
        ...

    def insert_hit(
        self, key: str, action: str, timestamp: datetime, user_agent: Optional[str] = None
    ) -> None:
        ...

    def get_block(self, key: str, action: str) -> Optional[Block]:
        """Return the partition's block row whether or not it has expired."""
        ...

    def get_active_block(self, key: str, action: str, now: datetime) -> Optional[Block]:
        """Return the block only if ``blocked_until > now``."""
        ...

    def upsert_block(
        self,
        key: str,
        action: str,
        blocked_until: datetime,
        reason: str,
        violation_count: int,
    ) -> None:
        """Create the partition's block or overwrite the existing one."""
        ...

    def insert_violation(
        self,
        key: str,
        action: str,
        timestamp: datetime,
        attempt_count: int,
        details: Dict[str, Any],
        user_agent: Optional[str] = None,
    ) -> None:
        ...


class RateLimitStore(RateLimitUnit, Protocol):
    """Repository protocol consumed by the limiter, cleanup and monitor.

    The partition operations inherited from :class:`RateLimitUnit` run in
    their own short transaction when called on the store directly.
    """

    def run_atomic(self, key: str, action: str, fn: Callable[[RateLimitUnit], T]) -> T:
        """Run ``fn`` as one atomic unit for the ``(key, action)`` partition.

        Two units for the same partition never interleave. Failure of any step
        rolls back every write made through the unit.

        Raises:
            StoreError: the store is unavailable or the transaction failed.
            StoreTimeoutError: the unit could not start within the store timeout.
        """
        ...

    def delete_hits_older_than(self, cutoff: datetime) -> int:
        """Delete hits with ``timestamp < cutoff`` and return how many went."""
        ...

    def count_all_hits_since(self, since: datetime) -> int:
        ...

    def distinct_keys_since(self, since: datetime) -> int:
        ...

    def violations_since(self, since: datetime) -> List[Violation]:
        ...

    def recent_hits(self, limit: int) -> List[HitRecord]:
        """Newest hits first."""
        ...

    def recent_violations(self, limit: int) -> List[Violation]:
        """Newest violations first."""
        ...
