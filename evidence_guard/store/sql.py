"""SQLAlchemy-backed rate-limit store.

The three tables mirror the portal's schema: ``rate_limits`` holds raw hits,
``rate_limit_blocks`` at most one row per ``(identifier, action)`` and
``rate_limit_violations`` the append-only audit log.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    distinct,
    event,
    func,
    select,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from evidence_guard.errors import StoreError, StoreTimeoutError
from evidence_guard.models import DEFAULT_BLOCK_REASON, Block, HitRecord, Violation
from evidence_guard.utils.time import ensure_utc, utcnow

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_Id = BigInteger().with_variant(Integer, "sqlite")
_Json = JSON().with_variant(JSONB(), "postgresql")

# Lock-wait and query-cancel SQLSTATEs on PostgreSQL.
_PG_TIMEOUT_CODES = {"55P03", "57014"}


class Base(DeclarativeBase):
    """Declarative base shared by the rate-limit tables."""


class RateLimitHit(Base):
    __tablename__ = "rate_limits"
    __table_args__ = (
        Index("rate_limits_identifier_action_created_at_idx", "identifier", "action", "created_at"),
    )

    id: Mapped[int] = mapped_column(_Id, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RateLimitBlock(Base):
    __tablename__ = "rate_limit_blocks"
    __table_args__ = (
        UniqueConstraint("identifier", "action", name="rate_limit_blocks_identifier_action_key"),
        Index("rate_limit_blocks_blocked_until_idx", "blocked_until"),
    )

    id: Mapped[int] = mapped_column(_Id, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    blocked_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default=DEFAULT_BLOCK_REASON)
    violation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class RateLimitViolation(Base):
    __tablename__ = "rate_limit_violations"
    __table_args__ = (
        Index("rate_limit_violations_identifier_created_at_idx", "identifier", "created_at"),
        Index("rate_limit_violations_created_at_idx", "created_at"),
    )

    id: Mapped[int] = mapped_column(_Id, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column("metadata", _Json, nullable=False, default=dict)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def _use_immediate_transactions(engine: Engine) -> None:
    """Open every SQLite transaction with ``BEGIN IMMEDIATE``.

    pysqlite's own transaction handling is switched off so the write lock is
    taken before the first read of a unit, not at its first write.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # noqa: ANN001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):  # noqa: ANN001
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_store_engine(url: str, timeout_seconds: float = 5.0, echo: bool = False) -> Engine:
    """Build the engine for the rate-limit store; call once per process."""

    if url.startswith("sqlite"):
        options: Dict[str, Any] = {
            "connect_args": {"check_same_thread": False, "timeout": timeout_seconds},
        }
        if _is_memory_sqlite(url):
            options["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **options)
        _use_immediate_transactions(engine)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True, pool_timeout=timeout_seconds)


def create_tables(engine: Engine) -> None:
    """Create the rate-limit tables if they do not exist."""

    Base.metadata.create_all(bind=engine)


def _to_hit(row: RateLimitHit) -> HitRecord:
    return HitRecord(
        key=row.identifier,
        action=row.action,
        timestamp=ensure_utc(row.created_at),
        user_agent=row.user_agent,
    )


def _to_block(row: RateLimitBlock) -> Block:
    return Block(
        key=row.identifier,
        action=row.action,
        blocked_until=ensure_utc(row.blocked_until),
        reason=row.reason,
        violation_count=row.violation_count,
        created_at=ensure_utc(row.created_at) if row.created_at else None,
    )


def _to_violation(row: RateLimitViolation) -> Violation:
    return Violation(
        key=row.identifier,
        action=row.action,
        timestamp=ensure_utc(row.created_at),
        attempt_count=row.attempt_count,
        details=dict(row.details or {}),
        user_agent=row.user_agent,
    )


def _translate(exc: SQLAlchemyError) -> StoreError:
    if isinstance(exc, PoolTimeoutError):
        return StoreTimeoutError(f"Rate-limit store connection pool timed out: {exc}")
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _PG_TIMEOUT_CODES or "database is locked" in str(orig or ""):
        return StoreTimeoutError(f"Rate-limit store timed out: {orig}")
    return StoreError(f"Rate-limit store error: {exc}")


class _SQLUnit:
    """Partition operations bound to one session transaction."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def count_hits_since(self, key: str, action: str, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(RateLimitHit)
            .where(
                RateLimitHit.identifier == key,
                RateLimitHit.action == action,
                RateLimitHit.created_at >= since,
            )
        )
        return int(self._session.scalar(stmt) or 0)

    def insert_hit(
        self, key: str, action: str, timestamp: datetime, user_agent: Optional[str] = None
    ) -> None:
        self._session.add(
            RateLimitHit(identifier=key, action=action, user_agent=user_agent, created_at=timestamp)
        )
        self._session.flush()

    def _block_row(self, key: str, action: str) -> Optional[RateLimitBlock]:
        stmt = select(RateLimitBlock).where(
            RateLimitBlock.identifier == key, RateLimitBlock.action == action
        )
        return self._session.scalars(stmt).first()

    def get_block(self, key: str, action: str) -> Optional[Block]:
        row = self._block_row(key, action)
        return _to_block(row) if row else None

    def get_active_block(self, key: str, action: str, now: datetime) -> Optional[Block]:
        stmt = select(RateLimitBlock).where(
            RateLimitBlock.identifier == key,
            RateLimitBlock.action == action,
            RateLimitBlock.blocked_until > now,
        )
        row = self._session.scalars(stmt).first()
        return _to_block(row) if row else None

    def upsert_block(
        self,
        key: str,
        action: str,
        blocked_until: datetime,
        reason: str = DEFAULT_BLOCK_REASON,
        violation_count: int = 1,
    ) -> None:
        row = self._block_row(key, action)
        if row is None:
            self._session.add(
                RateLimitBlock(
                    identifier=key,
                    action=action,
                    blocked_until=blocked_until,
                    reason=reason,
                    violation_count=violation_count,
                )
            )
        else:
            row.blocked_until = blocked_until
            row.reason = reason
            row.violation_count = violation_count
        self._session.flush()

    def insert_violation(
        self,
        key: str,
        action: str,
        timestamp: datetime,
        attempt_count: int,
        details: Dict[str, Any],
        user_agent: Optional[str] = None,
    ) -> None:
        self._session.add(
            RateLimitViolation(
                identifier=key,
                action=action,
                user_agent=user_agent,
                attempt_count=attempt_count,
                created_at=timestamp,
                details=dict(details),
            )
        )
        self._session.flush()


class SQLRateLimitStore:
    """Rate-limit store over any SQLAlchemy engine.

    Atomic units lock their partition: PostgreSQL uses a transaction-scoped
    advisory lock on the ``(key, action)`` hash, SQLite takes the database
    write lock with ``BEGIN IMMEDIATE``. A shared in-memory SQLite connection
    cannot run two transactions at once, so units on it are serialized in
    process as well.
    """

    def __init__(self, engine: Engine, timeout_seconds: float = 5.0) -> None:
        self._timeout = timeout_seconds
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self._serial_lock: Optional[Lock] = Lock() if isinstance(engine.pool, StaticPool) else None

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        lock = self._serial_lock
        if lock is not None and not lock.acquire(timeout=self._timeout):
            raise StoreTimeoutError(f"Timed out after {self._timeout}s waiting for the store")
        try:
            with self._sessions() as session, session.begin():
                yield session
        except SQLAlchemyError as exc:
            error = _translate(exc)
            LOGGER.error("rate-limit store failure", extra={"detail": str(error)})
            raise error from exc
        finally:
            if lock is not None:
                lock.release()

    def _lock_partition(self, session: Session, key: str, action: str) -> None:
        if session.get_bind().dialect.name != "postgresql":
            return
        timeout_ms = int(self._timeout * 1000)
        session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
        session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
        session.execute(
            text("SELECT pg_advisory_xact_lock(hashtextextended(:partition, 0))"),
            {"partition": f"{key}\x1f{action}"},
        )

    def run_atomic(self, key: str, action: str, fn: Callable[[_SQLUnit], T]) -> T:
        with self._transaction() as session:
            self._lock_partition(session, key, action)
            return fn(_SQLUnit(session))

    def count_hits_since(self, key: str, action: str, since: datetime) -> int:
        with self._transaction() as session:
            return _SQLUnit(session).count_hits_since(key, action, since)

    def insert_hit(
        self, key: str, action: str, timestamp: datetime, user_agent: Optional[str] = None
    ) -> None:
        self.run_atomic(key, action, lambda unit: unit.insert_hit(key, action, timestamp, user_agent))

    def get_block(self, key: str, action: str) -> Optional[Block]:
        with self._transaction() as session:
            return _SQLUnit(session).get_block(key, action)

    def get_active_block(self, key: str, action: str, now: datetime) -> Optional[Block]:
        with self._transaction() as session:
            return _SQLUnit(session).get_active_block(key, action, now)

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
        with self._transaction() as session:
            result = session.execute(delete(RateLimitHit).where(RateLimitHit.created_at < cutoff))
            return int(result.rowcount or 0)

    def count_all_hits_since(self, since: datetime) -> int:
        stmt = select(func.count()).select_from(RateLimitHit).where(RateLimitHit.created_at >= since)
        with self._transaction() as session:
            return int(session.scalar(stmt) or 0)

    def distinct_keys_since(self, since: datetime) -> int:
        stmt = select(func.count(distinct(RateLimitHit.identifier))).where(
            RateLimitHit.created_at >= since
        )
        with self._transaction() as session:
            return int(session.scalar(stmt) or 0)

    def violations_since(self, since: datetime) -> List[Violation]:
        stmt = (
            select(RateLimitViolation)
            .where(RateLimitViolation.created_at >= since)
            .order_by(RateLimitViolation.created_at)
        )
        with self._transaction() as session:
            return [_to_violation(row) for row in session.scalars(stmt)]

    def recent_hits(self, limit: int) -> List[HitRecord]:
        stmt = select(RateLimitHit).order_by(RateLimitHit.created_at.desc()).limit(limit)
        with self._transaction() as session:
            return [_to_hit(row) for row in session.scalars(stmt)]

    def recent_violations(self, limit: int) -> List[Violation]:
        stmt = select(RateLimitViolation).order_by(RateLimitViolation.created_at.desc()).limit(limit)
        with self._transaction() as session:
            return [_to_violation(row) for row in session.scalars(stmt)]
