"""Pytest configuration shared by the test modules."""

import os
import tempfile
from datetime import UTC, datetime

import pytest

# main.py builds its engine and caches at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CRON_AUTH_KEY", "test-cron-key")
os.environ.setdefault(
    "STATISTICS_CACHE_FILE",
    os.path.join(tempfile.mkdtemp(prefix="evidence-guard-"), "statistics.json"),
)

from evidence_guard.store import (  # noqa: E402
    InMemoryRateLimitStore,
    SQLRateLimitStore,
    create_store_engine,
    create_tables,
)
from evidence_guard.utils.time import ManualClock  # noqa: E402

START = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def clock():
    return ManualClock(START)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each store implementation, fresh per test."""

    if request.param == "memory":
        yield InMemoryRateLimitStore()
        return
    engine = create_store_engine(f"sqlite:///{tmp_path / 'rate_limits.db'}", timeout_seconds=30)
    create_tables(engine)
    try:
        yield SQLRateLimitStore(engine, timeout_seconds=30)
    finally:
        engine.dispose()
