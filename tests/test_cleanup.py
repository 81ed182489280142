from datetime import timedelta
from unittest import mock

import pytest

from evidence_guard.cleanup import cleanup_old_records
from evidence_guard.errors import StoreError, ValidationError


def test_cleanup_deletes_hits_past_retention(store, clock):
    now = clock.now()
    store.insert_hit("k", "a", now - timedelta(days=8))
    store.insert_hit("k", "a", now - timedelta(days=7, seconds=1))
    store.insert_hit("k", "a", now - timedelta(days=6))
    store.insert_violation("k", "a", now - timedelta(days=30), 4, {})

    result = cleanup_old_records(store, retention_days=7, clock=clock)

    assert result.ok
    assert result.deleted == 2
    assert store.count_hits_since("k", "a", now - timedelta(days=365)) == 1
    assert len(store.violations_since(now - timedelta(days=365))) == 1


def test_cleanup_is_idempotent(store, clock):
    store.insert_hit("k", "a", clock.now() - timedelta(days=10))

    assert cleanup_old_records(store, clock=clock).deleted == 1
    assert cleanup_old_records(store, clock=clock).as_dict() == {"deleted": 0}


def test_cleanup_reports_store_failures():
    broken = mock.Mock()
    broken.delete_hits_older_than.side_effect = StoreError("connection refused")

    result = cleanup_old_records(broken)

    assert not result.ok
    assert result.deleted == 0
    assert result.as_dict() == {"deleted": 0, "error": "connection refused"}


def test_cleanup_rejects_negative_retention():
    with pytest.raises(ValidationError):
        cleanup_old_records(mock.Mock(), retention_days=-1)
