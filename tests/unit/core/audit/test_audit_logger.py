"""Tests for the AuditLogger."""

from __future__ import annotations

import json

import pytest

from waterline.core.audit.logger import AuditEvent, AuditLogger
from waterline.core.storage.database import WaterlineDatabase


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def audit_db():
    """In-memory database with V2 schema for audit tests."""
    db = WaterlineDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def audit_logger(audit_db):
    return AuditLogger(audit_db)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

class TestLogEvent:
    def test_returns_id_and_persists(self, audit_logger):
        event_id = audit_logger.log_event(AuditEvent(action="sync_pass", pushed=3))
        assert event_id
        rows = audit_logger.get_events()
        assert len(rows) == 1
        assert rows[0]["id"] == event_id
        assert rows[0]["pushed"] == 3

    def test_write_failure_is_swallowed(self, audit_db):
        logger = AuditLogger(audit_db)
        audit_db.close()
        assert logger.log_event(AuditEvent(action="sync_pass")) == ""


class TestSyncPass:
    def test_success(self, audit_logger):
        audit_logger.log_sync_pass(pushed=5, failed=0, duration_ms=12.5)
        row = audit_logger.get_events(action="sync_pass")[0]
        assert row["status"] == "success"
        assert row["duration_ms"] == 12.5
        assert row["metadata_json"] is None

    def test_partial(self, audit_logger):
        audit_logger.log_sync_pass(pushed=4, failed=1, metadata={"pending_after": 1})
        row = audit_logger.get_events(action="sync_pass")[0]
        assert row["status"] == "partial"
        assert json.loads(row["metadata_json"]) == {"pending_after": 1}

    def test_failure(self, audit_logger):
        audit_logger.log_sync_pass(pushed=0, failed=0, error_type="RemoteUnreachable")
        row = audit_logger.get_events(action="sync_pass")[0]
        assert row["status"] == "failure"
        assert row["error_type"] == "RemoteUnreachable"


class TestDataDelete:
    def test_records_counts_and_remote_outcome(self, audit_logger):
        audit_logger.log_data_delete(
            counts={"sessions": 2, "events": 9, "presets": 1}, remote_erased=False
        )
        row = audit_logger.get_events(action="data_delete")[0]
        assert row["status"] == "partial"
        meta = json.loads(row["metadata_json"])
        assert meta == {"sessions": 2, "events": 9, "presets": 1, "remote_erased": False}

    def test_full_erasure_is_success(self, audit_logger):
        audit_logger.log_data_delete(counts={"sessions": 0, "events": 0, "presets": 0}, remote_erased=True)
        assert audit_logger.get_events(action="data_delete")[0]["status"] == "success"


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestQueries:
    def test_filter_and_count(self, audit_logger):
        audit_logger.log_sync_pass(pushed=1, failed=0)
        audit_logger.log_sync_pass(pushed=2, failed=0)
        audit_logger.log_data_delete(counts={}, remote_erased=True)

        assert audit_logger.count_events() == 3
        assert audit_logger.count_events(action="sync_pass") == 2
        assert len(audit_logger.get_events(action="data_delete")) == 1

    def test_limit(self, audit_logger):
        for i in range(5):
            audit_logger.log_sync_pass(pushed=i, failed=0)
        assert len(audit_logger.get_events(limit=3)) == 3

    def test_since_filter(self, audit_logger):
        audit_logger.log_sync_pass(pushed=1, failed=0)
        assert audit_logger.get_events(since="2999-01-01T00:00:00") == []
        assert len(audit_logger.get_events(since="2000-01-01T00:00:00")) == 1
