"""Tests for the audit log."""

from contextlib import contextmanager

import pytest

from samltest.core.audit import UNKNOWN_ENTITY, AuditLog, EventType
from samltest.core.errors import CounterpartNotFound, StoreFailure
from samltest.storage.database import Database
from samltest.storage.models import LogStatus


@pytest.fixture
def audit(database: Database) -> AuditLog:
    return AuditLog(database)


class TestRecord:
    """Tests for appending events."""

    def test_record(self, audit: AuditLog) -> None:
        entry = audit.record(
            EventType.SP_LOGIN,
            LogStatus.INITIATED,
            entity_id="https://idp.example",
            details={"requestId": "_1"},
        )

        assert entry is not None
        assert entry.id is not None
        assert entry.created_at is not None
        assert entry.to_dict()["eventType"] == "sp_login"
        assert entry.to_dict()["status"] == "initiated"
        assert entry.to_dict()["details"] == {"requestId": "_1"}

    def test_missing_entity_is_unknown(self, audit: AuditLog) -> None:
        entry = audit.record(EventType.ACS, LogStatus.FAILURE)
        assert entry.entity_id == UNKNOWN_ENTITY == "unknown"

    def test_store_failure_is_swallowed(
        self, audit: AuditLog, database: Database, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A broken store never turns a protocol outcome into an audit error."""

        @contextmanager
        def broken_scope():
            raise StoreFailure("disk full")
            yield

        monkeypatch.setattr(database, "session_scope", broken_scope)
        assert audit.record(EventType.ACS, LogStatus.SUCCESS, entity_id="urn:x") is None


class TestQuery:
    """Tests for listing, filtering and clearing."""

    @pytest.fixture(autouse=True)
    def _entries(self, audit: AuditLog) -> None:
        audit.record(EventType.METADATA_IMPORT, LogStatus.SUCCESS, "urn:a")
        audit.record(EventType.SP_LOGIN, LogStatus.INITIATED, "urn:a")
        audit.record(EventType.ACS, LogStatus.FAILURE, None, details={"error": "bad"})
        audit.record(EventType.ACS, LogStatus.SUCCESS, "urn:a", details={"nameId": "a@b.com"})

    def test_newest_first(self, audit: AuditLog) -> None:
        entries, total = audit.list()
        assert total == 4
        assert [e.event_type for e in entries] == ["acs", "acs", "sp_login", "metadata_import"]

    def test_pagination(self, audit: AuditLog) -> None:
        entries, total = audit.list(limit=2, offset=1)
        assert total == 4
        assert [e.event_type for e in entries] == ["acs", "sp_login"]

    def test_filters(self, audit: AuditLog) -> None:
        entries, total = audit.list(event_type="acs", status="failure")
        assert total == 1
        assert entries[0].details == {"error": "bad"}
        assert entries[0].entity_id == "unknown"

    def test_get(self, audit: AuditLog) -> None:
        entries, _ = audit.list(limit=1)
        assert audit.get(entries[0].id).details == {"nameId": "a@b.com"}
        with pytest.raises(CounterpartNotFound):
            audit.get(9999)

    def test_clear(self, audit: AuditLog) -> None:
        assert audit.clear() == 4
        assert audit.list() == ([], 0)
