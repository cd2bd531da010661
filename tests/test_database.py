"""Tests for the storage layer."""

from pathlib import Path

import pytest

from samltest.core.errors import StoreFailure
from samltest.storage.database import (
    Database,
    KeyNotFoundError,
    get_database_path,
    get_encryption_key,
)
from samltest.storage.models import EntityType, SamlEntity


def _entity(entity_id: str = "https://idp.example") -> SamlEntity:
    return SamlEntity(
        entity_id=entity_id,
        type=EntityType.IDP,
        sso_url="https://idp.example/sso",
        raw_xml="<md:EntityDescriptor/>",
    )


class TestDatabase:
    """Tests for sessions and schema creation."""

    def test_lazy_engine(self, tmp_path: Path):
        db = Database(tmp_path / "nested" / "lazy.db")
        assert not (tmp_path / "nested").exists()

        db.init_db()

        assert (tmp_path / "nested" / "lazy.db").exists()
        assert db.verify_connection()
        db.close()

    def test_session_scope_commits(self, database: Database):
        with database.session_scope() as session:
            session.add(_entity())

        with database.session_scope() as session:
            assert session.query(SamlEntity).count() == 1

    def test_integrity_error_becomes_store_failure(self, database: Database):
        with database.session_scope() as session:
            session.add(_entity())

        with pytest.raises(StoreFailure, match="Database operation failed"):
            with database.session_scope() as session:
                session.add(_entity())

        with database.session_scope() as session:
            assert session.query(SamlEntity).count() == 1

    def test_other_errors_roll_back(self, database: Database):
        with pytest.raises(RuntimeError):
            with database.session_scope() as session:
                session.add(_entity())
                session.flush()
                raise RuntimeError("boom")

        with database.session_scope() as session:
            assert session.query(SamlEntity).count() == 0


class TestEnvironment:
    """Tests for environment lookups."""

    def test_database_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SAMLTEST_DB_PATH", str(tmp_path / "env.db"))
        assert get_database_path() == tmp_path / "env.db"
        assert Database().path == tmp_path / "env.db"

    def test_key_from_variable(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SAMLTEST_DB_KEY", "ab" * 32)
        assert get_encryption_key() == "ab" * 32

    def test_key_from_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        key_file = tmp_path / "db.key"
        key_file.write_text("cd" * 32 + "\n")
        monkeypatch.delenv("SAMLTEST_DB_KEY", raising=False)
        monkeypatch.setenv("SAMLTEST_DB_KEY_FILE", str(key_file))
        assert get_encryption_key() == "cd" * 32

    def test_missing_key(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("SAMLTEST_DB_KEY", raising=False)
        monkeypatch.delenv("SAMLTEST_DB_KEY_FILE", raising=False)
        with pytest.raises(KeyNotFoundError):
            get_encryption_key()

        monkeypatch.setenv("SAMLTEST_DB_KEY_FILE", str(tmp_path / "absent.key"))
        with pytest.raises(KeyNotFoundError, match="Cannot read key file"):
            get_encryption_key()

    def test_encrypted_database_needs_key(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("SAMLTEST_DB_KEY", raising=False)
        monkeypatch.delenv("SAMLTEST_DB_KEY_FILE", raising=False)
        with pytest.raises(StoreFailure):
            Database(tmp_path / "secret.db", encrypted=True).init_db()
