"""SQLite storage, optionally encrypted with SQLCipher."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from samltest.core.errors import StoreFailure

if TYPE_CHECKING:
    from sqlalchemy.engine.interfaces import DBAPIConnection
    from sqlalchemy.pool import ConnectionPoolEntry

    from samltest.core.config import DatabaseSettings

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".samltest" / "samltest.db"

ENV_DB_KEY = "SAMLTEST_DB_KEY"
ENV_DB_KEY_FILE = "SAMLTEST_DB_KEY_FILE"
ENV_DB_PATH = "SAMLTEST_DB_PATH"


class DatabaseError(StoreFailure):
    """Raised when the database cannot be opened or queried."""


class KeyNotFoundError(DatabaseError):
    """Raised when encryption is enabled but no key can be found."""


def get_encryption_key() -> str:
    """Return the SQLCipher key.

    ``SAMLTEST_DB_KEY`` holds the key itself; otherwise ``SAMLTEST_DB_KEY_FILE``
    names a file whose stripped content is the key.

    Raises:
        KeyNotFoundError: If neither variable yields a key.
    """
    if key := os.environ.get(ENV_DB_KEY):
        return key

    key_file = os.environ.get(ENV_DB_KEY_FILE)
    if not key_file:
        raise KeyNotFoundError(f"Encrypted database requires {ENV_DB_KEY} or {ENV_DB_KEY_FILE}")
    try:
        return Path(key_file).read_text().strip()
    except OSError as e:
        raise KeyNotFoundError(f"Cannot read key file {key_file}: {e}") from e


def get_database_path() -> Path:
    """Database file from ``SAMLTEST_DB_PATH``, else ``~/.samltest/samltest.db``."""
    return Path(os.environ.get(ENV_DB_PATH) or DEFAULT_DB_PATH)


ConnectHook = Callable[["DBAPIConnection", "ConnectionPoolEntry"], None]


def _pragmas(*statements: str) -> ConnectHook:
    def on_connect(dbapi_connection: DBAPIConnection, _connection_record: ConnectionPoolEntry) -> None:
        cursor = dbapi_connection.cursor()
        for statement in statements:
            cursor.execute(statement)
        cursor.close()

    return on_connect


def create_database_engine(db_path: Path, encrypted: bool = False, echo: bool = False) -> Engine:
    """Create the engine for ``db_path``, creating its directory if needed.

    Encrypted databases go through the ``sqlcipher3`` driver and are keyed on
    every new connection before anything else runs.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if encrypted:
        key = get_encryption_key()
        engine = create_engine(f"sqlite+pysqlcipher:///{db_path}", echo=echo)
        # PRAGMA key must be the first statement on the connection
        event.listen(engine, "connect", _pragmas(f"PRAGMA key = \"x'{key}'\"", "PRAGMA cipher_page_size = 4096"))
    else:
        engine = create_engine(f"sqlite:///{db_path}", echo=echo)

    event.listen(engine, "connect", _pragmas("PRAGMA foreign_keys = ON"))
    return engine


class Database:
    """Owns the engine and hands out transactional sessions.

    The engine is created on first use, so constructing a ``Database`` never
    touches the filesystem.
    """

    def __init__(self, db_path: Path | None = None, encrypted: bool = False, echo: bool = False) -> None:
        self.path = db_path or get_database_path()
        self.encrypted = encrypted
        self._echo = echo
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> Database:
        return cls(settings.path, encrypted=settings.encrypted)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_database_engine(self.path, self.encrypted, self._echo)
            logger.debug("Opened %sdatabase at %s", "encrypted " if self.encrypted else "", self.path)
        return self._engine

    def get_session(self) -> Session:
        """Open a session whose objects stay readable after commit."""
        if self._sessions is None:
            self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._sessions()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Yield a session that commits on exit and rolls back on error.

        SQLAlchemy errors leave as ``StoreFailure``; anything else propagates
        unchanged after the rollback.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreFailure(f"Database operation failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create any missing tables."""
        from samltest.storage.models import Base

        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to initialize database schema: {e}") from e

    def verify_connection(self) -> bool:
        """Run a trivial query, which also proves an encryption key is right.

        Raises:
            DatabaseError: If the file cannot be opened or decrypted.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT count(*) FROM sqlite_master")).scalar_one()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Database connection failed: {e}") from e
        return True

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._sessions = None
