"""Append-only audit trail of SAML protocol events."""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from samltest.core.errors import CounterpartNotFound, StoreFailure
from samltest.core.logging import get_protocol_logger
from samltest.storage.models import LogStatus, SamlLog

if TYPE_CHECKING:
    from samltest.storage.database import Database

logger = logging.getLogger(__name__)

UNKNOWN_ENTITY = "unknown"


class EventType(StrEnum):
    """Protocol events recorded in the audit log."""

    SP_LOGIN = "sp_login"
    IDP_LOGIN = "idp_login"
    IDP_SSO = "idp_sso"
    ACS = "acs"
    LOGOUT = "logout"
    METADATA_IMPORT = "metadata_import"


class AuditLog:
    """Records and queries ``SamlLog`` entries."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def record(
        self,
        event_type: EventType | str,
        status: LogStatus | str,
        entity_id: str | None = None,
        user_id: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> SamlLog | None:
        """Append an event.

        A store failure here is logged and swallowed, so the protocol
        outcome being recorded is always reported to the caller intact.

        Returns:
            The stored entry, or None if it could not be written.
        """
        entry = SamlLog(
            entity_id=entity_id or UNKNOWN_ENTITY,
            user_id=user_id,
            event_type=str(event_type),
            status=str(status),
            details=dict(details or {}),
        )
        get_protocol_logger().log_event(str(event_type), str(status), entry.entity_id, error=entry.details.get("error"))

        try:
            with self._db.session_scope() as session:
                session.add(entry)
        except StoreFailure as e:
            logger.error("Failed to record %s/%s audit event: %s", event_type, status, e)
            return None
        return entry

    def list(
        self,
        limit: int = 50,
        offset: int = 0,
        event_type: str | None = None,
        status: str | None = None,
        user_id: int | None = None,
    ) -> tuple[list[SamlLog], int]:
        """Return a page of entries (newest first) and the total matching count."""
        with self._db.session_scope() as session:
            query = session.query(SamlLog)
            if event_type:
                query = query.filter(SamlLog.event_type == event_type)
            if status:
                query = query.filter(SamlLog.status == status)
            if user_id is not None:
                query = query.filter(SamlLog.user_id == user_id)
            total = query.count()
            items = (
                query.order_by(SamlLog.created_at.desc(), SamlLog.id.desc())
                .offset(max(offset, 0))
                .limit(max(limit, 0))
                .all()
            )
            return items, total

    def get(self, log_id: int) -> SamlLog:
        """Get one entry.

        Raises:
            CounterpartNotFound: If no entry has this id.
        """
        with self._db.session_scope() as session:
            entry = session.get(SamlLog, log_id)
            if entry is None:
                raise CounterpartNotFound(f"Log not found: {log_id}")
            return entry

    def for_user(self, user_id: int, limit: int = 10) -> list[SamlLog]:
        items, _ = self.list(limit=limit, user_id=user_id)
        return items

    def clear(self) -> int:
        """Delete every entry and return how many were removed."""
        with self._db.session_scope() as session:
            count = session.query(SamlLog).delete()
        logger.info("Cleared %d audit log entries", count)
        return count
