"""Persistent state: registered entities, platform configuration, users and the audit trail."""

from samltest.storage.database import Database, DatabaseError, KeyNotFoundError
from samltest.storage.models import (
    AppRole,
    Base,
    EntityType,
    LogStatus,
    SamlConfig,
    SamlEntity,
    SamlLog,
    User,
)

__all__ = [
    "AppRole",
    "Base",
    "Database",
    "DatabaseError",
    "EntityType",
    "KeyNotFoundError",
    "LogStatus",
    "SamlConfig",
    "SamlEntity",
    "SamlLog",
    "User",
]
