"""SQLAlchemy 2.x ORM models for the SAML test platform."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        list[str]: JSON,
    }


class EntityType(StrEnum):
    """Role of a registered SAML counterpart."""

    SP = "SP"
    IDP = "IDP"


class AppRole(StrEnum):
    """Role(s) this platform plays."""

    SP = "SP"
    IDP = "IDP"
    BOTH = "BOTH"


class LogStatus(StrEnum):
    """Outcome recorded for a protocol event."""

    INITIATED = "initiated"
    SUCCESS = "success"
    FAILURE = "failure"


class SamlEntity(Base):
    """An external SP or IdP known to this platform through imported metadata."""

    __tablename__ = "saml_entities"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(500), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    sso_url: Mapped[str | None] = mapped_column(String(500))
    slo_url: Mapped[str | None] = mapped_column(String(500))
    acs_urls: Mapped[list[str]] = mapped_column(JSON, default=list)
    certificates: Mapped[list[str]] = mapped_column(JSON, default=list)
    raw_xml: Mapped[str] = mapped_column(Text, nullable=False)
    parsed_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    active: Mapped[bool] = mapped_column(default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary (without raw XML)."""
        return {
            "id": self.id,
            "entityId": self.entity_id,
            "type": self.type,
            "ssoUrl": self.sso_url,
            "sloUrl": self.slo_url,
            "acsUrls": list(self.acs_urls or []),
            "certificates": list(self.certificates or []),
            "active": self.active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<SamlEntity(entity_id='{self.entity_id}', type='{self.type}', active={self.active})>"


class SamlConfig(Base):
    """The platform's own SAML identity. Exactly one row exists."""

    __tablename__ = "saml_config"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(primary_key=True)
    # Always 1; the unique constraint serializes concurrent get-or-create.
    singleton: Mapped[int] = mapped_column(Integer, unique=True, default=1, nullable=False)
    app_role: Mapped[str] = mapped_column(String(10), default=AppRole.BOTH.value)
    default_entity_id: Mapped[str] = mapped_column(String(500), nullable=False)
    signing_key: Mapped[str | None] = mapped_column(Text)
    signing_cert: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<SamlConfig(role='{self.app_role}', entity_id='{self.default_entity_id}')>"


class User(Base):
    """A local user account, optionally bound to a SAML identity."""

    __tablename__ = "users"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    # pbkdf2_sha256$iterations$salt$digest, empty for SAML-only accounts
    password_hash: Mapped[str] = mapped_column(String(255), default="")
    display_name: Mapped[str | None] = mapped_column(String(255))

    saml_name_id: Mapped[str | None] = mapped_column(String(500), index=True)
    saml_entity_id: Mapped[str | None] = mapped_column(String(500))
    saml_attributes: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary (no credentials)."""
        return {
            "id": self.id,
            "email": self.email,
            "displayName": self.display_name,
            "samlNameId": self.saml_name_id,
            "samlEntityId": self.saml_entity_id,
            "samlAttributes": self.saml_attributes,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "lastLoginAt": self.last_login_at.isoformat() if self.last_login_at else None,
        }

    def __repr__(self) -> str:
        return f"<User(email='{self.email}')>"


class SamlLog(Base):
    """Append-only audit record of a SAML protocol event."""

    __tablename__ = "saml_logs"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(500), default="unknown")
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "id": self.id,
            "entityId": self.entity_id,
            "userId": self.user_id,
            "eventType": self.event_type,
            "status": self.status,
            "details": self.details or {},
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<SamlLog(event='{self.event_type}', status='{self.status}')>"
