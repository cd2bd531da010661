"""Binding of validated SAML identities to local user accounts."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from samltest.storage.models import User

if TYPE_CHECKING:
    from samltest.storage.database import Database

logger = logging.getLogger(__name__)


def _scalar(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


class IdentityBinder:
    """Maps a SAML subject onto a local user.

    Precedence:
    1. a user already bound to the NameID,
    2. a user whose email matches the asserted email (or the NameID),
       which claims that local account,
    3. a new SAML-only user.

    Step 2 lets any trusted IdP take over a local account by asserting its
    email address.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def bind(self, name_id: str, issuer_entity_id: str, attributes: dict[str, Any]) -> User:
        """Find, claim, or create the user for a validated assertion.

        Args:
            name_id: Subject NameID.
            issuer_entity_id: Entity ID of the asserting IdP.
            attributes: Flattened assertion attributes.

        Returns:
            The bound user. ``saml_attributes`` always reflects this login.
        """
        now = datetime.now(UTC)
        attributes = dict(attributes)

        with self._db.session_scope() as session:
            user = session.query(User).filter(User.saml_name_id == name_id).first()
            if user is not None:
                user.saml_attributes = attributes
                user.last_login_at = now
                session.flush()
                logger.info("SAML login for existing user %s", user.email)
                return user

            email = str(_scalar(attributes.get("email")) or name_id).strip().lower()
            user = session.query(User).filter(User.email == email).first()
            if user is not None:
                user.saml_name_id = name_id
                user.saml_entity_id = issuer_entity_id
                user.saml_attributes = attributes
                user.last_login_at = now
                session.flush()
                logger.info("Linked SAML identity %s to existing user %s", name_id, email)
                return user

            display_name = _scalar(attributes.get("name")) or _scalar(attributes.get("displayName")) or name_id
            user = User(
                email=email,
                password_hash="",
                display_name=str(display_name),
                saml_name_id=name_id,
                saml_entity_id=issuer_entity_id,
                saml_attributes=attributes,
                last_login_at=now,
            )
            session.add(user)
            session.flush()
            logger.info("Created user %s from SAML identity %s", email, name_id)
            return user
