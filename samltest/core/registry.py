"""Registry of external SAML entities (SPs and IdPs) known to this platform."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from samltest.core.errors import CounterpartNotFound
from samltest.storage.models import EntityType, SamlEntity

if TYPE_CHECKING:
    from samltest.core.saml.metadata import ParsedMetadata
    from samltest.storage.database import Database

logger = logging.getLogger(__name__)


class EntityRegistry:
    """Stores imported metadata keyed by entity ID.

    Entities returned from this class are detached snapshots; changing them
    does not write back to the store.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert(self, parsed: ParsedMetadata, raw_xml: str) -> SamlEntity:
        """Create or replace the entity described by ``parsed``.

        A re-import with the same entity ID replaces type, endpoints,
        certificates and raw XML, and reactivates the entity.

        Args:
            parsed: Parsed metadata record.
            raw_xml: The metadata document as imported.

        Returns:
            The stored entity.
        """
        with self._db.session_scope() as session:
            entity = (
                session.query(SamlEntity)
                .filter(SamlEntity.entity_id == parsed.entity_id)
                .first()
            )
            if entity is None:
                entity = SamlEntity(entity_id=parsed.entity_id)
                session.add(entity)
                action = "Registered"
            else:
                action = "Replaced"

            entity.type = parsed.type.value
            entity.sso_url = parsed.sso_url
            entity.slo_url = parsed.slo_url
            entity.acs_urls = list(parsed.acs_urls)
            entity.certificates = list(parsed.certificates)
            entity.raw_xml = raw_xml
            entity.parsed_json = parsed.to_dict()
            entity.active = True
            session.flush()
            session.refresh(entity)

        logger.info("%s %s entity %s", action, entity.type, entity.entity_id)
        return entity

    def get_by_id(self, entity_pk: int) -> SamlEntity:
        """Get an entity by its internal id.

        Raises:
            CounterpartNotFound: If no entity has this id.
        """
        with self._db.session_scope() as session:
            entity = session.get(SamlEntity, entity_pk)
            if entity is None:
                raise CounterpartNotFound(f"Entity not found: {entity_pk}")
            return entity

    def get_by_entity_id(self, entity_id: str) -> SamlEntity | None:
        with self._db.session_scope() as session:
            return (
                session.query(SamlEntity)
                .filter(SamlEntity.entity_id == entity_id)
                .first()
            )

    def list(
        self,
        entity_type: EntityType | str | None = None,
        active: bool | None = None,
    ) -> list[SamlEntity]:
        """List entities, newest first.

        Args:
            entity_type: Only entities of this type.
            active: Only active (True) or inactive (False) entities.
        """
        with self._db.session_scope() as session:
            query = session.query(SamlEntity)
            if entity_type is not None:
                query = query.filter(SamlEntity.type == str(entity_type))
            if active is not None:
                query = query.filter(SamlEntity.active.is_(active))
            return query.order_by(SamlEntity.created_at.desc(), SamlEntity.id.desc()).all()

    def active_of_type(self, entity_type: EntityType) -> list[SamlEntity]:
        return self.list(entity_type=entity_type, active=True)

    def delete(self, entity_pk: int) -> SamlEntity:
        """Delete an entity.

        Returns:
            The deleted entity.

        Raises:
            CounterpartNotFound: If no entity has this id.
        """
        with self._db.session_scope() as session:
            entity = session.get(SamlEntity, entity_pk)
            if entity is None:
                raise CounterpartNotFound(f"Entity not found: {entity_pk}")
            session.delete(entity)

        logger.info("Deleted %s entity %s", entity.type, entity.entity_id)
        return entity

    def toggle_active(self, entity_pk: int) -> SamlEntity:
        """Flip the active flag of an entity.

        Raises:
            CounterpartNotFound: If no entity has this id.
        """
        with self._db.session_scope() as session:
            entity = session.get(SamlEntity, entity_pk)
            if entity is None:
                raise CounterpartNotFound(f"Entity not found: {entity_pk}")
            entity.active = not entity.active
            session.flush()
            session.refresh(entity)

        logger.info(
            "%s %s entity %s",
            "Activated" if entity.active else "Deactivated",
            entity.type,
            entity.entity_id,
        )
        return entity

    def resolve(self, entity_id: str, expected_type: EntityType) -> SamlEntity:
        """Find a counterpart for a protocol operation.

        Raises:
            CounterpartNotFound: If the entity is unknown, inactive, or of
                the wrong type.
        """
        entity = self.get_by_entity_id(entity_id)
        if entity is None or entity.type != expected_type.value or not entity.active:
            raise CounterpartNotFound(f"{expected_type.value} not found or inactive: {entity_id}")
        return entity
