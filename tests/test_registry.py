"""Tests for the entity registry."""

import pytest
from conftest import IDP_ENTITY_ID, SP_ENTITY_ID

from samltest.core.errors import CounterpartNotFound
from samltest.core.registry import EntityRegistry
from samltest.core.saml.metadata import parse_metadata
from samltest.storage.database import Database
from samltest.storage.models import EntityType


@pytest.fixture
def registry(database: Database) -> EntityRegistry:
    return EntityRegistry(database)


class TestUpsert:
    """Tests for registering imported metadata."""

    def test_register_new_entity(self, registry: EntityRegistry, idp_metadata: str) -> None:
        entity = registry.upsert(parse_metadata(idp_metadata), idp_metadata)

        assert entity.id is not None
        assert entity.entity_id == IDP_ENTITY_ID
        assert entity.type == "IDP"
        assert entity.active is True
        assert entity.raw_xml == idp_metadata
        assert entity.created_at is not None

    def test_reimport_replaces_in_place(self, registry: EntityRegistry, idp_metadata: str) -> None:
        """Importing the same entity ID twice keeps one row and reactivates it."""
        first = registry.upsert(parse_metadata(idp_metadata), idp_metadata)
        registry.toggle_active(first.id)

        second = registry.upsert(parse_metadata(idp_metadata), idp_metadata)

        assert second.id == first.id
        assert second.active is True
        assert len(registry.list()) == 1

    def test_reimport_updates_endpoints(self, registry: EntityRegistry, idp_metadata: str) -> None:
        registry.upsert(parse_metadata(idp_metadata), idp_metadata)
        changed = idp_metadata.replace("https://idp.example/sso", "https://idp.example/sso2")

        entity = registry.upsert(parse_metadata(changed), changed)

        assert entity.sso_url == "https://idp.example/sso2"
        assert registry.get_by_entity_id(IDP_ENTITY_ID).sso_url == "https://idp.example/sso2"


class TestQueries:
    """Tests for listing, lookup, toggling and deletion."""

    def test_list_filters(self, registry: EntityRegistry, idp_metadata: str, sp_metadata: str) -> None:
        registry.upsert(parse_metadata(idp_metadata), idp_metadata)
        sp = registry.upsert(parse_metadata(sp_metadata), sp_metadata)
        registry.toggle_active(sp.id)

        assert [e.entity_id for e in registry.list(entity_type=EntityType.IDP)] == [IDP_ENTITY_ID]
        assert [e.entity_id for e in registry.list(entity_type="SP")] == [SP_ENTITY_ID]
        assert [e.entity_id for e in registry.list(active=False)] == [SP_ENTITY_ID]
        assert registry.active_of_type(EntityType.SP) == []

    def test_get_by_id_unknown(self, registry: EntityRegistry) -> None:
        with pytest.raises(CounterpartNotFound):
            registry.get_by_id(999)

    def test_get_by_entity_id_unknown(self, registry: EntityRegistry) -> None:
        assert registry.get_by_entity_id("urn:nobody") is None

    def test_toggle_twice(self, registry: EntityRegistry, idp_metadata: str) -> None:
        entity = registry.upsert(parse_metadata(idp_metadata), idp_metadata)
        assert registry.toggle_active(entity.id).active is False
        assert registry.toggle_active(entity.id).active is True

    def test_delete(self, registry: EntityRegistry, idp_metadata: str) -> None:
        entity = registry.upsert(parse_metadata(idp_metadata), idp_metadata)
        deleted = registry.delete(entity.id)

        assert deleted.entity_id == IDP_ENTITY_ID
        assert registry.get_by_entity_id(IDP_ENTITY_ID) is None
        with pytest.raises(CounterpartNotFound):
            registry.delete(entity.id)


class TestResolve:
    """Tests for resolving a protocol counterpart."""

    def test_resolve_active(self, registry: EntityRegistry, idp_metadata: str) -> None:
        registry.upsert(parse_metadata(idp_metadata), idp_metadata)
        assert registry.resolve(IDP_ENTITY_ID, EntityType.IDP).sso_url == "https://idp.example/sso"

    def test_resolve_inactive(self, registry: EntityRegistry, idp_metadata: str) -> None:
        entity = registry.upsert(parse_metadata(idp_metadata), idp_metadata)
        registry.toggle_active(entity.id)
        with pytest.raises(CounterpartNotFound, match="inactive"):
            registry.resolve(IDP_ENTITY_ID, EntityType.IDP)

    def test_resolve_wrong_type(self, registry: EntityRegistry, idp_metadata: str) -> None:
        registry.upsert(parse_metadata(idp_metadata), idp_metadata)
        with pytest.raises(CounterpartNotFound):
            registry.resolve(IDP_ENTITY_ID, EntityType.SP)

    def test_resolve_unknown(self, registry: EntityRegistry) -> None:
        with pytest.raises(CounterpartNotFound):
            registry.resolve("urn:nobody", EntityType.IDP)
