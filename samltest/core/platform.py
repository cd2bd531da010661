"""Persistence of the platform's own SAML configuration row."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from samltest.core.crypto.certs import (
    SigningMaterial,
    ensure_signing_material,
    load_certificate_pem,
    load_signing_key,
)
from samltest.core.errors import StoreFailure
from samltest.storage.models import AppRole, SamlConfig

if TYPE_CHECKING:
    from samltest.storage.database import Database

logger = logging.getLogger(__name__)


class PlatformConfigStore:
    """Get-or-create access to the single ``SamlConfig`` row."""

    def __init__(self, db: Database, default_entity_id: str, cert_dir: Path | None = None) -> None:
        self._db = db
        self._default_entity_id = default_entity_id
        self._cert_dir = cert_dir

    def _read(self) -> SamlConfig | None:
        with self._db.session_scope() as session:
            return session.query(SamlConfig).filter(SamlConfig.singleton == 1).first()

    def get_or_create(self) -> SamlConfig:
        """Return the configuration row, creating it on first use.

        Key material already persisted in the row is never replaced. When
        the row lacks it, the material from the certificate directory is
        loaded (or generated once) and stored.

        Concurrent first calls are serialized by the unique ``singleton``
        column: the loser rolls back and re-reads the winner's row.

        Raises:
            SigningMaterialUnavailable: If signing material cannot be loaded.
            StoreFailure: If the row cannot be read or written.
        """
        existing = self._read()
        if existing is not None and existing.signing_key and existing.signing_cert:
            return existing

        material = ensure_signing_material(self._cert_dir)
        session = self._db.get_session()
        try:
            if existing is None:
                session.add(
                    SamlConfig(
                        singleton=1,
                        app_role=AppRole.BOTH.value,
                        default_entity_id=self._default_entity_id,
                        signing_key=material.private_key_pem,
                        signing_cert=material.certificate_pem,
                    )
                )
            else:
                row = session.get(SamlConfig, existing.id)
                if row is not None and not (row.signing_key and row.signing_cert):
                    row.signing_key = material.private_key_pem
                    row.signing_cert = material.certificate_pem
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.debug("SAML config row created concurrently; using the stored row")
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreFailure(f"Failed to store SAML config: {e}") from e
        finally:
            session.close()

        config = self._read()
        if config is None:
            raise StoreFailure("SAML config row missing after creation")
        logger.info("SAML config ready for %s", config.default_entity_id)
        return config

    def signing_material(self, config: SamlConfig) -> SigningMaterial:
        """Validate and return the key material stored in ``config``.

        Raises:
            SigningMaterialUnavailable: If the stored key or certificate is unusable.
        """
        load_signing_key(config.signing_key or "")
        load_certificate_pem(config.signing_cert or "")
        return SigningMaterial(
            private_key_pem=config.signing_key or "",
            certificate_pem=config.signing_cert or "",
        )

    def update(
        self,
        app_role: AppRole | str | None = None,
        default_entity_id: str | None = None,
    ) -> SamlConfig:
        """Change the platform role and/or entity ID.

        Raises:
            ValueError: If the role is not SP, IDP, or BOTH, or the entity ID is blank.
        """
        config = self.get_or_create()
        with self._db.session_scope() as session:
            row = session.get(SamlConfig, config.id)
            if row is None:
                raise StoreFailure("SAML config row disappeared")
            if app_role is not None:
                row.app_role = AppRole(str(app_role).upper()).value
            if default_entity_id is not None:
                if not default_entity_id.strip():
                    raise ValueError("Entity ID must not be empty")
                row.default_entity_id = default_entity_id.strip()
            session.flush()
            session.refresh(row)
            return row
