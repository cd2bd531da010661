"""SAML protocol engine.

Coordinates the SP and IdP roles of the platform with the entity registry,
identity binder and audit log. One engine is built per process and passed
explicitly to the web and CLI layers.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from lxml import etree

from samltest.core.audit import AuditLog, EventType
from samltest.core.crypto.certs import SigningMaterial, fingerprint
from samltest.core.crypto.tokens import TokenIssuer
from samltest.core.errors import (
    AssertionInvalid,
    CounterpartNotFound,
    RequestInvalid,
    SamlError,
)
from samltest.core.identity import IdentityBinder
from samltest.core.platform import PlatformConfigStore
from samltest.core.registry import EntityRegistry
from samltest.core.saml.bindings import POST, REDIRECT, BindingError, decode_message
from samltest.core.saml.idp import (
    IdentityProvider,
    IssuedResponse,
    parse_authn_request,
    render_post_form,
)
from samltest.core.saml.metadata import (
    fetch_metadata,
    generate_idp_descriptor,
    generate_sp_descriptor,
    parse_metadata,
)
from samltest.core.saml.signature import has_signature, verify_document, verify_query
from samltest.core.saml.sp import SAMLServiceProvider, ValidatedAssertion, peek_issuer
from samltest.core.saml.utils import SAML_NS, parse_xml
from samltest.storage.models import AppRole, EntityType, LogStatus, SamlConfig, SamlEntity, User

if TYPE_CHECKING:
    import httpx

    from samltest.core.config import SamlSettings
    from samltest.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class LoginInitiation:
    """A signed AuthnRequest ready to be sent to an IdP."""

    redirect_url: str
    request_id: str
    request_xml: str
    sso_url: str


@dataclass
class AcceptedRequest:
    """An AuthnRequest accepted by the IdP role."""

    request_id: str
    issuer: str
    acs_url: str | None
    relay_state: str | None
    verified: bool
    signature_verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "issuer": self.issuer,
            "acsUrl": self.acs_url,
            "relayState": self.relay_state,
            "verified": self.verified,
            "signatureVerified": self.signature_verified,
        }


@dataclass
class AcsResult:
    """Outcome of a successful Assertion Consumer Service call."""

    user: User
    token: str
    assertion: ValidatedAssertion


@dataclass
class ImportResult:
    entity: SamlEntity
    fingerprints: list[str] = field(default_factory=list)


def _unique_certificates(certificates: list[str]) -> list[str]:
    """Drop repeated certificates, keeping document order."""
    seen: set[str] = set()
    unique: list[str] = []
    for cert in certificates:
        key = fingerprint(cert) or cert
        if key not in seen:
            seen.add(key)
            unique.append(cert)
    return unique


class SamlEngine:
    """Runs SP-initiated and IdP-initiated SSO for the platform.

    Every protocol transition is written to the audit log. Failures are
    recorded with their error kind and then re-raised to the caller.
    """

    def __init__(
        self,
        db: Database,
        settings: SamlSettings,
        token_issuer: TokenIssuer,
        config_store: PlatformConfigStore | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            db: Database holding entities, users, logs and the config row.
            settings: Endpoint URLs and protocol tolerances.
            token_issuer: Issues session tokens after a successful ACS call.
            config_store: Access to the config row (built from ``settings``
                if omitted).
        """
        self.db = db
        self.settings = settings
        self.token_issuer = token_issuer
        self.config_store = config_store or PlatformConfigStore(
            db, settings.issuer, settings.cert_dir
        )
        self.registry = EntityRegistry(db)
        self.binder = IdentityBinder(db)
        self.audit = AuditLog(db)

        self._config: SamlConfig = self.config_store.get_or_create()
        self.signing: SigningMaterial = self.config_store.signing_material(self._config)

    @classmethod
    def create(
        cls,
        db: Database,
        settings: SamlSettings,
        token_issuer: TokenIssuer,
    ) -> SamlEngine:
        """Build the engine for a process, creating the config row if needed.

        Raises:
            SigningMaterialUnavailable: If no usable key pair can be obtained.
            StoreFailure: If the config row cannot be read or written.
        """
        engine = cls(db, settings, token_issuer)
        logger.info(
            "SAML engine ready: entity %s, role %s, certificate %s",
            engine.entity_id,
            engine.app_role,
            engine.signing.fingerprint,
        )
        return engine

    # Configuration

    @property
    def entity_id(self) -> str:
        return self._config.default_entity_id

    @property
    def app_role(self) -> str:
        return self._config.app_role

    @property
    def clock_skew(self) -> timedelta:
        return timedelta(seconds=self.settings.clock_skew_seconds)

    @property
    def sp(self) -> SAMLServiceProvider:
        return SAMLServiceProvider(self.entity_id, self.settings.acs_url, self.signing)

    @property
    def idp(self) -> IdentityProvider:
        return IdentityProvider(
            self.entity_id,
            self.signing,
            lifetime=timedelta(seconds=self.settings.assertion_lifetime_seconds),
            clock_skew=self.clock_skew,
        )

    def describe(self) -> dict[str, Any]:
        """Return the platform configuration without private key material."""
        return {
            "appRole": self.app_role,
            "defaultEntityId": self.entity_id,
            "hasSigningKey": bool(self._config.signing_key),
            "hasSigningCert": bool(self._config.signing_cert),
            "certificateFingerprint": self.signing.fingerprint,
            "acsUrl": self.settings.acs_url,
            "ssoUrl": self.settings.sso_url,
        }

    def update_config(
        self,
        app_role: AppRole | str | None = None,
        default_entity_id: str | None = None,
    ) -> dict[str, Any]:
        """Change the platform role and/or entity ID and return the new state.

        Raises:
            ValueError: If a value is invalid.
        """
        self._config = self.config_store.update(app_role=app_role, default_entity_id=default_entity_id)
        logger.info("SAML config updated: entity %s, role %s", self.entity_id, self.app_role)
        return self.describe()

    def sp_metadata(self) -> str:
        return generate_sp_descriptor(self.entity_id, self.settings.acs_url, self.signing.certificate_pem)

    def idp_metadata(self) -> str:
        return generate_idp_descriptor(self.entity_id, self.settings.sso_url, self.signing.certificate_pem)

    # Auditing helpers

    def _record_failure(
        self,
        event_type: EventType,
        entity_id: str | None,
        error: SamlError,
        user_id: int | None = None,
        **details: Any,
    ) -> None:
        logger.warning("%s failed for %s: %s", event_type, entity_id or "unknown", error.message)
        self.audit.record(
            event_type,
            LogStatus.FAILURE,
            entity_id=entity_id,
            user_id=user_id,
            details={"error": error.message, "kind": error.kind, **details},
        )

    # SP role

    def initiate(self, idp_entity_id: str, relay_state: str | None = None) -> LoginInitiation:
        """Start SP-initiated SSO against a registered IdP.

        Args:
            idp_entity_id: Entity ID of an active registered IdP.
            relay_state: Opaque value the IdP echoes back.

        Returns:
            LoginInitiation with the signed HTTP-Redirect URL.

        Raises:
            CounterpartNotFound: If the IdP is unknown, inactive, or has no SSO URL.
        """
        try:
            idp = self.registry.resolve(idp_entity_id, EntityType.IDP)
            if not idp.sso_url:
                raise CounterpartNotFound(f"IDP has no SingleSignOnService: {idp_entity_id}")
            sp = self.sp
            request = sp.create_authn_request(idp.sso_url)
            redirect_url = sp.build_sso_redirect_url(request, relay_state)
        except SamlError as e:
            self._record_failure(EventType.SP_LOGIN, idp_entity_id, e)
            raise

        self.audit.record(
            EventType.SP_LOGIN,
            LogStatus.INITIATED,
            entity_id=idp_entity_id,
            details={"endpoint": idp.sso_url, "requestId": request.id},
        )
        return LoginInitiation(
            redirect_url=redirect_url,
            request_id=request.id,
            request_xml=request.to_xml(),
            sso_url=idp.sso_url,
        )

    def _trust_for_issuer(self, claimed: str | None) -> tuple[str, list[str]]:
        """Select the issuer and certificates a Response is verified against."""
        if claimed:
            entity = self.registry.get_by_entity_id(claimed)
            if entity is not None and entity.type == EntityType.IDP.value and entity.active:
                return claimed, _unique_certificates(list(entity.certificates or []))
            if self.settings.trust_self and claimed == self.entity_id:
                return claimed, [self.signing.certificate_pem]
            raise CounterpartNotFound(f"IDP not registered or inactive: {claimed}")

        idps = self.registry.active_of_type(EntityType.IDP)
        if not idps:
            raise CounterpartNotFound("Response has no Issuer and no IDP is active")
        if len(idps) > 1:
            raise AssertionInvalid("Response has no Issuer and several IDPs are active (ambiguous issuer)")
        return idps[0].entity_id, _unique_certificates(list(idps[0].certificates or []))

    def parse_response(
        self,
        params: Mapping[str, str],
        binding: str = POST,
        expected_request_id: str | None = None,
        now: datetime | None = None,
    ) -> ValidatedAssertion:
        """Decode and validate a SAML Response delivered to the ACS.

        Nothing is audited here; ``handle_acs`` records the outcome.

        Args:
            params: Form or query parameters carrying ``SAMLResponse``.
            binding: ``post`` or ``redirect``.
            expected_request_id: AuthnRequest ID the Response must answer.
            now: Current time (injectable for tests).

        Raises:
            AssertionInvalid: If the payload is missing, undecodable, or fails validation.
            CounterpartNotFound: If the issuer is not a trusted IdP.
            SignatureInvalid: If the signature does not verify.
        """
        encoded = params.get("SAMLResponse")
        if not encoded:
            raise AssertionInvalid("Missing SAMLResponse")
        try:
            root = parse_xml(decode_message(encoded, binding))
        except BindingError as e:
            raise AssertionInvalid(f"Failed to decode SAMLResponse: {e}") from e
        except etree.XMLSyntaxError as e:
            raise AssertionInvalid(f"Failed to parse SAMLResponse XML: {e}") from e

        if root.tag != f"{{{SAML_NS['samlp']}}}Response":
            raise AssertionInvalid(f"Expected samlp:Response, got {etree.QName(root).localname}")

        issuer, certificates = self._trust_for_issuer(peek_issuer(root))
        return self.sp.validate_response(
            root,
            certificates,
            expected_issuer=issuer,
            clock_skew=self.clock_skew,
            expected_request_id=expected_request_id,
            now=now,
        )

    def handle_acs(
        self,
        params: Mapping[str, str],
        binding: str = POST,
        expected_request_id: str | None = None,
        now: datetime | None = None,
    ) -> AcsResult:
        """Validate a Response, bind the subject to a user and issue a session token.

        Raises:
            SamlError: Any validation or store failure, after it is audited.
        """
        try:
            assertion = self.parse_response(params, binding, expected_request_id, now)
            user = self.binder.bind(assertion.name_id, assertion.issuer, assertion.attributes)
        except SamlError as e:
            self._record_failure(EventType.ACS, None, e)
            raise

        token = self.token_issuer.issue(user.id, user.email)
        self.audit.record(
            EventType.ACS,
            LogStatus.SUCCESS,
            entity_id=assertion.issuer,
            user_id=user.id,
            details={
                "nameId": assertion.name_id,
                "attributes": assertion.attributes,
                "issuer": assertion.issuer,
                "sessionIndex": assertion.session_index,
                "signatureLocation": str(assertion.signature_location),
            },
        )
        return AcsResult(user=user, token=token, assertion=assertion)

    # IdP role

    def accept_authn_request(
        self,
        params: Mapping[str, str],
        binding: str = REDIRECT,
        raw_query: str | None = None,
    ) -> AcceptedRequest:
        """Accept an AuthnRequest sent to the IdP SSO endpoint.

        The requester is looked up by Issuer among active SPs. When no SP is
        active at all, the request is accepted against this platform's own SP
        identity with ``verified=False``.

        Args:
            params: Query or form parameters carrying ``SAMLRequest``.
            binding: ``redirect`` or ``post``.
            raw_query: Original query string, used to verify redirect signatures.

        Raises:
            RequestInvalid: If the request is missing or undecodable.
            CounterpartNotFound: If SPs are registered but none matches the Issuer.
            SignatureInvalid: If a present signature does not verify.
        """
        relay_state = params.get("RelayState") or None
        issuer: str | None = None
        try:
            encoded = params.get("SAMLRequest")
            if not encoded:
                raise RequestInvalid("Missing SAMLRequest")
            try:
                xml = decode_message(encoded, binding)
            except BindingError as e:
                raise RequestInvalid(f"Failed to decode SAMLRequest: {e}") from e
            info = parse_authn_request(xml)
            issuer = info.issuer

            active_sps = self.registry.active_of_type(EntityType.SP)
            sp = next((entity for entity in active_sps if entity.entity_id == info.issuer), None)

            if sp is not None:
                certificates = _unique_certificates(list(sp.certificates or []))
                signature_verified = False
                if binding == REDIRECT and params.get("Signature") and certificates:
                    verify_query("SAMLRequest", params, certificates, raw_query)
                    signature_verified = True
                elif binding == POST and has_signature(info.root) and certificates:
                    verify_document(info.root, certificates)
                    signature_verified = True
                acs_urls = list(sp.acs_urls or [])
                accepted = AcceptedRequest(
                    request_id=info.id,
                    issuer=sp.entity_id,
                    acs_url=acs_urls[0] if acs_urls else None,
                    relay_state=relay_state,
                    verified=True,
                    signature_verified=signature_verified,
                )
            elif not active_sps:
                accepted = AcceptedRequest(
                    request_id=info.id,
                    issuer=self.entity_id,
                    acs_url=self.settings.acs_url,
                    relay_state=relay_state,
                    verified=False,
                )
            else:
                raise CounterpartNotFound(f"SP not registered or inactive: {info.issuer}")
        except SamlError as e:
            self._record_failure(EventType.IDP_SSO, issuer, e, binding=binding)
            raise

        self.audit.record(
            EventType.IDP_SSO,
            LogStatus.SUCCESS,
            entity_id=accepted.issuer,
            details={"binding": binding, **accepted.to_dict()},
        )
        return accepted

    def _resolve_sp(self, sp_entity_id: str) -> tuple[str, str]:
        """Return the audience and ACS URL for a Response to ``sp_entity_id``."""
        try:
            sp = self.registry.resolve(sp_entity_id, EntityType.SP)
        except CounterpartNotFound:
            if self.settings.trust_self and sp_entity_id == self.entity_id:
                return self.entity_id, self.settings.acs_url
            raise
        if not sp.acs_urls:
            raise CounterpartNotFound(f"SP has no AssertionConsumerService: {sp_entity_id}")
        return sp.entity_id, sp.acs_urls[0]

    def build_response(
        self,
        user: User,
        sp_entity_id: str,
        in_response_to: str | None = None,
        relay_state: str | None = None,
        now: datetime | None = None,
    ) -> IssuedResponse:
        """Issue a signed Response asserting ``user`` to a registered SP.

        Args:
            user: Authenticated local user; the NameID is their email.
            sp_entity_id: Entity ID of the receiving SP.
            in_response_to: AuthnRequest ID, omitted for IdP-initiated SSO.
            relay_state: RelayState to return with the Response.
            now: Issue instant (injectable for tests).

        Raises:
            CounterpartNotFound: If the SP is unknown, inactive, or has no ACS URL.
        """
        try:
            audience, acs_url = self._resolve_sp(sp_entity_id)
            issued = self.idp.issue_response(
                acs_url=acs_url,
                audience=audience,
                name_id=user.email,
                attributes={
                    "email": user.email,
                    "name": user.display_name or user.email,
                    "uid": str(user.id),
                },
                in_response_to=in_response_to,
                relay_state=relay_state,
                now=now,
            )
        except SamlError as e:
            self._record_failure(EventType.IDP_LOGIN, sp_entity_id, e, user_id=user.id)
            raise

        self.audit.record(
            EventType.IDP_LOGIN,
            LogStatus.SUCCESS,
            entity_id=sp_entity_id,
            user_id=user.id,
            details={
                "acsUrl": issued.acs_url,
                "responseId": issued.response_id,
                "inResponseTo": in_response_to,
            },
        )
        return issued

    def render_post_form(self, issued: IssuedResponse) -> str:
        """HTML page that auto-posts ``issued`` to the SP's ACS URL."""
        return render_post_form(issued.acs_url, issued.form_fields())

    # Logout

    def record_logout(self, role: str, params: Mapping[str, str]) -> None:
        """Record a Single Logout message. No protocol processing is done."""
        entity_id = None
        for name in ("SAMLRequest", "SAMLResponse"):
            if encoded := params.get(name):
                try:
                    entity_id = peek_issuer(parse_xml(decode_message(encoded, POST)))
                except (BindingError, etree.XMLSyntaxError):
                    logger.debug("Unreadable %s on %s logout", name, role)
                break

        self.audit.record(
            EventType.LOGOUT,
            LogStatus.SUCCESS,
            entity_id=entity_id,
            details={"role": role, "params": dict(params)},
        )

    # Metadata

    def import_metadata(
        self,
        xml: str,
        expected_type: EntityType | str | None = None,
    ) -> ImportResult:
        """Parse and register a metadata document.

        Args:
            xml: EntityDescriptor document.
            expected_type: Role to import; a dual-role document yields this role.

        Raises:
            MalformedMetadata: If the document is invalid or lacks the expected role.
        """
        try:
            parsed = parse_metadata(xml, role=expected_type)
            entity = self.registry.upsert(parsed, xml)
        except SamlError as e:
            self._record_failure(
                EventType.METADATA_IMPORT,
                None,
                e,
                expectedType=str(expected_type) if expected_type else None,
            )
            raise

        fingerprints = [fingerprint(cert) for cert in entity.certificates or []]
        self.audit.record(
            EventType.METADATA_IMPORT,
            LogStatus.SUCCESS,
            entity_id=entity.entity_id,
            details={"type": entity.type, "fingerprints": fingerprints},
        )
        return ImportResult(entity=entity, fingerprints=fingerprints)

    def import_metadata_url(
        self,
        url: str,
        expected_type: EntityType | str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> ImportResult:
        """Download a metadata document and register it.

        Raises:
            MalformedMetadata: If the download fails or the document is invalid.
        """
        try:
            xml = fetch_metadata(url, transport=transport)
        except SamlError as e:
            self._record_failure(EventType.METADATA_IMPORT, None, e, url=url)
            raise
        return self.import_metadata(xml, expected_type)
