"""SAML 2.0 metadata codec.

Parses EntityDescriptor documents into a ``ParsedMetadata`` record and
generates the platform's own SP and IdP descriptors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from lxml import etree

from samltest.core.crypto.certs import certificate_body, normalize_pem
from samltest.core.errors import MalformedMetadata
from samltest.core.logging import LoggingClient, get_protocol_logger
from samltest.core.saml.bindings import BINDING_HTTP_POST, BINDING_HTTP_REDIRECT
from samltest.core.saml.utils import NAMEID_FORMAT_EMAIL, SAML_NS, parse_xml
from samltest.storage.models import EntityType

logger = logging.getLogger(__name__)

MD = SAML_NS["md"]
DS = SAML_NS["ds"]

# Emitted on generated descriptors
VALID_UNTIL = "2034-01-01T00:00:00Z"

# Role chosen when a document carries both descriptors and no role is requested
DUAL_ROLE_PRECEDENCE = EntityType.SP

_ROLE_DESCRIPTORS = {
    EntityType.SP: "SPSSODescriptor",
    EntityType.IDP: "IDPSSODescriptor",
}


@dataclass
class ParsedMetadata:
    """Endpoints and certificates extracted from one role of an EntityDescriptor."""

    entity_id: str
    type: EntityType
    sso_url: str | None = None
    slo_url: str | None = None
    acs_urls: list[str] = field(default_factory=list)
    certificates: list[str] = field(default_factory=list)
    roles: list[EntityType] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "entityId": self.entity_id,
            "type": self.type.value,
            "ssoUrl": self.sso_url,
            "sloUrl": self.slo_url,
            "acsUrls": list(self.acs_urls),
            "certificates": list(self.certificates),
            "roles": [role.value for role in self.roles],
        }


def _find_entity_descriptor(root: etree._Element) -> etree._Element | None:
    if root.tag == f"{{{MD}}}EntityDescriptor":
        return root
    return root.find(".//md:EntityDescriptor", SAML_NS)


def _first_location(descriptor: etree._Element, service: str) -> str | None:
    element = descriptor.find(f"md:{service}", SAML_NS)
    if element is None:
        return None
    return element.get("Location") or None


def _certificates(descriptor: etree._Element) -> list[str]:
    certificates = []
    for cert_el in descriptor.findall(
        "md:KeyDescriptor/ds:KeyInfo/ds:X509Data/ds:X509Certificate", SAML_NS
    ):
        if cert_el.text and cert_el.text.strip():
            certificates.append(normalize_pem(cert_el.text))
    return certificates


def parse_metadata(xml: str | bytes, role: EntityType | str | None = None) -> ParsedMetadata:
    """Parse a SAML 2.0 metadata document.

    When the document describes both roles, ``role`` selects the descriptor
    to extract; without it ``DUAL_ROLE_PRECEDENCE`` applies. ``roles`` on the
    result always lists every role present.

    Args:
        xml: EntityDescriptor (or EntitiesDescriptor) XML.
        role: Descriptor to extract ("SP" or "IDP"), or None for automatic.

    Returns:
        ParsedMetadata for the selected role.

    Raises:
        MalformedMetadata: If the XML is unparseable, has no EntityDescriptor
            or entityID, or lacks the requested role.
    """
    try:
        root = parse_xml(xml)
    except etree.XMLSyntaxError as e:
        raise MalformedMetadata(f"Invalid metadata XML: {e}") from e

    entity_descriptor = _find_entity_descriptor(root)
    if entity_descriptor is None:
        raise MalformedMetadata("Invalid metadata: No EntityDescriptor found")

    entity_id = (entity_descriptor.get("entityID") or "").strip()
    if not entity_id:
        raise MalformedMetadata("Invalid metadata: EntityDescriptor has no entityID")

    descriptors = {
        entity_type: element
        for entity_type, tag in _ROLE_DESCRIPTORS.items()
        if (element := entity_descriptor.find(f"md:{tag}", SAML_NS)) is not None
    }
    if not descriptors:
        raise MalformedMetadata("Invalid metadata: No SPSSODescriptor or IDPSSODescriptor found")

    if role is not None:
        try:
            selected = EntityType(str(role).upper())
        except ValueError as e:
            raise MalformedMetadata(f"Unknown entity type: {role}") from e
        if selected not in descriptors:
            raise MalformedMetadata(
                f"Metadata type mismatch: expected {selected.value} but document "
                f"describes {', '.join(r.value for r in descriptors)}"
            )
    elif len(descriptors) > 1:
        selected = DUAL_ROLE_PRECEDENCE
    else:
        selected = next(iter(descriptors))

    descriptor = descriptors[selected]
    parsed = ParsedMetadata(
        entity_id=entity_id,
        type=selected,
        certificates=_certificates(descriptor),
        roles=list(descriptors),
    )

    if selected == EntityType.SP:
        parsed.acs_urls = [
            location
            for acs in descriptor.findall("md:AssertionConsumerService", SAML_NS)
            if (location := acs.get("Location"))
        ]
        parsed.slo_url = _first_location(descriptor, "SingleLogoutService")
    else:
        parsed.sso_url = _first_location(descriptor, "SingleSignOnService")
        parsed.slo_url = _first_location(descriptor, "SingleLogoutService")

    logger.debug(
        "Parsed %s metadata for %s (%d certificates)",
        selected.value, entity_id, len(parsed.certificates),
    )
    return parsed


def _key_descriptor(parent: etree._Element, use: str, cert_body: str) -> None:
    key_descriptor = etree.SubElement(parent, f"{{{MD}}}KeyDescriptor", use=use)
    key_info = etree.SubElement(key_descriptor, f"{{{DS}}}KeyInfo")
    x509_data = etree.SubElement(key_info, f"{{{DS}}}X509Data")
    etree.SubElement(x509_data, f"{{{DS}}}X509Certificate").text = cert_body


def _entity_descriptor(entity_id: str) -> etree._Element:
    return etree.Element(
        f"{{{MD}}}EntityDescriptor",
        nsmap={"md": MD, "ds": DS},
        entityID=entity_id,
        validUntil=VALID_UNTIL,
    )


def _serialize(root: etree._Element) -> str:
    body = etree.tostring(root, encoding="unicode", pretty_print=True)
    return f'<?xml version="1.0"?>\n{body}'


def generate_sp_descriptor(
    entity_id: str,
    acs_url: str,
    certificate_pem: str,
    slo_url: str | None = None,
) -> str:
    """Generate SP metadata for this platform.

    Args:
        entity_id: SP entity ID.
        acs_url: Assertion Consumer Service URL (HTTP-POST).
        certificate_pem: Signing certificate, also advertised for encryption.
        slo_url: Single Logout URL. Defaults to ``acs_url`` with ``/acs``
            replaced by ``/slo``.

    Returns:
        EntityDescriptor XML with an XML declaration.
    """
    cert_body = certificate_body(certificate_pem)
    root = _entity_descriptor(entity_id)
    sp = etree.SubElement(
        root,
        f"{{{MD}}}SPSSODescriptor",
        AuthnRequestsSigned="true",
        WantAssertionsSigned="true",
        protocolSupportEnumeration="urn:oasis:names:tc:SAML:2.0:protocol",
    )
    _key_descriptor(sp, "signing", cert_body)
    _key_descriptor(sp, "encryption", cert_body)
    etree.SubElement(
        sp,
        f"{{{MD}}}SingleLogoutService",
        Binding=BINDING_HTTP_POST,
        Location=slo_url or acs_url.replace("/acs", "/slo", 1),
    )
    etree.SubElement(sp, f"{{{MD}}}NameIDFormat").text = NAMEID_FORMAT_EMAIL
    etree.SubElement(
        sp,
        f"{{{MD}}}AssertionConsumerService",
        Binding=BINDING_HTTP_POST,
        Location=acs_url,
        index="1",
        isDefault="true",
    )
    return _serialize(root)


def generate_idp_descriptor(
    entity_id: str,
    sso_url: str,
    certificate_pem: str,
    slo_url: str | None = None,
) -> str:
    """Generate IdP metadata for this platform.

    Args:
        entity_id: IdP entity ID.
        sso_url: Single Sign-On URL, advertised for HTTP-POST and HTTP-Redirect.
        certificate_pem: Signing certificate, also advertised for encryption.
        slo_url: Single Logout URL. Defaults to ``sso_url`` with ``/sso``
            replaced by ``/slo``.

    Returns:
        EntityDescriptor XML with an XML declaration.
    """
    cert_body = certificate_body(certificate_pem)
    root = _entity_descriptor(entity_id)
    idp = etree.SubElement(
        root,
        f"{{{MD}}}IDPSSODescriptor",
        WantAuthnRequestsSigned="false",
        protocolSupportEnumeration="urn:oasis:names:tc:SAML:2.0:protocol",
    )
    _key_descriptor(idp, "signing", cert_body)
    _key_descriptor(idp, "encryption", cert_body)
    etree.SubElement(
        idp,
        f"{{{MD}}}SingleLogoutService",
        Binding=BINDING_HTTP_POST,
        Location=slo_url or sso_url.replace("/sso", "/slo", 1),
    )
    etree.SubElement(idp, f"{{{MD}}}NameIDFormat").text = NAMEID_FORMAT_EMAIL
    for binding in (BINDING_HTTP_POST, BINDING_HTTP_REDIRECT):
        etree.SubElement(
            idp,
            f"{{{MD}}}SingleSignOnService",
            Binding=binding,
            Location=sso_url,
        )
    return _serialize(root)


def fetch_metadata(
    metadata_url: str,
    timeout: float = 10.0,
    verify_ssl: bool = True,
    transport: httpx.BaseTransport | None = None,
) -> str:
    """Download a metadata document.

    Args:
        metadata_url: URL to fetch SAML metadata from.
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates.
        transport: Optional httpx transport (used by tests).

    Returns:
        The metadata XML text.

    Raises:
        MalformedMetadata: If the document cannot be retrieved.
    """
    logger.debug("Fetching SAML metadata from %s", metadata_url)
    client_kwargs: dict[str, Any] = {"timeout": timeout, "verify": verify_ssl}
    if transport is not None:
        client_kwargs["transport"] = transport

    try:
        with LoggingClient(protocol_logger=get_protocol_logger(), **client_kwargs) as client:
            response = client.get(metadata_url)
            response.raise_for_status()
            return response.text
    except httpx.TimeoutException as e:
        raise MalformedMetadata(f"Timeout fetching metadata from {metadata_url}") from e
    except httpx.HTTPStatusError as e:
        raise MalformedMetadata(
            f"HTTP {e.response.status_code} fetching metadata from {metadata_url}"
        ) from e
    except httpx.HTTPError as e:
        raise MalformedMetadata(f"Request error fetching metadata: {e}") from e
