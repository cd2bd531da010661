"""SAML XML helpers shared by the metadata codec and the protocol engine."""

from __future__ import annotations

import secrets
from datetime import UTC, datetime

from lxml import etree

# SAML namespace mappings
SAML_NS = {
    "md": "urn:oasis:names:tc:SAML:2.0:metadata",
    "saml": "urn:oasis:names:tc:SAML:2.0:assertion",
    "samlp": "urn:oasis:names:tc:SAML:2.0:protocol",
    "ds": "http://www.w3.org/2000/09/xmldsig#",
}

NAMEID_FORMAT_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
ATTRNAME_FORMAT_BASIC = "urn:oasis:names:tc:SAML:2.0:attrname-format:basic"
AUTHN_CONTEXT_PASSWORD_PROTECTED = (
    "urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"
)
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
SUBJECT_CONFIRMATION_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"

# Common OID attribute names mapped to their friendly names
OID_FRIENDLY_NAMES: dict[str, str] = {
    "urn:oid:0.9.2342.19200300.100.1.1": "uid",
    "urn:oid:0.9.2342.19200300.100.1.3": "email",
    "urn:oid:2.5.4.3": "cn",
    "urn:oid:2.5.4.4": "sn",
    "urn:oid:2.5.4.42": "givenName",
    "urn:oid:2.16.840.1.113730.3.1.241": "displayName",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.6": "eduPersonPrincipalName",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress": "email",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name": "name",
    "http://schemas.microsoft.com/identity/claims/displayname": "displayName",
}

# Entity expansion and network access are disabled for untrusted input.
_PARSER = etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    remove_comments=True,
    huge_tree=False,
)


def parse_xml(data: str | bytes) -> etree._Element:
    """Parse untrusted XML into an lxml element.

    Raises:
        etree.XMLSyntaxError: If the document is not well-formed.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return etree.fromstring(data, parser=_PARSER)


def to_xml_string(element: etree._Element) -> str:
    return etree.tostring(element, encoding="unicode")


def element_text(element: etree._Element | None) -> str | None:
    """Full text content of an element, stripped.

    Joins every text node so a comment inside the element cannot truncate
    the value.
    """
    if element is None:
        return None
    return "".join(element.itertext()).strip()


def generate_id() -> str:
    """Generate a SAML ID (NCName, so it must not start with a digit)."""
    return f"_samltest_{secrets.token_hex(16)}"


def format_instant(moment: datetime) -> str:
    """Format a datetime as a SAML xs:dateTime in UTC."""
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_instant(value: str) -> datetime:
    """Parse a SAML xs:dateTime, with or without fractional seconds.

    Raises:
        ValueError: If the value is not a valid timestamp.
    """
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def friendly_attribute_name(name: str) -> str:
    """Map well-known OID and claim URIs to a short attribute name."""
    return OID_FRIENDLY_NAMES.get(name, name)
