"""SAML Identity Provider role.

Parses incoming AuthnRequests and issues signed Responses that are
delivered to the SP's Assertion Consumer Service through an
auto-submitting HTTP-POST form.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from lxml import etree
from markupsafe import Markup, escape

from samltest.core.crypto.certs import SigningMaterial
from samltest.core.errors import RequestInvalid
from samltest.core.saml.bindings import encode_post
from samltest.core.saml.signature import sign_document
from samltest.core.saml.utils import (
    ATTRNAME_FORMAT_BASIC,
    AUTHN_CONTEXT_PASSWORD_PROTECTED,
    NAMEID_FORMAT_EMAIL,
    SAML_NS,
    STATUS_SUCCESS,
    SUBJECT_CONFIRMATION_BEARER,
    element_text,
    format_instant,
    generate_id,
    parse_xml,
    to_xml_string,
)

logger = logging.getLogger(__name__)

SAML = SAML_NS["saml"]
SAMLP = SAML_NS["samlp"]
XS = "http://www.w3.org/2001/XMLSchema"
XSI = "http://www.w3.org/2001/XMLSchema-instance"


@dataclass
class AuthnRequestInfo:
    """Fields of a received AuthnRequest."""

    id: str
    issuer: str | None
    acs_url: str | None
    destination: str | None
    issue_instant: str | None
    name_id_format: str | None
    force_authn: bool
    root: etree._Element


def parse_authn_request(xml: str) -> AuthnRequestInfo:
    """Parse an AuthnRequest document.

    Raises:
        RequestInvalid: If the XML is malformed or not an AuthnRequest with an ID.
    """
    try:
        root = parse_xml(xml)
    except etree.XMLSyntaxError as e:
        raise RequestInvalid(f"Failed to parse AuthnRequest XML: {e}") from e

    if root.tag != f"{{{SAMLP}}}AuthnRequest":
        raise RequestInvalid(f"Expected samlp:AuthnRequest, got {etree.QName(root).localname}")

    request_id = root.get("ID")
    if not request_id:
        raise RequestInvalid("AuthnRequest has no ID")

    policy = root.find("samlp:NameIDPolicy", SAML_NS)
    return AuthnRequestInfo(
        id=request_id,
        issuer=element_text(root.find("saml:Issuer", SAML_NS)) or None,
        acs_url=root.get("AssertionConsumerServiceURL"),
        destination=root.get("Destination"),
        issue_instant=root.get("IssueInstant"),
        name_id_format=policy.get("Format") if policy is not None else None,
        force_authn=root.get("ForceAuthn") == "true",
        root=root,
    )


@dataclass
class IssuedResponse:
    """A signed Response ready for delivery to an SP."""

    response_id: str
    acs_url: str
    saml_response: str
    xml: str
    relay_state: str | None = None
    in_response_to: str | None = None

    def form_fields(self) -> dict[str, str]:
        fields = {"SAMLResponse": self.saml_response}
        if self.relay_state:
            fields["RelayState"] = self.relay_state
        return fields


def _add_attribute(parent: etree._Element, name: str, value: Any) -> None:
    attribute = etree.SubElement(
        parent, f"{{{SAML}}}Attribute", Name=name, NameFormat=ATTRNAME_FORMAT_BASIC
    )
    values = value if isinstance(value, (list, tuple)) else [value]
    for item in values:
        value_elem = etree.SubElement(attribute, f"{{{SAML}}}AttributeValue")
        value_elem.set(f"{{{XSI}}}type", "xs:string")
        value_elem.text = str(item)


def build_response(
    *,
    issuer: str,
    destination: str,
    audience: str,
    name_id: str,
    attributes: Mapping[str, Any],
    in_response_to: str | None = None,
    now: datetime | None = None,
    lifetime: timedelta = timedelta(minutes=5),
    clock_skew: timedelta = timedelta(minutes=3),
    name_id_format: str = NAMEID_FORMAT_EMAIL,
) -> etree._Element:
    """Build an unsigned SAML Response carrying one Assertion.

    Args:
        issuer: IdP entity ID.
        destination: SP ACS URL (Destination and SubjectConfirmation Recipient).
        audience: SP entity ID placed in the AudienceRestriction.
        name_id: Subject NameID value.
        attributes: Attribute name to value (or list of values).
        in_response_to: AuthnRequest ID, omitted for IdP-initiated flows.
        now: Issue instant (defaults to the current time).
        lifetime: How long the assertion stays valid.
        clock_skew: Backdating applied to NotBefore.
        name_id_format: NameID Format URI.

    Returns:
        Response element.
    """
    now = now or datetime.now(UTC)
    issue_instant = format_instant(now)
    not_before = format_instant(now - clock_skew)
    not_on_or_after = format_instant(now + lifetime)
    response_id = generate_id()
    assertion_id = generate_id()

    response_attrs = {
        "ID": response_id,
        "Version": "2.0",
        "IssueInstant": issue_instant,
        "Destination": destination,
    }
    if in_response_to:
        response_attrs["InResponseTo"] = in_response_to

    response = etree.Element(
        f"{{{SAMLP}}}Response",
        response_attrs,
        nsmap={"samlp": SAMLP, "saml": SAML, "xs": XS, "xsi": XSI},
    )
    etree.SubElement(response, f"{{{SAML}}}Issuer").text = issuer
    status = etree.SubElement(response, f"{{{SAMLP}}}Status")
    etree.SubElement(status, f"{{{SAMLP}}}StatusCode", Value=STATUS_SUCCESS)

    assertion = etree.SubElement(
        response,
        f"{{{SAML}}}Assertion",
        ID=assertion_id,
        Version="2.0",
        IssueInstant=issue_instant,
    )
    etree.SubElement(assertion, f"{{{SAML}}}Issuer").text = issuer

    subject = etree.SubElement(assertion, f"{{{SAML}}}Subject")
    etree.SubElement(subject, f"{{{SAML}}}NameID", Format=name_id_format).text = name_id
    confirmation = etree.SubElement(
        subject, f"{{{SAML}}}SubjectConfirmation", Method=SUBJECT_CONFIRMATION_BEARER
    )
    confirmation_attrs = {"NotOnOrAfter": not_on_or_after, "Recipient": destination}
    if in_response_to:
        confirmation_attrs["InResponseTo"] = in_response_to
    etree.SubElement(confirmation, f"{{{SAML}}}SubjectConfirmationData", confirmation_attrs)

    conditions = etree.SubElement(
        assertion, f"{{{SAML}}}Conditions", NotBefore=not_before, NotOnOrAfter=not_on_or_after
    )
    restriction = etree.SubElement(conditions, f"{{{SAML}}}AudienceRestriction")
    etree.SubElement(restriction, f"{{{SAML}}}Audience").text = audience

    authn_statement = etree.SubElement(
        assertion,
        f"{{{SAML}}}AuthnStatement",
        AuthnInstant=issue_instant,
        SessionIndex=generate_id(),
    )
    context = etree.SubElement(authn_statement, f"{{{SAML}}}AuthnContext")
    etree.SubElement(context, f"{{{SAML}}}AuthnContextClassRef").text = AUTHN_CONTEXT_PASSWORD_PROTECTED

    if attributes:
        statement = etree.SubElement(assertion, f"{{{SAML}}}AttributeStatement")
        for name, value in attributes.items():
            if value is not None:
                _add_attribute(statement, name, value)

    return response


def render_post_form(action: str, fields: Mapping[str, str]) -> str:
    """Render an HTML page that auto-submits ``fields`` to ``action`` via POST.

    All values are HTML-escaped.
    """
    inputs = Markup("\n").join(
        Markup('      <input type="hidden" name="{}" value="{}"/>').format(name, value)
        for name, value in fields.items()
    )
    return str(
        Markup(
            "<!DOCTYPE html>\n"
            "<html>\n"
            "  <head><title>Redirecting...</title></head>\n"
            '  <body onload="document.forms[0].submit()">\n'
            '    <form method="post" action="{action}">\n'
            "{inputs}\n"
            "      <noscript><button type=\"submit\">Continue</button></noscript>\n"
            "    </form>\n"
            "  </body>\n"
            "</html>\n"
        ).format(action=escape(action), inputs=inputs)
    )


class IdentityProvider:
    """SAML Identity Provider for this platform."""

    def __init__(
        self,
        entity_id: str,
        signing: SigningMaterial,
        lifetime: timedelta = timedelta(minutes=5),
        clock_skew: timedelta = timedelta(minutes=3),
    ) -> None:
        """Initialize the Identity Provider.

        Args:
            entity_id: IdP entity ID (Issuer of Responses).
            signing: Key and certificate used to sign Responses.
            lifetime: Validity of issued assertions.
            clock_skew: Backdating applied to NotBefore.
        """
        self.entity_id = entity_id
        self.signing = signing
        self.lifetime = lifetime
        self.clock_skew = clock_skew

    def issue_response(
        self,
        *,
        acs_url: str,
        audience: str,
        name_id: str,
        attributes: Mapping[str, Any],
        in_response_to: str | None = None,
        relay_state: str | None = None,
        now: datetime | None = None,
    ) -> IssuedResponse:
        """Build and sign a Response for delivery to ``acs_url``.

        Returns:
            IssuedResponse with the base64 payload for the HTTP-POST binding.
        """
        unsigned = build_response(
            issuer=self.entity_id,
            destination=acs_url,
            audience=audience,
            name_id=name_id,
            attributes=attributes,
            in_response_to=in_response_to,
            now=now,
            lifetime=self.lifetime,
            clock_skew=self.clock_skew,
        )
        signed = sign_document(unsigned, self.signing.private_key_pem, self.signing.certificate_pem)
        xml = to_xml_string(signed)
        logger.debug("Issued SAML Response %s for %s", signed.get("ID"), audience)
        return IssuedResponse(
            response_id=signed.get("ID", ""),
            acs_url=acs_url,
            saml_response=encode_post(xml),
            xml=xml,
            relay_state=relay_state,
            in_response_to=in_response_to,
        )
