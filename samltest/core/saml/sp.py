"""SAML Service Provider role.

Builds signed AuthnRequests for SP-initiated SSO and validates SAML
Responses delivered to the Assertion Consumer Service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from lxml import etree

from samltest.core.crypto.certs import SigningMaterial
from samltest.core.errors import AssertionInvalid
from samltest.core.saml.bindings import (
    BINDING_HTTP_POST,
    build_redirect_url,
    encode_post,
    encode_redirect,
)
from samltest.core.saml.signature import SignatureLocation, sign_query, verify_document
from samltest.core.saml.utils import (
    AUTHN_CONTEXT_PASSWORD_PROTECTED,
    NAMEID_FORMAT_EMAIL,
    SAML_NS,
    STATUS_SUCCESS,
    element_text,
    format_instant,
    friendly_attribute_name,
    generate_id,
    parse_instant,
    to_xml_string,
)

logger = logging.getLogger(__name__)

SAML = SAML_NS["saml"]
SAMLP = SAML_NS["samlp"]


@dataclass
class SAMLRequest:
    """Represents a SAML AuthnRequest."""

    id: str
    issue_instant: str
    issuer: str
    destination: str
    acs_url: str
    name_id_policy_format: str = NAMEID_FORMAT_EMAIL
    authn_context_class_ref: str | None = AUTHN_CONTEXT_PASSWORD_PROTECTED
    force_authn: bool = False

    def to_element(self) -> etree._Element:
        """Build the AuthnRequest element."""
        attributes = {
            "ID": self.id,
            "Version": "2.0",
            "IssueInstant": self.issue_instant,
            "Destination": self.destination,
            "AssertionConsumerServiceURL": self.acs_url,
            "ProtocolBinding": BINDING_HTTP_POST,
        }
        if self.force_authn:
            attributes["ForceAuthn"] = "true"

        root = etree.Element(
            f"{{{SAMLP}}}AuthnRequest",
            attributes,
            nsmap={"samlp": SAMLP, "saml": SAML},
        )
        etree.SubElement(root, f"{{{SAML}}}Issuer").text = self.issuer
        etree.SubElement(
            root,
            f"{{{SAMLP}}}NameIDPolicy",
            Format=self.name_id_policy_format,
            AllowCreate="true",
        )
        if self.authn_context_class_ref:
            context = etree.SubElement(root, f"{{{SAMLP}}}RequestedAuthnContext", Comparison="exact")
            etree.SubElement(context, f"{{{SAML}}}AuthnContextClassRef").text = self.authn_context_class_ref
        return root

    def to_xml(self) -> str:
        """Generate the AuthnRequest XML."""
        return to_xml_string(self.to_element())

    def encode_redirect(self) -> str:
        """Encode request for HTTP-Redirect binding (deflate + base64)."""
        return encode_redirect(self.to_xml())

    def encode_post(self) -> str:
        """Encode request for HTTP-POST binding (base64 only)."""
        return encode_post(self.to_xml())


@dataclass
class SAMLAssertion:
    """Represents a SAML Assertion."""

    assertion_id: str
    issuer: str | None
    subject_name_id: str | None
    subject_name_id_format: str | None
    conditions_not_before: str | None
    conditions_not_on_or_after: str | None
    audience_restrictions: list[str] = field(default_factory=list)
    has_audience_restriction: bool = False
    confirmation_not_on_or_after: str | None = None
    confirmation_in_response_to: str | None = None
    confirmation_recipient: str | None = None
    authn_instant: str | None = None
    authn_context_class_ref: str | None = None
    session_index: str | None = None
    attributes: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_element(cls, elem: etree._Element) -> SAMLAssertion:
        """Parse an Assertion XML element."""
        subject_elem = elem.find("saml:Subject/saml:NameID", SAML_NS)
        confirmation = elem.find(
            "saml:Subject/saml:SubjectConfirmation/saml:SubjectConfirmationData", SAML_NS
        )

        conditions_elem = elem.find("saml:Conditions", SAML_NS)
        audience_restrictions: list[str] = []
        has_audience_restriction = False
        if conditions_elem is not None:
            for restriction in conditions_elem.findall("saml:AudienceRestriction", SAML_NS):
                has_audience_restriction = True
                for audience_elem in restriction.findall("saml:Audience", SAML_NS):
                    if text := element_text(audience_elem):
                        audience_restrictions.append(text)

        authn_stmt = elem.find("saml:AuthnStatement", SAML_NS)
        context_elem = (
            authn_stmt.find("saml:AuthnContext/saml:AuthnContextClassRef", SAML_NS)
            if authn_stmt is not None
            else None
        )

        attributes: dict[str, list[str]] = {}
        for attr_elem in elem.findall("saml:AttributeStatement/saml:Attribute", SAML_NS):
            attr_name = attr_elem.get("Name", "")
            if not attr_name:
                continue
            values = [
                text
                for value_elem in attr_elem.findall("saml:AttributeValue", SAML_NS)
                if (text := element_text(value_elem))
            ]
            attributes.setdefault(attr_name, []).extend(values)

        return cls(
            assertion_id=elem.get("ID", ""),
            issuer=element_text(elem.find("saml:Issuer", SAML_NS)),
            subject_name_id=element_text(subject_elem),
            subject_name_id_format=subject_elem.get("Format") if subject_elem is not None else None,
            conditions_not_before=conditions_elem.get("NotBefore") if conditions_elem is not None else None,
            conditions_not_on_or_after=(
                conditions_elem.get("NotOnOrAfter") if conditions_elem is not None else None
            ),
            audience_restrictions=audience_restrictions,
            has_audience_restriction=has_audience_restriction,
            confirmation_not_on_or_after=confirmation.get("NotOnOrAfter") if confirmation is not None else None,
            confirmation_in_response_to=confirmation.get("InResponseTo") if confirmation is not None else None,
            confirmation_recipient=confirmation.get("Recipient") if confirmation is not None else None,
            authn_instant=authn_stmt.get("AuthnInstant") if authn_stmt is not None else None,
            authn_context_class_ref=element_text(context_elem),
            session_index=authn_stmt.get("SessionIndex") if authn_stmt is not None else None,
            attributes=attributes,
        )


@dataclass
class SAMLResponse:
    """Represents a parsed SAML Response."""

    response_id: str
    in_response_to: str | None
    issue_instant: str | None
    destination: str | None
    issuer: str | None
    status_code: str | None
    status_message: str | None
    assertions: list[SAMLAssertion] = field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.status_code == STATUS_SUCCESS

    @classmethod
    def from_element(cls, root: etree._Element) -> SAMLResponse:
        """Parse a Response XML element."""
        status_elem = root.find("samlp:Status/samlp:StatusCode", SAML_NS)
        return cls(
            response_id=root.get("ID", ""),
            in_response_to=root.get("InResponseTo"),
            issue_instant=root.get("IssueInstant"),
            destination=root.get("Destination"),
            issuer=element_text(root.find("saml:Issuer", SAML_NS)),
            status_code=status_elem.get("Value") if status_elem is not None else None,
            status_message=element_text(root.find("samlp:Status/samlp:StatusMessage", SAML_NS)),
            assertions=[
                SAMLAssertion.from_element(assertion_elem)
                for assertion_elem in root.findall("saml:Assertion", SAML_NS)
            ],
        )


@dataclass
class ValidatedAssertion:
    """Identity data taken from a Response that passed every validation rule."""

    name_id: str
    name_id_format: str | None
    attributes: dict[str, Any]
    issuer: str
    session_index: str | None
    response_id: str
    in_response_to: str | None
    signature_location: SignatureLocation
    certificate_fingerprint: str


def peek_issuer(root: etree._Element) -> str | None:
    """Read the claimed issuer of an unverified Response.

    Used only to select trust material; the value is re-checked against the
    signed content after verification.
    """
    issuer = element_text(root.find("saml:Issuer", SAML_NS))
    if issuer:
        return issuer
    return element_text(root.find("saml:Assertion/saml:Issuer", SAML_NS)) or None


def flatten_attributes(attributes: dict[str, list[str]]) -> dict[str, Any]:
    """Collapse single-valued attributes to scalars.

    Well-known OID and claim URIs also get their short name (for example
    ``email``) when that name is not already present.
    """
    flattened: dict[str, Any] = {}
    for name, values in attributes.items():
        value: Any = values[0] if len(values) == 1 else list(values)
        flattened[name] = value
    for name, value in list(flattened.items()):
        friendly = friendly_attribute_name(name)
        if friendly != name and friendly not in flattened:
            flattened[friendly] = value
    return flattened


def _check_time_window(assertion: SAMLAssertion, now: datetime, skew: timedelta) -> None:
    try:
        if assertion.conditions_not_before:
            not_before = parse_instant(assertion.conditions_not_before)
            if now < not_before - skew:
                raise AssertionInvalid(
                    f"Assertion not valid yet (NotBefore: {assertion.conditions_not_before})"
                )
        for label, value in (
            ("NotOnOrAfter", assertion.conditions_not_on_or_after),
            ("SubjectConfirmationData NotOnOrAfter", assertion.confirmation_not_on_or_after),
        ):
            if value and now >= parse_instant(value) + skew:
                raise AssertionInvalid(f"Assertion has expired ({label}: {value})")
    except ValueError as e:
        raise AssertionInvalid(f"Assertion has an invalid timestamp: {e}") from e


def validate_response(
    root: etree._Element,
    certificates: list[str],
    *,
    expected_issuer: str,
    audience: str,
    clock_skew: timedelta = timedelta(minutes=3),
    expected_request_id: str | None = None,
    now: datetime | None = None,
) -> ValidatedAssertion:
    """Validate a SAML Response.

    Rules are applied in order: signature, status, assertion presence,
    issuer, NameID, validity window, audience, and InResponseTo. Every
    value is read from the signed element only.

    Args:
        root: Parsed Response element.
        certificates: Trusted certificates of the expected issuer.
        expected_issuer: Entity ID the Response must come from.
        audience: Entity ID of this SP, which must be in any AudienceRestriction.
        clock_skew: Tolerance applied to both ends of the validity window.
        expected_request_id: AuthnRequest ID the Response must answer, if known.
        now: Current time (injectable for tests).

    Returns:
        ValidatedAssertion with the subject and attributes.

    Raises:
        SignatureInvalid: If the signature does not verify.
        AssertionInvalid: If any other rule fails.
    """
    now = now or datetime.now(UTC)
    verified = verify_document(root, certificates)

    if verified.location == SignatureLocation.RESPONSE:
        response = SAMLResponse.from_element(verified.signed_element)
        if not response.assertions:
            raise AssertionInvalid("SAML Response contains no assertion")
        assertion = response.assertions[0]
    elif verified.location == SignatureLocation.ASSERTION:
        # Unsigned envelope: only status and issuer are read from it
        response = SAMLResponse.from_element(root)
        assertion = SAMLAssertion.from_element(verified.signed_element)
    else:
        raise AssertionInvalid("Signed element is neither a Response nor an Assertion")

    if not response.is_success:
        detail = f": {response.status_message}" if response.status_message else ""
        raise AssertionInvalid(f"SAML Response status is not Success ({response.status_code}){detail}")

    # An issuer-less Response is attributed to expected_issuer by the caller
    issuer = assertion.issuer or response.issuer
    if issuer is not None and issuer != expected_issuer:
        raise AssertionInvalid(
            f"Response issuer ({issuer}) does not match expected issuer ({expected_issuer})"
        )
    if response.issuer and assertion.issuer and response.issuer != assertion.issuer:
        raise AssertionInvalid(
            f"Assertion issuer ({assertion.issuer}) differs from Response issuer ({response.issuer})"
        )

    if not assertion.subject_name_id:
        raise AssertionInvalid("Assertion has no NameID")

    _check_time_window(assertion, now, clock_skew)

    if assertion.has_audience_restriction and audience not in assertion.audience_restrictions:
        raise AssertionInvalid(
            f"SP Entity ID ({audience}) not in audience restrictions ({assertion.audience_restrictions})"
        )

    in_response_to = assertion.confirmation_in_response_to or response.in_response_to
    if expected_request_id is not None and in_response_to != expected_request_id:
        raise AssertionInvalid(
            f"InResponseTo ({in_response_to}) does not match request ID ({expected_request_id})"
        )

    return ValidatedAssertion(
        name_id=assertion.subject_name_id,
        name_id_format=assertion.subject_name_id_format,
        attributes=flatten_attributes(assertion.attributes),
        issuer=expected_issuer,
        session_index=assertion.session_index,
        response_id=response.response_id,
        in_response_to=in_response_to,
        signature_location=verified.location,
        certificate_fingerprint=verified.certificate_fingerprint,
    )


class SAMLServiceProvider:
    """SAML Service Provider for this platform.

    This class handles:
    - Generating signed AuthnRequests for SP-Initiated SSO
    - Validating SAML Responses at the ACS
    """

    def __init__(self, entity_id: str, acs_url: str, signing: SigningMaterial) -> None:
        """Initialize the SAML Service Provider.

        Args:
            entity_id: SP entity ID (Issuer of AuthnRequests, expected Audience).
            acs_url: Assertion Consumer Service URL.
            signing: Key and certificate used to sign AuthnRequests.
        """
        self.entity_id = entity_id
        self.acs_url = acs_url
        self.signing = signing

    def create_authn_request(
        self,
        destination: str,
        force_authn: bool = False,
        now: datetime | None = None,
    ) -> SAMLRequest:
        """Create an AuthnRequest for SP-Initiated SSO.

        Args:
            destination: IdP Single Sign-On URL.
            force_authn: Request fresh authentication even if user has existing session.
            now: Issue instant (defaults to the current time).

        Returns:
            SAMLRequest object ready to be encoded and sent.
        """
        return SAMLRequest(
            id=generate_id(),
            issue_instant=format_instant(now or datetime.now(UTC)),
            issuer=self.entity_id,
            destination=destination,
            acs_url=self.acs_url,
            force_authn=force_authn,
        )

    def build_sso_redirect_url(self, request: SAMLRequest, relay_state: str | None = None) -> str:
        """Build the signed HTTP-Redirect URL carrying the AuthnRequest.

        Args:
            request: The SAMLRequest to encode.
            relay_state: Optional RelayState to preserve across the SSO flow.

        Returns:
            Complete URL to redirect the user to.
        """
        query = sign_query(
            "SAMLRequest",
            request.encode_redirect(),
            self.signing.private_key_pem,
            relay_state=relay_state,
        )
        return build_redirect_url(request.destination, query)

    def validate_response(
        self,
        root: etree._Element,
        certificates: list[str],
        expected_issuer: str,
        clock_skew: timedelta,
        expected_request_id: str | None = None,
        now: datetime | None = None,
    ) -> ValidatedAssertion:
        """Validate a Response addressed to this SP. See ``validate_response``."""
        return validate_response(
            root,
            certificates,
            expected_issuer=expected_issuer,
            audience=self.entity_id,
            clock_skew=clock_skew,
            expected_request_id=expected_request_id,
            now=now,
        )
