"""Tests for XML and redirect-binding signatures."""

from urllib.parse import parse_qsl

import pytest
from lxml import etree

from samltest.core.crypto.certs import SigningMaterial, certificate_body
from samltest.core.errors import SignatureInvalid
from samltest.core.saml.bindings import encode_redirect
from samltest.core.saml.idp import build_response
from samltest.core.saml.signature import (
    SignatureLocation,
    has_signature,
    sign_document,
    sign_query,
    signature_algorithm_name,
    verify_document,
    verify_query,
)
from samltest.core.saml.utils import SAML_NS, parse_xml, to_xml_string


def _unsigned_response() -> etree._Element:
    return build_response(
        issuer="https://idp.example",
        destination="https://sp.example/acs",
        audience="https://sp.example/metadata",
        name_id="a@b.com",
        attributes={"email": "a@b.com"},
    )


def _signed_xml(material: SigningMaterial) -> str:
    signed = sign_document(_unsigned_response(), material.private_key_pem, material.certificate_pem)
    return to_xml_string(signed)


class TestXmlSignature:
    """Tests for enveloped XML-DSig signatures."""

    def test_sign_and_verify(self, idp_material: SigningMaterial) -> None:
        root = parse_xml(_signed_xml(idp_material))

        verified = verify_document(root, [idp_material.certificate_pem])

        assert verified.location == SignatureLocation.RESPONSE
        assert verified.certificate_fingerprint == idp_material.fingerprint
        assert verified.algorithm == "RSA-SHA256"

    def test_signature_follows_issuer(self, idp_material: SigningMaterial) -> None:
        root = parse_xml(_signed_xml(idp_material))
        assert etree.QName(root[0]).localname == "Issuer"
        assert etree.QName(root[1]).localname == "Signature"
        assert signature_algorithm_name(root) == "RSA-SHA256"

    def test_bare_certificate_body_is_accepted(self, idp_material: SigningMaterial) -> None:
        """Certificates stored as metadata base64 bodies still verify."""
        root = parse_xml(_signed_xml(idp_material))
        verify_document(root, [certificate_body(idp_material.certificate_pem)])

    def test_untrusted_certificate(self, idp_material: SigningMaterial, foreign_material: SigningMaterial) -> None:
        root = parse_xml(_signed_xml(idp_material))
        with pytest.raises(SignatureInvalid):
            verify_document(root, [foreign_material.certificate_pem])

    def test_signed_by_attacker(self, idp_material: SigningMaterial, foreign_material: SigningMaterial) -> None:
        """A document signed with another key fails even though it embeds that key's certificate."""
        root = parse_xml(_signed_xml(foreign_material))
        with pytest.raises(SignatureInvalid):
            verify_document(root, [idp_material.certificate_pem])

    def test_tampered_content(self, idp_material: SigningMaterial) -> None:
        root = parse_xml(_signed_xml(idp_material))
        name_id = root.find("saml:Assertion/saml:Subject/saml:NameID", SAML_NS)
        name_id.text = "admin@b.com"

        with pytest.raises(SignatureInvalid):
            verify_document(root, [idp_material.certificate_pem])

    def test_unsigned_document(self, idp_material: SigningMaterial) -> None:
        root = _unsigned_response()
        assert has_signature(root) is False
        with pytest.raises(SignatureInvalid, match="No signature"):
            verify_document(root, [idp_material.certificate_pem])

    def test_no_certificates(self, idp_material: SigningMaterial) -> None:
        root = parse_xml(_signed_xml(idp_material))
        with pytest.raises(SignatureInvalid, match="No trusted certificate"):
            verify_document(root, [])

    def test_first_matching_certificate_wins(
        self, idp_material: SigningMaterial, foreign_material: SigningMaterial
    ) -> None:
        """During key rollover any listed certificate may verify."""
        root = parse_xml(_signed_xml(idp_material))
        verified = verify_document(root, [foreign_material.certificate_pem, idp_material.certificate_pem])
        assert verified.certificate_fingerprint == idp_material.fingerprint

    def test_unparseable_certificate_is_skipped(self, idp_material: SigningMaterial) -> None:
        root = parse_xml(_signed_xml(idp_material))
        verified = verify_document(root, ["QUJDREVGR0g=", idp_material.certificate_pem])
        assert verified.certificate_fingerprint == idp_material.fingerprint

    def test_only_unparseable_certificate(self, idp_material: SigningMaterial) -> None:
        root = parse_xml(_signed_xml(idp_material))
        with pytest.raises(SignatureInvalid, match="Signature validation failed"):
            verify_document(root, ["QUJDREVGR0g="])

    def test_all_certificates_fail(self, idp_material: SigningMaterial, foreign_material: SigningMaterial) -> None:
        root = parse_xml(_signed_xml(foreign_material))
        with pytest.raises(SignatureInvalid, match="all 2 trusted certificates"):
            verify_document(root, [idp_material.certificate_pem, idp_material.certificate_pem])

    def test_element_without_id(self, idp_material: SigningMaterial) -> None:
        root = etree.Element("{urn:oasis:names:tc:SAML:2.0:protocol}Response")
        with pytest.raises(ValueError):
            sign_document(root, idp_material.private_key_pem, idp_material.certificate_pem)


class TestRedirectSignature:
    """Tests for detached HTTP-Redirect signatures."""

    MESSAGE = encode_redirect('<samlp:AuthnRequest xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" ID="_1"/>')

    def test_sign_and_verify(self, signing_material: SigningMaterial) -> None:
        query = sign_query("SAMLRequest", self.MESSAGE, signing_material.private_key_pem, relay_state="/home")
        values = dict(parse_qsl(query))

        assert list(values) == ["SAMLRequest", "RelayState", "SigAlg", "Signature"]
        assert verify_query("SAMLRequest", values, [signing_material.certificate_pem], query) == (
            signing_material.fingerprint
        )
        assert verify_query("SAMLRequest", values, [signing_material.certificate_pem]) == (
            signing_material.fingerprint
        )

    def test_without_relay_state(self, signing_material: SigningMaterial) -> None:
        query = sign_query("SAMLRequest", self.MESSAGE, signing_material.private_key_pem)
        values = dict(parse_qsl(query))
        assert "RelayState" not in values
        verify_query("SAMLRequest", values, [signing_material.certificate_pem], query)

    def test_tampered_relay_state(self, signing_material: SigningMaterial) -> None:
        query = sign_query("SAMLRequest", self.MESSAGE, signing_material.private_key_pem, relay_state="/home")
        values = dict(parse_qsl(query))
        values["RelayState"] = "/admin"

        with pytest.raises(SignatureInvalid):
            verify_query("SAMLRequest", values, [signing_material.certificate_pem])

    def test_wrong_certificate(self, signing_material: SigningMaterial, foreign_material: SigningMaterial) -> None:
        query = sign_query("SAMLRequest", self.MESSAGE, signing_material.private_key_pem)
        with pytest.raises(SignatureInvalid):
            verify_query("SAMLRequest", dict(parse_qsl(query)), [foreign_material.certificate_pem], query)

    def test_unsupported_algorithm(self, signing_material: SigningMaterial) -> None:
        query = sign_query("SAMLRequest", self.MESSAGE, signing_material.private_key_pem)
        values = dict(parse_qsl(query))
        values["SigAlg"] = "http://www.w3.org/2000/09/xmldsig#rsa-sha1"

        with pytest.raises(SignatureInvalid, match="Unsupported"):
            verify_query("SAMLRequest", values, [signing_material.certificate_pem])

    def test_signature_not_base64(self, signing_material: SigningMaterial) -> None:
        query = sign_query("SAMLRequest", self.MESSAGE, signing_material.private_key_pem)
        values = dict(parse_qsl(query))
        values["Signature"] = "***"

        with pytest.raises(SignatureInvalid, match="base64"):
            verify_query("SAMLRequest", values, [signing_material.certificate_pem])
