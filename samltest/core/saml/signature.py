"""SAML signature creation and verification.

XML documents carry enveloped XML-DSig signatures (signxml over lxml trees).
HTTP-Redirect messages carry a detached RSA-SHA256 signature over the query
string, computed directly with ``cryptography``.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from urllib.parse import quote_plus

from cryptography import x509
from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree
from signxml import (
    CanonicalizationMethod,
    DigestAlgorithm,
    InvalidSignature,
    SignatureMethod,
    XMLSigner,
    XMLVerifier,
    methods,
)
from signxml.exceptions import InvalidInput

from samltest.core.crypto.certs import fingerprint, load_signing_key, normalize_pem
from samltest.core.errors import SignatureInvalid
from samltest.core.saml.utils import SAML_NS

logger = logging.getLogger(__name__)

DSIG_NS = SAML_NS["ds"]
SIG_ALG_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"

# Mapping of signature algorithm URIs to friendly names
SIGNATURE_ALGORITHMS: dict[str, str] = {
    "http://www.w3.org/2000/09/xmldsig#rsa-sha1": "RSA-SHA1",
    SIG_ALG_RSA_SHA256: "RSA-SHA256",
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha384": "RSA-SHA384",
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512": "RSA-SHA512",
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256": "ECDSA-SHA256",
}

# Hash used for detached redirect-binding signatures, keyed by SigAlg
_REDIRECT_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    SIG_ALG_RSA_SHA256: hashes.SHA256,
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha384": hashes.SHA384,
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512": hashes.SHA512,
}


class SignatureLocation(StrEnum):
    """Which element a verified signature covers."""

    RESPONSE = "response"
    ASSERTION = "assertion"
    REQUEST = "request"


@dataclass
class VerifiedDocument:
    """Outcome of a successful XML signature verification.

    Only ``signed_element`` may be trusted; content outside it was not
    covered by the signature.
    """

    signed_element: etree._Element
    location: SignatureLocation
    certificate_fingerprint: str
    algorithm: str | None = None


def has_signature(root: etree._Element) -> bool:
    """Check whether the document carries any ds:Signature element."""
    return root.find(f".//{{{DSIG_NS}}}Signature") is not None


def signature_algorithm_name(root: etree._Element) -> str | None:
    """Friendly name of the first signature's SignatureMethod, if any."""
    method = root.find(f".//{{{DSIG_NS}}}Signature/{{{DSIG_NS}}}SignedInfo/{{{DSIG_NS}}}SignatureMethod")
    if method is None:
        return None
    algorithm = method.get("Algorithm") or ""
    return SIGNATURE_ALGORITHMS.get(algorithm, algorithm)


def sign_document(root: etree._Element, key_pem: str, cert_pem: str) -> etree._Element:
    """Apply an enveloped RSA-SHA256 signature to a SAML message.

    The signature is placed directly after the message's Issuer element
    and references the root's ``ID`` attribute.

    Args:
        root: Response, Assertion, or AuthnRequest element with an ``ID``.
        key_pem: PEM-encoded RSA private key.
        cert_pem: PEM-encoded certificate embedded in KeyInfo.

    Returns:
        The signed root element.
    """
    reference_id = root.get("ID")
    if not reference_id:
        raise ValueError("Element to sign has no ID attribute")

    placeholder = etree.Element(f"{{{DSIG_NS}}}Signature", Id="placeholder", nsmap={"ds": DSIG_NS})
    issuer = root.find(f"{{{SAML_NS['saml']}}}Issuer")
    if issuer is not None:
        issuer.addnext(placeholder)
    else:
        root.insert(0, placeholder)

    signer = XMLSigner(
        method=methods.enveloped,
        signature_algorithm=SignatureMethod.RSA_SHA256,
        digest_algorithm=DigestAlgorithm.SHA256,
        c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0,
    )
    return signer.sign(
        root,
        key=key_pem.encode("utf-8"),
        cert=cert_pem,
        reference_uri=f"#{reference_id}",
    )


def _location_of(element: etree._Element) -> SignatureLocation:
    local_name = etree.QName(element).localname
    if local_name == "Assertion":
        return SignatureLocation.ASSERTION
    if local_name == "Response":
        return SignatureLocation.RESPONSE
    return SignatureLocation.REQUEST


def verify_document(root: etree._Element, certificates: Iterable[str]) -> VerifiedDocument:
    """Verify the enveloped signature of a SAML message.

    Certificates are tried in the given order and the first one that
    verifies wins.

    Args:
        root: Parsed message.
        certificates: Trusted PEM certificates of the claimed signer.

    Returns:
        VerifiedDocument holding the signed element.

    Raises:
        SignatureInvalid: If there is no signature, no certificate, or no
            certificate verifies the signature.
    """
    certificates = list(certificates)
    if not has_signature(root):
        raise SignatureInvalid("No signature found in SAML message")
    if not certificates:
        raise SignatureInvalid("No trusted certificate available to verify signature")

    algorithm = signature_algorithm_name(root)
    errors: list[str] = []
    for cert_pem in certificates:
        try:
            verified = XMLVerifier().verify(root, x509_cert=normalize_pem(cert_pem))
        except (InvalidSignature, InvalidInput, ValueError) as e:
            # ValueError: the certificate itself does not parse
            errors.append(f"{fingerprint(cert_pem)[:23]}: {e}")
            continue

        # A single reference is expected, so a single result is returned
        if isinstance(verified, list):
            verified = verified[0]
        signed_element = verified.signed_xml
        logger.debug("Signature verified with certificate %s", fingerprint(cert_pem))
        return VerifiedDocument(
            signed_element=signed_element,
            location=_location_of(signed_element),
            certificate_fingerprint=fingerprint(cert_pem),
            algorithm=algorithm,
        )

    logger.debug("Signature verification failed for all certificates: %s", errors)
    if len(certificates) == 1:
        raise SignatureInvalid(f"Signature validation failed: {errors[0].split(': ', 1)[-1]}")
    raise SignatureInvalid(
        f"Signature validation failed against all {len(certificates)} trusted certificates"
    )


def _signed_octets(
    message_param: str,
    values: Mapping[str, str],
    raw_query: str | None = None,
) -> bytes:
    """Build the octet string covered by a redirect-binding signature.

    When the raw query string is available its encoded values are used
    verbatim, since the signer's URL encoding may differ from ours.
    """
    keys = [message_param, "RelayState", "SigAlg"]
    raw_values: dict[str, str] = {}
    if raw_query:
        for pair in raw_query.split("&"):
            name, _, value = pair.partition("=")
            if name in keys and name not in raw_values:
                raw_values[name] = value

    parts = []
    for key in keys:
        if key in raw_values:
            parts.append(f"{key}={raw_values[key]}")
        elif values.get(key) is not None:
            parts.append(f"{key}={quote_plus(values[key])}")
    return "&".join(parts).encode("ascii")


def sign_query(
    message_param: str,
    message: str,
    key_pem: str,
    relay_state: str | None = None,
) -> str:
    """Build a signed HTTP-Redirect query string.

    Args:
        message_param: ``SAMLRequest`` or ``SAMLResponse``.
        message: Deflated, base64-encoded message.
        key_pem: PEM-encoded RSA private key.
        relay_state: Optional RelayState.

    Returns:
        URL-encoded query string ending in ``&Signature=...``.
    """
    values = {message_param: message, "SigAlg": SIG_ALG_RSA_SHA256}
    if relay_state:
        values["RelayState"] = relay_state
    octets = _signed_octets(message_param, values)

    key = load_signing_key(key_pem)
    signature = key.sign(octets, padding.PKCS1v15(), hashes.SHA256())
    encoded_signature = base64.b64encode(signature).decode("ascii")
    return f"{octets.decode('ascii')}&Signature={quote_plus(encoded_signature)}"


def verify_query(
    message_param: str,
    values: Mapping[str, str],
    certificates: Iterable[str],
    raw_query: str | None = None,
) -> str:
    """Verify a detached HTTP-Redirect binding signature.

    Args:
        message_param: ``SAMLRequest`` or ``SAMLResponse``.
        values: Decoded query parameters, including ``SigAlg`` and ``Signature``.
        certificates: Trusted PEM certificates, tried in order.
        raw_query: Original query string, if available.

    Returns:
        Fingerprint of the certificate that verified the signature.

    Raises:
        SignatureInvalid: If the algorithm is unsupported or no certificate
            verifies the signature.
    """
    sig_alg = values.get("SigAlg") or ""
    hash_cls = _REDIRECT_HASHES.get(sig_alg)
    if hash_cls is None:
        raise SignatureInvalid(f"Unsupported redirect signature algorithm: {sig_alg or 'missing'}")

    try:
        signature = base64.b64decode(values.get("Signature") or "", validate=True)
    except (binascii.Error, ValueError) as e:
        raise SignatureInvalid("Redirect signature is not valid base64") from e

    octets = _signed_octets(message_param, values, raw_query)
    for cert_pem in certificates:
        try:
            cert = x509.load_pem_x509_certificate(normalize_pem(cert_pem).encode("utf-8"))
        except ValueError:
            continue
        public_key = cert.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            continue
        try:
            public_key.verify(signature, octets, padding.PKCS1v15(), hash_cls())
        except CryptoInvalidSignature:
            continue
        return fingerprint(cert_pem)

    raise SignatureInvalid("Redirect binding signature does not match any trusted certificate")
