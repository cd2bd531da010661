"""SAML HTTP binding encodings.

HTTP-Redirect carries messages raw-DEFLATE compressed and base64 encoded in
the query string; HTTP-POST carries them base64 encoded in a form field.
"""

from __future__ import annotations

import base64
import binascii
import zlib
from urllib.parse import parse_qsl, urlencode, urlparse

BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
BINDING_HTTP_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"

REDIRECT = "redirect"
POST = "post"

# Upper bound on inflated message size
MAX_INFLATED_SIZE = 1024 * 1024


class BindingError(ValueError):
    """Raised when a message cannot be decoded for its binding."""


def encode_redirect(xml: str) -> str:
    """Encode a message for HTTP-Redirect binding (raw deflate + base64)."""
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
    compressed = compressor.compress(xml.encode("utf-8")) + compressor.flush()
    return base64.b64encode(compressed).decode("ascii")


def decode_redirect(encoded: str) -> str:
    """Decode an HTTP-Redirect message.

    Raises:
        BindingError: If the value is not base64 raw-deflated UTF-8.
    """
    try:
        compressed = base64.b64decode(encoded, validate=False)
        decompressor = zlib.decompressobj(-15)
        xml_bytes = decompressor.decompress(compressed, MAX_INFLATED_SIZE)
        if decompressor.unconsumed_tail:
            raise BindingError("Inflated message exceeds size limit")
        return xml_bytes.decode("utf-8")
    except (binascii.Error, zlib.error, UnicodeDecodeError) as e:
        raise BindingError(f"Failed to decode redirect message: {e}") from e


def encode_post(xml: str) -> str:
    """Encode a message for HTTP-POST binding (base64 only)."""
    return base64.b64encode(xml.encode("utf-8")).decode("ascii")


def decode_post(encoded: str) -> str:
    """Decode an HTTP-POST message.

    Raises:
        BindingError: If the value is not base64 encoded UTF-8.
    """
    try:
        return base64.b64decode("".join(encoded.split()), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise BindingError(f"Failed to decode POST message: {e}") from e


def decode_message(encoded: str, binding: str) -> str:
    """Decode a SAMLRequest/SAMLResponse value for the named binding."""
    if binding == REDIRECT:
        return decode_redirect(encoded)
    if binding == POST:
        return decode_post(encoded)
    raise BindingError(f"Unsupported binding: {binding}")


def build_redirect_url(destination: str, query: str) -> str:
    """Append an encoded query string to a destination URL.

    Query parameters already present on the destination are kept ahead of
    the SAML parameters so the signed portion stays contiguous.

    Args:
        destination: Endpoint URL, possibly with its own query.
        query: Already URL-encoded SAML query string.

    Returns:
        Complete redirect URL.
    """
    parsed = urlparse(destination)
    existing = urlencode(parse_qsl(parsed.query, keep_blank_values=True))
    full_query = f"{existing}&{query}" if existing else query
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}?{full_query}"
