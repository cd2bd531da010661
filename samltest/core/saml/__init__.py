"""SAML protocol implementation: bindings, metadata, signatures and both SSO roles."""

from samltest.core.saml.bindings import (
    BINDING_HTTP_POST,
    BINDING_HTTP_REDIRECT,
    POST,
    REDIRECT,
    BindingError,
)
from samltest.core.saml.idp import IdentityProvider, IssuedResponse, parse_authn_request
from samltest.core.saml.metadata import ParsedMetadata, parse_metadata
from samltest.core.saml.signature import SignatureLocation
from samltest.core.saml.sp import SAMLRequest, SAMLServiceProvider, ValidatedAssertion

__all__ = [
    "BINDING_HTTP_POST",
    "BINDING_HTTP_REDIRECT",
    "POST",
    "REDIRECT",
    "BindingError",
    "IdentityProvider",
    "IssuedResponse",
    "ParsedMetadata",
    "SAMLRequest",
    "SAMLServiceProvider",
    "SignatureLocation",
    "ValidatedAssertion",
    "parse_authn_request",
    "parse_metadata",
]
