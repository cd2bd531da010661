"""Core SAML platform components."""

from samltest.core.errors import (
    AssertionInvalid,
    CounterpartNotFound,
    MalformedMetadata,
    RequestInvalid,
    SamlError,
    SignatureInvalid,
    SigningMaterialUnavailable,
    StoreFailure,
)
from samltest.core.logging import (
    HTTPExchange,
    LoggingClient,
    LogLevel,
    ProtocolLogger,
    configure_logging,
    get_protocol_logger,
    redact_sensitive,
    set_protocol_logger,
)

__all__ = [
    # Errors
    "AssertionInvalid",
    "CounterpartNotFound",
    "MalformedMetadata",
    "RequestInvalid",
    "SamlError",
    "SignatureInvalid",
    "SigningMaterialUnavailable",
    "StoreFailure",
    # Logging
    "HTTPExchange",
    "LoggingClient",
    "LogLevel",
    "ProtocolLogger",
    "configure_logging",
    "get_protocol_logger",
    "redact_sensitive",
    "set_protocol_logger",
]
