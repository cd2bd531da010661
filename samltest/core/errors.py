"""Error taxonomy for the SAML trust and protocol engine.

Every failure the engine reports is a ``SamlError`` carrying a stable ``kind``
string, so callers (web routes, CLI commands, the audit log) can branch on the
category without parsing messages.
"""

from __future__ import annotations

from typing import Any


class SamlError(Exception):
    """Base exception for SAML protocol errors."""

    kind = "saml_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {"kind": self.kind, "message": self.message}


class MalformedMetadata(SamlError):
    """Raised when a metadata document cannot be parsed or lacks required parts."""

    kind = "malformed_metadata"


class CounterpartNotFound(SamlError):
    """Raised when a referenced entity is unknown, inactive, or of the wrong type."""

    kind = "counterpart_not_found"


class SignatureInvalid(SamlError):
    """Raised when a signature does not verify against any trusted certificate."""

    kind = "signature_invalid"


class AssertionInvalid(SamlError):
    """Raised when a SAML response fails a validation rule."""

    kind = "assertion_invalid"


class RequestInvalid(SamlError):
    """Raised when an AuthnRequest cannot be decoded or parsed."""

    kind = "request_invalid"


class SigningMaterialUnavailable(SamlError):
    """Raised when the platform's signing key or certificate is missing or corrupt."""

    kind = "signing_material_unavailable"


class StoreFailure(SamlError):
    """Raised when the persistent store rejects a read or write."""

    kind = "store_failure"
