"""Session token issuing for users who completed a SAML or local login."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

DEFAULT_ALGORITHM = "HS256"


class TokenError(Exception):
    """Raised when a session token is missing, expired, or tampered with."""


@dataclass(frozen=True)
class TokenClaims:
    """Claims carried by a platform session token."""

    user_id: int
    email: str
    expires_at: datetime


class TokenIssuer:
    """Issues and decodes HMAC-signed JWT session tokens."""

    def __init__(
        self,
        secret: str,
        ttl: timedelta = timedelta(days=7),
        algorithm: str = DEFAULT_ALGORITHM,
    ) -> None:
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self._ttl = ttl
        self._algorithm = algorithm

    def issue(self, user_id: int, email: str) -> str:
        """Issue a token for a user.

        Args:
            user_id: Local user id.
            email: User email, carried as a claim.

        Returns:
            Encoded JWT string.
        """
        now = datetime.now(UTC)
        payload: dict[str, Any] = {
            "sub": str(user_id),
            "userId": user_id,
            "email": email,
            "iat": now,
            "exp": now + self._ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> TokenClaims:
        """Verify a token and return its claims.

        Raises:
            TokenError: If the signature is wrong, the token expired, or
                required claims are missing.
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as e:
            raise TokenError("Token has expired") from e
        except jwt.InvalidTokenError as e:
            raise TokenError(f"Invalid token: {e}") from e

        try:
            return TokenClaims(
                user_id=int(payload["userId"]),
                email=str(payload["email"]),
                expires_at=datetime.fromtimestamp(payload["exp"], UTC),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TokenError("Token is missing required claims") from e
