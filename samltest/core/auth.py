"""Password authentication for local platform accounts."""

from __future__ import annotations

import hashlib
import hmac
import os
from typing import TYPE_CHECKING

from samltest.storage.models import User

if TYPE_CHECKING:
    from samltest.storage.database import Database

MIN_PASSWORD_LENGTH = 8


class CredentialError(Exception):
    """Raised when signup or login input is rejected."""


PBKDF2_ALGORITHM = "pbkdf2_sha256"
PBKDF2_ITERATIONS = 600_000


def hash_password(password: str, *, salt: bytes | None = None, iterations: int = PBKDF2_ITERATIONS) -> str:
    """Return ``pbkdf2_sha256$<iterations>$<salt hex>$<digest hex>`` for ``password``."""
    salt = salt if salt is not None else os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"{PBKDF2_ALGORITHM}${iterations}${salt.hex()}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    """Check ``password`` against a value produced by :func:`hash_password`.

    SAML-only accounts store an empty string, which never verifies.
    """
    try:
        algorithm, iterations, salt = encoded.split("$")[:3]
        expected = hash_password(password, salt=bytes.fromhex(salt), iterations=int(iterations))
    except ValueError:
        return False
    return algorithm == PBKDF2_ALGORITHM and hmac.compare_digest(expected, encoded)


class CredentialStore:
    """Local email/password accounts."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create_user(self, email: str, password: str, display_name: str | None = None) -> User:
        """Register a local account.

        Raises:
            CredentialError: If input is invalid or the email is taken.
        """
        email = email.strip().lower()
        if not email or "@" not in email:
            raise CredentialError("A valid email is required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise CredentialError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        with self._db.session_scope() as session:
            if session.query(User).filter(User.email == email).first():
                raise CredentialError("User already exists")

            user = User(email=email, password_hash=hash_password(password), display_name=display_name)
            session.add(user)
            session.flush()
            return user

    def authenticate(self, email: str, password: str) -> User | None:
        """Return the user if the email/password pair is valid."""
        email = email.strip().lower()
        with self._db.session_scope() as session:
            user = session.query(User).filter(User.email == email).first()
            if user is None or not verify_password(password, user.password_hash):
                return None
            return user

    def get_user(self, user_id: int) -> User | None:
        with self._db.session_scope() as session:
            return session.get(User, user_id)
