from __future__ import annotations

from enum import Enum

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from backoffice.logging import get_logger

logger = get_logger(__name__)


class PasswordVerification(str, Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    REQUIRES_REHASH = "requires_rehash"

    @property
    def succeeded(self) -> bool:
        return self is not PasswordVerification.MISMATCH


class PasswordCredentialVerifier:
    """Salted argon2id hashing; verification never raises on bad input."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> PasswordVerification:
        if not stored_hash:
            return PasswordVerification.MISMATCH
        try:
            self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return PasswordVerification.MISMATCH
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return PasswordVerification.MISMATCH
        if self._hasher.check_needs_rehash(stored_hash):
            return PasswordVerification.REQUIRES_REHASH
        return PasswordVerification.MATCH
