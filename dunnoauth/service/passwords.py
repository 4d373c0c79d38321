from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from dunnoauth.config import Settings
from dunnoauth.logging import get_logger
from dunnoauth.service.errors import ServerError
from dunnoauth.service.policy import validate_password

logger = get_logger(__name__)


class PasswordVerifier:
    """argon2id hashing behind the minimum password policy."""

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            hash_len=settings.argon2_hash_len,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        """Hash ``password`` after enforcing the policy.

        Raises:
            PolicyViolation: the password is too weak.
            ServerError: the hashing backend failed.
        """
        validate_password(password)
        try:
            return self._hasher.hash(password)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise ServerError("failed to hash password") from exc

    def verify(self, stored_hash: str, candidate: str) -> bool:
        if not stored_hash or candidate is None:
            return False
        try:
            return self._hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unusable", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
