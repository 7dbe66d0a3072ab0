from __future__ import annotations

import secrets
from typing import Optional

import bcrypt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError

from sessionauth.config import HashAlgorithm, Settings
from sessionauth.logging import get_logger

logger = get_logger(__name__)

_ARGON2_PREFIX = "$argon2"
_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


class CredentialVerifier:
    """Stateless password hashing and verification.

    New hashes always use the configured argon2 target. Older argon2 variants,
    weaker argon2 parameters and legacy bcrypt hashes still verify, but report
    ``needs_upgrade`` so the caller can re-hash after a successful login.
    """

    def __init__(
        self,
        algorithm: HashAlgorithm = HashAlgorithm.ARGON2ID,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self.algorithm = algorithm
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=algorithm.argon2_type,
        )
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVerifier":
        return cls(
            settings.target_hash_algorithm,
            time_cost=settings.hash_time_cost,
            memory_cost=settings.hash_memory_cost,
            parallelism=settings.hash_parallelism,
        )

    @property
    def dummy_hash(self) -> str:
        """A hash at the target parameters that no password matches.

        Verifying against it costs the same as a real mismatch, so a missing
        user cannot be told apart from a wrong password by response time.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(32))
        return self._dummy_hash

    def hash(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("password must not be empty")
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        if not plaintext or not stored_hash:
            return False
        if stored_hash.startswith(_ARGON2_PREFIX):
            try:
                return self._hasher.verify(stored_hash, plaintext)
            except (VerificationError, InvalidHash):
                return False
        if stored_hash.startswith(_BCRYPT_PREFIXES):
            try:
                return bcrypt.checkpw(plaintext.encode("utf-8"), stored_hash.encode("utf-8"))
            except ValueError:
                logger.warning("bcrypt_hash_malformed")
                return False
        logger.warning("password_hash_unrecognized")
        return False

    def needs_upgrade(self, stored_hash: str) -> bool:
        if not stored_hash or not stored_hash.startswith(_ARGON2_PREFIX):
            return True
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
