from __future__ import annotations

from typing import Optional, Tuple

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from clinicauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordHasher:
    """argon2id hashing for stored credentials."""

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(
        self,
        stored_hash: Optional[str],
        password: str,
        *,
        algo: Optional[str] = PASSWORD_ALGO,
        user_id: Optional[str] = None,
    ) -> bool:
        if not stored_hash:
            return False
        if algo and algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False
