from __future__ import annotations

import hmac
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from clinicauth.config import Settings
from clinicauth.logging import get_logger, mask_identifier
from clinicauth.storage.models import OtpPurpose, OtpRecord

logger = get_logger(__name__)


class OtpCache(Protocol):
    async def store_otp(self, record: OtpRecord, ttl_seconds: int) -> None: ...

    async def get_otp(self, purpose: OtpPurpose, identifier: str) -> Optional[OtpRecord]: ...

    async def delete_otp_if_code(
        self, purpose: OtpPurpose, identifier: str, code: str
    ) -> bool: ...

    async def delete_otp(self, purpose: OtpPurpose, identifier: str) -> None: ...


class OtpErrorType(str, Enum):
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class OtpVerification:
    is_valid: bool
    error_type: Optional[OtpErrorType] = None

    def to_dict(self) -> dict:
        return {
            "isValid": self.is_valid,
            "errorType": self.error_type.value if self.error_type else None,
        }


_VALID = OtpVerification(True)


def channel_for(identifier: str) -> str:
    return "email" if "@" in identifier else "sms"


class OtpEngine:
    """Generates, stores and verifies one-time codes keyed by (identifier, purpose).

    A record outlives its expiry by ``otp_retention_seconds`` so that a late
    attempt is reported as EXPIRED instead of NOT_FOUND. Identifiers listed in
    ``fixed_otp_identifiers`` accept ``fixed_otp_value`` and are never stored.
    """

    def __init__(
        self,
        cache: OtpCache,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._bypass = {ident.strip().lower() for ident in settings.fixed_otp_identifiers}

    def is_bypass(self, identifier: str) -> bool:
        return bool(identifier) and identifier.strip().lower() in self._bypass

    def channel_for(self, identifier: str) -> str:
        return channel_for(identifier)

    def generate(self, identifier: str) -> str:
        if self.is_bypass(identifier):
            return self.settings.fixed_otp_value
        length = self.settings.otp_length
        return "".join(secrets.choice("0123456789") for _ in range(length))

    async def store(
        self,
        identifier: str,
        code: str,
        purpose: OtpPurpose,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[OtpRecord]:
        if self.is_bypass(identifier):
            return None
        ttl = ttl_seconds or self.settings.otp_expiry_seconds
        record = OtpRecord(
            identifier=identifier,
            purpose=purpose,
            code=code,
            expires_at=self._clock() + ttl,
        )
        await self.cache.store_otp(record, ttl + self.settings.otp_retention_seconds)
        logger.info(
            "otp_stored",
            identifier=mask_identifier(identifier),
            purpose=purpose.value,
            ttl_seconds=ttl,
        )
        return record

    async def verify(
        self,
        identifier: str,
        code: str,
        purpose: OtpPurpose,
        *,
        consume: bool = True,
    ) -> OtpVerification:
        if self.is_bypass(identifier):
            expected = self.settings.fixed_otp_value.encode()
            if hmac.compare_digest(str(code).encode(), expected):
                logger.warning(
                    "fixed_otp_bypass_used",
                    identifier=mask_identifier(identifier),
                    purpose=purpose.value,
                )
                return _VALID
            return OtpVerification(False, OtpErrorType.INVALID)

        record = await self.cache.get_otp(purpose, identifier)
        if record is None:
            return OtpVerification(False, OtpErrorType.NOT_FOUND)
        if record.is_expired(self._clock()):
            await self.cache.delete_otp(purpose, identifier)
            return OtpVerification(False, OtpErrorType.EXPIRED)
        if not hmac.compare_digest(str(code).encode(), record.code.encode()):
            return OtpVerification(False, OtpErrorType.INVALID)
        if not consume:
            return _VALID
        # A concurrent verification may have consumed the same code first
        if not await self.cache.delete_otp_if_code(purpose, identifier, record.code):
            return OtpVerification(False, OtpErrorType.NOT_FOUND)
        return _VALID

    async def clear(self, identifier: str, purpose: OtpPurpose) -> None:
        await self.cache.delete_otp(purpose, identifier)
