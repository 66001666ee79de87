from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from clinicauth.config import Settings
from clinicauth.logging import get_logger
from clinicauth.service.errors import AuthError, AuthErrorKind
from clinicauth.service.result import Err, Ok, Result

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_INVALID = Err(AuthError(AuthErrorKind.TOKEN_INVALID, "Invalid token"))
_EXPIRED = Err(AuthError(AuthErrorKind.TOKEN_EXPIRED, "Token expired"))


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: Dict[str, Any]
    expires_at: int

    @property
    def jti(self) -> Optional[str]:
        return self.claims.get("jti")


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenEngine:
    """HS256 JWT issuing and verification for access and refresh tokens."""

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock

    @property
    def access_secret(self) -> str:
        return self.settings.jwt_secret

    @property
    def refresh_secret(self) -> str:
        return self.settings.jwt_refresh_secret

    def now(self) -> int:
        return int(self._clock())

    def _sign(self, signing_input: str, secret: str) -> str:
        digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def encode(self, payload: Dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _issue(
        self, claims: Dict[str, Any], token_type: str, secret: str, ttl_seconds: int
    ) -> IssuedToken:
        now = self.now()
        expires_at = now + ttl_seconds
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": expires_at,
        }
        return IssuedToken(self.encode(payload, secret), payload, expires_at)

    def issue_access_token(
        self,
        claims: Dict[str, Any],
        *,
        secret: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> IssuedToken:
        return self._issue(
            claims,
            ACCESS,
            secret or self.access_secret,
            ttl_seconds or self.settings.access_token_ttl_seconds,
        )

    def issue_refresh_token(
        self,
        claims: Dict[str, Any],
        *,
        secret: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> IssuedToken:
        return self._issue(
            claims,
            REFRESH,
            secret or self.refresh_secret,
            ttl_seconds or self.settings.refresh_token_ttl_seconds,
        )

    def decode(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Read claims without checking the signature or expiry.

        Only for bookkeeping on tokens that were already authenticated, such
        as an expired token presented at logout.
        """
        if not token:
            return None
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def verify(
        self,
        token: Optional[str],
        secret: str,
        *,
        token_type: Optional[str] = None,
        verify_exp: bool = True,
    ) -> Result[Dict[str, Any], AuthError]:
        if not token:
            return _INVALID
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return _INVALID

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return _INVALID
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return _INVALID

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return _INVALID
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return _INVALID
        if not isinstance(payload, dict):
            return _INVALID

        if payload.get("iss") != self.settings.jwt_issuer:
            return _INVALID
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return _INVALID
        if token_type and payload.get("token_type") != token_type:
            return _INVALID

        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return _INVALID
        if verify_exp and exp_ts <= self._clock() - self.settings.jwt_leeway_seconds:
            return _EXPIRED
        return Ok(payload)

    def remaining_seconds(self, claims: Optional[Dict[str, Any]]) -> int:
        if not claims:
            return 0
        try:
            return max(0, int(float(claims.get("exp")) - self._clock()))
        except (TypeError, ValueError):
            return 0
