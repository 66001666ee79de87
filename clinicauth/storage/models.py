from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OtpPurpose(str, Enum):
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"


class Platform(str, Enum):
    ANDROID = "ANDROID"
    IOS = "IOS"


@dataclass
class RoleRef:
    role_id: str
    role_name: str
    role_category: Optional[str] = None


@dataclass
class CredentialIdentity:
    id: str
    user_id: str
    email: Optional[str] = None
    mobile_number: Optional[str] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    locked: bool = False
    locked_until: Optional[datetime] = None
    roles: List[RoleRef] = field(default_factory=list)
    tenant_id: str = "public"
    clinic_ids: List[str] = field(default_factory=list)
    person_id: Optional[str] = None
    user_name: Optional[str] = None
    avatar: Optional[str] = None
    authority: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def identifiers(self) -> List[str]:
        return [value for value in (self.user_id, self.email, self.mobile_number) if value]

    @property
    def role_names(self) -> List[str]:
        return [role.role_name for role in self.roles]

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if not self.locked:
            return False
        if self.locked_until is None:
            return True
        return self.locked_until > (now or utcnow())

    def has_any_role(self, role_names: List[str]) -> bool:
        wanted = {name.lower() for name in role_names}
        return any(role.role_name.lower() in wanted for role in self.roles)


@dataclass
class Tenant:
    id: str
    name: str
    slug: Optional[str] = None


@dataclass
class Clinic:
    id: str
    name: str
    tenant_id: str = "public"
    clinic_type: Optional[str] = None


@dataclass
class Membership:
    organization_id: str
    organization_name: str
    organization_code: Optional[str] = None
    membership_role: Optional[str] = None
    is_active: bool = True


@dataclass
class OtpRecord:
    identifier: str
    purpose: OtpPurpose
    code: str
    expires_at: float

    def is_expired(self, now_ts: float) -> bool:
        return now_ts >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "purpose": self.purpose.value,
            "code": self.code,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OtpRecord":
        return cls(
            identifier=data["identifier"],
            purpose=OtpPurpose(data["purpose"]),
            code=str(data["code"]),
            expires_at=float(data["expiresAt"]),
        )


@dataclass
class SessionRecord:
    """Live session entry held in the session cache."""

    access_token: str
    refresh_token: str
    session_id: str
    expires_at: int
    app_instance_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "sessionId": self.session_id,
            "appInstanceId": self.app_instance_id,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            access_token=data["accessToken"],
            refresh_token=data["refreshToken"],
            session_id=data["sessionId"],
            app_instance_id=data.get("appInstanceId"),
            expires_at=int(data["expiresAt"]),
        )


@dataclass
class RefreshTokenEntry:
    """One link of a refresh-token chain, keyed by jti."""

    jti: str
    user_id: str
    session_id: str
    expires_at: int
    revoked: bool = False
    created_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jti": self.jti,
            "userId": self.user_id,
            "sessionId": self.session_id,
            "expiresAt": self.expires_at,
            "isRevoked": self.revoked,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefreshTokenEntry":
        return cls(
            jti=data["jti"],
            user_id=data["userId"],
            session_id=data["sessionId"],
            expires_at=int(data["expiresAt"]),
            revoked=bool(data.get("isRevoked", False)),
            created_at=int(data.get("createdAt", 0)),
        )


class RotationOutcome(str, Enum):
    ROTATED = "rotated"
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


@dataclass
class MobileAppInstance:
    app_instance_id: str
    user_id: str
    app_name: str
    platform: Platform
    fcm_id: str
    version: str
    is_blocked: bool = False
    is_update_mandatory: bool = True
    device_info: Dict | None = None
    meta_data: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        app_name: str,
        platform: Platform | str,
        fcm_id: str,
        version: str,
        device_info: Dict | None = None,
        meta_data: Dict | None = None,
    ) -> "MobileAppInstance":
        now = utcnow()
        return cls(
            app_instance_id=str(uuid.uuid4()),
            user_id=user_id,
            app_name=app_name,
            platform=Platform(platform),
            fcm_id=fcm_id,
            version=version,
            device_info=device_info,
            meta_data=meta_data,
            created_at=now,
            updated_at=now,
            created_by=user_id,
            updated_by=user_id,
        )


@dataclass
class UserSessionRecord:
    """Durable audit row for a login session."""

    id: str
    user_id: str
    login_time: datetime
    logout_time: Optional[datetime] = None
    total_time_seconds: Optional[int] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.logout_time is None

    def close(self, logout_time: datetime) -> None:
        self.logout_time = logout_time
        self.total_time_seconds = max(0, int((logout_time - self.login_time).total_seconds()))
