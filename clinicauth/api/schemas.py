from __future__ import annotations

import re
from typing import Any, Dict, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from clinicauth.service.mobile import MobileAppSettings
from clinicauth.storage.models import OtpPurpose, Platform

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "gone",
    "bad_gateway",
    "server_error",
})

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MOBILE_PATTERN = re.compile(r"^\d{10}$")
_OTP_PATTERN = re.compile(r"^\d+$")
_PASSWORD_PATTERN = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$"
)
_PASSWORD_RULES = (
    "Password must be at least 8 characters long and contain at least one uppercase "
    "letter, one lowercase letter, one number, and one special character"
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    """Accepts camelCase keys from clients while exposing snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _validate_otp(value: str) -> str:
    value = value.strip()
    if not _OTP_PATTERN.match(value):
        raise ValueError("OTP must be numeric")
    return value


def _validate_new_password(value: str) -> str:
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not _PASSWORD_PATTERN.match(value):
        raise ValueError(_PASSWORD_RULES)
    return value


def _validate_identifier(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Identifier is required")
    return value


class LoginRequest(_CamelModel):
    identifier: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("identifier")
    @classmethod
    def _validate_login_identifier(cls, value: str) -> str:
        return _validate_identifier(value)


class GenerateOtpRequest(_CamelModel):
    identifier: str = Field(..., max_length=254)
    channel: Optional[Literal["sms", "email"]] = None

    @field_validator("identifier")
    @classmethod
    def _validate_otp_identifier(cls, value: str) -> str:
        return _validate_identifier(value)


class MobileAppSettingsRequest(_CamelModel):
    app_instance_id: Optional[str] = None
    app_name: str = Field(..., max_length=100)
    platform: Platform
    fcm_id: str = Field(..., max_length=500)
    version: str = Field(..., max_length=50)
    device_info: Optional[Dict[str, Any]] = None
    meta_data: Optional[Dict[str, Any]] = None

    def to_settings(self) -> MobileAppSettings:
        return MobileAppSettings(
            app_name=self.app_name,
            platform=self.platform,
            fcm_id=self.fcm_id,
            version=self.version,
            device_info=self.device_info,
            meta_data=self.meta_data,
        )


class VerifyOtpLoginRequest(_CamelModel):
    identifier: str = Field(..., max_length=254)
    otp: str = Field(..., max_length=10)
    mobile_app_settings: Optional[MobileAppSettingsRequest] = None

    @field_validator("identifier")
    @classmethod
    def _validate_verify_identifier(cls, value: str) -> str:
        return _validate_identifier(value)

    @field_validator("otp")
    @classmethod
    def _validate_verify_otp(cls, value: str) -> str:
        return _validate_otp(value)


class ForgotPasswordRequest(_CamelModel):
    identifier: str = Field(..., max_length=254)
    channel: Optional[Literal["sms", "email"]] = None

    @field_validator("identifier")
    @classmethod
    def _validate_reset_identifier(cls, value: str) -> str:
        value = _validate_identifier(value)
        if not (_EMAIL_PATTERN.match(value) or _MOBILE_PATTERN.match(value)):
            raise ValueError("Identifier must be a valid email or 10-digit mobile number")
        return value


class ResetPasswordRequest(_CamelModel):
    identifier: str = Field(..., max_length=254)
    otp: str = Field(..., max_length=10, validation_alias=AliasChoices("otp", "token"))
    new_password: str

    @field_validator("otp")
    @classmethod
    def _validate_reset_otp(cls, value: str) -> str:
        return _validate_otp(value)

    @field_validator("new_password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_new_password(value)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_changed_password(cls, value: str) -> str:
        return _validate_new_password(value)


class VerifyResetOtpRequest(_CamelModel):
    identifier: str = Field(..., max_length=254)
    otp: str = Field(..., max_length=10)

    @field_validator("otp")
    @classmethod
    def _validate_check_otp(cls, value: str) -> str:
        return _validate_otp(value)


class ResendOtpRequest(_CamelModel):
    identifier: str = Field(..., max_length=254)
    channel: Optional[Literal["sms", "email"]] = None
    purpose: OtpPurpose

    @field_validator("identifier")
    @classmethod
    def _validate_resend_identifier(cls, value: str) -> str:
        return _validate_identifier(value)


class TokenRefreshRequest(_CamelModel):
    refresh_token: str = Field(..., max_length=4096)


class MobileSettingsLookupRequest(_CamelModel):
    user_id: str
    app_instance_id: Optional[str] = None
    app_version: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None


class MobileSettingsUpdateRequest(_CamelModel):
    app_name: Optional[str] = Field(default=None, max_length=100)
    platform: Optional[Platform] = None
    fcm_id: Optional[str] = Field(default=None, max_length=500)
    version: Optional[str] = Field(default=None, max_length=50)
    device_info: Optional[Dict[str, Any]] = None
    meta_data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )
