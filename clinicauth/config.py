from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinicauth.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _persisted_secret(filename: str) -> str:
    """Load a generated signing secret from SHARED_FS_ROOT, creating it on first use.

    Tokens stay valid across restarts without requiring the secret in the
    environment. The file is written atomically with 0600 permissions.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/clinicauth"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in a container)
        pass
    except OSError as exc:
        logger.warning(
            "jwt_secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET/JWT_REFRESH_SECRET or make "
            "SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth service. Every policy knob lives here."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    shared_fs_root: str = env_field("/srv/clinicauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("clinicauth", "JWT_ISSUER")
    jwt_audience: str = env_field("clinic-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        60, "JWT_LEEWAY_SECONDS", description="Clock skew tolerated when checking exp"
    )
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # Sessions
    multi_login_session_allowed: bool = env_field(False, "MULTI_LOGIN_SESSION_ALLOWED")
    record_user_session: bool = env_field(True, "RECORD_USER_SESSION")
    session_blacklist_ttl_seconds: int = env_field(
        3600,
        "SESSION_BLACKLIST_TTL_SECONDS",
        description="Blacklist TTL used when the invalidated token has no remaining lifetime",
    )
    mobile_lock_ttl_seconds: int = env_field(10, "MOBILE_LOCK_TTL_SECONDS")

    # OTP
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_expiry_seconds: int = env_field(300, "OTP_EXPIRY_SEC")
    otp_retention_seconds: int = env_field(
        600,
        "OTP_RETENTION_SECONDS",
        description="How long an expired OTP record is kept so it can be reported as expired",
    )
    fixed_otp_identifiers: List[str] = env_field(
        [],
        "FIXED_OTP_IDENTIFIERS",
        description="Identifiers that always accept FIXED_OTP_VALUE. Test/demo accounts only.",
    )
    fixed_otp_value: str = env_field("1234", "FIXED_OTP_VALUE")

    # Roles
    password_reset_roles: List[str] = env_field(
        ["Admin", "Co-ordinator"], "PASSWORD_RESET_ROLES"
    )
    privileged_roles: List[str] = env_field(["Admin", "Co-ordinator"], "PRIVILEGED_ROLES")

    # Notifier
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Clinic", "EMAIL_FROM_NAME")
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_api_key: str | None = env_field(None, "SMS_GATEWAY_API_KEY")
    sms_sender_id: str = env_field("CLINIC", "SMS_SENDER_ID")
    notifier_timeout_seconds: float = env_field(10.0, "NOTIFIER_TIMEOUT_SECONDS")

    # Demo account seeded into the memory store at startup
    bootstrap_user_id: str | None = env_field(None, "BOOTSTRAP_USER_ID")
    bootstrap_password: str | None = env_field(None, "BOOTSTRAP_PASSWORD")
    bootstrap_email: str | None = env_field(None, "BOOTSTRAP_EMAIL")
    bootstrap_mobile: str | None = env_field(None, "BOOTSTRAP_MOBILE")
    bootstrap_roles: List[str] = env_field(["Admin"], "BOOTSTRAP_ROLES")

    # HTTP
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "fixed_otp_identifiers",
        "password_reset_roles",
        "privileged_roles",
        "bootstrap_roles",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("otp_length must be between 4 and 10")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_secret(".jwt_refresh_secret")

    @property
    def fixed_otp_enabled(self) -> bool:
        return bool(self.fixed_otp_identifiers)

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
