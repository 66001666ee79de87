from __future__ import annotations

import inspect
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from clinicauth.config import Settings
from clinicauth.logging import get_logger, mask_identifier
from clinicauth.service.errors import AuthError, AuthErrorKind, DeliveryError
from clinicauth.service.mobile import MobileAppSettings, MobileInstanceRegistrar
from clinicauth.service.notifier import Notifier
from clinicauth.service.otp import OtpEngine, OtpErrorType, OtpVerification
from clinicauth.service.passwords import PasswordHasher
from clinicauth.service.result import Err, Ok, Result
from clinicauth.service.tokens import ACCESS, REFRESH, IssuedToken, TokenEngine
from clinicauth.storage.models import (
    Clinic,
    CredentialIdentity,
    Membership,
    OtpPurpose,
    RefreshTokenEntry,
    RotationOutcome,
    SessionRecord,
    Tenant,
    UserSessionRecord,
)
from clinicauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

LOCKED_MESSAGE = "Your account is Inactive. Please contact support."
GENERIC_OTP_MESSAGE = "If the account exists, an OTP has been sent"
REFRESH_REVOKED_MESSAGE = "Refresh token revoked or expired"


class AuthStore(Protocol):
    def find_by_identifier(self, identifier: str) -> Optional[CredentialIdentity]: ...

    def get_user(self, user_id: str) -> Optional[CredentialIdentity]: ...

    def update_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def set_locked(
        self, user_id: str, locked: bool, locked_until: Optional[datetime] = None
    ) -> None: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def list_clinics(self, clinic_ids: List[str]) -> List[Clinic]: ...

    def find_root_organization_id(self) -> Optional[str]: ...

    def list_memberships(self, person_id: Optional[str]) -> List[Membership]: ...

    def create_user_session(
        self,
        session_id: str,
        user_id: str,
        *,
        login_time: Optional[datetime] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> UserSessionRecord: ...

    def record_session_end(
        self, session_id: str, logout_time: Optional[datetime] = None
    ) -> Optional[UserSessionRecord]: ...

    def close_open_user_sessions(
        self, user_id: str, logout_time: Optional[datetime] = None
    ) -> List[UserSessionRecord]: ...


@dataclass
class RequestContext:
    """Request-scoped values handed explicitly to every auth operation."""

    request_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None


@dataclass
class AuthContext:
    user_id: str
    session_id: str
    token: str
    claims: Dict[str, Any] = field(default_factory=dict)
    app_instance_id: Optional[str] = None
    tenant_id: Optional[str] = None
    role_names: List[str] = field(default_factory=list)


_OTP_ERRORS = {
    OtpErrorType.INVALID: AuthError(
        AuthErrorKind.OTP_INVALID, "Invalid OTP. Please check and try again."
    ),
    OtpErrorType.EXPIRED: AuthError(
        AuthErrorKind.OTP_EXPIRED, "OTP has expired. Please request a new one."
    ),
    OtpErrorType.NOT_FOUND: AuthError(
        AuthErrorKind.OTP_NOT_FOUND, "OTP not found. Please request a new one."
    ),
}


def _otp_error(verification: OtpVerification) -> Err:
    return Err(_OTP_ERRORS[verification.error_type or OtpErrorType.INVALID])


def _fail(kind: AuthErrorKind, message: str, **detail: Any) -> Err:
    return Err(AuthError(kind, message, detail=detail))


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthService:
    """Login, OTP, token refresh, logout and password flows.

    Mandatory steps either complete or end the operation; best-effort steps
    (delivery, audit rows, supplementary lookups, secondary revocations) go
    through :meth:`_best_effort` and only log on failure.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: RedisCache,
        settings: Settings,
        *,
        otp: Optional[OtpEngine] = None,
        tokens: Optional[TokenEngine] = None,
        hasher: Optional[PasswordHasher] = None,
        notifier: Optional[Notifier] = None,
        mobile: Optional[MobileInstanceRegistrar] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.otp = otp or OtpEngine(cache, settings)
        self.tokens = tokens or TokenEngine(settings)
        self.hasher = hasher or PasswordHasher()
        self.notifier = notifier or Notifier.from_settings(settings)
        self.mobile = mobile or MobileInstanceRegistrar(
            store, cache, settings  # type: ignore[arg-type]
        )
        self.logger = logger
        if settings.fixed_otp_enabled:
            self.logger.warning(
                "fixed_otp_bypass_enabled",
                identifier_count=len(settings.fixed_otp_identifiers),
            )

    @property
    def single_session(self) -> bool:
        return not self.settings.multi_login_session_allowed

    async def _best_effort(
        self, step: str, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as exc:
            self.logger.warning(
                "best_effort_step_failed",
                step=step,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def _is_blacklisted(self, session_id: str) -> bool:
        try:
            return await self.cache.is_session_blacklisted(session_id)
        except Exception as exc:
            # Fail closed while the cache is unavailable
            self.logger.warning(
                "session_blacklist_check_failed_defaulting_to_revoked",
                session_id=session_id,
                error=str(exc),
            )
            return True

    def _blacklist_ttl(
        self, claims: Optional[Dict[str, Any]], record: Optional[SessionRecord] = None
    ) -> int:
        remaining = self.tokens.remaining_seconds(claims)
        if record:
            remaining = max(remaining, record.expires_at - self.tokens.now())
        if remaining <= 0:
            return self.settings.session_blacklist_ttl_seconds
        return remaining

    async def _revoke_refresh_of(self, record: SessionRecord, step: str) -> None:
        claims = self.tokens.decode(record.refresh_token)
        jti = claims.get("jti") if claims else None
        if jti:
            await self._best_effort(step, self.cache.revoke_refresh_token, jti)

    async def _deliver(
        self, identifier: str, code: str, purpose: OtpPurpose, channel: Optional[str]
    ) -> None:
        try:
            await self.notifier.send(identifier, code, purpose, channel)
        except DeliveryError as exc:
            self.logger.warning(
                "otp_delivery_failed",
                kind=AuthErrorKind.DELIVERY_FAILURE.value,
                identifier=mask_identifier(identifier),
                purpose=purpose.value,
                error=exc.message,
            )
        except Exception as exc:
            self.logger.warning(
                "best_effort_step_failed",
                step="otp_delivery",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _otp_sent(self, message: str) -> Dict[str, Any]:
        return {
            "success": True,
            "message": message,
            "otpExpiry": self.settings.otp_expiry_seconds,
        }

    # ------------------------------------------------------------------
    # Session creation
    # ------------------------------------------------------------------

    def _user_payload(
        self,
        identity: CredentialIdentity,
        tenant: Optional[Tenant],
        clinics: List[Clinic],
        memberships: Optional[List[Membership]],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": identity.id,
            "userId": identity.user_id,
            "avatar": identity.avatar or "",
            "userName": identity.user_name or "",
            "email": identity.email or "",
            "authority": identity.authority
            or (identity.roles[0].role_category if identity.roles else None)
            or "",
            "tenantId": identity.tenant_id,
            "clinicId": identity.clinic_ids[0] if identity.clinic_ids else "",
            "roles": [
                {
                    "roleId": role.role_id,
                    "roleName": role.role_name,
                    "roleCategory": role.role_category,
                }
                for role in identity.roles
            ],
        }
        if tenant:
            payload["tenant"] = {"id": tenant.id, "name": tenant.name, "slug": tenant.slug}
        if clinics:
            payload["clinics"] = [
                {"id": clinic.id, "name": clinic.name, "clinicType": clinic.clinic_type}
                for clinic in clinics
            ]
        if memberships is not None:
            payload["organizationMemberships"] = [
                {
                    "organizationId": m.organization_id,
                    "organizationName": m.organization_name,
                    "organizationCode": m.organization_code,
                    "membershipRole": m.membership_role,
                    "isActive": m.is_active,
                }
                for m in memberships
            ]
        return payload

    def _access_claims(
        self,
        identity: CredentialIdentity,
        session_id: str,
        app_instance_id: Optional[str],
        promoter_organization_id: Optional[str],
    ) -> Dict[str, Any]:
        return {
            "sub": identity.id,
            "user_identifier": identity.user_id,
            "role_ids": [role.role_id for role in identity.roles],
            "role_names": identity.role_names,
            "sid": session_id,
            "app_instance_id": app_instance_id,
            "tenant_id": identity.tenant_id,
            "clinic_ids": list(identity.clinic_ids),
            "promoter_organization_id": promoter_organization_id,
        }

    def _issue_pair(
        self,
        identity: CredentialIdentity,
        session_id: str,
        app_instance_id: Optional[str],
        promoter_organization_id: Optional[str],
    ) -> tuple[IssuedToken, IssuedToken]:
        access = self.tokens.issue_access_token(
            self._access_claims(identity, session_id, app_instance_id, promoter_organization_id)
        )
        refresh = self.tokens.issue_refresh_token(
            {"sub": identity.id, "sid": session_id, "app_instance_id": app_instance_id}
        )
        return access, refresh

    async def _promoter_organization(self, identity: CredentialIdentity) -> Optional[str]:
        if not identity.has_any_role(self.settings.privileged_roles):
            return None
        return await self._best_effort(
            "root_organization_lookup", self.store.find_root_organization_id
        )

    async def _evict(self, user_id: str, previous: SessionRecord) -> None:
        """Invalidate a session displaced by a new login under the single-session policy."""
        claims = self.tokens.decode(previous.access_token)
        await self.cache.blacklist_session(
            previous.session_id, self._blacklist_ttl(claims, previous)
        )
        await self._revoke_refresh_of(previous, "evicted_refresh_revoke")
        if self.settings.record_user_session:
            await self._best_effort(
                "evicted_session_audit_close", self.store.record_session_end, previous.session_id
            )
        self.logger.info(
            "single_session_evicted",
            user_id=user_id,
            evicted_session_id=previous.session_id,
        )

    async def create_session(
        self,
        identity: CredentialIdentity,
        *,
        ctx: Optional[RequestContext] = None,
        app_instance_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        ctx = ctx or RequestContext()
        session_id = str(uuid.uuid4())
        privileged = identity.has_any_role(self.settings.privileged_roles)
        promoter_organization_id = await self._promoter_organization(identity)
        memberships: Optional[List[Membership]] = None
        if not privileged:
            memberships = (
                await self._best_effort(
                    "membership_lookup", self.store.list_memberships, identity.person_id
                )
                or []
            )
        tenant = await self._best_effort("tenant_lookup", self.store.get_tenant, identity.tenant_id)
        clinics = (
            await self._best_effort("clinic_lookup", self.store.list_clinics, identity.clinic_ids)
            or []
        )

        access, refresh = self._issue_pair(
            identity, session_id, app_instance_id, promoter_organization_id
        )
        ttl = self.settings.refresh_token_ttl_seconds
        await self.cache.store_refresh_token(
            RefreshTokenEntry(
                jti=refresh.jti,
                user_id=identity.id,
                session_id=session_id,
                expires_at=refresh.expires_at,
                created_at=self.tokens.now(),
            ),
            ttl,
        )
        if self.settings.record_user_session:
            await self._best_effort(
                "session_audit_create",
                self.store.create_user_session,
                session_id,
                identity.id,
                ip_addr=ctx.ip_addr,
                user_agent=ctx.user_agent,
                device_info=ctx.device_info,
            )

        record = SessionRecord(
            access_token=access.token,
            refresh_token=refresh.token,
            session_id=session_id,
            expires_at=refresh.expires_at,
            app_instance_id=app_instance_id,
        )
        if self.single_session:
            previous = await self.cache.swap_session(identity.id, record, ttl)
            if previous and previous.session_id != session_id:
                await self._evict(identity.id, previous)
        else:
            await self.cache.set_session(identity.id, record, ttl, session_id=session_id)

        self.logger.info(
            "session_created",
            user_id=identity.id,
            session_id=session_id,
            app_instance_id=app_instance_id,
            request_id=ctx.request_id,
        )
        response: Dict[str, Any] = {
            "accessToken": access.token,
            "refreshToken": refresh.token,
            "sessionId": session_id,
            "appInstanceId": app_instance_id,
            "expiresIn": self.settings.access_token_ttl_seconds,
            "user": self._user_payload(identity, tenant, clinics, memberships),
        }
        if promoter_organization_id:
            response["promoterOrganizationId"] = promoter_organization_id
        return response

    # ------------------------------------------------------------------
    # Login flows
    # ------------------------------------------------------------------

    async def login(
        self, identifier: str, password: str, *, ctx: Optional[RequestContext] = None
    ) -> Result[Dict[str, Any], AuthError]:
        ctx = ctx or RequestContext()
        identity = self.store.find_by_identifier(identifier)
        if not identity or not identity.password_hash:
            self.logger.warning(
                "login_failed", identifier=mask_identifier(identifier), request_id=ctx.request_id
            )
            return _fail(AuthErrorKind.INVALID_CREDENTIALS, "Invalid credentials")
        if identity.is_locked():
            self.logger.warning("login_account_locked", user_id=identity.id)
            return _fail(AuthErrorKind.ACCOUNT_LOCKED, LOCKED_MESSAGE)
        if not self.hasher.verify(
            identity.password_hash, password, algo=identity.password_algo, user_id=identity.id
        ):
            self.logger.warning("login_failed", user_id=identity.id, request_id=ctx.request_id)
            return _fail(AuthErrorKind.INVALID_CREDENTIALS, "Invalid credentials")
        return Ok(await self.create_session(identity, ctx=ctx))

    async def generate_otp(
        self,
        identifier: str,
        channel: Optional[str] = None,
        *,
        ctx: Optional[RequestContext] = None,
    ) -> Result[Dict[str, Any], AuthError]:
        ctx = ctx or RequestContext()
        if self.otp.is_bypass(identifier):
            self.logger.warning(
                "fixed_otp_bypass_used",
                identifier=mask_identifier(identifier),
                step="generate",
            )
            return Ok(self._otp_sent("OTP sent successfully"))
        identity = self.store.find_by_identifier(identifier)
        if not identity or identity.is_locked():
            self.logger.warning(
                "otp_generation_skipped",
                identifier=mask_identifier(identifier),
                reason="locked" if identity else "unknown",
                request_id=ctx.request_id,
            )
            return Ok(self._otp_sent(GENERIC_OTP_MESSAGE))
        code = self.otp.generate(identifier)
        await self.otp.store(identifier, code, OtpPurpose.LOGIN)
        await self._deliver(identifier, code, OtpPurpose.LOGIN, channel)
        return Ok(self._otp_sent("OTP sent successfully"))

    async def verify_otp_and_login(
        self,
        identifier: str,
        otp: str,
        mobile_app_settings: Optional[MobileAppSettings] = None,
        *,
        ctx: Optional[RequestContext] = None,
    ) -> Result[Dict[str, Any], AuthError]:
        ctx = ctx or RequestContext()
        verification = await self.otp.verify(identifier, otp, OtpPurpose.LOGIN)
        if not verification.is_valid:
            self.logger.warning(
                "otp_login_rejected",
                identifier=mask_identifier(identifier),
                error_type=verification.error_type.value if verification.error_type else None,
            )
            return _otp_error(verification)
        identity = self.store.find_by_identifier(identifier)
        if not identity:
            return _fail(AuthErrorKind.NOT_FOUND, "User not found")
        if identity.is_locked():
            self.logger.warning("otp_login_account_locked", user_id=identity.id)
            return _fail(AuthErrorKind.ACCOUNT_LOCKED, LOCKED_MESSAGE)
        app_instance_id = None
        if mobile_app_settings is not None:
            instance = await self._best_effort(
                "mobile_binding", self.mobile.upsert, identity.id, mobile_app_settings
            )
            app_instance_id = instance.app_instance_id if instance else None
        return Ok(await self.create_session(identity, ctx=ctx, app_instance_id=app_instance_id))

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    async def authenticate(
        self, authorization: Optional[str], *, allow_expired: bool = False
    ) -> Result[AuthContext, AuthError]:
        token = _extract_bearer(authorization)
        if not token:
            return _fail(AuthErrorKind.TOKEN_INVALID, "Missing bearer token")
        verified = self.tokens.verify(
            token, self.tokens.access_secret, token_type=ACCESS, verify_exp=not allow_expired
        )
        if not verified.ok:
            return verified
        claims = verified.value
        user_id, session_id = claims.get("sub"), claims.get("sid")
        if not user_id or not session_id:
            return _fail(AuthErrorKind.TOKEN_INVALID, "Invalid token structure")
        if await self._is_blacklisted(session_id):
            return _fail(AuthErrorKind.TOKEN_REVOKED, "Session has been revoked")
        return Ok(
            AuthContext(
                user_id=user_id,
                session_id=session_id,
                token=token,
                claims=claims,
                app_instance_id=claims.get("app_instance_id"),
                tenant_id=claims.get("tenant_id"),
                role_names=list(claims.get("role_names") or []),
            )
        )

    async def refresh_tokens(
        self, refresh_token: str, *, ctx: Optional[RequestContext] = None
    ) -> Result[Dict[str, Any], AuthError]:
        ctx = ctx or RequestContext()
        verified = self.tokens.verify(
            refresh_token, self.tokens.refresh_secret, token_type=REFRESH
        )
        if not verified.ok:
            kind = verified.error.kind
            self.logger.warning("refresh_token_rejected", reason=kind.value)
            if kind == AuthErrorKind.TOKEN_EXPIRED:
                return _fail(kind, "Refresh token expired")
            return _fail(AuthErrorKind.TOKEN_INVALID, "Invalid refresh token")
        claims = verified.value
        jti, user_id, session_id = claims.get("jti"), claims.get("sub"), claims.get("sid")
        if not jti or not user_id or not session_id:
            return _fail(AuthErrorKind.TOKEN_INVALID, "Invalid refresh token")
        if await self._is_blacklisted(session_id):
            return _fail(AuthErrorKind.TOKEN_REVOKED, REFRESH_REVOKED_MESSAGE)

        identity = self.store.get_user(user_id)
        if not identity:
            return _fail(AuthErrorKind.NOT_FOUND, "User not found")
        if identity.is_locked():
            return _fail(AuthErrorKind.ACCOUNT_LOCKED, LOCKED_MESSAGE)

        app_instance_id = claims.get("app_instance_id")
        promoter_organization_id = await self._promoter_organization(identity)
        access, refresh = self._issue_pair(
            identity, session_id, app_instance_id, promoter_organization_id
        )
        ttl = self.settings.refresh_token_ttl_seconds
        outcome = await self.cache.rotate_refresh_token(
            jti,
            user_id=identity.id,
            session_id=session_id,
            new_entry=RefreshTokenEntry(
                jti=refresh.jti,
                user_id=identity.id,
                session_id=session_id,
                expires_at=refresh.expires_at,
                created_at=self.tokens.now(),
            ),
            ttl_seconds=ttl,
            now_ts=self.tokens.now(),
        )
        if outcome != RotationOutcome.ROTATED:
            if outcome == RotationOutcome.REVOKED:
                self.logger.warning(
                    "refresh_token_replay_detected",
                    user_id=identity.id,
                    session_id=session_id,
                    request_id=ctx.request_id,
                )
            else:
                self.logger.warning(
                    "refresh_rotation_refused", user_id=identity.id, outcome=outcome.value
                )
            return _fail(AuthErrorKind.TOKEN_REVOKED, REFRESH_REVOKED_MESSAGE)

        record = SessionRecord(
            access_token=access.token,
            refresh_token=refresh.token,
            session_id=session_id,
            expires_at=refresh.expires_at,
            app_instance_id=app_instance_id,
        )
        if self.single_session:
            written = await self.cache.replace_session_if(identity.id, session_id, record, ttl)
        else:
            written = await self.cache.replace_session_if_present(
                identity.id, session_id, record, ttl
            )
        if not written:
            # Superseded or logged out while rotating
            await self._best_effort(
                "orphan_refresh_revoke", self.cache.revoke_refresh_token, refresh.jti
            )
            self.logger.warning(
                "refresh_session_superseded", user_id=identity.id, session_id=session_id
            )
            return _fail(AuthErrorKind.TOKEN_REVOKED, REFRESH_REVOKED_MESSAGE)

        self.logger.info("tokens_refreshed", user_id=identity.id, session_id=session_id)
        return Ok(
            {
                "accessToken": access.token,
                "refreshToken": refresh.token,
                "expiresIn": self.settings.access_token_ttl_seconds,
            }
        )

    async def logout(
        self, user_id: str, token: str, *, ctx: Optional[RequestContext] = None
    ) -> Result[Dict[str, Any], AuthError]:
        """Invalidate the session behind ``token``, which may already be expired."""
        ctx = ctx or RequestContext()
        claims = self.tokens.decode(token)
        if not claims or not claims.get("sid"):
            return _fail(AuthErrorKind.TOKEN_INVALID, "Invalid token structure")
        if claims.get("sub") != user_id:
            return _fail(AuthErrorKind.TOKEN_INVALID, "Invalid token")
        session_id = claims["sid"]

        cache_session_id = None if self.single_session else session_id
        current = await self.cache.get_session(user_id, cache_session_id)
        if current and current.session_id != session_id:
            current = None
        await self.cache.blacklist_session(session_id, self._blacklist_ttl(claims, current))

        if self.single_session:
            # A stale device must not remove the session that replaced it
            removed = await self.cache.delete_session(user_id, expected_session_id=session_id)
        else:
            removed = await self.cache.delete_session(user_id, session_id)
        if removed:
            await self._revoke_refresh_of(removed, "logout_refresh_revoke")
        if self.settings.record_user_session:
            await self._best_effort(
                "session_audit_close", self.store.record_session_end, session_id
            )
        self.logger.info(
            "logout_successful",
            user_id=user_id,
            session_id=session_id,
            request_id=ctx.request_id,
        )
        return Ok({"message": "Logout successful"})

    async def invalidate_all_user_sessions(self, user_id: str) -> int:
        removed = await self.cache.pop_user_sessions(user_id)
        invalidated = set()
        for record in removed:
            claims = self.tokens.decode(record.access_token)
            await self.cache.blacklist_session(
                record.session_id, self._blacklist_ttl(claims, record)
            )
            await self._revoke_refresh_of(record, "invalidate_refresh_revoke")
            invalidated.add(record.session_id)
        closed = (
            await self._best_effort(
                "session_audit_close_all", self.store.close_open_user_sessions, user_id
            )
            or []
        )
        for row in closed:
            if row.id in invalidated:
                continue
            await self._best_effort(
                "audit_session_blacklist",
                self.cache.blacklist_session,
                row.id,
                self.settings.session_blacklist_ttl_seconds,
            )
            invalidated.add(row.id)
        self.logger.info(
            "user_sessions_invalidated", user_id=user_id, session_count=len(invalidated)
        )
        return len(invalidated)

    # ------------------------------------------------------------------
    # Password flows
    # ------------------------------------------------------------------

    async def forgot_password(
        self,
        identifier: str,
        channel: Optional[str] = None,
        *,
        ctx: Optional[RequestContext] = None,
    ) -> Result[Dict[str, Any], AuthError]:
        ctx = ctx or RequestContext()
        identity = self.store.find_by_identifier(identifier)
        if not identity:
            self.logger.warning(
                "forgot_password_unknown_identifier",
                identifier=mask_identifier(identifier),
                request_id=ctx.request_id,
            )
            return _fail(AuthErrorKind.NOT_FOUND, "No account found with this identifier")
        if not identity.has_any_role(self.settings.password_reset_roles):
            self.logger.warning("forgot_password_role_not_allowed", user_id=identity.id)
            return _fail(
                AuthErrorKind.FORBIDDEN, "Password reset is not allowed for your account type"
            )
        if identity.is_locked():
            return _fail(
                AuthErrorKind.ACCOUNT_LOCKED, "Account is Inactive. Please contact support."
            )
        code = self.otp.generate(identifier)
        await self.otp.store(identifier, code, OtpPurpose.PASSWORD_RESET)
        if not self.otp.is_bypass(identifier):
            await self._deliver(identifier, code, OtpPurpose.PASSWORD_RESET, channel)
        return Ok(self._otp_sent("OTP has been sent to your registered email/mobile"))

    async def verify_otp_for_password_reset(
        self, identifier: str, otp: str
    ) -> Result[Dict[str, Any], AuthError]:
        verification = await self.otp.verify(
            identifier, otp, OtpPurpose.PASSWORD_RESET, consume=False
        )
        if verification.is_valid:
            return Ok(verification.to_dict())
        if verification.error_type == OtpErrorType.EXPIRED:
            return Err(_OTP_ERRORS[OtpErrorType.EXPIRED])
        kind = (
            AuthErrorKind.OTP_NOT_FOUND
            if verification.error_type == OtpErrorType.NOT_FOUND
            else AuthErrorKind.OTP_INVALID
        )
        return Err(AuthError(kind, "Invalid OTP", status_code=401))

    async def reset_password(
        self,
        identifier: str,
        otp: str,
        new_password: str,
        *,
        ctx: Optional[RequestContext] = None,
    ) -> Result[Dict[str, Any], AuthError]:
        ctx = ctx or RequestContext()
        identity = self.store.find_by_identifier(identifier)
        if not identity:
            self.logger.warning(
                "reset_password_unknown_identifier",
                identifier=mask_identifier(identifier),
                request_id=ctx.request_id,
            )
            return Ok({"message": "Password reset successful"})
        if identity.is_locked():
            return _fail(AuthErrorKind.ACCOUNT_LOCKED, LOCKED_MESSAGE)
        verification = await self.otp.verify(identifier, otp, OtpPurpose.PASSWORD_RESET)
        if not verification.is_valid:
            return _otp_error(verification)
        password_hash, algo = self.hasher.hash(new_password)
        self.store.update_password(identity.id, password_hash, algo)
        await self.invalidate_all_user_sessions(identity.id)
        self.logger.info("password_reset", user_id=identity.id, request_id=ctx.request_id)
        return Ok({"message": "Password reset successful"})

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        ctx: Optional[RequestContext] = None,
    ) -> Result[Dict[str, Any], AuthError]:
        ctx = ctx or RequestContext()
        identity = self.store.get_user(user_id)
        if not identity:
            return _fail(AuthErrorKind.NOT_FOUND, "User not found")
        if identity.is_locked():
            return _fail(AuthErrorKind.ACCOUNT_LOCKED, LOCKED_MESSAGE)
        if identity.password_hash:
            if not self.hasher.verify(
                identity.password_hash,
                current_password,
                algo=identity.password_algo,
                user_id=identity.id,
            ):
                return _fail(AuthErrorKind.VALIDATION, "Current password is incorrect")
            if new_password == current_password:
                return _fail(
                    AuthErrorKind.VALIDATION,
                    "New password must be different from current password",
                )
        else:
            self.logger.info("password_first_time_setup", user_id=identity.id)
        password_hash, algo = self.hasher.hash(new_password)
        self.store.update_password(identity.id, password_hash, algo)
        await self.invalidate_all_user_sessions(identity.id)
        self.logger.info("password_changed", user_id=identity.id, request_id=ctx.request_id)
        return Ok({"message": "Password changed successfully. Please log in again."})

    async def resend_otp(
        self,
        identifier: str,
        channel: Optional[str] = None,
        purpose: OtpPurpose = OtpPurpose.LOGIN,
        *,
        ctx: Optional[RequestContext] = None,
    ) -> Result[Dict[str, Any], AuthError]:
        ctx = ctx or RequestContext()
        purpose = OtpPurpose(purpose)
        if self.otp.is_bypass(identifier):
            return Ok(self._otp_sent("OTP resent successfully"))
        identity = self.store.find_by_identifier(identifier)
        if not identity or identity.is_locked():
            self.logger.warning(
                "otp_resend_skipped",
                identifier=mask_identifier(identifier),
                reason="locked" if identity else "unknown",
                request_id=ctx.request_id,
            )
            return Ok(self._otp_sent(GENERIC_OTP_MESSAGE))
        if purpose == OtpPurpose.PASSWORD_RESET and not identity.has_any_role(
            self.settings.password_reset_roles
        ):
            return _fail(
                AuthErrorKind.FORBIDDEN, "Password reset is not allowed for your account type"
            )
        await self.otp.clear(identifier, purpose)
        code = self.otp.generate(identifier)
        await self.otp.store(identifier, code, purpose)
        await self._deliver(identifier, code, purpose, channel)
        return Ok(self._otp_sent("OTP resent successfully"))
