from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, Path, Request

from clinicauth.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    GenerateOtpRequest,
    LoginRequest,
    MobileSettingsLookupRequest,
    MobileSettingsUpdateRequest,
    ResendOtpRequest,
    ResetPasswordRequest,
    TokenRefreshRequest,
    VerifyOtpLoginRequest,
    VerifyResetOtpRequest,
)
from clinicauth.logging import get_correlation_id, get_logger
from clinicauth.service.auth import AuthContext, RequestContext
from clinicauth.service.errors import (
    AuthError,
    AuthErrorKind,
    ForbiddenError,
    NotFoundError,
)
from clinicauth.service.result import Result
from clinicauth.service.runtime import get_runtime
from clinicauth.storage.models import MobileAppInstance

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        request_id=get_correlation_id(),
        ip_addr=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        device_info=request.headers.get("X-Device-Info"),
    )


def _ok(data: Any) -> Envelope:
    return Envelope(status="ok", data=data, request_id=get_correlation_id() or str(uuid4()))


def _unwrap(result: Result) -> Any:
    if result.ok:
        return result.value
    raise result.error.to_service_error()


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return _unwrap(await runtime.auth.authenticate(authorization))


async def get_user_allow_expired(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Authenticate the signature only; logout must work with an expired token."""
    runtime = get_runtime()
    return _unwrap(await runtime.auth.authenticate(authorization, allow_expired=True))


def _instance_payload(instance: MobileAppInstance) -> Dict[str, Any]:
    return {
        "appInstanceId": instance.app_instance_id,
        "userId": instance.user_id,
        "appName": instance.app_name,
        "platform": instance.platform.value,
        "fcmId": instance.fcm_id,
        "version": instance.version,
        "isUpdateMandatory": instance.is_update_mandatory,
        "isBlocked": instance.is_blocked,
        "deviceInfo": instance.device_info,
        "metaData": instance.meta_data,
        "createdAt": instance.created_at.isoformat(),
        "updatedAt": instance.updated_at.isoformat(),
        "createdBy": instance.created_by,
        "updatedBy": instance.updated_by,
    }


def _owned_instance(app_instance_id: str, auth: AuthContext) -> MobileAppInstance:
    instance = get_runtime().mobile.get_instance(app_instance_id)
    if not instance:
        raise NotFoundError("App instance not found")
    if instance.user_id != auth.user_id:
        raise ForbiddenError("Access denied")
    return instance


@router.post("/auth/o/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with a user id, email or mobile number and a password."""
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.identifier, body.password, ctx=_request_context(request)
    )
    return _ok(_unwrap(result))


@router.post("/auth/r/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, auth: AuthContext = Depends(get_user_allow_expired)):
    runtime = get_runtime()
    result = await runtime.auth.logout(auth.user_id, auth.token, ctx=_request_context(request))
    return _ok(_unwrap(result))


@router.post("/auth/o/otp", response_model=Envelope, tags=["auth"])
async def generate_otp(body: GenerateOtpRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.generate_otp(
        body.identifier, body.channel, ctx=_request_context(request)
    )
    return _ok(_unwrap(result))


@router.post("/auth/o/otp/verify/login", response_model=Envelope, tags=["auth"])
async def verify_otp_login(body: VerifyOtpLoginRequest, request: Request):
    """Exchange a login OTP for a session, optionally binding a mobile app instance.

    Raises:
        400: wrong code
        404: no code pending for this identifier, or unknown user
        410: code expired
        403: account locked
    """
    runtime = get_runtime()
    mobile_settings = (
        body.mobile_app_settings.to_settings() if body.mobile_app_settings else None
    )
    result = await runtime.auth.verify_otp_and_login(
        body.identifier, body.otp, mobile_settings, ctx=_request_context(request)
    )
    return _ok(_unwrap(result))


@router.post("/auth/o/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.forgot_password(
        body.identifier, body.channel, ctx=_request_context(request)
    )
    return _ok(_unwrap(result))


@router.post("/auth/o/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.reset_password(
        body.identifier, body.otp, body.new_password, ctx=_request_context(request)
    )
    return _ok(_unwrap(result))


@router.post("/auth/r/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, request: Request, auth: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    ctx = _request_context(request)
    result = await runtime.auth.change_password(
        auth.user_id, body.current_password, body.new_password, ctx=ctx
    )
    if not result.ok:
        error = result.error
        if error.http_status == 401:
            # Reported as 400 so the client keeps its session
            error = AuthError(error.kind, error.message, status_code=400, detail=error.detail)
        raise error.to_service_error()
    try:
        await runtime.auth.logout(auth.user_id, auth.token, ctx=ctx)
    except Exception as exc:
        logger.warning("post_password_change_logout_failed", user_id=auth.user_id, error=str(exc))
    return _ok(result.value)


@router.post("/auth/o/otp/verify-password-reset", response_model=Envelope, tags=["auth"])
async def verify_password_reset_otp(body: VerifyResetOtpRequest):
    """Check a password-reset OTP without consuming it."""
    runtime = get_runtime()
    result = await runtime.auth.verify_otp_for_password_reset(body.identifier, body.otp)
    return _ok(_unwrap(result))


@router.post("/auth/o/otp/resend", response_model=Envelope, tags=["auth"])
async def resend_otp(body: ResendOtpRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.resend_otp(
        body.identifier, body.channel, body.purpose, ctx=_request_context(request)
    )
    return _ok(_unwrap(result))


@router.post("/auth/o/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh_tokens(
        body.refresh_token, ctx=_request_context(request)
    )
    return _ok(_unwrap(result))


@router.post("/auth/r/mobile-settings", response_model=Envelope, tags=["mobile"])
async def get_user_mobile_settings(
    body: MobileSettingsLookupRequest, auth: AuthContext = Depends(get_user)
):
    """Return the caller's app instance (by id, else the latest) and their memberships."""
    if body.user_id != auth.user_id:
        raise ForbiddenError("Access denied - can only access your own mobile settings")
    runtime = get_runtime()
    instance = None
    if body.app_instance_id:
        candidate = runtime.mobile.get_instance(body.app_instance_id)
        if candidate and candidate.user_id == auth.user_id:
            instance = candidate
    if instance is None:
        instance = runtime.mobile.latest_instance(auth.user_id)
    if instance is None:
        raise NotFoundError("No mobile settings found for this user")

    identity = runtime.store.get_user(auth.user_id)
    if not identity:
        raise AuthError(AuthErrorKind.NOT_FOUND, "User not found").to_service_error()
    memberships = runtime.store.list_memberships(identity.person_id)
    return _ok(
        {
            "id": instance.app_instance_id,
            "isUpdateMandatory": instance.is_update_mandatory,
            "deviceInfo": instance.device_info,
            "metaData": instance.meta_data,
            "isBlocked": instance.is_blocked,
            "createdAt": instance.created_at.isoformat(),
            "updatedAt": instance.updated_at.isoformat(),
            "user": {
                "id": identity.id,
                "userId": identity.user_id,
                "emailId": identity.email,
                "mobileNumber": identity.mobile_number,
                "isLocked": identity.is_locked(),
                "profilePictureUrl": identity.avatar,
            },
            "organizations": [
                {
                    "organizationId": m.organization_id,
                    "organizationName": m.organization_name,
                    "organizationCode": m.organization_code,
                    "membershipRole": m.membership_role,
                }
                for m in memberships
            ],
        }
    )


@router.get("/auth/r/mobile-settings/{app_instance_id}", response_model=Envelope, tags=["mobile"])
async def get_app_instance(
    app_instance_id: str = Path(..., max_length=64),
    auth: AuthContext = Depends(get_user),
):
    instance = _owned_instance(app_instance_id, auth)
    return _ok(_instance_payload(instance))


@router.patch(
    "/auth/r/mobile-settings/{app_instance_id}", response_model=Envelope, tags=["mobile"]
)
async def update_app_instance(
    body: MobileSettingsUpdateRequest,
    app_instance_id: str = Path(..., max_length=64),
    auth: AuthContext = Depends(get_user),
):
    _owned_instance(app_instance_id, auth)
    runtime = get_runtime()
    updated = runtime.mobile.update_instance(
        app_instance_id, body.model_dump(exclude_unset=True), updated_by=auth.user_id
    )
    if not updated:
        raise NotFoundError("App instance not found")
    logger.info("mobile_instance_updated", app_instance_id=app_instance_id, user_id=auth.user_id)
    return _ok(_instance_payload(updated))


@router.post(
    "/auth/r/mobile-settings/{app_instance_id}/block", response_model=Envelope, tags=["mobile"]
)
async def block_app_instance(
    app_instance_id: str = Path(..., max_length=64),
    auth: AuthContext = Depends(get_user),
):
    _owned_instance(app_instance_id, auth)
    runtime = get_runtime()
    await runtime.mobile.set_blocked(app_instance_id, True, updated_by=auth.user_id)
    return _ok({"message": "App instance blocked successfully"})
