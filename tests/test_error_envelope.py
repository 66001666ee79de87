"""Tests for the error envelope format and error mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from clinicauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from clinicauth.api.schemas import Envelope, ErrorBody
from clinicauth.logging import set_correlation_id
from clinicauth.service.errors import (
    AuthError,
    AuthErrorKind,
    AuthenticationError,
    DeliveryError,
    GoneError,
    NotFoundError,
    ValidationError as ServiceValidationError,
)


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        """Only stable codes are accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="Too many requests")

    @pytest.mark.parametrize("code", ["gone", "bad_gateway"])
    def test_auth_specific_codes_are_valid(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(400) == "validation_error"
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(403) == "forbidden"
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(410) == "gone"
        assert _error_code_for_status(502) == "bad_gateway"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_error_response_uses_correlation_id(self):
        set_correlation_id("corr-123")

        response = _error_response(404, "Not found")

        data = json.loads(response.body.decode())
        assert data["request_id"] == "corr-123"
        assert data["error"] == {"code": "not_found", "message": "Not found", "details": None}

    def test_error_response_custom_code(self):
        response = _error_response(400, "Custom error", code="conflict")

        assert json.loads(response.body.decode())["error"]["code"] == "conflict"


class TestAuthErrorConversion:
    """AuthError values become ServiceError subclasses at the route boundary."""

    @pytest.mark.parametrize(
        "kind, error_cls, status",
        [
            (AuthErrorKind.INVALID_CREDENTIALS, AuthenticationError, 401),
            (AuthErrorKind.TOKEN_REVOKED, AuthenticationError, 401),
            (AuthErrorKind.OTP_INVALID, ServiceValidationError, 400),
            (AuthErrorKind.OTP_EXPIRED, GoneError, 410),
            (AuthErrorKind.OTP_NOT_FOUND, NotFoundError, 404),
            (AuthErrorKind.DELIVERY_FAILURE, DeliveryError, 502),
        ],
    )
    def test_kind_selects_error_class(self, kind, error_cls, status):
        exc = AuthError(kind, "message").to_service_error()

        assert isinstance(exc, error_cls)
        assert exc.status_code == status
        assert exc.detail["reason"] == kind.value

    def test_status_override_selects_matching_class(self):
        exc = AuthError(AuthErrorKind.OTP_INVALID, "Invalid OTP", status_code=401).to_service_error()

        assert isinstance(exc, AuthenticationError)
        assert exc.error_code == "unauthorized"
        assert exc.detail == {"reason": "OTP_INVALID"}

    def test_detail_is_merged(self):
        exc = AuthError(AuthErrorKind.FORBIDDEN, "no", detail={"role": "Doctor"}).to_service_error()

        assert exc.detail == {"reason": "FORBIDDEN", "role": "Doctor"}
