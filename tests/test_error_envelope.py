"""Error envelope shape and the status to error-code mapping.

Every failed request answers with:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from youandme_auth import app as app_module
from youandme_auth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from youandme_auth.api.schemas import Envelope, ErrorBody
from youandme_auth.logging import sanitize_error_message
from youandme_auth.service import errors
from youandme_auth.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="session_revoked", message="session has been revoked")
        assert error.code == "session_revoked"
        assert error.details is None

    def test_details_may_be_a_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    @pytest.mark.parametrize("name", errors.__all__)
    def test_every_service_error_code_is_accepted(self, name):
        exc_type = getattr(errors, name)
        ErrorBody(code=exc_type.error_code, message=name)


class TestEnvelope:
    def test_request_id_is_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="account_locked", message="locked", details={"retry_after_seconds": 60}),
            request_id="req-1",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["retry_after_seconds"] == 60
        assert dumped["request_id"] == "req-1"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (423, "account_locked"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_codes_are_valid_error_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_basic(self):
        response = _error_response(401, "Invalid credentials")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_custom_code_and_headers(self):
        response = _error_response(
            401, "revoked", code="session_revoked", headers={"WWW-Authenticate": "Bearer"}
        )
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "session_revoked"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_empty_details_become_null(self):
        response = _error_response(404, "Not found", details={})
        assert json.loads(response.body.decode())["error"]["details"] is None


class TestHandlers:
    @pytest.fixture
    def client(self):
        return TestClient(app_module.app)

    def test_request_validation_uses_envelope(self, client):
        response = client.post("/v1/auth/login", json={"email": "x@example.com"})
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert any("password" in err["loc"] for err in body["error"]["details"])

    def test_service_error_carries_code(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "no-dot-here"})
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "refresh_token_invalid"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_correlation_id_echoed(self, client):
        response = client.get("/v1/me", headers={"X-Request-ID": "corr-123"})
        assert response.status_code == 401
        assert response.headers.get("X-Request-ID") == "corr-123"
        assert response.json()["request_id"] == "corr-123"

    def test_constraint_violation_is_conflict(self, client):
        @app_module.app.get("/_test/constraint")
        async def _raise_constraint():
            raise ConstraintViolation(
                "duplicate key: SELECT id FROM app_user WHERE email = 'x'", {"field": "email"}
            )

        try:
            response = client.get("/_test/constraint")
        finally:
            app_module.app.router.routes.pop()
        assert response.status_code == 409
        body = response.json()
        assert body["error"]["code"] == "conflict"
        assert "SELECT" not in body["error"]["message"]
        assert body["error"]["details"] == {"field": "email"}


class TestSanitizeErrorMessage:
    @pytest.mark.parametrize(
        "raw",
        [
            "connection to server failed",
            "password=hunter2 rejected",
            "could not open /var/lib/youandme/state.json",
            'duplicate key value violates unique constraint: Key (email)=(alice@example.com)',
        ],
    )
    def test_internal_details_removed(self, raw):
        cleaned = sanitize_error_message(raw)
        assert "[redacted]" in cleaned

    def test_plain_message_untouched(self):
        assert sanitize_error_message("email already registered") == "email already registered"

    def test_empty_message(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_unique_key_value_removed(self):
        cleaned = sanitize_error_message("Key (email)=(alice@example.com) already exists.")
        assert "alice@example.com" not in cleaned
        assert cleaned.endswith("already exists.")
