"""Tests for the error envelope format and exception handlers.

Error responses use the stable envelope:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from useraccess.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from useraccess.api.schemas import Envelope, ErrorBody
from useraccess.service.errors import (
    AccountNotActiveError,
    OtpAlreadySentError,
    OtpExpiredError,
    TokenExpiredError,
    TooManyRequestsError,
)
from useraccess.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_gone_is_a_valid_code(self):
        assert ErrorBody(code="gone", message="Otp session expired.").code == "gone"


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (410, "gone"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status_code, code):
        assert _STATUS_TO_CODE[status_code] == code
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_falls_back_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(410, "Otp session expired.", {"namespace": "x"})
        body = json.loads(response.body)
        assert response.status_code == 410
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "gone",
            "message": "Otp session expired.",
            "details": {"namespace": "x"},
        }
        assert body["request_id"]


class _Payload(BaseModel):
    count: int


@pytest.fixture
def error_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/raise/{kind}")
    async def raise_error(kind: str):
        errors = {
            "gone": OtpExpiredError("Otp session expired."),
            "conflict": OtpAlreadySentError("Otp already sent."),
            "throttled": TooManyRequestsError("Reached maximum attempts."),
            "inactive": AccountNotActiveError("User is unactive.", detail={"status": "INCOMPLETE"}),
            "expired": TokenExpiredError("token expired"),
            "constraint": ConstraintViolation("email already exists", {"field": "email"}),
            "boom": RuntimeError("database exploded"),
        }
        raise errors[kind]

    @app.post("/validate")
    async def validate(body: _Payload):
        return {"count": body.count}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize(
        "kind,status_code,code",
        [
            ("gone", 410, "gone"),
            ("conflict", 409, "conflict"),
            ("throttled", 429, "rate_limited"),
            ("inactive", 403, "forbidden"),
            ("expired", 401, "unauthorized"),
            ("constraint", 409, "conflict"),
        ],
    )
    def test_domain_errors(self, error_client, kind, status_code, code):
        response = error_client.get(f"/raise/{kind}")
        assert response.status_code == status_code
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code

    def test_service_error_details_are_exposed(self, error_client):
        body = error_client.get("/raise/inactive").json()
        assert body["error"]["message"] == "User is unactive."
        assert body["error"]["details"] == {"status": "INCOMPLETE"}

    def test_request_validation_is_400(self, error_client):
        response = error_client.post("/validate", json={"count": "many"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "count"]

    def test_uncaught_exception_is_opaque(self, error_client):
        response = error_client.get("/raise/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "database" not in body["error"]["message"]

    def test_unknown_route_uses_envelope(self, error_client):
        response = error_client.get("/nowhere")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"
