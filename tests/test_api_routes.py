"""Integration tests for the HTTP surface.

Tests the complete account flow including:
- Sign-up and request validation
- Email verification over OTP
- Profile completion and sign-in
- Token refresh and the current-user profile
- Google sign-in
- Password recovery
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from useraccess import app as app_module
from useraccess.service.errors import AccessDeniedError
from useraccess.service.runtime import get_runtime

EMAIL = "testuser@example.com"
PASSWORD = "TestPassword123!"


class FakeGoogleVerifier:
    is_configured = True

    def verify(self, token):
        if token != "good-google-token":
            raise AccessDeniedError("Invalid ID token.")
        return "googler@gmail.com"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _pending_code(email, namespace_attr="verification_namespace"):
    runtime = get_runtime()
    namespace = getattr(runtime.auth, namespace_attr)
    return asyncio.run(runtime.cache.get(namespace.build_key("email", email)))


def _sign_up(client, email=EMAIL, password=PASSWORD):
    return client.post("/v1/auth/sign-up", json={"email": email, "password": password})


def _activate(client, email=EMAIL, password=PASSWORD):
    assert _sign_up(client, email, password).status_code == 200
    assert client.post("/v1/verification/send-otp", json={"email": email}).status_code == 200
    code = _pending_code(email)
    response = client.post("/v1/verification/validate", json={"email": email, "otp": code})
    assert response.status_code == 200
    response = client.post(
        "/v1/auth/complete",
        json={"email": email, "full_name": "Jane Doe", "birth_date": "1990-05-17"},
    )
    assert response.status_code == 200
    return response.json()["data"]


def _sign_in(client, email=EMAIL, password=PASSWORD):
    response = client.post("/v1/auth/sign-in", json={"email": email, "password": password})
    assert response.status_code == 200
    return response.json()["data"]


class TestSignUp:
    def test_sign_up_returns_ok_envelope(self, client):
        response = _sign_up(client)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"] is None
        assert response.headers["X-Request-ID"]

    def test_duplicate_sign_up_conflicts(self, client):
        _sign_up(client)
        response = _sign_up(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "email",
        ["not-an-email", "user@", "user@example", "us er@example.com"],
    )
    def test_invalid_email_rejected(self, client, email):
        response = _sign_up(client, email=email)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    @pytest.mark.parametrize(
        "password",
        ["Sh0rt!", "alllowercase1!", "ALLUPPERCASE1!", "NoDigitsHere!", "NoSpecial123"],
    )
    def test_weak_password_rejected(self, client, password):
        response = _sign_up(client, password=password)
        assert response.status_code == 400

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/v1/auth/sign-up",
            json={"email": EMAIL, "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.headers["X-Request-ID"] == "req-123"


class TestVerificationFlow:
    def test_sign_in_before_activation_is_forbidden(self, client):
        _sign_up(client)
        response = client.post("/v1/auth/sign-in", json={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 403

    def test_send_otp_twice_conflicts(self, client):
        _sign_up(client)
        client.post("/v1/verification/send-otp", json={"email": EMAIL})
        response = client.post("/v1/verification/send-otp", json={"email": EMAIL})
        assert response.status_code == 409

    def test_send_otp_unknown_account(self, client):
        response = client.post("/v1/verification/send-otp", json={"email": "ghost@example.com"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_resend_without_session_is_gone(self, client):
        _sign_up(client)
        response = client.post("/v1/verification/resend-otp", json={"email": EMAIL})
        assert response.status_code == 410
        assert response.json()["error"]["code"] == "gone"

    def test_resend_ceiling(self, client):
        _sign_up(client)
        client.post("/v1/verification/send-otp", json={"email": EMAIL})
        for _ in range(3):
            response = client.post("/v1/verification/resend-otp", json={"email": EMAIL})
            assert response.status_code == 200
        response = client.post("/v1/verification/resend-otp", json={"email": EMAIL})
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_validate_unknown_code_is_gone(self, client):
        _sign_up(client)
        response = client.post(
            "/v1/verification/validate", json={"email": EMAIL, "otp": "123456"}
        )
        assert response.status_code == 410

    @pytest.mark.parametrize("otp", ["12345", "1234567", "abcdef"])
    def test_validate_requires_six_digits(self, client, otp):
        response = client.post("/v1/verification/validate", json={"email": EMAIL, "otp": otp})
        assert response.status_code == 400

    def test_validate_marks_email_verified(self, client):
        _sign_up(client)
        client.post("/v1/verification/send-otp", json={"email": EMAIL})
        response = client.post(
            "/v1/verification/validate",
            json={"email": EMAIL, "otp": _pending_code(EMAIL)},
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"email_verified": True}


class TestCompleteAuth:
    def test_complete_requires_verified_email(self, client):
        _sign_up(client)
        response = client.post(
            "/v1/auth/complete",
            json={"email": EMAIL, "full_name": "Jane Doe", "birth_date": "1990-05-17"},
        )
        assert response.status_code == 403

    def test_complete_returns_profile(self, client):
        profile = _activate(client)
        assert profile["status"] == "ACTIVE"
        assert profile["full_name"] == "Jane Doe"
        assert profile["birth_date"] == "1990-05-17"
        assert profile["email_verified"] is True

    def test_us_date_format_accepted(self, client):
        _sign_up(client)
        client.post("/v1/verification/send-otp", json={"email": EMAIL})
        client.post(
            "/v1/verification/validate",
            json={"email": EMAIL, "otp": _pending_code(EMAIL)},
        )
        response = client.post(
            "/v1/auth/complete",
            json={"email": EMAIL, "full_name": "Jane Doe", "birth_date": "05/17/1990"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["birth_date"] == "1990-05-17"

    @pytest.mark.parametrize(
        "full_name,birth_date",
        [
            ("jane doe", "1990-05-17"),
            ("Jane", "1990-05-17"),
            ("Jane Doe", "2020-01-01"),
            ("Jane Doe", "17.05.1990"),
        ],
    )
    def test_profile_validation(self, client, full_name, birth_date):
        response = client.post(
            "/v1/auth/complete",
            json={"email": EMAIL, "full_name": full_name, "birth_date": birth_date},
        )
        assert response.status_code == 400

    def test_second_completion_conflicts(self, client):
        _activate(client)
        response = client.post(
            "/v1/auth/complete",
            json={"email": EMAIL, "full_name": "Jane Doe", "birth_date": "1990-05-17"},
        )
        assert response.status_code == 409


class TestTokens:
    def test_sign_in_issues_bearer_pair(self, client):
        _activate(client)
        tokens = _sign_in(client)
        assert tokens["token_type"] == "bearer"
        assert tokens["access_token"] and tokens["refresh_token"]

    def test_wrong_password_is_unauthorized(self, client):
        _activate(client)
        response = client.post(
            "/v1/auth/sign-in", json={"email": EMAIL, "password": "Wrong!Pass123"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_refresh(self, client):
        _activate(client)
        tokens = _sign_in(client)
        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 200
        assert response.json()["data"]["access_token"]

    def test_refresh_with_access_token_rejected(self, client):
        _activate(client)
        tokens = _sign_in(client)
        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["access_token"]}
        )
        assert response.status_code == 401

    def test_users_me(self, client):
        _activate(client)
        tokens = _sign_in(client)
        response = client.get(
            "/v1/users/me", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == EMAIL
        assert data["role"] == "USER"
        assert data["provider"] == "LOCAL"

    def test_users_me_requires_token(self, client):
        response = client.get("/v1/users/me")
        assert response.status_code == 401


class TestGoogleSignIn:
    def test_google_sign_in_creates_active_account(self, client):
        get_runtime().auth.google_verifier = FakeGoogleVerifier()
        response = client.post("/v1/auth/google", json={"id_token": "good-google-token"})
        assert response.status_code == 200
        access = response.json()["data"]["access_token"]

        me = client.get("/v1/users/me", headers={"Authorization": f"Bearer {access}"})
        assert me.json()["data"]["provider"] == "GOOGLE"
        assert me.json()["data"]["status"] == "ACTIVE"

    def test_bad_google_token_is_forbidden(self, client):
        get_runtime().auth.google_verifier = FakeGoogleVerifier()
        response = client.post("/v1/auth/google", json={"id_token": "forged"})
        assert response.status_code == 403

    def test_google_not_configured(self, client):
        response = client.post("/v1/auth/google", json={"id_token": "anything"})
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"


class TestPasswordRecovery:
    def test_forgot_and_reset(self, client):
        _activate(client)
        assert client.post("/v1/password/forgot", json={"email": EMAIL}).status_code == 200
        code = _pending_code(EMAIL, "recovery_namespace")

        new_password = "Brand!New9Pass"
        response = client.put(
            "/v1/password/reset", json={"otp": code, "password": new_password}
        )
        assert response.status_code == 200
        _sign_in(client, password=new_password)

    def test_resend_recovery_code(self, client):
        _activate(client)
        client.post("/v1/password/forgot", json={"email": EMAIL})
        response = client.post("/v1/password/resend", json={"email": EMAIL})
        assert response.status_code == 200

    def test_reset_with_unknown_code_is_gone(self, client):
        response = client.put(
            "/v1/password/reset", json={"otp": "123456", "password": "Brand!New9Pass"}
        )
        assert response.status_code == 410

    def test_reset_requires_strong_password(self, client):
        response = client.put("/v1/password/reset", json={"otp": "123456", "password": "weak"})
        assert response.status_code == 400


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["cache"]["type"] == "MemoryCache"
