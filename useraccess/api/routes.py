from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from useraccess.api.schemas import (
    AuthResponse,
    CompleteAuthRequest,
    EmailRequest,
    Envelope,
    GoogleAuthRequest,
    RefreshRequest,
    ResetPasswordRequest,
    SignInRequest,
    SignUpRequest,
    UserProfileResponse,
    ValidateOtpRequest,
)
from useraccess.logging import get_logger, redact_email
from useraccess.service.runtime import get_runtime
from useraccess.service.tokens import TokenPayload
from useraccess.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _auth_response(tokens: TokenPayload) -> AuthResponse:
    return AuthResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
    )


def _profile(account: Account) -> UserProfileResponse:
    return UserProfileResponse(
        id=account.id,
        email=account.email,
        role=account.role.value,
        status=account.status.value,
        provider=account.provider.value,
        email_verified=account.email_verified,
        full_name=account.full_name,
        birth_date=account.birth_date,
    )


async def get_current_account(
    authorization: Optional[str] = Header(None),
) -> Account:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


# auth


@router.post("/auth/sign-up", response_model=Envelope, tags=["auth"])
async def sign_up(body: SignUpRequest):
    """Register a local account.

    The account starts INCOMPLETE and unverified; the caller follows up with
    the email verification flow and ``/auth/complete``.

    Raises:
        409: If an account with this email already exists
    """
    runtime = get_runtime()
    await runtime.auth.sign_up(body.email, body.password)
    return Envelope(status="ok")


@router.post("/auth/sign-in", response_model=Envelope, tags=["auth"])
async def sign_in(body: SignInRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: If the password does not match
        403: If the account is not ACTIVE
        404: If no account exists for the email
    """
    runtime = get_runtime()
    tokens = await runtime.auth.sign_in(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/google", response_model=Envelope, tags=["auth"])
async def google_sign_in(body: GoogleAuthRequest):
    """Sign in (or sign up) with a Google ID token."""
    runtime = get_runtime()
    tokens = await runtime.auth.google_auth(body.id_token)
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/complete", response_model=Envelope, tags=["auth"])
async def complete_auth(body: CompleteAuthRequest):
    """Activate a verified account by recording the holder's profile.

    Raises:
        403: If the email is unverified or the account is blocked
        404: If no account exists for the email
        409: If the account is already active
    """
    runtime = get_runtime()
    account = await runtime.auth.complete_auth(
        body.email, body.full_name, body.birth_date
    )
    return Envelope(status="ok", data=_profile(account))


# email verification


@router.post("/verification/send-otp", response_model=Envelope, tags=["verification"])
async def send_verification_otp(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.send_otp(body.email)
    logger.info("verification_otp_requested", recipient=redact_email(body.email))
    return Envelope(status="ok")


@router.post("/verification/resend-otp", response_model=Envelope, tags=["verification"])
async def resend_verification_otp(body: EmailRequest):
    """Redeliver the pending verification code.

    Raises:
        410: If no verification session is pending
        429: If the resend ceiling has been reached
    """
    runtime = get_runtime()
    await runtime.auth.resend_otp(body.email)
    return Envelope(status="ok")


@router.post("/verification/validate", response_model=Envelope, tags=["verification"])
async def validate_verification_otp(body: ValidateOtpRequest):
    runtime = get_runtime()
    account = await runtime.auth.validate_otp(body.otp, body.email)
    return Envelope(status="ok", data={"email_verified": account.email_verified})


# password recovery


@router.post("/password/forgot", response_model=Envelope, tags=["password"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    logger.info("recovery_otp_requested", recipient=redact_email(body.email))
    return Envelope(status="ok")


@router.post("/password/resend", response_model=Envelope, tags=["password"])
async def resend_recovery_otp(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.resend_password_otp(body.email)
    return Envelope(status="ok")


@router.put("/password/reset", response_model=Envelope, tags=["password"])
async def reset_password(body: ResetPasswordRequest):
    """Set a new password using a recovery code.

    The code alone identifies the account; it is consumed on success.

    Raises:
        404: If the account behind the code no longer exists
        410: If the code is unknown or expired
    """
    runtime = get_runtime()
    await runtime.auth.reset_password(body.otp, body.password)
    return Envelope(status="ok")


# users


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(account: Account = Depends(get_current_account)):
    return Envelope(status="ok", data=_profile(account))
