from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MINIMUM_AGE_YEARS = 18


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "gone",
    "server_error",
})


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
    """API envelope format shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_PASSWORD_SPECIALS = set("!@#$%^&*()_+-=[]{};':\"\\|,.<>/?")
_OTP_PATTERN = re.compile(r"^[0-9]{6}$")
_FULL_NAME_PATTERN = re.compile(
    r"^[A-ZА-ЯІЇЄҐ][a-zа-яіїєґ]+ [A-ZА-ЯІЇЄҐ][a-zа-яіїєґ]+$"
)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    # Case is preserved: addresses are matched exactly as stored
    normalized = _normalize_unicode(value.strip())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Require 8+ chars with lower, upper, digit and special characters."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    if not any(c in _PASSWORD_SPECIALS for c in value):
        raise ValueError("password must contain a special character")
    return value


def _validate_otp(value: str) -> str:
    value = value.strip()
    if not _OTP_PATTERN.match(value):
        raise ValueError("otp must be exactly 6 digits")
    return value


def _years_between(born: date, today: date) -> int:
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class AuthRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_auth_email(cls, value: str) -> str:
        return _validate_email(value)


class SignUpRequest(AuthRequest):
    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SignInRequest(AuthRequest):
    pass


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class GoogleAuthRequest(BaseModel):
    id_token: str = Field(..., min_length=1, max_length=8192)


class ValidateOtpRequest(EmailRequest):
    otp: str

    @field_validator("otp")
    @classmethod
    def _validate_request_otp(cls, value: str) -> str:
        return _validate_otp(value)


class ResetPasswordRequest(BaseModel):
    otp: str
    password: str

    @field_validator("otp")
    @classmethod
    def _validate_reset_otp(cls, value: str) -> str:
        return _validate_otp(value)

    @field_validator("password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class CompleteAuthRequest(EmailRequest):
    full_name: str = Field(..., max_length=128)
    birth_date: date

    @field_validator("full_name")
    @classmethod
    def _validate_full_name(cls, value: str) -> str:
        value = _normalize_unicode(value.strip())
        if not _FULL_NAME_PATTERN.match(value):
            raise ValueError(
                "full name must contain two words, each starting with an uppercase letter"
            )
        return value

    @field_validator("birth_date", mode="before")
    @classmethod
    def _parse_us_date(cls, value: Any) -> Any:
        # Accept MM/DD/YYYY alongside ISO dates
        if isinstance(value, str) and "/" in value:
            try:
                return datetime.strptime(value.strip(), "%m/%d/%Y").date()
            except ValueError:
                raise ValueError("birth_date must be YYYY-MM-DD or MM/DD/YYYY")
        return value

    @field_validator("birth_date")
    @classmethod
    def _require_adult(cls, value: date) -> date:
        if _years_between(value, date.today()) < MINIMUM_AGE_YEARS:
            raise ValueError(f"user must be at least {MINIMUM_AGE_YEARS} years old")
        return value


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class UserProfileResponse(BaseModel):
    id: str
    email: str
    role: str
    status: str
    provider: str
    email_verified: bool
    full_name: Optional[str] = None
    birth_date: Optional[date] = None
