from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from useraccess.config import MIN_JWT_SECRET_LENGTH
from useraccess.logging import get_logger
from useraccess.service.errors import (
    MalformedTokenError,
    ServerError,
    TokenExpiredError,
    TokenSignatureError,
)

logger = get_logger(__name__)

_RESERVED_CLAIMS = frozenset({"sub", "iat", "exp", "iss", "aud", "roles"})


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    issued_at: datetime
    expires_at: datetime
    roles: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def token_type(self) -> Optional[str]:
        return self.extra.get("token_type")


@dataclass(frozen=True)
class TokenPayload:
    """Access and refresh token minted together; each expires on its own."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def _to_millis(moment: datetime) -> int:
    return (moment - _EPOCH) // _ONE_MS


def _from_millis(millis: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=millis)


class TokenCodec:
    """HS256 bearer token signing and parsing.

    Stateless apart from the signing key; ``iat``/``exp`` are numeric dates
    with millisecond precision and expiry is strict (``now >= exp``).
    """

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _signing_key(self) -> bytes:
        if not self._secret or len(self._secret) < MIN_JWT_SECRET_LENGTH:
            logger.error("jwt_signing_key_invalid", min_length=MIN_JWT_SECRET_LENGTH)
            raise ServerError("token signing key is not configured")
        return self._secret.encode()

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self._signing_key(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def mint(
        self, subject: str, claims: Optional[Dict[str, Any]], ttl: timedelta
    ) -> str:
        issued_ms = _to_millis(self._now())
        expires_ms = issued_ms + ttl // _ONE_MS
        extra = dict(claims or {})
        payload: Dict[str, Any] = {
            key: value for key, value in extra.items() if key not in _RESERVED_CLAIMS
        }
        payload.update(
            {
                "sub": subject,
                "iss": self.issuer,
                "aud": self.audience,
                "roles": list(extra.get("roles") or []),
                "iat": issued_ms / 1000,
                "exp": expires_ms / 1000,
            }
        )
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def parse(self, token: str) -> TokenClaims:
        """Verify ``token`` and return its claims.

        Raises:
            MalformedTokenError: structure, header or required claims unusable
            TokenSignatureError: signature does not match
            TokenExpiredError: current time is at or past ``exp``
        """
        if not isinstance(token, str):
            raise MalformedTokenError("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token must have three segments")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise MalformedTokenError("token header is not decodable")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise TokenSignatureError("token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise MalformedTokenError("token payload is not decodable")
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload must be an object")

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise MalformedTokenError("token subject missing")
        if payload.get("iss") != self.issuer:
            raise MalformedTokenError("token issuer mismatch")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise MalformedTokenError("token audience mismatch")
        try:
            issued_at = _from_millis(round(float(payload["iat"]) * 1000))
            expires_at = _from_millis(round(float(payload["exp"]) * 1000))
        except (KeyError, TypeError, ValueError, OverflowError):
            raise MalformedTokenError("token timestamps missing or invalid")
        roles = payload.get("roles") or []
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise MalformedTokenError("token roles must be a list of strings")

        if self._now() >= expires_at:
            raise TokenExpiredError("token expired")

        return TokenClaims(
            subject=subject,
            issued_at=issued_at,
            expires_at=expires_at,
            roles=list(roles),
            extra={k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS},
        )

    def is_valid(self, token: str, expected_subject: str) -> bool:
        try:
            claims = self.parse(token)
        except (MalformedTokenError, TokenSignatureError, TokenExpiredError):
            return False
        return claims.subject == expected_subject
