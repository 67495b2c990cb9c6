from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token

from useraccess.logging import get_logger
from useraccess.service.errors import AccessDeniedError, ServerError

logger = get_logger(__name__)

TokenVerifier = Callable[[str, Any, str], Dict[str, Any]]


class GoogleIdTokenVerifier:
    """Verify Google ID tokens and return the verified email address."""

    def __init__(
        self,
        client_id: Optional[str],
        *,
        verify_token: TokenVerifier = google_id_token.verify_oauth2_token,
    ) -> None:
        self.client_id = client_id
        self._verify_token = verify_token
        self._request = google_requests.Request()

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id)

    def verify(self, token: str) -> str:
        if not self.is_configured:
            logger.error("google_client_id_missing")
            raise ServerError("google sign-in is not configured")
        try:
            payload = self._verify_token(token, self._request, self.client_id)
        except (ValueError, google_exceptions.GoogleAuthError) as exc:
            logger.warning(
                "google_id_token_rejected",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise AccessDeniedError("Invalid ID token.")
        email = payload.get("email") if isinstance(payload, dict) else None
        if not email or not payload.get("email_verified"):
            logger.warning("google_email_unverified")
            raise AccessDeniedError("Invalid ID token.")
        return email
