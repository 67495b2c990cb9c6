from __future__ import annotations

import asyncio
import hmac
import secrets
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence, Tuple, Union

from useraccess.logging import get_logger, redact_email
from useraccess.service.errors import (
    InvalidOtpError,
    OtpAlreadySentError,
    OtpExpiredError,
    OtpSessionExpiredError,
    ServerError,
    TooManyRequestsError,
)

logger = get_logger(__name__)

OTP_ROLE = "otp"
EMAIL_ROLE = "email"
ATTEMPTS_ROLE = "attempts"

DEFAULT_MAX_RESEND_ATTEMPTS = 3
# Fresh codes tried before giving up on a crowded code space
_MAX_CODE_COLLISIONS = 5


class KeyStore(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def has_key(self, key: str) -> bool:
        ...

    async def get_ttl(self, key: str) -> Optional[int]:
        ...

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        ...

    async def increment_with_ceiling(
        self, key: str, ceiling: int, ttl_seconds: int
    ) -> Tuple[bool, int]:
        ...


class OtpNotifier(Protocol):
    def send_otp(self, to_email: str, otp: str, purpose: str) -> bool:
        ...


@dataclass(frozen=True)
class KeySpec:
    prefix: str
    ttl_seconds: int


@dataclass(frozen=True)
class OtpNamespace:
    """Key prefixes and TTLs for one OTP purpose."""

    name: str
    otp: KeySpec
    email: KeySpec
    attempts: KeySpec

    def spec(self, role: str) -> KeySpec:
        if role == OTP_ROLE:
            return self.otp
        if role == EMAIL_ROLE:
            return self.email
        if role == ATTEMPTS_ROLE:
            return self.attempts
        raise ValueError(f"unknown OTP key role: {role}")

    def build_key(self, role: str, value: str) -> str:
        return self.spec(role).prefix + value


@dataclass(frozen=True)
class NoSession:
    pass


@dataclass(frozen=True)
class Pending:
    otp: str
    attempts: int


@dataclass(frozen=True)
class Throttled:
    attempts: int


OtpState = Union[NoSession, Pending, Throttled]


def generate_otp() -> str:
    """Six-digit passcode drawn uniformly from 000000-999999."""
    return f"{secrets.randbelow(1_000_000):06d}"


class OtpEngine:
    """One-time passcode lifecycle: send, resend, verify, consume.

    State lives entirely in the key store as three independently expiring
    keys per (namespace, email): ``otp -> email``, ``email -> otp`` and
    ``email -> attempts``.
    """

    def __init__(
        self,
        store: KeyStore,
        notifier: Optional[OtpNotifier] = None,
        *,
        max_attempts: int = DEFAULT_MAX_RESEND_ATTEMPTS,
        code_factory: Callable[[], str] = generate_otp,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.max_attempts = max_attempts
        self._code_factory = code_factory

    async def read_state(self, email: str, namespace: OtpNamespace) -> OtpState:
        """Derive the session state from one round trip over the email-keyed facts."""
        otp, raw_attempts = await self.store.get_many(
            [
                namespace.build_key(EMAIL_ROLE, email),
                namespace.build_key(ATTEMPTS_ROLE, email),
            ]
        )
        if otp is None:
            return NoSession()
        try:
            attempts = int(raw_attempts) if raw_attempts is not None else 0
        except ValueError:
            logger.warning("otp_attempts_corrupt", namespace=namespace.name)
            attempts = self.max_attempts
        if attempts >= self.max_attempts:
            return Throttled(attempts=attempts)
        return Pending(otp=otp, attempts=attempts)

    async def _reserve_code(self, email: str, namespace: OtpNamespace) -> str:
        # Never overwrite a live code that maps to another address
        for _ in range(_MAX_CODE_COLLISIONS):
            code = self._code_factory()
            reserved = await self.store.set_if_absent(
                namespace.build_key(OTP_ROLE, code), email, namespace.otp.ttl_seconds
            )
            if reserved:
                return code
            logger.info("otp_code_collision", namespace=namespace.name)
        raise ServerError("could not allocate a one-time passcode")

    async def _deliver(self, email: str, otp: str, namespace: OtpNamespace) -> None:
        if self.notifier is None:
            logger.warning("otp_notifier_missing", namespace=namespace.name)
            return
        try:
            # SMTP is blocking; keep it off the event loop
            delivered = await asyncio.to_thread(
                self.notifier.send_otp, email, otp, namespace.name
            )
        except Exception as exc:
            logger.error(
                "otp_delivery_failed",
                namespace=namespace.name,
                recipient=redact_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            logger.error(
                "otp_delivery_failed",
                namespace=namespace.name,
                recipient=redact_email(email),
            )

    async def _rearm_code(self, email: str, code: str, namespace: OtpNamespace) -> str:
        """Refresh the forward key of ``code``, or move ``email`` to a fresh code.

        The forward key may have lapsed while the email key stayed live, and
        another address may have reserved the same code since.
        """
        otp_key = namespace.build_key(OTP_ROLE, code)
        ttl = namespace.otp.ttl_seconds
        if await self.store.set_if_absent(otp_key, email, ttl):
            return code
        owner = await self.store.get(otp_key)
        if owner == email:
            await self.store.set(otp_key, email, ttl)
            return code
        logger.info("otp_code_reassigned", namespace=namespace.name)
        fresh = await self._reserve_code(email, namespace)
        await self.store.set(
            namespace.build_key(EMAIL_ROLE, email), fresh, namespace.email.ttl_seconds
        )
        return fresh

    async def send(self, email: str, namespace: OtpNamespace) -> None:
        code = await self._reserve_code(email, namespace)
        claimed = await self.store.set_if_absent(
            namespace.build_key(EMAIL_ROLE, email), code, namespace.email.ttl_seconds
        )
        if not claimed:
            await self.store.delete(namespace.build_key(OTP_ROLE, code))
            raise OtpAlreadySentError("Otp already sent.")
        logger.info("otp_sent", namespace=namespace.name, recipient=redact_email(email))
        await self._deliver(email, code, namespace)

    async def resend(self, email: str, namespace: OtpNamespace) -> None:
        state = await self.read_state(email, namespace)
        if isinstance(state, NoSession):
            raise OtpSessionExpiredError("Otp session expired.")
        if isinstance(state, Throttled):
            raise TooManyRequestsError("Reached maximum attempts.")

        incremented, attempts = await self.store.increment_with_ceiling(
            namespace.build_key(ATTEMPTS_ROLE, email),
            self.max_attempts,
            namespace.attempts.ttl_seconds,
        )
        if not incremented:
            raise TooManyRequestsError("Reached maximum attempts.")

        email_key = namespace.build_key(EMAIL_ROLE, email)
        code = await self.store.get(email_key)
        if code is None:
            # Session key lapsed between the state read and now
            code = await self._reserve_code(email, namespace)
            await self.store.set(email_key, code, namespace.email.ttl_seconds)
        else:
            code = await self._rearm_code(email, code, namespace)
        logger.info(
            "otp_resent",
            namespace=namespace.name,
            recipient=redact_email(email),
            attempts=attempts,
        )
        await self._deliver(email, code, namespace)

    async def _cleanup(self, otp: str, email: str, namespace: OtpNamespace) -> None:
        try:
            await self.store.delete(
                namespace.build_key(OTP_ROLE, otp),
                namespace.build_key(EMAIL_ROLE, email),
                namespace.build_key(ATTEMPTS_ROLE, email),
            )
        except Exception as exc:
            # Leftover keys expire on their own; the passcode was already accepted
            logger.warning(
                "otp_cleanup_failed",
                namespace=namespace.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def verify(self, otp: str, email: str, namespace: OtpNamespace) -> None:
        owner = await self.store.get(namespace.build_key(OTP_ROLE, otp))
        if owner is None:
            raise OtpExpiredError("Otp session expired.")
        if not hmac.compare_digest(owner.encode("utf-8"), email.encode("utf-8")):
            logger.warning("otp_mismatch", namespace=namespace.name)
            raise InvalidOtpError("Invalid otp.")
        await self._cleanup(otp, owner, namespace)
        logger.info("otp_verified", namespace=namespace.name, recipient=redact_email(email))

    async def consume(self, otp: str, namespace: OtpNamespace) -> str:
        """Redeem ``otp`` without knowing its email; returns the owning email."""
        owner = await self.store.get(namespace.build_key(OTP_ROLE, otp))
        if owner is None:
            raise OtpExpiredError("Otp session expired.")
        await self._cleanup(otp, owner, namespace)
        logger.info("otp_consumed", namespace=namespace.name, recipient=redact_email(owner))
        return owner
