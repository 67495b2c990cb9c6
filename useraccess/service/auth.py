from __future__ import annotations

import asyncio
from datetime import date, timedelta
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from useraccess.config import Settings
from useraccess.logging import get_logger, redact_email
from useraccess.service.account_gate import AccountStatusGate
from useraccess.service.email import EMAIL_VERIFICATION, PASSWORD_RECOVERY
from useraccess.service.errors import (
    AlreadyActivatedError,
    AlreadyExistsError,
    InvalidTokenError,
    NotFoundError,
    ServerError,
    WrongCredentialsError,
)
from useraccess.service.google import GoogleIdTokenVerifier
from useraccess.service.otp import (
    KeySpec,
    KeyStore,
    OtpEngine,
    OtpNamespace,
    OtpNotifier,
)
from useraccess.service.tokens import TokenCodec, TokenPayload
from useraccess.storage.errors import ConstraintViolation
from useraccess.storage.models import Account, AccountStatus, Provider, Role

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "
ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        role: Role = Role.USER,
        status: AccountStatus = AccountStatus.INCOMPLETE,
        provider: Provider = Provider.LOCAL,
        email_verified: bool = False,
    ) -> Account:
        ...

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def update_account(
        self,
        account_id: str,
        *,
        expected_status: Optional[AccountStatus] = None,
        **fields,
    ) -> Optional[Account]:
        ...

    def ensure_account(self, email: str, **defaults) -> Tuple[Account, bool]:
        ...


def build_namespaces(settings: Settings) -> Tuple[OtpNamespace, OtpNamespace]:
    """Email-verification and password-recovery namespaces from settings."""
    verification = OtpNamespace(
        name=EMAIL_VERIFICATION,
        otp=KeySpec(
            settings.email_verification_otp_prefix,
            settings.email_verification_otp_ttl_seconds,
        ),
        email=KeySpec(
            settings.email_verification_email_prefix,
            settings.email_verification_email_ttl_seconds,
        ),
        attempts=KeySpec(
            settings.email_verification_attempts_prefix,
            settings.email_verification_attempts_ttl_seconds,
        ),
    )
    recovery = OtpNamespace(
        name=PASSWORD_RECOVERY,
        otp=KeySpec(
            settings.password_recovery_otp_prefix,
            settings.password_recovery_otp_ttl_seconds,
        ),
        email=KeySpec(
            settings.password_recovery_email_prefix,
            settings.password_recovery_email_ttl_seconds,
        ),
        attempts=KeySpec(
            settings.password_recovery_attempts_prefix,
            settings.password_recovery_attempts_ttl_seconds,
        ),
    )
    return verification, recovery


class AuthService:
    """Sign-up, sign-in, token refresh, federated sign-in and OTP flows."""

    def __init__(
        self,
        store: AccountStore,
        cache: KeyStore,
        settings: Settings,
        *,
        notifier: Optional[OtpNotifier] = None,
        google_verifier: Optional[GoogleIdTokenVerifier] = None,
        codec: Optional[TokenCodec] = None,
        otp_engine: Optional[OtpEngine] = None,
    ) -> None:
        self.store: AccountStore = store
        self.cache = cache
        self.settings = settings
        self.codec = codec or TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
        self.otp = otp_engine or OtpEngine(
            cache, notifier, max_attempts=settings.otp_max_resend_attempts
        )
        self.verification_namespace, self.recovery_namespace = build_namespaces(settings)
        self.gate = AccountStatusGate()
        self.google_verifier = google_verifier
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # passwords

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        """Check ``password`` against the account's stored argon2id hash."""
        if not account.password_hash:
            logger.warning("password_record_missing", account_id=account.id)
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", account_id=account.id)
            return False

    # tokens

    def _issue_tokens(self, account: Account) -> TokenPayload:
        access_token = self.codec.mint(
            account.email,
            {
                "roles": account.roles,
                "status": account.status.value,
                "user_id": account.id,
                "email_verified": account.email_verified,
                "token_type": ACCESS_TOKEN,
            },
            timedelta(minutes=self.settings.access_token_ttl_minutes),
        )
        refresh_token = self.codec.mint(
            account.email,
            {"roles": account.roles, "token_type": REFRESH_TOKEN},
            timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        return TokenPayload(access_token=access_token, refresh_token=refresh_token)

    def _load_account(self, email: str) -> Account:
        account = self.store.get_account_by_email(email)
        if not account:
            raise NotFoundError("User not found.")
        return account

    # sign-up / sign-in

    async def sign_up(self, email: str, password: str) -> Account:
        if self.store.get_account_by_email(email):
            raise AlreadyExistsError("User already exists.")
        try:
            account = self.store.create_account(
                email,
                password_hash=self._hash_password(password),
                role=Role.USER,
                status=AccountStatus.INCOMPLETE,
                provider=Provider.LOCAL,
                email_verified=False,
            )
        except ConstraintViolation as exc:
            raise AlreadyExistsError("User already exists.", detail=exc.detail)
        logger.info("account_created", account_id=account.id, provider=account.provider.value)
        return account

    async def sign_in(self, email: str, password: str) -> TokenPayload:
        account = self._load_account(email)
        self.gate.check_sign_in(account)
        if not self.verify_password(account, password):
            raise WrongCredentialsError("Wrong credentials")
        logger.info("account_signed_in", account_id=account.id)
        return self._issue_tokens(account)

    async def refresh(self, refresh_token: str) -> TokenPayload:
        raw = refresh_token or ""
        if raw.startswith(BEARER_PREFIX):
            raw = raw[len(BEARER_PREFIX):]
        claims = self.codec.parse(raw.strip())
        if claims.token_type != REFRESH_TOKEN:
            raise InvalidTokenError("refresh token required")
        # Current account state, not the claims cached in the old token
        account = self.store.get_account_by_email(claims.subject)
        if not account:
            raise InvalidTokenError("token subject no longer exists")
        logger.info("tokens_refreshed", account_id=account.id)
        return self._issue_tokens(account)

    async def google_auth(self, id_token: str) -> TokenPayload:
        if self.google_verifier is None:
            raise ServerError("google sign-in is not configured")
        # google-auth fetches signing certs over blocking HTTP
        email = await asyncio.to_thread(self.google_verifier.verify, id_token)
        account, created = self.store.ensure_account(
            email,
            role=Role.USER,
            status=AccountStatus.INCOMPLETE,
            provider=Provider.GOOGLE,
            email_verified=True,
        )
        updates = self.gate.federated_promotion(account, Provider.GOOGLE)
        if updates:
            account = self.store.update_account(account.id, **updates) or account
        logger.info(
            "google_sign_in",
            account_id=account.id,
            created=created,
            promoted=bool(updates),
        )
        return self._issue_tokens(account)

    async def complete_auth(
        self, email: str, full_name: str, birth_date: date
    ) -> Account:
        account = self._load_account(email)
        self.gate.check_activation(account)
        updated = self.store.update_account(
            account.id,
            expected_status=AccountStatus.INCOMPLETE,
            status=AccountStatus.ACTIVE,
            full_name=full_name,
            birth_date=birth_date,
        )
        if not updated:
            # Another request changed the account after the gate check
            current = self.store.get_account(account.id)
            if current is None:
                raise NotFoundError("User not found.")
            self.gate.check_activation(current)
            raise AlreadyActivatedError("User already activated.")
        logger.info("account_activated", account_id=updated.id)
        return updated

    # email verification

    async def send_otp(self, email: str) -> None:
        self._load_account(email)
        await self.otp.send(email, self.verification_namespace)

    async def resend_otp(self, email: str) -> None:
        self._load_account(email)
        await self.otp.resend(email, self.verification_namespace)

    async def validate_otp(self, otp: str, email: str) -> Account:
        # Resolve the account first so a lookup failure leaves the code usable
        account = self._load_account(email)
        await self.otp.verify(otp, email, self.verification_namespace)
        updated = self.store.update_account(account.id, email_verified=True)
        logger.info("email_verified", account_id=account.id)
        return updated or account

    # password recovery

    async def forgot_password(self, email: str) -> None:
        self._load_account(email)
        await self.otp.send(email, self.recovery_namespace)

    async def resend_password_otp(self, email: str) -> None:
        self._load_account(email)
        await self.otp.resend(email, self.recovery_namespace)

    async def reset_password(self, otp: str, password: str) -> None:
        email = await self.otp.consume(otp, self.recovery_namespace)
        account = self._load_account(email)
        self.store.update_account(account.id, password_hash=self._hash_password(password))
        logger.info("password_reset", account_id=account.id, recipient=redact_email(email))

    # bearer authentication

    async def authenticate(self, authorization: Optional[str]) -> Account:
        """Resolve the account behind an ``Authorization: Bearer`` access token."""
        if not authorization or not authorization.startswith(BEARER_PREFIX):
            raise InvalidTokenError("bearer token required")
        claims = self.codec.parse(authorization[len(BEARER_PREFIX):].strip())
        if claims.token_type != ACCESS_TOKEN:
            raise InvalidTokenError("access token required")
        account = self.store.get_account_by_email(claims.subject)
        if not account:
            raise InvalidTokenError("token subject no longer exists")
        self.gate.check_sign_in(account)
        return account
