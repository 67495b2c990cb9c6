from __future__ import annotations

from typing import Any, Dict

from useraccess.service.errors import (
    AccountBlockedError,
    AccountNotActiveError,
    AlreadyActivatedError,
    EmailNotVerifiedError,
)
from useraccess.storage.models import Account, AccountStatus, Provider


class AccountStatusGate:
    """Pure decisions over the INCOMPLETE -> ACTIVE account lifecycle."""

    def check_sign_in(self, account: Account) -> None:
        if account.status != AccountStatus.ACTIVE:
            raise AccountNotActiveError(
                "User is unactive.", detail={"status": account.status.value}
            )

    def check_activation(self, account: Account) -> None:
        """Activation happens once, only for verified, non-blocked accounts."""
        if not account.email_verified:
            raise EmailNotVerifiedError("User email is not verified.")
        if account.status == AccountStatus.BLOCKED:
            raise AccountBlockedError("User is blocked.")
        if account.status == AccountStatus.ACTIVE:
            raise AlreadyActivatedError("User already activated.")

    def federated_promotion(self, account: Account, provider: Provider) -> Dict[str, Any]:
        """Updates for an account signing in through a trusted identity provider.

        The provider has already verified the email, so an INCOMPLETE account
        is activated directly; any other status is left untouched.
        """
        if account.status == AccountStatus.INCOMPLETE:
            return {"status": AccountStatus.ACTIVE, "provider": provider}
        return {}
