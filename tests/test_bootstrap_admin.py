import importlib.util
from pathlib import Path

from useraccess.service.runtime import get_runtime
from useraccess.storage.models import AccountStatus, Role

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
bootstrap_module = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(bootstrap_module)

EMAIL = "admin@example.com"
PASSWORD = "Adm1n!Passw0rd"


async def test_creates_active_admin():
    result = await bootstrap_module.bootstrap_admin(EMAIL, PASSWORD)

    assert result["status"] == "created"
    account = get_runtime().store.get_account_by_email(EMAIL)
    assert account.role == Role.ADMIN
    assert account.status == AccountStatus.ACTIVE
    assert account.email_verified is True
    claims = get_runtime().auth.codec.parse(result["access_token"])
    assert claims.roles == ["ADMIN"]


async def test_promotes_existing_account():
    await get_runtime().auth.sign_up(EMAIL, PASSWORD)

    result = await bootstrap_module.bootstrap_admin(EMAIL, PASSWORD)

    assert result["status"] == "promoted"
    assert get_runtime().store.get_account_by_email(EMAIL).role == Role.ADMIN
    again = await bootstrap_module.bootstrap_admin(EMAIL, PASSWORD)
    assert again["status"] == "already_admin"


async def test_dry_run_changes_nothing():
    result = await bootstrap_module.bootstrap_admin(EMAIL, PASSWORD, dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_account_by_email(EMAIL) is None
