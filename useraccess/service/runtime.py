from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlsplit

from useraccess.config import Settings, get_settings, reset_settings_cache
from useraccess.logging import get_logger
from useraccess.service.auth import AuthService
from useraccess.service.email import EmailService
from useraccess.service.google import GoogleIdTokenVerifier
from useraccess.storage.memory import MemoryCache, MemoryStore
from useraccess.storage.postgres import PostgresStore
from useraccess.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

AccountBackend = Union[MemoryStore, PostgresStore]
KeyBackend = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password of a connection URL before it reaches the logs.

    ``redis://:pw@host:6379/0`` -> ``redis://:***@host:6379/0``
    """
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if parts.password is None:
            return url
        userinfo, _, hostinfo = parts.netloc.rpartition("@")
        username = userinfo.split(":", 1)[0]
        return parts._replace(netloc=f"{username}:***@{hostinfo}").geturl()
    except ValueError:
        return "***url_parse_error***"


def _build_store(settings: Settings) -> AccountBackend:
    backend = "memory" if settings.use_memory_store else "postgres"
    try:
        store: AccountBackend = (
            MemoryStore() if settings.use_memory_store else PostgresStore(settings.database_url)
        )
    except Exception as exc:
        logger.error(
            "account_store_init_failed",
            backend=backend,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("account_store_ready", backend=backend)
    return store


def _build_cache(settings: Settings) -> KeyBackend:
    """Redis when reachable; the in-process store only where explicitly allowed."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        # The sync client keeps TestClient and asyncio.run-based tests off a shared loop
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for OTP sessions; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from failure

    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(failure) if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        message="OTP sessions are held in process memory and not shared between workers.",
    )
    return MemoryCache()


class Runtime:
    """Process-wide service graph behind the HTTP routes."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = _build_store(self.settings)
        self.cache = _build_cache(self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.google = GoogleIdTokenVerifier(self.settings.google_client_id)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            notifier=self.email,
            google_verifier=self.google,
        )
        logger.info(
            "runtime_initialized",
            cache_backend=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            google_configured=self.google.is_configured,
            test_mode=self.settings.test_mode,
        )

    async def close(self) -> None:
        """Release cache and database pools."""
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the shared Runtime, building it on first use (double-checked lock)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _discard_cache(cache: KeyBackend) -> None:
    try:
        if isinstance(cache, SyncRedisCache):
            cache.client.close()
        elif isinstance(cache, RedisCache):
            try:
                asyncio.get_running_loop().create_task(cache.close())
            except RuntimeError:
                asyncio.run(cache.close())
    except Exception as exc:
        # Connection may already be gone
        logger.debug("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            _discard_cache(runtime.cache)
        runtime = Runtime(settings)
        return runtime
