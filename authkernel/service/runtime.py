from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authkernel.config import get_settings, reset_settings_cache
from authkernel.logging import get_logger
from authkernel.service.auth import AuthService
from authkernel.service.email import EmailService
from authkernel.service.oauth import OAuthClient
from authkernel.storage.kv import KeyValueStore, MemoryKeyValueStore
from authkernel.storage.memory import MemoryStore
from authkernel.storage.postgres import PostgresStore
from authkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the process."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url, key_prefix=self.settings.kv_key_prefix
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        self.kv: KeyValueStore
        if self.cache is not None:
            self.kv = self.cache
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for refresh sessions, the token blacklist and "
                    "login lockout; start Redis or set TEST_MODE=true/"
                    "ALLOW_REDIS_FALLBACK_DEV=true for a process-local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and "
                    "lockout counters are process-local and lost on restart."
                ),
                mode=fallback_mode,
            )
            self.kv = MemoryKeyValueStore(key_prefix=self.settings.kv_key_prefix)

        self.email = EmailService.from_settings(self.settings)
        self.oauth = OAuthClient.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.kv,
            self.settings,
            email_service=self.email,
            oauth=self.oauth,
        )
        self.auth.seed_roles()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            oauth_providers=[p for p in ("google", "github") if self.oauth.is_configured(p)],
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
