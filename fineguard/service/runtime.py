from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from fineguard.config import get_settings, reset_settings_cache
from fineguard.logging import get_logger
from fineguard.service.auth import AuthService
from fineguard.service.email import EmailService
from fineguard.storage.memory import MemoryIdentityStore, MemoryRevocationList
from fineguard.storage.postgres import PostgresIdentityStore
from fineguard.storage.redis_cache import RedisRevocationList

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging.

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
    """Holds singleton store and service instances for the hosting application."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryIdentityStore()
            else:
                self.store = PostgresIdentityStore(self.settings.database_url)
                self.store.ensure_schema()
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        if self.settings.redis_url:
            self.revocations = RedisRevocationList(self.settings.redis_url)
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for refresh-token revocation; set REDIS_URL or "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a process-local list."
                )
            logger.warning(
                "redis_disabled_fallback",
                message="refresh-token revocations are process-local only",
            )
            self.revocations = MemoryRevocationList()

        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.revocations,
            self.settings,
            email=self.email,
        )
        logger.info(
            "runtime_init_completed",
            revocation_backend="redis" if self.settings.redis_url else "memory",
            redis_url=_mask_url_password(self.settings.redis_url),
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
