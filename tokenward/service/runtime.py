from __future__ import annotations

import threading
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from tokenward.config import get_settings, reset_settings_cache
from tokenward.logging import get_logger
from tokenward.service.cleanup import TokenCleanupScheduler
from tokenward.service.refresh_tokens import RefreshTokenService
from tokenward.storage.memory import MemoryStore
from tokenward.storage.postgres import PostgresStore

logger = get_logger(__name__)

# authorization header -> user id, or None when the caller is not authenticated
IdentityResolver = Callable[[Optional[str]], Optional[str]]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, identity_resolver: Optional[IdentityResolver] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.memory_store_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.refresh_tokens = RefreshTokenService(self.store, self.settings)
        self.cleanup = TokenCleanupScheduler(
            self.refresh_tokens,
            interval_hours=self.settings.token_cleanup_interval_hours,
        )
        # Supplied by the host application that owns access-token verification
        self.identity_resolver: Optional[IdentityResolver] = identity_resolver

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            refresh_token_ttl_days=self.settings.refresh_token_ttl_days,
            refresh_idle_days=self.settings.refresh_idle_days,
            token_cleanup_enabled=self.settings.token_cleanup_enabled,
        )

    def resolve_identity(self, authorization: Optional[str]) -> Optional[str]:
        if self.identity_resolver is None:
            return None
        return self.identity_resolver(authorization)

    async def close(self) -> None:
        await self.cleanup.stop()
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
_identity_resolver: Optional[IdentityResolver] = None


def configure_runtime(*, identity_resolver: Optional[IdentityResolver]) -> None:
    """Install the host application's identity resolver.

    The resolver maps the raw ``Authorization`` header to a user id (or None)
    and guards the session routes. Call this once at startup, before or after
    the runtime is first built; an existing runtime picks it up immediately.
    """
    global _identity_resolver
    with _runtime_lock:
        _identity_resolver = identity_resolver
        if runtime is not None:
            runtime.identity_resolver = identity_resolver


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime(identity_resolver=_identity_resolver)
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime, _identity_resolver

    with _runtime_lock:
        _identity_resolver = None
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
