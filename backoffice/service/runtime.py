from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from backoffice.config import get_settings, reset_settings_cache
from backoffice.logging import get_logger
from backoffice.service.admin import AdminService
from backoffice.service.auth import AuthService
from backoffice.service.clock import Clock, SystemClock
from backoffice.service.passwords import PasswordCredentialVerifier
from backoffice.service.refresh import RefreshOrchestrator
from backoffice.service.seed import seed_admin_role
from backoffice.service.tokens import TokenIssuer
from backoffice.storage.memory import MemoryStore
from backoffice.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Optional[Clock] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.clock: Clock = clock or SystemClock()
        self.verifier = PasswordCredentialVerifier()
        self.issuer = TokenIssuer(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            clock=self.clock,
            verifier=self.verifier,
            issuer=self.issuer,
        )
        self.refresh = RefreshOrchestrator(
            self.store, self.settings, clock=self.clock, issuer=self.issuer
        )
        self.admin = AdminService(
            self.store, self.settings, clock=self.clock, verifier=self.verifier
        )
        seed_admin_role(self.store, now=self.clock.now())
        logger.info("runtime_init_completed", build_sha=self.settings.build_sha)

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Optional[Clock] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime(clock=clock)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
