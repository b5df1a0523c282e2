from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher
from redis.exceptions import RedisError

from tollgate.config import (
    LockoutBackend,
    Settings,
    StoreBackend,
    get_settings,
    reset_settings_cache,
)
from tollgate.logging import get_logger
from tollgate.service.credentials import CredentialDirectory
from tollgate.service.email import LockoutNotifier
from tollgate.service.gateway import AuthGateway
from tollgate.service.lockout import LockoutTracker
from tollgate.service.recovery import RecoveryCodeVault
from tollgate.service.sessions import SessionRegistry
from tollgate.service.totp import TotpEnrollment
from tollgate.storage.cipher import BlobCipher
from tollgate.storage.memory import MemoryStore
from tollgate.storage.models import utcnow
from tollgate.storage.postgres import PostgresStore
from tollgate.storage.redis_cache import RedisLockoutStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
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
    """Holds the wired auth components for the FastAPI app and scripts."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.policy = self.settings.auth_policy()
        store_type = self.settings.store_backend.value
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            lockout_backend=self.settings.lockout_backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.store_backend == StoreBackend.POSTGRES:
                self.store = PostgresStore(self.settings.database_url)
            else:
                self.store = MemoryStore(
                    self.settings.state_root if self.settings.persist_memory_store else None
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.lockout_store = self._build_lockout_store()
        self.cipher = BlobCipher(self.settings.resolve_encryption_key())

        self.directory = CredentialDirectory(self.store, hasher=hasher)
        self.lockout = LockoutTracker(
            self.lockout_store or self.store, self.policy, clock=clock
        )
        self.vault = RecoveryCodeVault(self.store, self.cipher)
        self.enrollment = TotpEnrollment(
            self.store,
            self.cipher,
            self.vault,
            self.policy,
            issuer=self.settings.issuer,
            clock=clock,
        )
        self.sessions = SessionRegistry(self.store, self.policy, clock=clock)
        self.notifier = LockoutNotifier(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        two_factor_lockout = None
        if self.settings.throttle_two_factor:
            two_factor_lockout = LockoutTracker(
                self.lockout.store, self.policy, clock=clock, scope="2fa"
            )
        self.gateway = AuthGateway(
            directory=self.directory,
            lockout=self.lockout,
            enrollment=self.enrollment,
            vault=self.vault,
            sessions=self.sessions,
            notifier=self.notifier,
            two_factor_lockout=two_factor_lockout,
            clock=clock,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_lockout=self.lockout_store is not None,
            email_configured=self.notifier.is_configured,
            throttle_two_factor=two_factor_lockout is not None,
            session_timeout_minutes=self.settings.session_timeout_minutes,
        )

    def _build_lockout_store(self) -> Optional[RedisLockoutStore]:
        if self.settings.lockout_backend != LockoutBackend.REDIS:
            return None
        ttl = (self.policy.lockout_duration + self.policy.attempts_window).total_seconds()
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                lockout_store = RedisLockoutStore(self.settings.redis_url, ttl_seconds=int(ttl))
                lockout_store.verify_connection()
                return lockout_store
            except RedisError as exc:
                redis_error = exc
        if not self.settings.test_mode:
            raise RuntimeError(
                "LOCKOUT_BACKEND=redis requires a reachable REDIS_URL"
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE",
        )
        return None


runtime: Runtime | None = None
# Thread-safe singleton
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


def reset_runtime_for_tests(**kwargs) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.lockout_store is not None:
            runtime.lockout_store.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **kwargs)
        return runtime
