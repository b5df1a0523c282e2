from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tollgate.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Where credentials, two-factor secrets and sessions live."""

    MEMORY = "memory"
    POSTGRES = "postgres"


class LockoutBackend(str, Enum):
    """Where failed-login windows live."""

    STORE = "store"
    REDIS = "redis"


@dataclass(frozen=True)
class AuthPolicy:
    """Timing and threshold policy shared by lockout, sessions and 2FA.

    Built once from Settings and handed to every component so they agree on
    expiry semantics.
    """

    max_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=30)
    attempts_window: timedelta = timedelta(minutes=15)
    session_timeout: timedelta = timedelta(minutes=30)
    two_factor_session_timeout: timedelta = timedelta(minutes=30)
    two_factor_setup_ttl: timedelta = timedelta(minutes=10)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "TOLLGATE_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/tollgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    lockout_backend: LockoutBackend = env_field(LockoutBackend.STORE, "LOCKOUT_BACKEND")
    state_root: str = env_field("/srv/tollgate", "STATE_ROOT")
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Snapshot the memory store to STATE_ROOT/state as JSON",
    )
    encryption_key: str | None = env_field(
        None,
        "TOLLGATE_ENCRYPTION_KEY",
        description="Fernet key material for two-factor secrets and recovery codes",
    )
    issuer: str = env_field("Tollgate", "TOTP_ISSUER")

    max_login_attempts: int = env_field(5, "AUTH_LOCKOUT_MAX_ATTEMPTS")
    lockout_duration_minutes: int = env_field(30, "AUTH_LOCKOUT_DURATION")
    attempts_window_minutes: int = env_field(15, "AUTH_LOCKOUT_WINDOW")
    session_timeout_minutes: int = env_field(30, "SESSION_TIMEOUT")
    two_factor_session_timeout_minutes: int = env_field(30, "TWO_FACTOR_SESSION_TIMEOUT")
    two_factor_setup_ttl_minutes: int = env_field(
        10,
        "TWO_FACTOR_SETUP_TTL",
        description="Minutes a pending 2FA setup may wait for confirmation",
    )
    throttle_two_factor: bool = env_field(
        False,
        "THROTTLE_TWO_FACTOR",
        description="Apply the lockout policy to failed 2FA verifications as well",
    )
    session_sweep_interval_seconds: int = env_field(300, "SESSION_SWEEP_INTERVAL")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tollgate", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of browser origins allowed to call the API",
    )

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("lockout_backend")
    @classmethod
    def _validate_lockout_backend(cls, value: LockoutBackend) -> LockoutBackend:
        return LockoutBackend(value)

    @field_validator(
        "max_login_attempts",
        "lockout_duration_minutes",
        "attempts_window_minutes",
        "session_timeout_minutes",
        "two_factor_session_timeout_minutes",
        "two_factor_setup_ttl_minutes",
        "session_sweep_interval_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    def auth_policy(self) -> AuthPolicy:
        return AuthPolicy(
            max_attempts=self.max_login_attempts,
            lockout_duration=timedelta(minutes=self.lockout_duration_minutes),
            attempts_window=timedelta(minutes=self.attempts_window_minutes),
            session_timeout=timedelta(minutes=self.session_timeout_minutes),
            two_factor_session_timeout=timedelta(
                minutes=self.two_factor_session_timeout_minutes
            ),
            two_factor_setup_ttl=timedelta(minutes=self.two_factor_setup_ttl_minutes),
        )

    def resolve_encryption_key(self) -> str:
        """Return the configured key material, generating and persisting one if unset.

        A generated key is written under ``state_root`` with 0600 permissions so
        stored two-factor secrets stay decryptable across restarts.
        """
        if self.encryption_key:
            return self.encryption_key

        root = Path(self.state_root)
        key_path = root / ".encryption_key"
        try:
            root.mkdir(parents=True, exist_ok=True)
            os.chmod(root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass

        if key_path.exists() and not key_path.is_symlink():
            persisted = key_path.read_text().strip()
            if persisted:
                return persisted

        generated = Fernet.generate_key().decode()
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=".encryption_key_", suffix=".tmp")
        try:
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("encryption_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist encryption key; set TOLLGATE_ENCRYPTION_KEY or make STATE_ROOT writable"
            ) from exc
        logger.warning("encryption_key_generated", path=str(key_path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
