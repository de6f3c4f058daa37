from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from fineguard.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_STATE_DIR = "/var/lib/fineguard"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session security services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fineguard", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    state_dir: str = env_field(_DEFAULT_STATE_DIR, "STATE_DIR")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("fineguard", "JWT_ISSUER")
    jwt_audience: str = env_field("fine-portal-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of stateless access tokens",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Lifetime of single-use refresh tokens",
    )

    lockout_threshold: int = env_field(
        5,
        "LOCKOUT_THRESHOLD",
        description="Consecutive failed logins before the account is locked",
    )
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")

    reset_token_ttl_minutes: int = env_field(
        30,
        "RESET_TOKEN_TTL_MINUTES",
        description="Password reset token lifetime; the reset email quotes this value",
    )
    verification_token_ttl_minutes: int = env_field(
        24 * 60, "VERIFICATION_TOKEN_TTL_MINUTES"
    )

    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_require_complexity: bool = env_field(True, "PASSWORD_REQUIRE_COMPLEXITY")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost_kib: int = env_field(65536, "ARGON2_MEMORY_COST_KIB")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    totp_issuer: str = env_field("LasPinasTraffic", "TOTP_ISSUER")
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_skew_steps: int = env_field(
        1,
        "TOTP_SKEW_STEPS",
        description="Adjacent time steps accepted on either side of the current one",
    )
    mfa_secret_key: Optional[str] = env_field(None, "MFA_SECRET_KEY")

    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Las Pinas Traffic Portal", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore", validate_default=True)

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

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "lockout_threshold",
        "lockout_minutes",
        "reset_token_ttl_minutes",
        "verification_token_ttl_minutes",
        "password_min_length",
        "totp_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("totp_digits")
    @classmethod
    def _validate_digits(cls, value: int) -> int:
        if value not in (6, 7, 8):
            raise ValueError("totp_digits must be 6, 7 or 8")
        return value

    @field_validator("totp_skew_steps")
    @classmethod
    def _validate_skew(cls, value: int) -> int:
        if value < 0 or value > 2:
            raise ValueError("totp_skew_steps must be between 0 and 2")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        state_dir = Path(os.getenv("STATE_DIR", _DEFAULT_STATE_DIR))
        return _load_or_create_secret(state_dir / ".jwt_secret")


def _load_or_create_secret(secret_path: Path) -> str:
    """Return the signing secret stored at ``secret_path``, creating it once.

    Tokens must stay valid across restarts, so a generated secret is written
    atomically (temp file + rename, mode 0600) and reused afterwards.
    """
    state_dir = secret_path.parent
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, 0o700)
    except PermissionError:
        # Pre-created by the container image with its own permissions
        pass

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= 32:
                return persisted

    generated = secrets.token_urlsafe(64)
    fd, tmp_path = tempfile.mkstemp(dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
    return generated


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Drop the cached Settings; the next get_settings() re-reads the environment."""
    global _settings_cache
    _settings_cache = None
