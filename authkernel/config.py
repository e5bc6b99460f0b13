from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from authkernel.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(fs_root: Path, name: str) -> str:
    """Load a signing secret from ``fs_root`` or generate and persist one.

    Tokens must stay valid across restarts, so a generated secret is written
    with 0600 permissions using a temp-file-then-rename.
    """
    secret_path = fs_root / f".{name}"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("secret_read_failed", name=name, path=str(secret_path), error=str(exc))
        else:
            if len(persisted) >= MIN_SECRET_LENGTH:
                return persisted

    generated = secrets.token_urlsafe(64)
    fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f".{name}_", suffix=".tmp")
    try:
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", name=name, path=str(secret_path), error=str(exc))
        raise RuntimeError(
            f"Unable to persist {name}; set it explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("secret_generated", name=name)
    return generated


class Settings(BaseModel):
    """Runtime settings for the credential and token lifecycle engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authkernel", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and in-process fallbacks for test runs.",
    )
    kv_key_prefix: str = env_field(
        "", "KV_KEY_PREFIX", description="Namespace prepended to every session/lockout key"
    )

    # Token codec
    access_token_secret: str | None = env_field(
        None, "ACCESS_TOKEN_SECRET", validate_default=True
    )
    refresh_token_secret: str | None = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    token_issuer: str = env_field("authkernel", "TOKEN_ISSUER")
    access_token_ttl_seconds: int = env_field(900, "ACCESS_TOKEN_TTL_SECONDS", gt=0)
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        ge=0,
        description="Allowance for clock skew when checking token expiry",
    )

    # Lockout guard
    max_failures: int = env_field(5, "LOCKOUT_MAX_FAILURES", gt=0)
    failure_window_seconds: int = env_field(900, "LOCKOUT_FAILURE_WINDOW_SECONDS", gt=0)
    lockout_seconds: int = env_field(900, "LOCKOUT_SECONDS", gt=0)

    # Verification ledger / email delivery
    verification_ttl_seconds: int = env_field(1800, "VERIFICATION_TTL_SECONDS", gt=0)
    verification_base_url: str = env_field(
        "http://localhost:8080/api/auth/verify", "VERIFICATION_BASE_URL"
    )
    email_enabled: bool = env_field(False, "EMAIL_ENABLED")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authentication", "EMAIL_FROM_NAME")

    # Orchestrator policy
    issue_tokens_on_register: bool = env_field(
        True,
        "ISSUE_TOKENS_ON_REGISTER",
        description="Hand out a session at registration, before the email is verified",
    )
    default_role: str = env_field("USER", "DEFAULT_ROLE")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS", gt=0)

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

    @field_validator("access_token_secret", "refresh_token_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{info.field_name} must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/authkernel")
        return _persisted_secret(fs_root, info.field_name)

    @model_validator(mode="after")
    def _require_disjoint_keys(self) -> "Settings":
        # Access and refresh tokens must never verify under each other's key
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access_token_secret and refresh_token_secret must differ")
        return self


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
