import os
import stat

import pytest
from pydantic import ValidationError

from authkernel.config import Settings, get_settings, reset_settings_cache


def test_missing_secrets_are_generated_and_persisted(tmp_path):
    first = Settings(shared_fs_root=str(tmp_path))

    assert len(first.access_token_secret) >= 32
    assert first.access_token_secret != first.refresh_token_secret
    secret_file = tmp_path / ".access_token_secret"
    assert secret_file.read_text() == first.access_token_secret
    assert stat.S_IMODE(os.stat(secret_file).st_mode) == 0o600

    second = Settings(shared_fs_root=str(tmp_path))
    assert second.access_token_secret == first.access_token_secret
    assert second.refresh_token_secret == first.refresh_token_secret


def test_short_secret_is_rejected(tmp_path):
    with pytest.raises(ValidationError):
        Settings(shared_fs_root=str(tmp_path), access_token_secret="too-short")


def test_identical_secrets_are_rejected(tmp_path):
    secret = "s" * 40
    with pytest.raises(ValidationError):
        Settings(
            shared_fs_root=str(tmp_path),
            access_token_secret=secret,
            refresh_token_secret=secret,
        )


def test_defaults(tmp_path):
    settings = Settings(shared_fs_root=str(tmp_path))
    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 604800
    assert settings.max_failures == 5
    assert settings.failure_window_seconds == 900
    assert settings.lockout_seconds == 900
    assert settings.verification_ttl_seconds == 1800
    assert settings.issue_tokens_on_register is True
    assert settings.default_role == "USER"


def test_from_env_reads_named_variables(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("LOCKOUT_MAX_FAILURES", "3")
    monkeypatch.setenv("ISSUE_TOKENS_ON_REGISTER", "false")
    monkeypatch.setenv("KV_KEY_PREFIX", "auth:")

    settings = Settings.from_env()

    assert settings.max_failures == 3
    assert settings.issue_tokens_on_register is False
    assert settings.kv_key_prefix == "auth:"


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings() is not first
    reset_settings_cache()
