"""Tests for identity settings."""

from __future__ import annotations

from datetime import timedelta

import pytest
from identity_core.config import DecryptFailurePolicy, Settings, load_settings
from pydantic import ValidationError


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.trial_window == timedelta(days=2)
        assert settings.billing_period == timedelta(days=30)
        assert settings.bcrypt_rounds == 10
        assert settings.decrypt_failure_policy is DecryptFailurePolicy.DEGRADE
        assert settings.default_payment_method == "PIX"

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("IDENTITY_TRIAL_WINDOW_DAYS", "7")
        monkeypatch.setenv("IDENTITY_DECRYPT_FAILURE_POLICY", "raise")
        settings = load_settings(_env_file=None)
        assert settings.trial_window_days == 7
        assert settings.decrypt_failure_policy is DecryptFailurePolicy.RAISE

    def test_weak_bcrypt_cost_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(bcrypt_rounds=4, _env_file=None)

    def test_key_is_secret(self) -> None:
        settings = Settings(encryption_key="ab" * 32, _env_file=None)
        assert "ab" * 32 not in repr(settings)
        assert settings.encryption_key.get_secret_value() == "ab" * 32
