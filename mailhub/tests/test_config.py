"""Tests for environment-driven settings."""

from mailhub.core.config import MailhubSettings


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("MAILHUB_API_PORT", "9100")
    monkeypatch.setenv("MAILHUB_INITIAL_SYNC_LIMIT", "25")
    monkeypatch.setenv("MAILHUB_UNRELATED_OPTION", "x")

    settings = MailhubSettings()

    assert settings.api_port == 9100
    assert settings.initial_sync_limit == 25
    assert not hasattr(settings, "unrelated_option")


def test_settings_config_dict():
    config = MailhubSettings.model_config
    assert config["env_prefix"] == "MAILHUB_"
    assert config["extra"] == "ignore"
