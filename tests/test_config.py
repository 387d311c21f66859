"""
Unit tests for configuration loading.

Tests strict YAML validation and environment overrides.
"""

import os
import tempfile

import pytest
import yaml

from cost_governor.config.loader import (
    CALLBACK_ENV_VAR,
    CONFIG_ENV_VAR,
    DB_ENV_VAR,
    WALLET_ENV_VAR,
    GovernorConfig,
    load_config,
    load_governor_config,
)

FULL_CONFIG = """
database: /tmp/governor.db
host_config: ~/.openclaw/openclaw.json
budget:
  daily: 5
  weekly: 25.5
  alert_threshold_percent: 80
  circuit_breaker_enabled: false
alerts:
  cooldown_minutes: 15
  channels:
    - type: console
    - type: webhook
      url: https://hooks.example.com/cost
      headers:
        Authorization: Bearer token
    - type: discord
      webhook_url: https://discord.com/api/webhooks/1
      enabled: false
breaker:
  auto_reset: true
  pause_window_hours: 2
pending:
  max_entries: 500
pricing:
  - provider: openai
    model: gpt-4o
    prompt_per_1k: 0.005
    completion_per_1k: 0.015
payments:
  recipient: "0xrecipient"
  free_history_days: 14
  tiers:
    pro_yearly:
      amount: 5
      token: USDC
      chain: base
      duration_months: 12
"""


@pytest.fixture
def write_config():
    with tempfile.TemporaryDirectory() as temp_dir:
        def _write(content):
            path = os.path.join(temp_dir, "cost_governor.yaml")
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
            return path
        yield _write


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (CONFIG_ENV_VAR, DB_ENV_VAR, WALLET_ENV_VAR, CALLBACK_ENV_VAR):
        monkeypatch.delenv(name, raising=False)


class TestLoadGovernorConfig:
    """Test loading and validating the YAML file."""

    def test_full_config(self, write_config):
        config = load_governor_config(write_config(FULL_CONFIG))

        assert config.database == "/tmp/governor.db"
        assert config.host_config == "~/.openclaw/openclaw.json"
        assert config.budget.daily_limit == 5.0
        assert config.budget.weekly_limit == 25.5
        assert config.budget.monthly_limit == 200.0
        assert config.budget.alert_threshold_percent == 80
        assert config.budget.circuit_breaker_enabled is False
        assert config.alerts.cooldown_minutes == 15
        assert [c.type for c in config.alerts.channels] == ["console", "webhook", "discord"]
        assert config.alerts.channels[1].config == {
            "url": "https://hooks.example.com/cost",
            "headers": {"Authorization": "Bearer token"},
        }
        assert config.alerts.channels[2].enabled is False
        assert config.breaker.auto_reset is True
        assert config.breaker.pause_window_hours == 2
        assert config.max_pending == 500
        assert config.pricing[0].prompt_cost_per_1k == 0.005
        assert config.payments.recipient == "0xrecipient"
        assert config.payments.free_history_days == 14
        assert set(config.payments.tiers) == {"pro_monthly", "pro_yearly"}
        assert config.payments.tiers["pro_yearly"].duration_months == 12

    def test_minimal_config_uses_defaults(self, write_config):
        config = load_governor_config(write_config("budget:\n  daily: 3\n"))

        assert config.budget.daily_limit == 3.0
        assert config.database == GovernorConfig().database
        assert config.alerts.channels == []
        assert config.max_pending == 10_000

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_governor_config("/nonexistent/cost_governor.yaml")

    def test_empty_file(self, write_config):
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_governor_config(write_config(""))

    def test_invalid_yaml(self, write_config):
        with pytest.raises(yaml.YAMLError):
            load_governor_config(write_config("budget: [unclosed"))

    @pytest.mark.parametrize("content,message", [
        ("unknown: 1\n", "Unknown keys in configuration"),
        ("budget:\n  hourly: 1\n", "Unknown keys in budget"),
        ("budget:\n  daily: 0\n", "'daily' in budget must be > 0"),
        ("budget:\n  alert_threshold_percent: 150\n", "alert_threshold_percent"),
        ("budget:\n  circuit_breaker_enabled: 'yes'\n", "must be a boolean"),
        ("alerts:\n  channels:\n    - type: sms\n", "'type' in alerts.channels"),
        ("alerts:\n  channels:\n    - type: webhook\n", "Missing required 'url'"),
        ("pricing:\n  - provider: openai\n    model: gpt-4o\n", "Missing required keys"),
        ("pending:\n  max_entries: 0\n", "max_entries"),
        ("payments:\n  tiers:\n    pro:\n      amount: 1\n", "Missing required 'token'"),
        ("- just\n- a list\n", "must be a dictionary"),
    ])
    def test_invalid_values(self, write_config, content, message):
        with pytest.raises(ValueError, match=message):
            load_governor_config(write_config(content))


class TestLoadConfig:
    """Test resolution order and environment overrides."""

    def test_defaults_without_file(self, monkeypatch):
        with tempfile.TemporaryDirectory() as temp_dir:
            monkeypatch.chdir(temp_dir)
            config = load_config()

        assert config == GovernorConfig()

    def test_env_selects_file(self, monkeypatch, write_config):
        monkeypatch.setenv(CONFIG_ENV_VAR, write_config("budget:\n  daily: 7\n"))

        assert load_config().budget.daily_limit == 7.0

    def test_default_file_in_working_directory(self, monkeypatch, write_config):
        path = write_config("budget:\n  weekly: 70\n")
        monkeypatch.chdir(os.path.dirname(path))

        assert load_config().budget.weekly_limit == 70.0

    def test_env_overrides(self, monkeypatch, write_config):
        monkeypatch.setenv(DB_ENV_VAR, "/var/lib/governor.db")
        monkeypatch.setenv(WALLET_ENV_VAR, "0xenvwallet")
        monkeypatch.setenv(CALLBACK_ENV_VAR, "https://governor.example.com/verify")

        config = load_config(write_config(FULL_CONFIG))

        assert config.database == "/var/lib/governor.db"
        assert config.payments.recipient == "0xenvwallet"
        assert config.payments.callback_url == "https://governor.example.com/verify"
        assert config.payments.free_history_days == 14
        assert config.budget.daily_limit == 5.0
