"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from cost_governor.core.licensing import DEFAULT_TIERS, TierPricing
from cost_governor.storage.db import DEFAULT_DB_PATH
from cost_governor.storage.models import BudgetConfig, ModelPricing

CONFIG_ENV_VAR = "COST_GOVERNOR_CONFIG"
DB_ENV_VAR = "COST_GOVERNOR_DB"
WALLET_ENV_VAR = "COST_GOVERNOR_PAYMENT_WALLET"
CALLBACK_ENV_VAR = "COST_GOVERNOR_CALLBACK_URL"
DEFAULT_CONFIG_PATH = "cost_governor.yaml"

CHANNEL_TYPES = {"console", "webhook", "discord"}


@dataclass(frozen=True)
class ChannelConfig:
    """An alert channel declared in the config file."""
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True


@dataclass(frozen=True)
class AlertsConfig:
    cooldown_minutes: float = 60
    channels: List[ChannelConfig] = field(default_factory=list)

    def __post_init__(self):
        if self.cooldown_minutes < 0:
            raise ValueError("cooldown_minutes must be >= 0")


@dataclass(frozen=True)
class BreakerConfig:
    auto_reset: bool = False
    pause_window_hours: float = 1

    def __post_init__(self):
        if self.pause_window_hours <= 0:
            raise ValueError("pause_window_hours must be > 0")


@dataclass(frozen=True)
class PaymentsConfig:
    recipient: str = "YOUR_WALLET_ADDRESS"
    callback_url: str = "http://localhost:9090/api/x402/verify"
    free_history_days: int = 7
    tiers: Dict[str, TierPricing] = field(default_factory=lambda: dict(DEFAULT_TIERS))

    def __post_init__(self):
        if self.free_history_days <= 0:
            raise ValueError("free_history_days must be > 0")


@dataclass(frozen=True)
class GovernorConfig:
    """Complete governor configuration."""
    database: str = DEFAULT_DB_PATH
    host_config: Optional[str] = None
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    max_pending: int = 10_000
    pricing: List[ModelPricing] = field(default_factory=list)
    payments: PaymentsConfig = field(default_factory=PaymentsConfig)


def load_config(path: Optional[str] = None) -> GovernorConfig:
    """Load the configuration, falling back to defaults.

    Resolution order: explicit path, ``COST_GOVERNOR_CONFIG``, then
    ``cost_governor.yaml`` in the working directory if it exists.
    Environment overrides are applied in every case.
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if path:
        config = load_governor_config(path)
    elif Path(DEFAULT_CONFIG_PATH).exists():
        config = load_governor_config(DEFAULT_CONFIG_PATH)
    else:
        config = GovernorConfig()
    return _apply_env_overrides(config)


def load_governor_config(path: str) -> GovernorConfig:
    """Load and validate governor configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GovernorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Governor config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {
        'database', 'host_config', 'budget', 'alerts', 'breaker',
        'pending', 'pricing', 'payments',
    }
    _reject_unknown(raw_config, allowed_top_keys, "configuration")

    defaults = GovernorConfig()
    return GovernorConfig(
        database=str(raw_config.get('database') or defaults.database),
        host_config=raw_config.get('host_config'),
        budget=_parse_budget(_section(raw_config, 'budget')),
        alerts=_parse_alerts(_section(raw_config, 'alerts')),
        breaker=_parse_breaker(_section(raw_config, 'breaker')),
        max_pending=_parse_pending(_section(raw_config, 'pending')),
        pricing=_parse_pricing(raw_config.get('pricing') or []),
        payments=_parse_payments(_section(raw_config, 'payments')),
    )


def _section(raw: Dict, name: str) -> Dict:
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_number(data: Dict, key: str, path: str) -> float:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be > 0")
    return float(value)


def _parse_budget(data: Dict) -> BudgetConfig:
    _reject_unknown(
        data,
        {'daily', 'weekly', 'monthly', 'alert_threshold_percent', 'circuit_breaker_enabled'},
        "budget",
    )
    defaults = BudgetConfig()
    kwargs: Dict[str, Any] = {}
    for tier in ('daily', 'weekly', 'monthly'):
        if tier in data:
            kwargs[f"{tier}_limit"] = _positive_number(data, tier, "budget")

    if 'alert_threshold_percent' in data:
        threshold = data['alert_threshold_percent']
        if isinstance(threshold, bool) or not isinstance(threshold, int) or not 0 < threshold <= 100:
            raise ValueError("'alert_threshold_percent' in budget must be an integer between 1 and 100")
        kwargs['alert_threshold_percent'] = threshold

    if 'circuit_breaker_enabled' in data:
        if not isinstance(data['circuit_breaker_enabled'], bool):
            raise ValueError("'circuit_breaker_enabled' in budget must be a boolean")
        kwargs['circuit_breaker_enabled'] = data['circuit_breaker_enabled']

    return replace(defaults, **kwargs)


def _parse_alerts(data: Dict) -> AlertsConfig:
    _reject_unknown(data, {'cooldown_minutes', 'channels'}, "alerts")
    cooldown = data.get('cooldown_minutes', 60)
    if isinstance(cooldown, bool) or not isinstance(cooldown, (int, float)):
        raise ValueError("'cooldown_minutes' in alerts must be a number")

    channels_data = data.get('channels') or []
    if not isinstance(channels_data, list):
        raise ValueError("'channels' in alerts must be a list")

    channels = []
    for index, channel in enumerate(channels_data):
        path = f"alerts.channels[{index}]"
        if not isinstance(channel, dict):
            raise ValueError(f"{path} must be a dictionary")
        _reject_unknown(channel, {'type', 'url', 'webhook_url', 'headers', 'enabled'}, path)
        channel_type = channel.get('type')
        if channel_type not in CHANNEL_TYPES:
            raise ValueError(f"'type' in {path} must be one of: {sorted(CHANNEL_TYPES)}")
        if channel_type in ('webhook', 'discord') and not (channel.get('url') or channel.get('webhook_url')):
            raise ValueError(f"Missing required 'url' in {path}")
        headers = channel.get('headers') or {}
        if not isinstance(headers, dict):
            raise ValueError(f"'headers' in {path} must be a dictionary")
        settings = {k: v for k, v in channel.items() if k in ('url', 'webhook_url', 'headers')}
        channels.append(ChannelConfig(
            type=channel_type,
            config=settings,
            enabled=bool(channel.get('enabled', True)),
        ))

    return AlertsConfig(cooldown_minutes=float(cooldown), channels=channels)


def _parse_breaker(data: Dict) -> BreakerConfig:
    _reject_unknown(data, {'auto_reset', 'pause_window_hours'}, "breaker")
    auto_reset = data.get('auto_reset', False)
    if not isinstance(auto_reset, bool):
        raise ValueError("'auto_reset' in breaker must be a boolean")
    kwargs: Dict[str, Any] = {'auto_reset': auto_reset}
    if 'pause_window_hours' in data:
        kwargs['pause_window_hours'] = _positive_number(data, 'pause_window_hours', "breaker")
    return BreakerConfig(**kwargs)


def _parse_pending(data: Dict) -> int:
    _reject_unknown(data, {'max_entries'}, "pending")
    max_entries = data.get('max_entries', 10_000)
    if isinstance(max_entries, bool) or not isinstance(max_entries, int) or max_entries <= 0:
        raise ValueError("'max_entries' in pending must be a positive integer")
    return max_entries


def _parse_pricing(data: Any) -> List[ModelPricing]:
    if not isinstance(data, list):
        raise ValueError("'pricing' must be a list")
    pricing = []
    for index, entry in enumerate(data):
        path = f"pricing[{index}]"
        if not isinstance(entry, dict):
            raise ValueError(f"{path} must be a dictionary")
        required = {'provider', 'model', 'prompt_per_1k', 'completion_per_1k'}
        _reject_unknown(entry, required, path)
        missing = required - set(entry.keys())
        if missing:
            raise ValueError(f"Missing required keys in {path}: {sorted(missing)}")
        for key in ('prompt_per_1k', 'completion_per_1k'):
            value = entry[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ValueError(f"'{key}' in {path} must be >= 0")
        pricing.append(ModelPricing(
            provider=str(entry['provider']),
            model=str(entry['model']),
            prompt_cost_per_1k=float(entry['prompt_per_1k']),
            completion_cost_per_1k=float(entry['completion_per_1k']),
        ))
    return pricing


def _parse_payments(data: Dict) -> PaymentsConfig:
    _reject_unknown(data, {'recipient', 'callback_url', 'free_history_days', 'tiers'}, "payments")
    defaults = PaymentsConfig()

    free_days = data.get('free_history_days', defaults.free_history_days)
    if isinstance(free_days, bool) or not isinstance(free_days, int) or free_days <= 0:
        raise ValueError("'free_history_days' in payments must be a positive integer")

    tiers = dict(defaults.tiers)
    tiers_data = data.get('tiers') or {}
    if not isinstance(tiers_data, dict):
        raise ValueError("'tiers' in payments must be a dictionary")
    for name, tier in tiers_data.items():
        tiers[name] = _parse_tier(tier, f"payments.tiers.{name}")

    return PaymentsConfig(
        recipient=str(data.get('recipient') or defaults.recipient),
        callback_url=str(data.get('callback_url') or defaults.callback_url),
        free_history_days=free_days,
        tiers=tiers,
    )


def _parse_tier(data: Any, path: str) -> TierPricing:
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")
    allowed = {'amount', 'token', 'chain', 'duration_months', 'license_tier'}
    _reject_unknown(data, allowed, path)
    for key in ('amount', 'token', 'chain', 'duration_months'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")

    duration = data['duration_months']
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        raise ValueError(f"'duration_months' in {path} must be a positive integer")

    return TierPricing(
        amount=_positive_number(data, 'amount', path),
        token=str(data['token']),
        chain=str(data['chain']),
        duration_months=duration,
        license_tier=str(data.get('license_tier', 'pro')),
    )


def _apply_env_overrides(config: GovernorConfig) -> GovernorConfig:
    database = os.environ.get(DB_ENV_VAR) or config.database
    payments = config.payments
    recipient = os.environ.get(WALLET_ENV_VAR)
    callback_url = os.environ.get(CALLBACK_ENV_VAR)
    if recipient or callback_url:
        payments = PaymentsConfig(
            recipient=recipient or payments.recipient,
            callback_url=callback_url or payments.callback_url,
            free_history_days=payments.free_history_days,
            tiers=payments.tiers,
        )
    return GovernorConfig(
        database=database,
        host_config=config.host_config,
        budget=config.budget,
        alerts=config.alerts,
        breaker=config.breaker,
        max_pending=config.max_pending,
        pricing=config.pricing,
        payments=payments,
    )
