"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/sigalert.db"


@dataclass
class DispatcherConfig:
    """Queue polling and retry configuration."""

    poll_interval_seconds: int = 30
    batch_size: int = 100
    max_attempts: int = 3
    backoff_base_seconds: int = 30
    backoff_cap_seconds: int = 3600
    claim_timeout_seconds: int = 300
    retention_days: int = 30


@dataclass
class TimingConfig:
    """Smart-timing fallbacks for users without preferences."""

    default_max_hourly_notifications: int = 5
    default_volatility_threshold: float = 0.1
    volatility_pause_seconds: int = 1800
    minor_strategies: list[str] = field(default_factory=list)


@dataclass
class EmailChannelConfig:
    """Email SMTP settings."""

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""


@dataclass
class SmsChannelConfig:
    """HTTP SMS gateway settings."""

    api_url: str = ""
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""


@dataclass
class TelegramChannelConfig:
    """Telegram bot settings."""

    bot_token: str = ""
    api_base: str = "https://api.telegram.org"


@dataclass
class ChannelsConfig:
    """Delivery channel configuration."""

    email: EmailChannelConfig = field(default_factory=EmailChannelConfig)
    sms: SmsChannelConfig = field(default_factory=SmsChannelConfig)
    telegram: TelegramChannelConfig = field(default_factory=TelegramChannelConfig)


@dataclass
class WebhookConfig:
    """Inbound HTTP settings."""

    host: str = "0.0.0.0"
    port: int = 8080
    token: Optional[str] = None
    admin_token: Optional[str] = None


@dataclass
class MarketDataConfig:
    """Price feed configuration."""

    lookback_days: int = 30
    alert_cooldown_hours: int = 24


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    channels: ChannelsConfig = field(default_factory=ChannelsConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path", DatabaseConfig.path)
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    dispatcher = config_dict.get("dispatcher") or {}
    for key in ("poll_interval_seconds", "batch_size", "max_attempts", "backoff_base_seconds"):
        if key in dispatcher and int(dispatcher[key]) <= 0:
            raise ConfigValidationError(f"dispatcher.{key} must be positive")
    base = int(dispatcher.get("backoff_base_seconds", DispatcherConfig.backoff_base_seconds))
    cap = int(dispatcher.get("backoff_cap_seconds", DispatcherConfig.backoff_cap_seconds))
    if cap < base:
        raise ConfigValidationError(
            "dispatcher.backoff_cap_seconds must be >= backoff_base_seconds"
        )

    timing = config_dict.get("timing") or {}
    if int(timing.get("default_max_hourly_notifications", 5)) < 0:
        raise ConfigValidationError("timing.default_max_hourly_notifications must be >= 0")
    if float(timing.get("default_volatility_threshold", 0.1)) < 0:
        raise ConfigValidationError("timing.default_volatility_threshold must be >= 0")

    market_data = config_dict.get("market_data") or {}
    if int(market_data.get("alert_cooldown_hours", 24)) < 0:
        raise ConfigValidationError("market_data.alert_cooldown_hours must be >= 0")


def build_config(config_dict: dict[str, Any]) -> AppConfig:
    """Build AppConfig from a plain dict (already env-substituted)."""
    _validate_config(config_dict)

    channels_dict = config_dict.get("channels") or {}
    channels = ChannelsConfig(
        email=EmailChannelConfig(**(channels_dict.get("email") or {})),
        sms=SmsChannelConfig(**(channels_dict.get("sms") or {})),
        telegram=TelegramChannelConfig(**(channels_dict.get("telegram") or {})),
    )

    webhook_dict = dict(config_dict.get("webhook") or {})
    # Empty env substitutions mean "not configured"
    for key in ("token", "admin_token"):
        if not webhook_dict.get(key):
            webhook_dict[key] = None

    return AppConfig(
        database=DatabaseConfig(**(config_dict.get("database") or {})),
        dispatcher=DispatcherConfig(**(config_dict.get("dispatcher") or {})),
        timing=TimingConfig(**(config_dict.get("timing") or {})),
        channels=channels,
        webhook=WebhookConfig(**webhook_dict),
        market_data=MarketDataConfig(**(config_dict.get("market_data") or {})),
        advanced=AdvancedConfig(**(config_dict.get("advanced") or {})),
    )


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config)

    try:
        return build_config(config_dict)
    except TypeError as e:
        # Unknown keys in a section
        raise ConfigValidationError(f"Invalid configuration: {e}") from e
