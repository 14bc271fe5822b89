"""
Configuration management and loading.

Handles the YAML settings file and environment variables. Validation is
strict: unknown keys are rejected rather than silently ignored, since a
misspelled tariff or retry setting would otherwise go unnoticed until a
client is charged the wrong amount.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.pricing_config import PricingConfig
from ..core.refund_eligibility import RefundPolicy
from ..core.shipment_status import STATUS_PROGRESSION
from ..gateway.retry import RetryPolicy
from ..storage.db import DEFAULT_DB_PATH

ENV_STRIPE_SECRET_KEY = "STRIPE_SECRET_KEY"
ENV_STRIPE_WEBHOOK_SECRET = "STRIPE_WEBHOOK_SECRET"
ENV_DB_PATH = "SHIPMENT_PAYMENTS_DB"


@dataclass(frozen=True)
class GatewayConfig:
    """Payment gateway call settings."""
    currency: str = "usd"
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    deadline_seconds: float = 30.0
    request_timeout_seconds: float = 10.0

    def __post_init__(self):
        """Validate gateway settings."""
        if not self.currency or len(self.currency) != 3:
            raise ValueError("currency must be a 3-letter ISO code")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            deadline_seconds=self.deadline_seconds,
        )


@dataclass(frozen=True)
class PaymentsConfig:
    """Split payment settings."""
    deposit_percent: int = 20
    refund_window_hours: float = 1.0

    def __post_init__(self):
        """Validate payment settings."""
        if self.deposit_percent != 20:
            raise ValueError("deposit_percent is fixed at 20")
        if self.refund_window_hours < 0:
            raise ValueError("refund_window_hours cannot be negative")


@dataclass(frozen=True)
class GatewaySecrets:
    """Credentials read from the environment, never from the YAML file."""
    api_key: Optional[str]
    webhook_secret: Optional[str]


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    pricing: PricingConfig = field(default_factory=PricingConfig)
    refund_policy: RefundPolicy = field(default_factory=RefundPolicy)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    payments: PaymentsConfig = field(default_factory=PaymentsConfig)


def load_app_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    With no path, built-in defaults are returned.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return AppConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")

    allowed_top_keys = {'pricing', 'refund_policy', 'gateway', 'payments'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    pricing_data = _section(raw_config, 'pricing')
    return AppConfig(
        pricing=PricingConfig.from_dict(pricing_data) if pricing_data else PricingConfig(),
        refund_policy=_parse_refund_policy(_section(raw_config, 'refund_policy')),
        gateway=_parse_gateway(_section(raw_config, 'gateway')),
        payments=_parse_payments(_section(raw_config, 'payments')),
    )


def load_secrets() -> GatewaySecrets:
    """Read gateway credentials from the environment."""
    return GatewaySecrets(
        api_key=os.environ.get(ENV_STRIPE_SECRET_KEY) or None,
        webhook_secret=os.environ.get(ENV_STRIPE_WEBHOOK_SECRET) or None,
    )


def resolve_db_path(cli_value: Optional[str] = None) -> str:
    """Database path from the CLI option, then the environment, then the default."""
    return cli_value or os.environ.get(ENV_DB_PATH) or DEFAULT_DB_PATH


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict[str, Any], key: str, path: str, default):
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return value


def _parse_refund_policy(data: Dict[str, Any]) -> RefundPolicy:
    """Parse the refund percentage table.

    Statuses left out of ``percent_by_status`` refund ``default_percent``.
    """
    if not data:
        return RefundPolicy()
    _check_keys(data, {'percent_by_status', 'default_percent', 'enforce_refund_deadline'}, 'refund_policy')

    table = data.get('percent_by_status')
    if table is None:
        percentages = RefundPolicy().refund_percent_by_status
    else:
        if not isinstance(table, dict):
            raise ValueError("'percent_by_status' in refund_policy must be a dictionary")
        unknown_statuses = set(table.keys()) - set(STATUS_PROGRESSION)
        if unknown_statuses:
            raise ValueError(f"Unknown shipment statuses in refund_policy: {unknown_statuses}")
        percentages = dict(table)

    enforce = data.get('enforce_refund_deadline', False)
    if not isinstance(enforce, bool):
        raise ValueError("'enforce_refund_deadline' in refund_policy must be a boolean")

    default_percent = data.get('default_percent', 0)
    if isinstance(default_percent, bool) or not isinstance(default_percent, int):
        raise ValueError("'default_percent' in refund_policy must be an integer")

    return RefundPolicy(
        refund_percent_by_status=percentages,
        default_percent=default_percent,
        enforce_refund_deadline=enforce,
    )


def _parse_gateway(data: Dict[str, Any]) -> GatewayConfig:
    path = 'gateway'
    _check_keys(
        data,
        {'currency', 'max_attempts', 'backoff_seconds', 'deadline_seconds', 'request_timeout_seconds'},
        path,
    )
    currency = data.get('currency', 'usd')
    if not isinstance(currency, str):
        raise ValueError(f"'currency' in {path} must be a string")
    max_attempts = data.get('max_attempts', 3)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
        raise ValueError(f"'max_attempts' in {path} must be an integer")

    config = GatewayConfig(
        currency=currency.lower(),
        max_attempts=max_attempts,
        backoff_seconds=float(_number(data, 'backoff_seconds', path, 0.5)),
        deadline_seconds=float(_number(data, 'deadline_seconds', path, 30.0)),
        request_timeout_seconds=float(_number(data, 'request_timeout_seconds', path, 10.0)),
    )
    # Fail at load time rather than on the first gateway call
    config.retry_policy
    return config


def _parse_payments(data: Dict[str, Any]) -> PaymentsConfig:
    path = 'payments'
    _check_keys(data, {'deposit_percent', 'refund_window_hours'}, path)
    deposit_percent = data.get('deposit_percent', 20)
    if isinstance(deposit_percent, bool) or not isinstance(deposit_percent, int):
        raise ValueError(f"'deposit_percent' in {path} must be an integer")
    return PaymentsConfig(
        deposit_percent=deposit_percent,
        refund_window_hours=float(_number(data, 'refund_window_hours', path, 1.0)),
    )
