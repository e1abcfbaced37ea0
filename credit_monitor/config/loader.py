"""
Configuration management and loading.

Handles the YAML settings file and the credential environment variable.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.errors import ConfigurationError
from ..extraction.engine import CREDENTIAL_KINDS, PORTAL_TOKEN
from ..extraction.patterns import DEFAULT_PATTERNS, PatternTable
from ..extraction.portal_api import DEFAULT_BASE_URL, parse_ledger_url
from ..storage.db import DEFAULT_DB_PATH

CREDENTIAL_ENV_VAR = "CREDIT_MONITOR_TOKEN"
DEFAULT_CONFIG_PATH = "credit_monitor.yaml"

MIN_POLLING_INTERVAL = 30
MAX_POLL_ATTEMPTS = 10


@dataclass(frozen=True)
class AlertsConfig:
    """Alert thresholds and delivery settings."""
    low_balance_threshold: int = 500
    critical_balance_threshold: int = 100
    cooldown_seconds: float = 300.0
    enabled: bool = True

    def __post_init__(self):
        """Validate that thresholds are ordered and non-negative."""
        if self.critical_balance_threshold < 0:
            raise ConfigurationError("critical_balance_threshold must be >= 0")
        if self.critical_balance_threshold >= self.low_balance_threshold:
            raise ConfigurationError(
                "critical_balance_threshold must be less than low_balance_threshold"
            )
        if self.cooldown_seconds < 0:
            raise ConfigurationError("cooldown_seconds must be >= 0")


@dataclass(frozen=True)
class ExtractionConfig:
    """Settings for the balance extraction cascade."""
    base_url: str = DEFAULT_BASE_URL
    session_base_url: Optional[str] = None
    use_browser: bool = True
    retry_attempts: int = 3
    timeout_seconds: float = 30.0
    poll_attempts: int = 10
    poll_interval_seconds: float = 3.0
    patterns: PatternTable = DEFAULT_PATTERNS

    def __post_init__(self):
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError("base_url must be an http(s) URL")
        if self.session_base_url is not None and (
            not isinstance(self.session_base_url, str)
            or not self.session_base_url.startswith(("http://", "https://"))
        ):
            raise ConfigurationError("session_base_url must be an http(s) URL")
        if self.retry_attempts < 1:
            raise ConfigurationError("retry_attempts must be >= 1")
        if self.timeout_seconds <= 0:
            raise ConfigurationError("timeout_seconds must be > 0")
        if not 1 <= self.poll_attempts <= MAX_POLL_ATTEMPTS:
            raise ConfigurationError(f"poll_attempts must be between 1 and {MAX_POLL_ATTEMPTS}")
        if self.poll_interval_seconds < 0:
            raise ConfigurationError("poll_interval_seconds must be >= 0")


@dataclass(frozen=True)
class MonitorConfig:
    """Complete monitor configuration."""
    credential: Optional[str] = None
    credential_kind: str = PORTAL_TOKEN
    customer_id: Optional[str] = None
    pricing_unit_id: Optional[str] = None
    database_path: str = DEFAULT_DB_PATH
    polling_interval_seconds: int = 60
    data_retention_days: int = 30
    prune_interval_hours: float = 24.0
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)

    def __post_init__(self):
        if self.credential_kind not in CREDENTIAL_KINDS:
            raise ConfigurationError(f"credential_kind must be one of: {list(CREDENTIAL_KINDS)}")
        if bool(self.customer_id) != bool(self.pricing_unit_id):
            raise ConfigurationError("customer_id and pricing_unit_id must be set together")
        if self.customer_id and self.credential_kind != PORTAL_TOKEN:
            raise ConfigurationError("ledger ids only apply to credential_kind: portal_token")
        if self.polling_interval_seconds < MIN_POLLING_INTERVAL:
            raise ConfigurationError(
                f"polling_interval_seconds must be >= {MIN_POLLING_INTERVAL}"
            )
        if self.data_retention_days < 1:
            raise ConfigurationError("data_retention_days must be >= 1")
        if self.prune_interval_hours <= 0:
            raise ConfigurationError("prune_interval_hours must be > 0")


def default_config() -> MonitorConfig:
    """Defaults, with the credential taken from the environment if set."""
    return MonitorConfig(credential=os.environ.get(CREDENTIAL_ENV_VAR) or None)


def load_config(path: str) -> MonitorConfig:
    """Load and validate monitor configuration from a YAML file.

    Unknown keys are rejected so a typo never silently falls back to a
    default. The credential environment variable, when set, overrides
    the file's `credential`.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MonitorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigurationError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a dictionary")

    allowed_top_keys = {
        'credential', 'ledger_url', 'credential_kind', 'database_path', 'polling_interval_seconds',
        'data_retention_days', 'prune_interval_hours', 'alerts', 'extraction',
    }
    _reject_unknown(raw_config, allowed_top_keys, "configuration")

    alerts = _parse_alerts(_section(raw_config, 'alerts'))
    extraction = _parse_extraction(_section(raw_config, 'extraction'))

    file_credential = raw_config.get('credential')
    if file_credential is not None and not isinstance(file_credential, str):
        raise ConfigurationError("'credential' must be a string")

    customer_id = pricing_unit_id = None
    ledger_url = raw_config.get('ledger_url')
    if ledger_url is not None:
        if file_credential:
            raise ConfigurationError("Set either 'credential' or 'ledger_url', not both")
        link = _parse_ledger(ledger_url, extraction.base_url)
        file_credential = link.token
        customer_id, pricing_unit_id = link.customer_id, link.pricing_unit_id

    credential = os.environ.get(CREDENTIAL_ENV_VAR) or file_credential

    defaults = MonitorConfig()
    return MonitorConfig(
        credential=credential or None,
        credential_kind=str(raw_config.get('credential_kind', defaults.credential_kind)),
        customer_id=customer_id,
        pricing_unit_id=pricing_unit_id,
        database_path=str(raw_config.get('database_path', defaults.database_path)),
        polling_interval_seconds=_number(
            raw_config, 'polling_interval_seconds', defaults.polling_interval_seconds, int),
        data_retention_days=_number(
            raw_config, 'data_retention_days', defaults.data_retention_days, int),
        prune_interval_hours=_number(
            raw_config, 'prune_interval_hours', defaults.prune_interval_hours, float),
        alerts=alerts,
        extraction=extraction,
    )


def _parse_alerts(data: Dict[str, Any]) -> AlertsConfig:
    _reject_unknown(
        data,
        {'low_balance_threshold', 'critical_balance_threshold', 'cooldown_seconds', 'enabled'},
        "alerts",
    )
    defaults = AlertsConfig()
    return AlertsConfig(
        low_balance_threshold=_number(
            data, 'low_balance_threshold', defaults.low_balance_threshold, int),
        critical_balance_threshold=_number(
            data, 'critical_balance_threshold', defaults.critical_balance_threshold, int),
        cooldown_seconds=_number(data, 'cooldown_seconds', defaults.cooldown_seconds, float),
        enabled=_flag(data, 'enabled', defaults.enabled),
    )


def _parse_extraction(data: Dict[str, Any]) -> ExtractionConfig:
    _reject_unknown(
        data,
        {'base_url', 'session_base_url', 'use_browser', 'retry_attempts', 'timeout_seconds',
         'poll_attempts', 'poll_interval_seconds', 'patterns'},
        "extraction",
    )
    defaults = ExtractionConfig()

    patterns_data = data.get('patterns') or {}
    if not isinstance(patterns_data, dict):
        raise ConfigurationError("'extraction.patterns' must be a dictionary")
    try:
        patterns = DEFAULT_PATTERNS.with_overrides(patterns_data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid extraction.patterns: {e}") from e

    return ExtractionConfig(
        base_url=str(data.get('base_url', defaults.base_url)).rstrip("/"),
        session_base_url=data.get('session_base_url'),
        use_browser=_flag(data, 'use_browser', defaults.use_browser),
        retry_attempts=_number(data, 'retry_attempts', defaults.retry_attempts, int),
        timeout_seconds=_number(data, 'timeout_seconds', defaults.timeout_seconds, float),
        poll_attempts=_number(data, 'poll_attempts', defaults.poll_attempts, int),
        poll_interval_seconds=_number(
            data, 'poll_interval_seconds', defaults.poll_interval_seconds, float),
        patterns=patterns,
    )


def _parse_ledger(url: Any, base_url: str):
    if not isinstance(url, str):
        raise ConfigurationError("'ledger_url' must be a string")
    try:
        return parse_ledger_url(url, base_url)
    except ValueError as e:
        raise ConfigurationError(f"Invalid ledger_url: {e}") from e


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ConfigurationError(f"Unknown keys in {path}: {unknown}")


def _number(data: Dict[str, Any], key: str, default, kind):
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"'{key}' must be a number")
    if kind is int and value != int(value):
        raise ConfigurationError(f"'{key}' must be a whole number")
    return kind(value)


def _flag(data: Dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"'{key}' must be true or false")
    return value
