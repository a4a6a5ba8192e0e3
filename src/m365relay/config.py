"""Configuration loading from environment variables and the pairs file."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from m365relay.exceptions import ConfigurationError
from m365relay.types import SinkAuthType

# Valid log levels
VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

DEFAULT_AUTHORITY = "https://login.microsoftonline.com"

# Separator for secret lists; "\," is a literal comma
_UNESCAPED_COMMA = re.compile(r"(?<!\\),")


@dataclass(frozen=True)
class CredentialSettings:
    """Credential material tried combinatorially by the resolver.

    Every tenant is tried with every application; every application is tried
    with every certificate (bare, then with each password) and then with every
    secret.
    """

    tenant_ids: tuple[str, ...] = ()
    app_ids: tuple[str, ...] = ()
    certificate_paths: tuple[str, ...] = ()
    certificate_passwords: tuple[str, ...] = ()
    app_secrets: tuple[str, ...] = ()
    authority: str = DEFAULT_AUTHORITY

    @property
    def configured(self) -> bool:
        """Check if at least one tenant, application and credential are configured."""
        has_material = bool(self.certificate_paths or any(self.app_secrets))
        return bool(self.tenant_ids and self.app_ids and has_material)


@dataclass(frozen=True)
class PairConfig:
    """Binding of one data-source operation to one sink.

    Attributes:
        source: Registered data-source name (e.g. "MicrosoftThreatProtection").
        operation: Operation exposed by the source (e.g. "Incidents").
        sink_address: URL the sink delivers to.
        sink: Registered sink name (e.g. "Plain").
        sink_auth_type: Authorization scheme applied by the sink.
        sink_auth: Authorization value; empty means no Authorization header.
        name: Identifier used in logs and thread names.
    """

    source: str
    operation: str
    sink_address: str
    sink: str = "Plain"
    sink_auth_type: SinkAuthType = SinkAuthType.BLANK
    sink_auth: str = ""
    name: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", f"{self.source}.{self.operation}")


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment.

    This dataclass is frozen (immutable) to prevent accidental modification
    after creation.
    """

    credentials: CredentialSettings = field(default_factory=CredentialSettings)

    # Token lifecycle (minutes)
    token_expiry_margin: int = 5
    clock_skew_tolerance: int = 5

    # Polling
    poll_interval: int = 60  # seconds
    lookback_minutes: int = 1440  # first poll reaches back 24 hours

    # Flood control for sink deliveries (milliseconds)
    flood_step_ms: int = 10
    flood_cap_ms: int = 1000

    # Dispatcher retry behaviour (seconds)
    rate_limit_backoff: float = 60.0
    transport_retry_pause: float = 5.0

    # Supervisor
    watchdog_interval: float = 5.0
    shutdown_timeout: float = 0.0  # 0 waits until every worker has stopped

    pairs_file: Path = Path("./pairs.yaml")

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Path | None = None
    show_secrets: bool = False


def _parse_list(value: str) -> tuple[str, ...]:
    """Split a comma-separated setting, dropping blanks."""
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_secret_list(value: str) -> tuple[str, ...]:
    """Split a comma-separated list of passwords or secrets, dropping blanks.

    A backslash-escaped comma (``\\,``) is kept as a literal comma. Items are
    stripped of surrounding whitespace unless wrapped in double quotes, which
    are removed and preserve the value exactly.
    """
    items: list[str] = []
    for raw in _UNESCAPED_COMMA.split(value):
        item = raw.strip().replace("\\,", ",")
        if len(item) >= 2 and item[0] == item[-1] == '"':
            item = item[1:-1]
        if item:
            items.append(item)
    return tuple(items)


def _parse_positive_int(value: str, name: str, default: int) -> int:
    """Parse a string as a positive integer with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed positive integer, or the default if invalid.

    Logs a warning if the value is invalid.
    """
    try:
        parsed = int(value)
        if parsed <= 0:
            logging.warning(
                "Invalid %s: %d is not positive, using default %d",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid integer, using default %d",
            name,
            value,
            default,
        )
        return default


def _parse_non_negative_int(value: str, name: str, default: int) -> int:
    """Parse a string as an integer >= 0, falling back to the default."""
    try:
        parsed = int(value)
        if parsed < 0:
            logging.warning(
                "Invalid %s: %d is negative, using default %d",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid integer, using default %d",
            name,
            value,
            default,
        )
        return default


def _parse_non_negative_float(value: str, name: str, default: float) -> float:
    """Parse a string as a non-negative float with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed non-negative float, or the default if invalid.

    Logs a warning if the value is invalid.
    """
    try:
        parsed = float(value)
        if parsed < 0:
            logging.warning(
                "Invalid %s: %f is negative, using default %f",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid number, using default %f",
            name,
            value,
            default,
        )
        return default


def _validate_log_level(value: str, default: str = "INFO") -> str:
    """Validate and normalize a log level string.

    Args:
        value: The log level string to validate.
        default: The default value to use if invalid.

    Returns:
        The validated log level (uppercase), or the default if invalid.
    """
    normalized = value.upper()
    if normalized not in VALID_LOG_LEVELS:
        logging.warning(
            "Invalid RELAY_LOG_LEVEL: '%s' is not valid, using default '%s'. Valid values: %s",
            value,
            default,
            ", ".join(sorted(VALID_LOG_LEVELS)),
        )
        return default
    return normalized


def _parse_bool(value: str) -> bool:
    """Parse a string as a boolean.

    Returns:
        True if value is "true", "1", or "yes" (case-insensitive), False otherwise.
    """
    return value.lower() in ("true", "1", "yes")


def load_config(env_file: Path | None = None) -> Config:
    """Load configuration from environment variables.

    Args:
        env_file: Optional path to .env file. If not provided,
                  looks for .env in current directory.

    Returns:
        Config object with loaded values.

    Numeric values are validated and defaults are used for invalid inputs.
    Missing credential arrays are not an error here; the resolver simply finds
    nothing to authenticate with.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    credentials = CredentialSettings(
        tenant_ids=_parse_list(os.getenv("RELAY_TENANT_IDS", "")),
        app_ids=_parse_list(os.getenv("RELAY_APP_IDS", "")),
        certificate_paths=_parse_list(os.getenv("RELAY_CERTIFICATE_PATHS", "")),
        certificate_passwords=_parse_secret_list(os.getenv("RELAY_CERTIFICATE_PASSWORDS", "")),
        app_secrets=_parse_secret_list(os.getenv("RELAY_APP_SECRETS", "")),
        authority=os.getenv("RELAY_AUTHORITY", DEFAULT_AUTHORITY).rstrip("/"),
    )

    token_expiry_margin = _parse_non_negative_int(
        os.getenv("RELAY_TOKEN_EXPIRY_MARGIN", "5"),
        "RELAY_TOKEN_EXPIRY_MARGIN",
        5,
    )
    clock_skew_tolerance = _parse_positive_int(
        os.getenv("RELAY_CLOCK_SKEW_TOLERANCE", "5"),
        "RELAY_CLOCK_SKEW_TOLERANCE",
        5,
    )

    poll_interval = _parse_positive_int(
        os.getenv("RELAY_POLL_INTERVAL", "60"),
        "RELAY_POLL_INTERVAL",
        60,
    )
    lookback_minutes = _parse_positive_int(
        os.getenv("RELAY_LOOKBACK_MINUTES", "1440"),
        "RELAY_LOOKBACK_MINUTES",
        1440,
    )

    flood_step_ms = _parse_non_negative_int(
        os.getenv("RELAY_FLOOD_STEP_MS", "10"),
        "RELAY_FLOOD_STEP_MS",
        10,
    )
    flood_cap_ms = _parse_non_negative_int(
        os.getenv("RELAY_FLOOD_CAP_MS", "1000"),
        "RELAY_FLOOD_CAP_MS",
        1000,
    )

    rate_limit_backoff = _parse_non_negative_float(
        os.getenv("RELAY_RATE_LIMIT_BACKOFF", "60.0"),
        "RELAY_RATE_LIMIT_BACKOFF",
        60.0,
    )
    transport_retry_pause = _parse_non_negative_float(
        os.getenv("RELAY_TRANSPORT_RETRY_PAUSE", "5.0"),
        "RELAY_TRANSPORT_RETRY_PAUSE",
        5.0,
    )

    watchdog_interval = _parse_non_negative_float(
        os.getenv("RELAY_WATCHDOG_INTERVAL", "5.0"),
        "RELAY_WATCHDOG_INTERVAL",
        5.0,
    )
    shutdown_timeout = _parse_non_negative_float(
        os.getenv("RELAY_SHUTDOWN_TIMEOUT", "0"),
        "RELAY_SHUTDOWN_TIMEOUT",
        0.0,
    )

    log_file_str = os.getenv("RELAY_LOG_FILE", "")

    return Config(
        credentials=credentials,
        token_expiry_margin=token_expiry_margin,
        clock_skew_tolerance=clock_skew_tolerance,
        poll_interval=poll_interval,
        lookback_minutes=lookback_minutes,
        flood_step_ms=flood_step_ms,
        flood_cap_ms=flood_cap_ms,
        rate_limit_backoff=rate_limit_backoff,
        transport_retry_pause=transport_retry_pause,
        watchdog_interval=watchdog_interval,
        shutdown_timeout=shutdown_timeout,
        pairs_file=Path(os.getenv("RELAY_PAIRS_FILE", "./pairs.yaml")),
        log_level=_validate_log_level(os.getenv("RELAY_LOG_LEVEL", "INFO")),
        log_json=_parse_bool(os.getenv("RELAY_LOG_JSON", "")),
        log_file=Path(log_file_str) if log_file_str else None,
        show_secrets=_parse_bool(os.getenv("RELAY_SHOW_SECRETS", "")),
    )


def _parse_pair(data: Any, index: int, file_path: Path) -> PairConfig:
    """Build a PairConfig from one entry of the pairs file.

    Raises:
        ConfigurationError: If required keys are missing or values are invalid.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"Pair #{index} in {file_path} must be a mapping")

    missing = [key for key in ("source", "operation", "sink_address") if not data.get(key)]
    if missing:
        raise ConfigurationError(
            f"Pair #{index} in {file_path} is missing required keys: {', '.join(missing)}"
        )

    auth_type = str(data.get("sink_auth_type", SinkAuthType.BLANK))
    if not SinkAuthType.is_valid(auth_type):
        raise ConfigurationError(
            f"Pair #{index} in {file_path} has invalid sink_auth_type '{auth_type}'. "
            f"Valid values: {', '.join(sorted(SinkAuthType.values()))}"
        )

    return PairConfig(
        source=str(data["source"]),
        operation=str(data["operation"]),
        sink_address=str(data["sink_address"]),
        sink=str(data.get("sink", "Plain")),
        sink_auth_type=SinkAuthType(auth_type.lower()),
        sink_auth=str(data.get("sink_auth") or ""),
        name=str(data.get("name") or ""),
    )


def load_pairs(file_path: Path) -> list[PairConfig]:
    """Load source/sink bindings from a YAML file.

    Expected layout::

        pairs:
          - source: MicrosoftThreatProtection
            operation: Incidents
            sink: Plain
            sink_address: https://hooks.example.com/m365
            sink_auth_type: bearer
            sink_auth: s3cr3t

    Entries with ``enabled: false`` are skipped.

    Args:
        file_path: Path to the YAML file.

    Returns:
        List of enabled PairConfig objects.

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    try:
        with open(file_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e
    except FileNotFoundError:
        raise ConfigurationError(f"Pairs file not found: {file_path}") from None

    if not data:
        return []

    if not isinstance(data, dict):
        raise ConfigurationError(f"Top level of {file_path} must be a mapping")

    pairs_data = data.get("pairs", [])
    if not isinstance(pairs_data, list):
        raise ConfigurationError(f"'pairs' must be a list in {file_path}")

    pairs: list[PairConfig] = []
    for index, entry in enumerate(pairs_data, start=1):
        if isinstance(entry, dict) and entry.get("enabled", True) is False:
            logging.debug("Skipping disabled pair #%d in %s", index, file_path)
            continue
        pairs.append(_parse_pair(entry, index, file_path))

    names = [pair.name for pair in pairs]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(
            f"Duplicate pair names in {file_path}: {', '.join(duplicates)}. "
            "Give each pair a unique 'name'."
        )

    return pairs


__all__ = [
    "Config",
    "CredentialSettings",
    "PairConfig",
    "load_config",
    "load_pairs",
]
