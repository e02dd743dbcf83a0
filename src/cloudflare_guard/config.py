"""
Configuration dataclasses for the Cloudflare guard.

This module defines the guard options, the logging options, duration
parsing for refresh intervals, and loaders for JSON files and the
process environment.
"""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from .cidr import CIDRSet
from .enums import ConfigErrorCode, LogLevel
from .exceptions import ConfigError

DEFAULT_REFRESH_INTERVAL = "24h"
DEFAULT_IPS_ENDPOINT = "https://api.cloudflare.com/client/v4/ips"
DEFAULT_CLIENT_IP_HEADER = "CF-Connecting-IP"
DEFAULT_FORWARDED_FOR_HEADER = "X-Forwarded-For"
DEFAULT_ENV_PREFIX = "CLOUDFLARE_GUARD_"

OUTPUT_FORMATS = ("json", "text", "both")

# Seconds per duration unit
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,  # U+00B5 micro sign
    "μs": 1e-6,  # U+03BC greek mu
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_NUMBER = r"(?:\d+(?:\.\d*)?|\.\d+)"
_UNIT = r"(?:ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(rf"(?:{_NUMBER}{_UNIT})+")
_COMPONENT_RE = re.compile(rf"({_NUMBER})({_UNIT})")


def parse_duration(text: str) -> float:
    """
    Parse a duration string such as "24h", "1h30m" or "300ms".

    A duration is an optionally signed sequence of decimal numbers, each
    with a unit suffix (ns, us, ms, s, m, h). A bare "0" is also accepted.

    Args:
        text: The duration string

    Returns:
        The duration in seconds (negative if signed so)

    Raises:
        ConfigError: If the string is not a valid duration
    """
    if not isinstance(text, str):
        raise ConfigError(
            code=ConfigErrorCode.INVALID_DURATION.value,
            message=f"invalid duration: {text!r}",
        )

    value = text.strip()
    sign = 1.0
    if value[:1] in ("-", "+"):
        if value[0] == "-":
            sign = -1.0
        value = value[1:]

    if value == "0":
        return 0.0

    if not value or not _DURATION_RE.fullmatch(value):
        raise ConfigError(
            code=ConfigErrorCode.INVALID_DURATION.value,
            message=f"invalid duration: {text!r}",
            details={"value": text},
        )

    seconds = 0.0
    for number, unit in _COMPONENT_RE.findall(value):
        seconds += float(number) * _DURATION_UNITS[unit]
    return sign * seconds


def format_duration(seconds: float) -> str:
    """Render whole-second durations the way parse_duration reads them."""
    total = int(seconds)
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    total = abs(total)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs:
        parts.append(f"{secs}s")
    return sign + "".join(parts)


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'

    @property
    def log_level(self) -> LogLevel:
        return LogLevel(self.level.lower())


@dataclass
class GuardConfig:
    """
    Guard options.

    A non-empty trusted_cidrs list selects the static checker and the
    refresh settings are ignored. Otherwise the ranges are fetched from
    ips_endpoint and refreshed every refresh_interval.
    """

    trusted_cidrs: list[str] = field(default_factory=list)
    refresh_interval: str = DEFAULT_REFRESH_INTERVAL
    overwrite_forwarded_for: bool = True
    client_ip_header: str = DEFAULT_CLIENT_IP_HEADER
    forwarded_for_header: str = DEFAULT_FORWARDED_FOR_HEADER
    ips_endpoint: str = DEFAULT_IPS_ENDPOINT
    fetch_timeout: float = 10.0
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def uses_static_ranges(self) -> bool:
        return len(self.trusted_cidrs) > 0

    def validate(self) -> None:
        """
        Check every option, raising on the first problem.

        Raises:
            ConfigError: If any option is malformed
        """
        if self.uses_static_ranges:
            try:
                CIDRSet.from_strings(self.trusted_cidrs)
            except ValueError as e:
                raise ConfigError(
                    code=ConfigErrorCode.INVALID_CIDR.value,
                    message=str(e),
                ) from e
        else:
            parse_duration(self.refresh_interval)
            if not self.ips_endpoint.lower().startswith("https://"):
                raise ConfigError(
                    code=ConfigErrorCode.INVALID_ENDPOINT.value,
                    message=f"IP list endpoint must use HTTPS: {self.ips_endpoint}",
                )
            if self.fetch_timeout <= 0:
                raise ConfigError(
                    code=ConfigErrorCode.INVALID_VALUE.value,
                    message=f"fetch timeout must be positive: {self.fetch_timeout}",
                )

        if self.overwrite_forwarded_for:
            if not self.client_ip_header.strip() or not self.forwarded_for_header.strip():
                raise ConfigError(
                    code=ConfigErrorCode.INVALID_VALUE.value,
                    message="header names must not be empty",
                )

        try:
            self.logging.log_level
        except ValueError as e:
            raise ConfigError(
                code=ConfigErrorCode.INVALID_VALUE.value,
                message=f"invalid log level: {self.logging.level!r}",
            ) from e
        if self.logging.output_format not in OUTPUT_FORMATS:
            raise ConfigError(
                code=ConfigErrorCode.INVALID_VALUE.value,
                message=f"invalid log output format: {self.logging.output_format!r}",
            )

    @classmethod
    def from_dict(cls, data: dict) -> "GuardConfig":
        """
        Build a config from a mapping.

        Accepts the external option names (trustedCIDRs, refreshInterval,
        overwriteForwardedFor) as well as the snake_case field names.
        """
        if not isinstance(data, dict):
            raise ConfigError(
                code=ConfigErrorCode.INVALID_FILE.value,
                message="configuration must be a JSON object",
            )

        def pick(camel: str, snake: str, default: Any) -> Any:
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        trusted = pick("trustedCIDRs", "trusted_cidrs", None) or []
        if isinstance(trusted, str) or not isinstance(trusted, list):
            raise ConfigError(
                code=ConfigErrorCode.INVALID_VALUE.value,
                message="trustedCIDRs must be a list of strings",
            )

        overwrite = pick("overwriteForwardedFor", "overwrite_forwarded_for", True)
        if not isinstance(overwrite, bool):
            raise ConfigError(
                code=ConfigErrorCode.INVALID_VALUE.value,
                message="overwriteForwardedFor must be a boolean",
            )

        logging_data = data.get("logging", {}) or {}
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            output_format=logging_data.get("output_format", "text"),
        )

        return cls(
            trusted_cidrs=list(trusted),
            refresh_interval=pick("refreshInterval", "refresh_interval", DEFAULT_REFRESH_INTERVAL)
            or DEFAULT_REFRESH_INTERVAL,
            overwrite_forwarded_for=overwrite,
            client_ip_header=pick("clientIPHeader", "client_ip_header", DEFAULT_CLIENT_IP_HEADER),
            forwarded_for_header=pick(
                "forwardedForHeader", "forwarded_for_header", DEFAULT_FORWARDED_FOR_HEADER
            ),
            ips_endpoint=pick("ipsEndpoint", "ips_endpoint", DEFAULT_IPS_ENDPOINT),
            fetch_timeout=float(pick("fetchTimeout", "fetch_timeout", 10.0)),
            logging=logging_config,
        )

    def to_dict(self) -> dict:
        """Serialize using the external option names."""
        return {
            "trustedCIDRs": list(self.trusted_cidrs),
            "refreshInterval": self.refresh_interval,
            "overwriteForwardedFor": self.overwrite_forwarded_for,
            "clientIPHeader": self.client_ip_header,
            "forwardedForHeader": self.forwarded_for_header,
            "ipsEndpoint": self.ips_endpoint,
            "fetchTimeout": self.fetch_timeout,
            "logging": {
                "level": self.logging.level,
                "output_format": self.logging.output_format,
            },
        }


def load_config_from_file(config_path: Path) -> GuardConfig:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to the configuration file

    Returns:
        The parsed GuardConfig

    Raises:
        ConfigError: If the file is missing, unreadable or malformed
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(
            code=ConfigErrorCode.INVALID_FILE.value,
            message=f"configuration file not found: {config_path}",
        ) from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(
            code=ConfigErrorCode.INVALID_FILE.value,
            message=f"could not read configuration {config_path}: {e}",
        ) from e

    try:
        return GuardConfig.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(
            code=ConfigErrorCode.INVALID_FILE.value,
            message=f"invalid configuration {config_path}: {e}",
        ) from e


def save_config_to_file(config: GuardConfig, config_path: Path) -> None:
    """Write configuration as JSON, creating parent directories."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(
        code=ConfigErrorCode.INVALID_VALUE.value,
        message=f"invalid boolean: {value!r}",
    )


def parse_cidr_list(value: str) -> list[str]:
    """Split a comma, semicolon or whitespace separated CIDR list."""
    if not value:
        return []
    return [
        part.strip()
        for chunk in value.replace(";", ",").split(",")
        for part in chunk.split()
        if part.strip()
    ]


def load_config_from_env(
    prefix: str = DEFAULT_ENV_PREFIX,
    dotenv_path: Optional[Path] = None,
) -> GuardConfig:
    """
    Load configuration from environment variables (and a .env file).

    Recognized variables (with the prefix): TRUSTED_CIDRS,
    REFRESH_INTERVAL, OVERWRITE_FORWARDED_FOR, CLIENT_IP_HEADER,
    FORWARDED_FOR_HEADER, IPS_ENDPOINT, FETCH_TIMEOUT, LOG_LEVEL, LOG_FORMAT.
    """
    load_dotenv(dotenv_path=dotenv_path)

    def env(name: str, default: Optional[str] = None) -> Optional[str]:
        return os.getenv(prefix + name, default)

    timeout_raw = env("FETCH_TIMEOUT", "10")
    try:
        fetch_timeout = float(timeout_raw)
    except ValueError as e:
        raise ConfigError(
            code=ConfigErrorCode.INVALID_VALUE.value,
            message=f"invalid fetch timeout: {timeout_raw!r}",
        ) from e

    return GuardConfig(
        trusted_cidrs=parse_cidr_list(env("TRUSTED_CIDRS", "")),
        refresh_interval=env("REFRESH_INTERVAL") or DEFAULT_REFRESH_INTERVAL,
        overwrite_forwarded_for=_env_bool(env("OVERWRITE_FORWARDED_FOR"), True),
        client_ip_header=env("CLIENT_IP_HEADER") or DEFAULT_CLIENT_IP_HEADER,
        forwarded_for_header=env("FORWARDED_FOR_HEADER") or DEFAULT_FORWARDED_FOR_HEADER,
        ips_endpoint=env("IPS_ENDPOINT") or DEFAULT_IPS_ENDPOINT,
        fetch_timeout=fetch_timeout,
        logging=LoggingConfig(
            level=env("LOG_LEVEL") or "info",
            output_format=env("LOG_FORMAT") or "text",
        ),
    )
