"""Runtime settings from the environment, optionally layered over a YAML file.

Only a broken config file is fatal. Bad timeout, timezone, line limit or
log level values fall back to defaults and are reported as warnings, which
the caller logs once logging is set up.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .durations import format_duration, parse_duration
from .errors import ConfigError

DEFAULT_TIMEOUT = "1h"
DEFAULT_MAX_LINE_BYTES = 1024 * 1024
DEFAULT_LOG_LEVEL = "INFO"
LOCALTIME_PATH = "/etc/localtime"
TRUE_VALUES = {"true", "1", "yes", "on"}

# config file key -> environment variable
ENV_KEYS = {
    "with_seconds": "CRON_WITH_SECONDS",
    "timeout": "CRON_TIMEOUT",
    "timezone": "TZ",
    "max_line_bytes": "CRON_MAX_LINE_BYTES",
    "log_level": "CRON_LOG_LEVEL",
    "log_file": "CRON_LOG_FILE",
}
CONFIG_ENV = "CRON_CONFIG"


@dataclass(frozen=True)
class Settings:
    with_seconds: bool
    timeout: timedelta
    timezone: tzinfo
    timezone_name: str
    max_line_bytes: int
    log_level: int
    log_file: Optional[str] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def timeout_text(self) -> str:
        return format_duration(self.timeout)


def system_timezone() -> Tuple[tzinfo, str]:
    """The process local zone, DST-aware when the system zone file is readable."""
    try:
        with open(LOCALTIME_PATH, "rb") as handle:
            zone = ZoneInfo.from_file(handle, key="Local")
    except (OSError, ValueError):
        local_tz = datetime.now().astimezone().tzinfo
        return local_tz, (local_tz.tzname(None) if local_tz else None) or "Local"

    real = os.path.realpath(LOCALTIME_PATH)
    name = real.split("zoneinfo/", 1)[1] if "zoneinfo/" in real else "Local"
    return zone, name


def parse_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Invalid timezone "{name}"') from exc


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES


def load_config_file(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError(f"Top-level config in {config_path} must be a mapping.")
    unknown = set(payload.keys()) - set(ENV_KEYS)
    if unknown:
        raise ConfigError(f"Unknown keys in {config_path}: {sorted(str(key) for key in unknown)}.")
    return payload


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    config_path: Optional[Path] = None,
) -> Settings:
    env = os.environ if env is None else env
    if config_path is None and env.get(CONFIG_ENV):
        config_path = Path(env[CONFIG_ENV])

    raw: Dict[str, Any] = load_config_file(config_path) if config_path else {}
    for key, env_name in ENV_KEYS.items():
        value = env.get(env_name, "")
        if value != "":
            raw[key] = value

    warnings: List[str] = []

    timeout_raw = str(raw.get("timeout", DEFAULT_TIMEOUT))
    try:
        timeout = parse_duration(timeout_raw)
        if timeout <= timedelta(0):
            raise ValueError("timeout must be positive")
    except ValueError:
        warnings.append(f'Invalid CRON_TIMEOUT="{timeout_raw}", falling back to {DEFAULT_TIMEOUT}')
        timeout = parse_duration(DEFAULT_TIMEOUT)

    tz_raw = raw.get("timezone")
    if tz_raw is None or str(tz_raw).strip() == "":
        zone, zone_name = system_timezone()
    else:
        tz_text = str(tz_raw).strip()
        try:
            zone, zone_name = parse_timezone(tz_text), tz_text
        except ConfigError:
            zone, zone_name = system_timezone()
            warnings.append(f'Invalid TZ="{tz_text}", using local time ({zone_name})')

    max_line_raw = raw.get("max_line_bytes", DEFAULT_MAX_LINE_BYTES)
    try:
        max_line_bytes = int(max_line_raw)
        if max_line_bytes < 1:
            raise ValueError("max_line_bytes must be >= 1")
    except (TypeError, ValueError):
        warnings.append(
            f'Invalid CRON_MAX_LINE_BYTES="{max_line_raw}", falling back to {DEFAULT_MAX_LINE_BYTES}'
        )
        max_line_bytes = DEFAULT_MAX_LINE_BYTES

    level_name = str(raw.get("log_level", DEFAULT_LOG_LEVEL)).strip().upper()
    if level_name == "WARN":
        level_name = "WARNING"
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        warnings.append(f'Invalid CRON_LOG_LEVEL="{level_name}", falling back to {DEFAULT_LOG_LEVEL}')
        log_level = logging.INFO

    log_file = raw.get("log_file")
    return Settings(
        with_seconds=parse_bool(raw.get("with_seconds", False)),
        timeout=timeout,
        timezone=zone,
        timezone_name=zone_name,
        max_line_bytes=max_line_bytes,
        log_level=log_level,
        log_file=str(log_file) if log_file else None,
        warnings=tuple(warnings),
    )
