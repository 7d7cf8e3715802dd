"""Relay configuration: YAML file plus env var overrides, validated against a JSON schema."""

import logging
import os
import re
from dataclasses import dataclass, field

import jsonschema
import yaml

from logrelay.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/config.yaml"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, None: 1}

_DURATION = {"type": ["number", "string"]}

CONFIG_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["server"],
    "properties": {
        "server": {
            "type": "object",
            "additionalProperties": False,
            "required": ["log_url"],
            "properties": {
                "log_url": {"type": "string", "pattern": "^https?://"},
                "username": {"type": "string"},
                "password": {"type": "string"},
                "check_interval": _DURATION,
                "state_file": {"type": "string", "minLength": 1},
                "timeout": _DURATION,
                "chunk_size": {"type": "integer", "minimum": 1},
                "persist_every_bytes": {"type": "integer", "minimum": 1},
                "max_line_bytes": {"type": "integer", "minimum": 1},
            },
        },
        "sentry": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "dsn": {"type": "string"},
                "environment": {"type": "string"},
                "release": {"type": ["string", "null"]},
            },
        },
        "logging": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "level": {"enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL",
                                   "debug", "info", "warning", "error", "critical"]},
                "file": {"type": ["string", "null"]},
            },
        },
        "dashboard": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "enabled": {"type": "boolean"},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
            },
        },
    },
}


@dataclass(frozen=True)
class ServerConfig:
    log_url: str
    username: str = ""
    password: str = ""
    check_interval: float = 60.0
    state_file: str = "state/log_state.json"
    timeout: float = 30.0
    chunk_size: int = 64 * 1024
    persist_every_bytes: int = 1024 * 1024  # 1 MiB
    max_line_bytes: int = 1024 * 1024

    @classmethod
    def from_dict(cls, d: dict) -> "ServerConfig":
        return cls(
            log_url=d["log_url"],
            username=d.get("username", ""),
            password=d.get("password", ""),
            check_interval=parse_duration(d.get("check_interval", cls.check_interval)),
            state_file=d.get("state_file", cls.state_file),
            timeout=parse_duration(d.get("timeout", cls.timeout)),
            chunk_size=d.get("chunk_size", cls.chunk_size),
            persist_every_bytes=d.get("persist_every_bytes", cls.persist_every_bytes),
            max_line_bytes=d.get("max_line_bytes", cls.max_line_bytes),
        )


@dataclass(frozen=True)
class SentryConfig:
    dsn: str = ""
    environment: str = "production"
    release: str | None = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None


@dataclass(frozen=True)
class DashboardConfig:
    enabled: bool = False
    port: int = 8080


@dataclass(frozen=True)
class Config:
    server: ServerConfig
    sentry: SentryConfig = field(default_factory=SentryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)

    @classmethod
    def from_dict(cls, d: dict) -> "Config":
        return cls(
            server=ServerConfig.from_dict(d["server"]),
            sentry=SentryConfig(**d.get("sentry", {})),
            logging=LoggingConfig(**d.get("logging", {})),
            dashboard=DashboardConfig(**d.get("dashboard", {})),
        )


def parse_duration(value) -> float:
    """Seconds from a number or a string like "30s", "5m", "1h", "250ms"."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ConfigError(f"invalid duration: {value!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ConfigError(f"duration must be positive: {value!r}")
    return seconds


def load_yaml(path: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {path}") from e
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must be a mapping at the top level")
    return data


def apply_env_overrides(data: dict, env=None) -> dict:
    """Secrets and endpoints can come from the environment instead of the file."""
    env = os.environ if env is None else env
    overrides = {
        ("server", "log_url"): "LOG_URL",
        ("server", "username"): "LOG_USERNAME",
        ("server", "password"): "LOG_PASSWORD",
        ("sentry", "dsn"): "SENTRY_DSN",
        ("sentry", "environment"): "SENTRY_ENVIRONMENT",
        ("logging", "level"): "LOG_LEVEL",
    }
    merged = {section: dict(values) if isinstance(values, dict) else values
              for section, values in data.items()}
    for (section, key), var in overrides.items():
        if var in env:
            merged.setdefault(section, {})
            if isinstance(merged[section], dict):
                merged[section][key] = env[var]
    return merged


def validate(data: dict) -> None:
    validator = jsonschema.Draft202012Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path])
    if errors:
        details = "; ".join(
            f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
        )
        raise ConfigError(f"invalid configuration: {details}")


def load_config(path: str | None = None, env=None) -> Config:
    """Load, override and validate the config. Raises ConfigError on any problem."""
    env = os.environ if env is None else env
    path = path or env.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)
    data = apply_env_overrides(load_yaml(path), env)
    validate(data)
    config = Config.from_dict(data)
    logger.info("Loaded config from %s (source=%s, interval=%.1fs)",
                path, config.server.log_url, config.server.check_interval)
    return config
