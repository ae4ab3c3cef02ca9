"""Configuration loading: defaults <- YAML file <- env vars <- CLI args."""

import os
import logging
from dataclasses import dataclass, field

import yaml

from slowbeat.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Config:
    backends: tuple[str, ...] = ()
    period: float = 10.0
    slower_than: int = 0
    max_len: int = 500
    password: str = ""
    name: str = "slowbeat"
    max_idle: int = 3
    max_active: int = 3
    idle_timeout: float = 240.0
    connect_timeout: float = 3.0
    read_timeout: float = 3.0
    output: dict = field(default_factory=lambda: {"type": "stdout"})
    metrics_interval: float = 60.0
    log_level: str = "INFO"


def load_yaml_config(path: str | None) -> dict:
    """Load a YAML config file. Returns empty dict if no path or file missing."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    logger.info("Loaded YAML config from %s", path)
    return data


def _split_backends(value) -> tuple[str, ...]:
    if isinstance(value, str):
        value = value.split(",")
    elif not isinstance(value, (list, tuple)):
        raise ConfigError(f"backends must be a list or comma-separated string, got {value!r}")
    for item in value:
        if item is not None and not isinstance(item, str):
            raise ConfigError(f"backend entries must be host:port strings, got {item!r}")
    return tuple(item.strip() for item in value if item and item.strip())


def _section(data: dict, name: str, default: dict) -> dict:
    value = data.get(name)
    if value is None:
        return dict(default)
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping, got {type(value).__name__}")
    return dict(value)


def _cli(cli_args, name: str):
    return getattr(cli_args, name, None) if cli_args is not None else None


def load_config(cli_args=None, yaml_data: dict | None = None) -> Config:
    """Build Config from parsed CLI args, env vars, and YAML data.

    CLI flags win over env vars, which win over the YAML file.
    """
    data = dict(yaml_data or {})
    if "redis" in data and "backends" not in data:
        data["backends"] = data.pop("redis")
    pool = _section(data, "pool", {})

    kwargs = {
        "backends": _split_backends(data.get("backends") or ()),
        "period": data.get("period", Config.period),
        "slower_than": data.get("slower_than", Config.slower_than),
        "max_len": data.get("max_len", Config.max_len),
        "password": data.get("password") or Config.password,
        "name": data.get("name", Config.name),
        "max_idle": pool.get("max_idle", Config.max_idle),
        "max_active": pool.get("max_active", Config.max_active),
        "idle_timeout": pool.get("idle_timeout", Config.idle_timeout),
        "connect_timeout": pool.get("connect_timeout", Config.connect_timeout),
        "read_timeout": pool.get("read_timeout", Config.read_timeout),
        "output": _section(data, "output", {"type": "stdout"}),
        "metrics_interval": data.get("metrics_interval", Config.metrics_interval),
        "log_level": data.get("log_level", Config.log_level),
    }

    env = os.environ
    if env.get("SLOWBEAT_BACKENDS"):
        kwargs["backends"] = _split_backends(env["SLOWBEAT_BACKENDS"])
    if env.get("SLOWBEAT_PERIOD"):
        kwargs["period"] = env["SLOWBEAT_PERIOD"]
    if env.get("SLOWBEAT_SLOWER_THAN"):
        kwargs["slower_than"] = env["SLOWBEAT_SLOWER_THAN"]
    if env.get("SLOWBEAT_MAX_LEN"):
        kwargs["max_len"] = env["SLOWBEAT_MAX_LEN"]
    if env.get("SLOWBEAT_PASSWORD"):
        kwargs["password"] = env["SLOWBEAT_PASSWORD"]
    if env.get("SLOWBEAT_LOG_LEVEL"):
        kwargs["log_level"] = env["SLOWBEAT_LOG_LEVEL"]

    if _cli(cli_args, "backend"):
        kwargs["backends"] = _split_backends(cli_args.backend)
    for name in ("period", "slower_than", "password", "log_level"):
        value = _cli(cli_args, name)
        if value is not None:
            kwargs[name] = value

    try:
        for name in ("period", "idle_timeout", "connect_timeout", "read_timeout", "metrics_interval"):
            kwargs[name] = float(kwargs[name])
        for name in ("slower_than", "max_len", "max_idle", "max_active"):
            kwargs[name] = int(kwargs[name])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric setting: {exc}") from exc
    kwargs["log_level"] = str(kwargs["log_level"]).upper()

    config = Config(**kwargs)
    validate(config)
    return config


def validate(config: Config) -> None:
    """Raise ConfigError if the collector cannot start with this config."""
    if not config.backends:
        raise ConfigError("At least one backend (host:port) must be configured")
    if config.period <= 0:
        raise ConfigError(f"period must be positive, got {config.period}")
    if config.max_idle < 1 or config.max_active < 1:
        raise ConfigError("pool.max_idle and pool.max_active must be at least 1")
    if not isinstance(logging.getLevelName(config.log_level), int):
        raise ConfigError(f"Unknown log level {config.log_level!r}")
