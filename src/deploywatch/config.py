"""Configuration loading utilities for the deploy watcher."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import yaml # type: ignore


logger = logging.getLogger(__name__)

CONFIG_FILENAME = "deploy.json"

DEFAULT_MOUNT_POINT = "/mnt/agent"


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""


@dataclass
class MonitorConfig:
    """Options describing how the filesystem monitor should behave."""

    root_path: Path
    poll_interval: float = 5.0


@dataclass
class MountConfig:
    """Network share mounted at the monitor root before watching starts."""

    enabled: bool = True
    server: str = "//server/share"
    share_type: str = "cifs"
    username: str = "admin"
    password: str = "admin"


@dataclass
class SupervisorConfig:
    """Timing and environment knobs for the deploy supervisor."""

    grace_period: float = 5.0
    settle_delay: float = 0.5
    deploy_on_start: bool = False
    display: str = ":0"
    xauthority: Optional[str] = None


@dataclass
class AppConfig:
    """Top-level configuration structure."""

    monitor: MonitorConfig
    mount: MountConfig = field(default_factory=MountConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)


@dataclass(frozen=True)
class DeployConfig:
    """What to copy where and how to start it, read from ``deploy.json``."""

    deploy_location: Path
    executable: str
    args: List[str] = field(default_factory=list)
    source_location: str = ""
    env_variables: List[str] = field(default_factory=list)


def default_config() -> AppConfig:
    return AppConfig(monitor=MonitorConfig(root_path=Path(DEFAULT_MOUNT_POINT)))


def load_config(path: Path) -> AppConfig:
    """Load and validate the YAML configuration file."""

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:  # pragma: no cover - logging helper
        raise ConfigError(f"Failed to parse YAML configuration: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    monitor_cfg = _parse_monitor_config(data.get("monitor", {}), config_path=path)
    mount_cfg = _parse_mount_config(data.get("mount", {}))
    supervisor_cfg = _parse_supervisor_config(data.get("supervisor", {}))

    return AppConfig(monitor=monitor_cfg, mount=mount_cfg, supervisor=supervisor_cfg)


def load_deploy_config(root: Path) -> DeployConfig:
    """Read ``deploy.json`` from the root of the watched tree."""

    config_path = root / CONFIG_FILENAME
    try:
        raw_text = config_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"failed to load config: {exc}") from exc

    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"failed to parse {config_path}, json format probably wrong: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILENAME} root must be an object")

    deploy_location = data.get("deploy_location")
    if not isinstance(deploy_location, str) or not deploy_location:
        raise ConfigError(f"{CONFIG_FILENAME}: deploy_location must be a non-empty string")

    executable = data.get("executable")
    if not isinstance(executable, str) or not executable:
        raise ConfigError(f"{CONFIG_FILENAME}: executable must be a non-empty string")

    source_location = data.get("source_location", "")
    if source_location is None:
        source_location = ""
    if not isinstance(source_location, str):
        raise ConfigError(f"{CONFIG_FILENAME}: source_location must be a string")

    config = DeployConfig(
        deploy_location=Path(deploy_location),
        executable=executable,
        args=_ensure_str_list(data.get("args", []), f"{CONFIG_FILENAME}: args"),
        source_location=source_location,
        env_variables=_ensure_str_list(data.get("env_variables", []), f"{CONFIG_FILENAME}: env_variables"),
    )
    logger.info(
        "Loaded deploy config: %s -> %s, executable=%s",
        config.source_location or ".",
        config.deploy_location,
        config.executable,
    )
    return config


def _parse_monitor_config(raw: Any, *, config_path: Path) -> MonitorConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("'monitor' section must be a mapping")

    root_path_raw = raw.get("root_path", DEFAULT_MOUNT_POINT)
    if not isinstance(root_path_raw, str):
        raise ConfigError("monitor.root_path must be a string")

    root_path = Path(root_path_raw)
    if not root_path.is_absolute():
        root_path = (config_path.parent / root_path).resolve()

    poll_interval = _parse_positive_float(raw.get("poll_interval", 5.0), "monitor.poll_interval")

    return MonitorConfig(root_path=root_path, poll_interval=poll_interval)


def _parse_mount_config(raw: Any) -> MountConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("'mount' section must be a mapping")

    defaults = MountConfig()
    enabled = raw.get("enabled", defaults.enabled)
    if not isinstance(enabled, bool):
        raise ConfigError("mount.enabled must be a boolean")

    values = {}
    for key in ("server", "share_type", "username", "password"):
        value = raw.get(key, getattr(defaults, key))
        if not isinstance(value, str):
            raise ConfigError(f"mount.{key} must be a string")
        values[key] = value

    return MountConfig(enabled=enabled, **values)


def _parse_supervisor_config(raw: Any) -> SupervisorConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("'supervisor' section must be a mapping")

    defaults = SupervisorConfig()
    grace_period = _parse_positive_float(raw.get("grace_period", defaults.grace_period), "supervisor.grace_period")

    settle_delay_raw = raw.get("settle_delay", defaults.settle_delay)
    try:
        settle_delay = float(settle_delay_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError("supervisor.settle_delay must be numeric") from exc
    if settle_delay < 0:
        raise ConfigError("supervisor.settle_delay must not be negative")

    deploy_on_start = raw.get("deploy_on_start", defaults.deploy_on_start)
    if not isinstance(deploy_on_start, bool):
        raise ConfigError("supervisor.deploy_on_start must be a boolean")

    display = raw.get("display", defaults.display)
    if not isinstance(display, str):
        raise ConfigError("supervisor.display must be a string")

    xauthority = raw.get("xauthority")
    if xauthority is not None and not isinstance(xauthority, str):
        raise ConfigError("supervisor.xauthority must be a string if provided")

    return SupervisorConfig(
        grace_period=grace_period,
        settle_delay=settle_delay,
        deploy_on_start=deploy_on_start,
        display=display,
        xauthority=xauthority,
    )


def _parse_positive_float(value: Any, field_name: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be numeric") from exc
    if parsed <= 0:
        raise ConfigError(f"{field_name} must be positive")
    return parsed


def _ensure_str_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{field_name} must be a list of strings")
    items: List[str] = []
    for elem in value:
        if not isinstance(elem, str):
            raise ConfigError(f"{field_name} must contain only strings")
        items.append(elem)
    return items
