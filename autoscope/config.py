"""Configuration loading for autoscope (autoscope.yml)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigError

CONFIG_FILENAME = "autoscope.yml"
DEFAULT_LISTEN_ADDRESS = "127.0.0.1:6789"
DEFAULT_ENGINE_ADDRESS = "127.0.0.1:9090"
DEFAULT_ENGINE_REPOSITORY = "prometheus/prometheus"
DEFAULT_SELF_REPOSITORY = "autometrics-dev/autoscope"

ENV_INSTALL_DIR = "AUTOSCOPE_INSTALL_DIR"
ENV_ENGINE_VERSION = "AUTOSCOPE_ENGINE_VERSION"
ENV_SELF_VERSION = "AUTOSCOPE_SELF_VERSION"
ENV_PLATFORM = "AUTOSCOPE_PLATFORM"
ENV_LISTEN_ADDRESS = "AUTOSCOPE_LISTEN_ADDRESS"


@dataclass
class EngineConfig:
    """Metrics engine acquisition and supervision settings."""

    repository: str = DEFAULT_ENGINE_REPOSITORY
    version: Optional[str] = None
    allow_prerelease: bool = False
    listen_address: str = DEFAULT_ENGINE_ADDRESS
    scrape_interval: str = "15s"
    startup_timeout: float = 30.0
    probe_interval: float = 5.0
    probe_failures: int = 3
    restart_cooldown: float = 60.0
    stop_grace_period: float = 10.0
    keep_versions: int = 3


@dataclass
class ServerConfig:
    """Explorer proxy listener settings."""

    listen_address: str = DEFAULT_LISTEN_ADDRESS
    open_browser: bool = False


@dataclass
class UpdateConfig:
    """Self-update channel."""

    repository: str = DEFAULT_SELF_REPOSITORY
    version: Optional[str] = None
    allow_prerelease: bool = False
    self_check_timeout: float = 10.0


@dataclass
class AutoscopeConfig:
    """Represents the settings defined in autoscope.yml plus environment overrides."""

    root: Path
    source_dir: Optional[Path] = None
    exclude_paths: List[str] = field(default_factory=list)
    metrics_endpoints: List[str] = field(default_factory=list)
    install_dir: Path = field(default_factory=lambda: default_install_dir())
    platform: Optional[str] = None
    engine: EngineConfig = field(default_factory=EngineConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    update: UpdateConfig = field(default_factory=UpdateConfig)


def default_install_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Per-user data directory holding engine and self installs."""
    env = os.environ if environ is None else environ
    if os.name == "nt" and env.get("LOCALAPPDATA"):
        return Path(env["LOCALAPPDATA"]) / "autoscope"
    xdg = env.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "autoscope"
    return Path.home() / ".local" / "share" / "autoscope"


def load_config(config_path: Path, environ: Optional[Mapping[str, str]] = None) -> AutoscopeConfig:
    """Load configuration from disk and apply environment overrides."""
    config_file = _resolve_config_path(config_path)
    root = config_file.parent.resolve()

    if not config_file.exists():
        return apply_env_overrides(AutoscopeConfig(root=root), environ)

    data = _read_config(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")

    config = AutoscopeConfig(
        root=root,
        exclude_paths=_as_str_list(data.get("exclude_paths")),
        metrics_endpoints=_as_str_list(data.get("metrics_endpoints")),
        platform=_as_str(data.get("platform")),
    )
    source_dir = _as_str(data.get("source_dir"))
    if source_dir:
        config.source_dir = (root / source_dir).resolve()
    install_dir = _as_str(data.get("install_dir"))
    if install_dir:
        config.install_dir = (root / Path(install_dir).expanduser()).resolve()

    engine_data = _as_dict(data.get("engine"))
    if engine_data:
        defaults = EngineConfig()
        config.engine = EngineConfig(
            repository=_as_str(engine_data.get("repository")) or defaults.repository,
            version=_as_str(engine_data.get("version")),
            allow_prerelease=_as_bool(engine_data.get("allow_prerelease")) or False,
            listen_address=_as_str(engine_data.get("listen_address")) or defaults.listen_address,
            scrape_interval=_as_str(engine_data.get("scrape_interval")) or defaults.scrape_interval,
            startup_timeout=_positive(engine_data, "startup_timeout", defaults.startup_timeout),
            probe_interval=_positive(engine_data, "probe_interval", defaults.probe_interval),
            probe_failures=int(_positive(engine_data, "probe_failures", defaults.probe_failures)),
            restart_cooldown=_positive(engine_data, "restart_cooldown", defaults.restart_cooldown),
            stop_grace_period=_positive(engine_data, "stop_grace_period", defaults.stop_grace_period),
            keep_versions=int(_positive(engine_data, "keep_versions", defaults.keep_versions)),
        )

    server_data = _as_dict(data.get("server"))
    if server_data:
        config.server = ServerConfig(
            listen_address=_as_str(server_data.get("listen_address")) or DEFAULT_LISTEN_ADDRESS,
            open_browser=_as_bool(server_data.get("open_browser")) or False,
        )

    update_data = _as_dict(data.get("update"))
    if update_data:
        defaults_update = UpdateConfig()
        config.update = UpdateConfig(
            repository=_as_str(update_data.get("repository")) or defaults_update.repository,
            version=_as_str(update_data.get("version")),
            allow_prerelease=_as_bool(update_data.get("allow_prerelease")) or False,
            self_check_timeout=_positive(update_data, "self_check_timeout", defaults_update.self_check_timeout),
        )

    return apply_env_overrides(config, environ)


def apply_env_overrides(
    config: AutoscopeConfig, environ: Optional[Mapping[str, str]] = None
) -> AutoscopeConfig:
    env = os.environ if environ is None else environ

    install_dir = env.get(ENV_INSTALL_DIR)
    if install_dir:
        config.install_dir = Path(install_dir).expanduser()
    platform = env.get(ENV_PLATFORM)
    if platform:
        config.platform = platform
    engine_version = env.get(ENV_ENGINE_VERSION)
    if engine_version:
        config.engine = replace(config.engine, version=engine_version)
    self_version = env.get(ENV_SELF_VERSION)
    if self_version:
        config.update = replace(config.update, version=self_version)
    listen_address = env.get(ENV_LISTEN_ADDRESS)
    if listen_address:
        config.server = replace(config.server, listen_address=listen_address)
    return config


def split_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (or a bare ``:port``) into its parts."""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ConfigError(f"Listen address must be host:port, got '{address}'")
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigError(f"Invalid port in listen address '{address}'") from None
    if not 0 < port_number < 65536:
        raise ConfigError(f"Port out of range in listen address '{address}'")
    return (host.strip("[]") or "127.0.0.1"), port_number


_WILDCARD_HOSTS = {"0.0.0.0", "::"}


def http_url(host: str, port: int, *, loopback: str = "127.0.0.1") -> str:
    """Return a base URL for a listener.

    Wildcard binds become ``loopback`` and IPv6 literals are bracketed.
    """
    if host in _WILDCARD_HOSTS:
        host = loopback
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}"


def _resolve_config_path(config_path: Path) -> Path:
    config_path = config_path.expanduser()
    if config_path.is_dir():
        return (config_path / CONFIG_FILENAME).resolve()
    return config_path.resolve()


def _read_config(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return loaded or {}


def _positive(data: Dict[str, Any], key: str, default: float) -> float:
    value = _as_float(data.get(key))
    if value is None:
        return default
    if value <= 0:
        raise ConfigError(f"'{key}' must be positive, got {value}")
    return value


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Expected a number, got {value!r}") from None


def _as_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1", "on"}:
            return True
        if lowered in {"false", "no", "0", "off"}:
            return False
    return None


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    raise ConfigError(f"Expected a list of strings, got {type(value).__name__}")


__all__ = [
    "AutoscopeConfig",
    "CONFIG_FILENAME",
    "EngineConfig",
    "ServerConfig",
    "UpdateConfig",
    "apply_env_overrides",
    "default_install_dir",
    "http_url",
    "load_config",
    "split_address",
]
