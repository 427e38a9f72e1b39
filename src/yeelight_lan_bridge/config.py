"""Configuration loading for the Yeelight LAN bridge."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older interpreters
    import tomli as tomllib  # type: ignore


CONFIG_ENV_PREFIX = "YEELIGHT_LAN_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass(frozen=True)
class DeviceOverride:
    """Per-device settings keyed by the short device identity."""

    id: str
    name: Optional[str] = None
    hidden: bool = False
    hidden_features: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    discovery_multicast_address: str = "239.255.255.250"
    discovery_port: int = 1982
    discovery_interface: Optional[str] = None
    discovery_search_interval: float = 15.0
    discovery_ttl: int = 128
    connection_retries: int = 5
    connection_timeout: float = 0.1
    transition_power: int = 400
    transition_default: int = 400
    devices: Sequence[DeviceOverride] = ()
    known_devices: Sequence[str] = ()
    metrics_port: Optional[int] = None
    log_format: str = "plain"
    log_level: str = "INFO"
    discovery_log_level: Optional[str] = None
    session_log_level: Optional[str] = None
    debug: bool = False
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def override_for(self, identity: str) -> Optional[DeviceOverride]:
        """Return the override entry configured for a device, if any."""

        for device in self.devices:
            if device.id == identity:
                return device
        return None

    def device_name(self, identity: str, default: str) -> str:
        override = self.override_for(identity)
        if override and override.name:
            return override.name
        return default

    def logging_dict(self) -> Dict[str, Any]:
        """Return a mapping suitable for structured logging."""

        return {
            "config_version": self.config_version,
            "discovery_multicast_address": self.discovery_multicast_address,
            "discovery_port": self.discovery_port,
            "discovery_interface": self.discovery_interface,
            "discovery_search_interval": self.discovery_search_interval,
            "discovery_ttl": self.discovery_ttl,
            "connection_retries": self.connection_retries,
            "connection_timeout": self.connection_timeout,
            "transition_power": self.transition_power,
            "transition_default": self.transition_default,
            "devices": [
                {
                    "id": device.id,
                    "name": device.name,
                    "hidden": device.hidden,
                    "hidden_features": list(device.hidden_features),
                }
                for device in self.devices
            ],
            "known_devices": list(self.known_devices),
            "metrics_port": self.metrics_port,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "discovery_log_level": self.discovery_log_level,
            "session_log_level": self.session_log_level,
            "debug": self.debug,
        }

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("discovery_port", config.discovery_port, 1, 65535)
    _validate_range("discovery_search_interval", config.discovery_search_interval, 0.01, 3600.0)
    _validate_range("discovery_ttl", config.discovery_ttl, 1, 255)
    _validate_range("connection_retries", config.connection_retries, 0, 20)
    _validate_range("connection_timeout", config.connection_timeout, 0.001, 60.0)
    _validate_range("transition_power", config.transition_power, 30, 60000)
    _validate_range("transition_default", config.transition_default, 30, 60000)
    if config.metrics_port is not None:
        _validate_range("metrics_port", config.metrics_port, 1, 65535)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("discovery_log_level", config.discovery_log_level),
        ("session_log_level", config.session_log_level),
    ):
        _validate_log_level_value(value, field_name)
    seen = set()
    for device in config.devices:
        if device.id in seen:
            raise ValueError(f"devices contains duplicate entries for {device.id}.")
        seen.add(device.id)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the bridge."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    if value.upper() not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(_LOG_LEVELS)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="yeelight-lan-bridge",
        description="Discover and control Yeelight devices on the local network.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument(
        "--discovery-multicast-address",
        type=str,
        help="Multicast group used for search requests and advertisements.",
    )
    parser.add_argument(
        "--discovery-port",
        type=int,
        help="UDP port used for discovery.",
    )
    parser.add_argument(
        "--discovery-interface",
        type=str,
        help="Local interface address used for multicast traffic.",
    )
    parser.add_argument(
        "--discovery-search-interval",
        type=float,
        help="Seconds between search requests until all known devices are found.",
    )
    parser.add_argument(
        "--discovery-ttl",
        type=int,
        help="Multicast TTL for search requests.",
    )
    parser.add_argument(
        "--connection-retries",
        type=int,
        help="Retries per command after the first attempt.",
    )
    parser.add_argument(
        "--connection-timeout",
        type=float,
        help="Seconds to wait for the first attempt; doubled on every retry.",
    )
    parser.add_argument(
        "--transition-power",
        type=int,
        help="Milliseconds used for smooth power transitions.",
    )
    parser.add_argument(
        "--transition-default",
        type=int,
        help="Milliseconds used for smooth brightness, color and temperature transitions.",
    )
    parser.add_argument(
        "--device",
        action="append",
        dest="devices",
        help=(
            "Per-device override as id=<id>,name=<name>,hidden=<bool>,"
            "hidden_features=<feature>|<feature>"
        ),
    )
    parser.add_argument(
        "--known-device",
        action="append",
        dest="known_devices",
        help="Device identity expected on the network; searching continues until it is found.",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        help="Expose Prometheus metrics on this port.",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        help="Structured logging format.",
    )
    parser.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity level.",
    )
    parser.add_argument(
        "--discovery-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for discovery.",
    )
    parser.add_argument(
        "--session-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for device sessions.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Log every command and response.",
    )
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {k: v for k, v in vars(args).items() if k != "config" and v is not None}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key in {
            "discovery_port",
            "discovery_ttl",
            "connection_retries",
            "transition_power",
            "transition_default",
            "metrics_port",
            "config_version",
        }:
            data[key] = int(value)
        elif key in {"discovery_search_interval", "connection_timeout"}:
            data[key] = float(value)
        elif key in {"log_level", "discovery_log_level", "session_log_level"}:
            data[key] = str(value).upper()
        elif key == "log_format":
            data[key] = str(value).lower()
        elif key == "debug":
            data[key] = _coerce_bool(value)
        elif key == "devices":
            data[key] = _coerce_devices(value)
        elif key == "known_devices":
            data[key] = _coerce_identities(value)
        elif key in Config.__dataclass_fields__:
            data[key] = value
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_identities(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        items: Iterable[Any] = re.split(r"[,\s]+", value)
    elif isinstance(value, Iterable):
        items = value
    else:
        raise ValueError("known_devices must be a list of device identities")
    identities: List[str] = []
    for item in items:
        text = str(item).strip().lower()
        if text and text not in identities:
            identities.append(text)
    return tuple(identities)


def _coerce_features(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part for part in re.split(r"[|,\s]+", value) if part)
    if isinstance(value, Iterable):
        return tuple(str(part) for part in value if str(part))
    raise ValueError("hidden_features must be a list of feature names")


def _coerce_devices(value: Any) -> Sequence[DeviceOverride]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return (_device_from_str(value),)
        return _coerce_devices(parsed)

    if isinstance(value, DeviceOverride):
        return (value,)
    if isinstance(value, Mapping):
        return (_device_from_mapping(value),)

    if isinstance(value, Iterable):
        devices: List[DeviceOverride] = []
        for item in value:
            if isinstance(item, DeviceOverride):
                devices.append(item)
            elif isinstance(item, Mapping):
                devices.append(_device_from_mapping(item))
            elif isinstance(item, str):
                devices.extend(_coerce_devices(item))
            else:
                raise ValueError("Unsupported device override entry")
        return tuple(devices)

    raise ValueError("Unsupported devices configuration")


def _device_from_mapping(value: Mapping[str, Any]) -> DeviceOverride:
    if "id" not in value:
        raise ValueError("Device overrides require an 'id' field")
    return DeviceOverride(
        id=str(value["id"]).strip().lower(),
        name=str(value["name"]) if value.get("name") is not None else None,
        hidden=_coerce_bool(value.get("hidden", False)),
        hidden_features=_coerce_features(value.get("hidden_features")),
    )


_PAIR = re.compile(r"(?P<key>[^=]+)=(?P<value>.*)")


def _device_from_str(value: str) -> DeviceOverride:
    parts = [part.strip() for part in value.split(",") if part.strip()]
    mapping: Dict[str, Any] = {}
    for part in parts:
        match = _PAIR.match(part)
        if not match:
            raise ValueError(
                "Device overrides must be key=value pairs separated by commas"
            )
        mapping[match.group("key").strip()] = match.group("value").strip()
    return _device_from_mapping(mapping)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - defensive logging path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
