"""Configuration loading for pingflux.

Settings come from a single file, ``pingflux.{yaml,yml,toml,json}``, found in
the first of SEARCH_PATHS that has one, or named by ``PINGFLUX_CONFIG``.
Every key is optional.

Example (YAML):

    hosts: [gateway.lan, 1.1.1.1]
    tags: {site: home}
    influx:
      version: 2
      host: influx.lan
      org: home
      bucket: pings
      token: s3cret
      measurement: "ping.{reverse_hostname}"
    fping:
      period: 500
      custom: {"-4": ""}
"""

import json
import logging
import os
import socket
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

logger = logging.getLogger(__name__)

CONFIG_NAME = "pingflux"
CONFIG_ENV = "PINGFLUX_CONFIG"
CONFIG_SUFFIXES = (".yaml", ".yml", ".toml", ".json")
SEARCH_PATHS = (
    "/etc/",
    "/etc/pingflux/",
    "/usr/local/etc/",
    "/usr/local/etc/pingflux/",
    "/config/",
    ".",
)


class ConfigError(Exception):
    """Configuration is missing, unreadable or invalid."""


def local_hostname() -> str:
    """Return this machine's host name, lower-cased."""
    return socket.gethostname().lower()


def reverse_labels(labels: list[str]) -> None:
    """Reverse a list of host name labels in place."""
    i, j = 0, len(labels) - 1
    while i < j:
        labels[i], labels[j] = labels[j], labels[i]
        i += 1
        j -= 1


def reverse_hostname(hostname: str) -> str:
    """Reverse the dot-separated labels of a host name.

    Examples:
        >>> reverse_hostname("web1.example.com")
        'com.example.web1'
    """
    labels = hostname.split(".")
    reverse_labels(labels)
    return ".".join(labels)


def render_measurement(template: str, hostname: str) -> str:
    """Fill in a measurement name template.

    Supported fields are ``{hostname}`` and ``{reverse_hostname}``.

    Raises:
        ConfigError: If the template is malformed or uses other fields
    """
    hostname = hostname.lower()
    try:
        return template.format(hostname=hostname, reverse_hostname=reverse_hostname(hostname))
    except (KeyError, IndexError, AttributeError, ValueError) as e:
        raise ConfigError(f"Unable to parse measurement template {template!r}: {e}") from e


@dataclass
class InfluxSettings:
    """Connection settings for either InfluxDB generation."""

    version: int = 1
    host: str = "localhost"
    port: int = 8086
    secure: bool = False
    user: str = ""
    password: str = ""
    db: str = "pingflux"
    policy: str = ""
    org: str = ""
    bucket: str = "pingflux"
    token: str = ""
    measurement: str = "pingflux"
    timestamp: str = ""  # "probe", "write", or empty for the backend's default

    @property
    def url(self) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.host}:{self.port}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InfluxSettings":
        try:
            settings = cls(
                version=int(data.get("version", 1)),
                host=str(data.get("host", "localhost")),
                port=int(data.get("port", 8086)),
                secure=_as_bool(data.get("secure", False)),
                user=str(data.get("user", "")),
                password=str(data.get("pass", "")),
                db=str(data.get("db", "pingflux")),
                policy=str(data.get("policy", "")),
                org=str(data.get("org", "")),
                bucket=str(data.get("bucket", "pingflux")),
                token=str(data.get("token", "")),
                measurement=str(data.get("measurement", "pingflux")),
                timestamp=str(data.get("timestamp", "")).lower(),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid influx settings: {e}") from e

        if settings.version not in (1, 2):
            raise ConfigError(f"influx.version must be 1 or 2, got {settings.version}")
        if settings.timestamp not in ("", "probe", "write"):
            raise ConfigError(
                f"influx.timestamp must be 'probe' or 'write', got {settings.timestamp!r}"
            )
        return settings


@dataclass
class FpingSettings:
    """fping tuning flags. Values are passed to fping verbatim."""

    backoff: str = "1"
    retries: str = "0"
    tos: str = "0"
    summary: str = "10"
    period: str = "1000"
    custom: dict[str, str] = field(default_factory=dict)
    binary: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FpingSettings":
        custom = data.get("custom") or {}
        if not isinstance(custom, dict):
            raise ConfigError("fping.custom must be a mapping of flag to value")
        return cls(
            backoff=str(data.get("backoff", "1")),
            retries=str(data.get("retries", "0")),
            tos=str(data.get("tos", "0")),
            summary=str(data.get("summary", "10")),
            period=str(data.get("period", "1000")),
            custom={str(k): "" if v is None else str(v) for k, v in custom.items()},
            binary=str(data.get("binary", "")),
        )


@dataclass
class Settings:
    """Complete pingflux configuration."""

    hosts: list[str] = field(default_factory=lambda: ["localhost"])
    hostname: str = field(default_factory=local_hostname)
    tags: dict[str, str] = field(default_factory=dict)
    influx: InfluxSettings = field(default_factory=InfluxSettings)
    fping: FpingSettings = field(default_factory=FpingSettings)

    @property
    def measurement(self) -> str:
        """Measurement name with the template filled in."""
        return render_measurement(self.influx.measurement, self.hostname)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """Create settings from a parsed config document.

        Raises:
            ConfigError: If a value has the wrong shape
        """
        hosts = data.get("hosts", ["localhost"])
        if isinstance(hosts, str):
            hosts = hosts.split()
        if not isinstance(hosts, list) or not hosts:
            raise ConfigError("hosts must be a non-empty list")

        tags = data.get("tags") or {}
        if not isinstance(tags, dict):
            raise ConfigError("tags must be a mapping")

        hostname = data.get("hostname") or local_hostname()

        return cls(
            hosts=[str(h) for h in hosts],
            hostname=str(hostname).lower(),
            tags={str(k): str(v) for k, v in tags.items()},
            influx=InfluxSettings.from_dict(_section(data, "influx")),
            fping=FpingSettings.from_dict(_section(data, "fping")),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML, TOML or JSON file (by extension).

        Raises:
            ConfigError: If the file cannot be read or parsed
        """
        path = Path(path)
        suffix = path.suffix.lower()
        try:
            if suffix in (".yaml", ".yml"):
                with path.open("r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            elif suffix == ".toml":
                with path.open("rb") as f:
                    data = tomllib.load(f)
            elif suffix == ".json":
                with path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
            else:
                raise ConfigError(f"Unsupported config file format: {path}")
        except (OSError, yaml.YAMLError, tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
            raise ConfigError(f"Unable to read config file {path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return cls.from_dict(data)


def find_config_file(search_paths: Iterable[str] | None = None) -> Path | None:
    """Return the first pingflux config file in ``search_paths``, if any.

    Defaults to SEARCH_PATHS.
    """
    for directory in SEARCH_PATHS if search_paths is None else search_paths:
        for suffix in CONFIG_SUFFIXES:
            candidate = Path(directory) / f"{CONFIG_NAME}{suffix}"
            if candidate.is_file():
                return candidate
    return None


def load_settings(path: str | Path | None = None) -> Settings:
    """Locate and load the configuration.

    Lookup order: ``path`` argument, then ``PINGFLUX_CONFIG``, then
    SEARCH_PATHS.

    Raises:
        ConfigError: If no file is found or it is invalid
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV) or None
    if path is None:
        path = find_config_file()
        if path is None:
            raise ConfigError(
                f"Unable to find {CONFIG_NAME} config file in: {', '.join(SEARCH_PATHS)}"
            )

    logger.info("Reading configuration from %s", path)
    return Settings.from_file(path)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"{name} must be a mapping")
    return section


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
