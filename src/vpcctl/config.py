"""YAML configuration loader for vpcctl."""

from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from linux_vpc.models import ProbeSettings

DEFAULT_CONFIG_PATH = Path("/etc/vpcctl/vpcctl.yaml")
CONFIG_ENV = "VPCCTL_CONFIG"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class LogConfig:
    level: str = "INFO"
    file: Optional[Path] = None


@dataclass
class NetworkConfig:
    egress_interface: Optional[str] = None
    default_vpc_cidr: str = "10.0.0.0/16"


@dataclass
class ProbeConfig:
    timeout: float = 1.0
    retries: int = 2
    external_address: str = "8.8.8.8"

    def to_settings(self) -> ProbeSettings:
        return ProbeSettings(
            timeout=self.timeout,
            retries=self.retries,
            external_address=self.external_address,
        )


@dataclass
class CtlConfig:
    state_dir: Path = Path("/var/lib/vpcctl")
    log: LogConfig = field(default_factory=LogConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)

    @property
    def log_path(self) -> Optional[Path]:
        """Log file location; relative names live under ``<state_dir>/logs``."""

        if self.log.file is None:
            return None
        if self.log.file.is_absolute():
            return self.log.file
        return self.state_dir / "logs" / self.log.file


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' section must be a mapping")
    return section


def _parse_log(section: dict) -> LogConfig:
    level = str(section.get("level", "INFO")).upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"Unsupported log level '{level}'")
    log_file = section.get("file")
    return LogConfig(level=level, file=Path(log_file) if log_file else None)


def _parse_network(section: dict) -> NetworkConfig:
    cidr = str(section.get("default_vpc_cidr", "10.0.0.0/16"))
    try:
        ipaddress.IPv4Network(cidr, strict=False)
    except ValueError as exc:
        raise ValueError(f"invalid default_vpc_cidr '{cidr}': {exc}") from None
    egress = section.get("egress_interface")
    return NetworkConfig(
        egress_interface=str(egress) if egress else None,
        default_vpc_cidr=cidr,
    )


def _parse_probe(section: dict) -> ProbeConfig:
    probe = ProbeConfig(
        timeout=float(section.get("timeout", 1.0)),
        retries=int(section.get("retries", 2)),
        external_address=str(section.get("external_address", "8.8.8.8")),
    )
    if probe.timeout <= 0:
        raise ValueError("probe timeout must be positive")
    if probe.retries < 1:
        raise ValueError("probe retries must be at least 1")
    return probe


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH)


def load_config(path: Optional[Path] = None) -> CtlConfig:
    path = Path(path) if path is not None else default_config_path()
    if not path.exists():
        return CtlConfig()

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ValueError(f"cannot parse {path}: {exc}") from None
    if data is None:
        return CtlConfig()
    if not isinstance(data, dict):
        raise ValueError("vpcctl configuration must be a mapping")

    return CtlConfig(
        state_dir=Path(data.get("state_dir", "/var/lib/vpcctl")),
        log=_parse_log(_section(data, "log")),
        network=_parse_network(_section(data, "network")),
        probe=_parse_probe(_section(data, "probe")),
    )
