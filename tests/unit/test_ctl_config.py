from pathlib import Path

import pytest

from vpcctl.config import CtlConfig, default_config_path, load_config


def test_load_config(tmp_path: Path):
    config_path = tmp_path / "vpcctl.yaml"
    config_path.write_text(
        """
state_dir: /srv/vpcctl
log:
  level: debug
  file: vpcctl.log
network:
  egress_interface: enp1s0
  default_vpc_cidr: 172.16.0.0/16
probe:
  timeout: 2
  retries: 3
  external_address: 1.1.1.1
"""
    )

    cfg = load_config(config_path)

    assert cfg.state_dir == Path("/srv/vpcctl")
    assert cfg.log.level == "DEBUG"
    assert cfg.log_path == Path("/srv/vpcctl/logs/vpcctl.log")
    assert cfg.network.egress_interface == "enp1s0"
    assert cfg.network.default_vpc_cidr == "172.16.0.0/16"
    settings = cfg.probe.to_settings()
    assert settings.timeout == pytest.approx(2.0)
    assert settings.retries == 3
    assert settings.external_address == "1.1.1.1"


def test_missing_file_gives_defaults(tmp_path: Path):
    cfg = load_config(tmp_path / "absent.yaml")

    assert cfg == CtlConfig()
    assert cfg.log_path is None
    assert cfg.network.egress_interface is None


def test_empty_file_gives_defaults(tmp_path: Path):
    config_path = tmp_path / "vpcctl.yaml"
    config_path.write_text("")

    assert load_config(config_path) == CtlConfig()


def test_absolute_log_file(tmp_path: Path):
    config_path = tmp_path / "vpcctl.yaml"
    config_path.write_text("log:\n  file: /var/log/vpcctl.log\n")

    assert load_config(config_path).log_path == Path("/var/log/vpcctl.log")


@pytest.mark.parametrize(
    "text, message",
    [
        ("- a\n- b\n", "must be a mapping"),
        ("log: verbose\n", "'log' section"),
        ("log:\n  level: chatty\n", "Unsupported log level"),
        ("network:\n  default_vpc_cidr: 10.0.0.0/40\n", "default_vpc_cidr"),
        ("probe:\n  timeout: 0\n", "positive"),
        ("probe:\n  retries: 0\n", "at least 1"),
        ("network: [\n", "cannot parse"),
    ],
)
def test_invalid_config(tmp_path: Path, text, message):
    config_path = tmp_path / "vpcctl.yaml"
    config_path.write_text(text)

    with pytest.raises(ValueError, match=message):
        load_config(config_path)


def test_config_path_from_environment(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("VPCCTL_CONFIG", str(tmp_path / "custom.yaml"))

    assert default_config_path() == tmp_path / "custom.yaml"


def test_default_config_path(monkeypatch):
    monkeypatch.delenv("VPCCTL_CONFIG", raising=False)

    assert default_config_path() == Path("/etc/vpcctl/vpcctl.yaml")
