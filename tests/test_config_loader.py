"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from cvmid.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.logs_dir == Path("/var/log/cvmid")
    assert config.runtime_dir == Path("/run/cvmid")
    assert config.lock_timeout == 30.0
    assert config.metadata.base_url == "http://metadata.tencentyun.com/latest/meta-data/"
    assert config.metadata.timeout == 10.0
    assert config.nginx.config_path == Path("/etc/nginx/conf.d/auto-instance.conf")
    assert Path("/etc/nginx/conf.d/backend-headers.conf") in config.nginx.stale_paths
    assert config.nginx.reload_method == "systemctl"
    assert config.header.name == "X-CVM-Info"
    assert config.header.include_timestamp is False


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "logs_dir: {logs}\n"
        "metadata:\n"
        "  base_url: http://169.254.0.23/latest/meta-data\n"
        "  timeout: 3\n"
        "nginx:\n"
        "  reload_method: signal\n"
        "  stale_paths: []\n"
        "header:\n"
        "  name: X-Backend\n"
        "  include_timestamp: true\n".format(logs=tmp_path / "logs")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.logs_dir == tmp_path / "logs"
    assert config.metadata.base_url == "http://169.254.0.23/latest/meta-data/"
    assert config.metadata.timeout == 3.0
    assert config.nginx.reload_method == "signal"
    assert config.nginx.stale_paths == ()
    assert config.header.name == "X-Backend"
    assert config.header.include_timestamp is True


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("header:\n  name: X-From-File\n")
    env = {
        "CVMID_CONFIG_FILE": str(cfg),
        "CVMID_HEADER__NAME": "X-From-Env",
        "CVMID_HEADER__LISTEN_PORT": "8080",
        "CVMID_LOCK_TIMEOUT": "5",
        "CVMID_NGINX__CONFIG_PATH": str(tmp_path / "auto.conf"),
        "CVMID_NGINX__STALE_PATHS": f"[{tmp_path / 'a.conf'}, {tmp_path / 'b.conf'}]",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.header.name == "X-From-Env"
    assert config.header.listen_port == 8080
    assert config.lock_timeout == 5.0
    assert config.nginx.config_path == tmp_path / "auto.conf"
    assert config.nginx.stale_paths == (tmp_path / "a.conf", tmp_path / "b.conf")


def test_overrides_beat_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"CVMID_LOCK_TIMEOUT": "5"},
        overrides={"lock_timeout": 1.5},
    )

    assert config.lock_timeout == 1.5


def test_unknown_top_level_key_rejected(tmp_path: Path) -> None:
    """Unexpected keys raise ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("install_root: /srv\n")

    with pytest.raises(ConfigError, match="install_root"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_rejected(tmp_path: Path) -> None:
    """Unknown keys inside a section are reported with the section name."""
    with pytest.raises(ConfigError, match="Unknown header configuration keys: colour"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"CVMID_HEADER__COLOUR": "blue"},
        )


def test_invalid_reload_method_rejected(tmp_path: Path) -> None:
    """Only systemctl and signal reloads are supported."""
    with pytest.raises(ConfigError, match="reload method"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"CVMID_NGINX__RELOAD_METHOD": "restart"},
        )


@pytest.mark.parametrize("port", ["0", "70000"])
def test_listen_port_range_enforced(tmp_path: Path, port: str) -> None:
    """The listen port must be a valid TCP port."""
    with pytest.raises(ConfigError, match="listen_port"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"CVMID_HEADER__LISTEN_PORT": port},
        )


def test_empty_header_name_rejected(tmp_path: Path) -> None:
    """A blank header name cannot be published."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("header:\n  name: '  '\n")

    with pytest.raises(ConfigError, match="header.name"):
        load_config(config_file=cfg, env={})


def test_non_positive_lock_timeout_rejected(tmp_path: Path) -> None:
    """Lock timeouts must be positive."""
    with pytest.raises(ConfigError, match="lock_timeout"):
        load_config(config_file=tmp_path / "missing.yml", env={"CVMID_LOCK_TIMEOUT": "0"})


def test_config_file_must_be_mapping(tmp_path: Path) -> None:
    """A YAML list at the top level is rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("- one\n- two\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The configuration dictionary contains only JSON-friendly values."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["config_file"] == str(tmp_path / "missing.yml")
    nginx = data["nginx"]
    header = data["header"]
    assert isinstance(nginx, dict)
    assert isinstance(header, dict)
    assert nginx["config_path"] == "/etc/nginx/conf.d/auto-instance.conf"
    assert header["name"] == "X-CVM-Info"
