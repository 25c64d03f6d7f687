from __future__ import annotations

import json
from pathlib import Path

from darkware_zapret.core.config import DEFAULT_NETWORK_SERVICES, AppConfig, load_config


def test_defaults_match_installed_layout() -> None:
    config = AppConfig()
    assert config.install_dir == Path("/opt/darkware-zapret")
    assert config.sudoers_file == Path("/etc/sudoers.d/darkware-zapret")
    assert config.config_file == Path("/opt/darkware-zapret/config_custom")
    assert config.init_script == Path("/opt/darkware-zapret/init.d/macos/zapret")
    assert config.tpws_binary == Path("/opt/darkware-zapret/tpws/tpws")
    assert config.socks_port == 1080
    assert config.poll_interval_ms == 2000
    assert "Wi-Fi" in config.network_services


def test_load_config_missing_file_returns_defaults(tmp_path) -> None:
    assert load_config(tmp_path / "config.json") == AppConfig()


def test_load_config_applies_valid_overrides(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "install_dir": "/usr/local/zapret",
                "socks_port": 1081,
                "control_timeout_s": 20,
                "network_services": ["Wi-Fi", " Ethernet "],
            }
        ),
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.install_dir == Path("/usr/local/zapret")
    assert config.ciadpi_binary == Path("/usr/local/zapret/byedpi/ciadpi")
    assert config.socks_port == 1081
    assert config.control_timeout_s == 20.0
    assert config.network_services == ("Wi-Fi", "Ethernet")


def test_load_config_skips_invalid_keys(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "socks_port": -5,
                "poll_interval_ms": True,
                "socks_host": "",
                "network_services": "Wi-Fi",
                "probe_timeout_s": "fast",
                "unknown": 1,
                "sudoers_file": "/tmp/sudoers-test",
            }
        ),
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.socks_port == 1080
    assert config.poll_interval_ms == 2000
    assert config.socks_host == "127.0.0.1"
    assert config.network_services == DEFAULT_NETWORK_SERVICES
    assert config.probe_timeout_s == 3.0
    assert config.sudoers_file == Path("/tmp/sudoers-test")


def test_load_config_ignores_non_object_payload(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2]", encoding="utf-8")
    assert load_config(path) == AppConfig()
