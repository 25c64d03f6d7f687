from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from darkware_zapret.core.config import AppConfig
from darkware_zapret.core.presets import (
    ArgumentVector,
    ConfigBody,
    ConfigFileThenCommand,
    DirectSpawn,
    Engine,
    build_start_spec,
    default_strategy,
    engine_profile,
    find_strategy,
    lookup,
    strategies_for,
)


def test_catalog_ids_are_unique_and_typed_per_engine() -> None:
    for engine in Engine:
        strategies = strategies_for(engine)
        assert strategies
        assert len({s.id for s in strategies}) == len(strategies)
        assert all(s.engine is engine for s in strategies)
    assert all(isinstance(s.definition, ConfigBody) for s in strategies_for(Engine.TRANSPARENT_PROXY))
    assert all(isinstance(s.definition, ArgumentVector) for s in strategies_for(Engine.SOCKS5_PROXY))


def test_defaults() -> None:
    assert default_strategy(Engine.TRANSPARENT_PROXY).label == "Split + Disorder"
    socks = default_strategy(Engine.SOCKS5_PROXY)
    assert socks.label == "Disorder (Simple)"
    assert socks.definition == ArgumentVector(("-p", "1080", "-d", "1"))


def test_tpws_body_layout() -> None:
    body = lookup(Engine.TRANSPARENT_PROXY, "split_disorder").definition.text
    lines = body.splitlines()
    assert lines[0] == "MODE_FILTER=autohostlist"
    assert "TPWS_PORTS=80,443" in lines
    assert "--filter-tcp=80 --methodeol <HOSTLIST> --new" in lines
    assert "--filter-tcp=443 --split-pos=1,midsld --disorder <HOSTLIST>" in lines
    assert body.endswith('"\n')


def test_lookup_unknown_pair_raises() -> None:
    with pytest.raises(KeyError):
        lookup(Engine.SOCKS5_PROXY, "split_disorder")


def test_find_strategy_accepts_id_or_label() -> None:
    assert find_strategy(Engine.TRANSPARENT_PROXY, "discord_fix").label == "Discord Fix"
    assert find_strategy(Engine.TRANSPARENT_PROXY, "Discord Fix").id == "discord_fix"
    assert find_strategy(Engine.TRANSPARENT_PROXY, "nope") is None
    assert find_strategy(Engine.SOCKS5_PROXY, None) is None


def test_tpws_start_spec_writes_config_then_runs_init_script() -> None:
    config = AppConfig(install_dir=Path("/opt/dz"))
    profile = engine_profile(Engine.TRANSPARENT_PROXY, config)
    strategy = lookup(Engine.TRANSPARENT_PROXY, "aggressive")

    spec = build_start_spec(profile, strategy)

    assert isinstance(spec, ConfigFileThenCommand)
    assert spec.config_path == Path("/opt/dz/config_custom")
    assert spec.body == strategy.definition.text
    assert spec.command == ("sudo", "-n", "/opt/dz/init.d/macos/zapret", "start")
    assert profile.requires_system_proxy is False


def test_byedpi_start_spec_spawns_ciadpi_on_configured_port() -> None:
    config = replace(AppConfig(install_dir=Path("/opt/dz")), socks_port=1090)
    profile = engine_profile(Engine.SOCKS5_PROXY, config)

    spec = build_start_spec(profile, lookup(Engine.SOCKS5_PROXY, "fake_ttl"))

    assert spec == DirectSpawn(
        binary=Path("/opt/dz/byedpi/ciadpi"),
        args=("-p", "1090", "-f", "1", "-t", "8"),
    )
    assert profile.requires_system_proxy is True
    assert profile.socks_port == 1090
    assert profile.stop_command == ("pkill", "-f", "/opt/dz/byedpi/ciadpi")
    assert 1 in profile.stop_ok_codes


def test_start_spec_rejects_mismatched_engine() -> None:
    profile = engine_profile(Engine.TRANSPARENT_PROXY, AppConfig())
    with pytest.raises(ValueError):
        build_start_spec(profile, default_strategy(Engine.SOCKS5_PROXY))
