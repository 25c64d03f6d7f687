"""Engine definitions and the built-in strategy presets.

Two engines are supported and they are mutually exclusive:

- ``tpws``: zapret's transparent proxy, configured through a key=value file and
  controlled by zapret's init script.
- ``byedpi``: the ``ciadpi`` SOCKS5 proxy, spawned directly with an argument
  vector and paired with a machine-wide SOCKS proxy setting.

The ``<HOSTLIST>`` markers in the tpws bodies are expanded by zapret's own
tooling, never here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Final

from darkware_zapret.core.config import DEFAULT_SOCKS_PORT, AppConfig


class Engine(str, Enum):
    TRANSPARENT_PROXY = "tpws"
    SOCKS5_PROXY = "byedpi"

    @property
    def label(self) -> str:
        return _ENGINE_LABELS[self]


_ENGINE_LABELS: Final[dict[Engine, str]] = {
    Engine.TRANSPARENT_PROXY: "Zapret (tpws)",
    Engine.SOCKS5_PROXY: "ByeDPI (ciadpi)",
}


@dataclass(frozen=True, slots=True)
class ConfigBody:
    text: str


@dataclass(frozen=True, slots=True)
class ArgumentVector:
    args: tuple[str, ...]


PresetDefinition = ConfigBody | ArgumentVector


@dataclass(frozen=True, slots=True)
class Strategy:
    engine: Engine
    id: str
    label: str
    definition: PresetDefinition


@dataclass(frozen=True, slots=True)
class ConfigFileThenCommand:
    config_path: Path
    body: str
    command: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class DirectSpawn:
    binary: Path
    args: tuple[str, ...]


StartSpec = ConfigFileThenCommand | DirectSpawn


@dataclass(frozen=True, slots=True)
class EngineProfile:
    engine: Engine
    binary: Path
    stop_command: tuple[str, ...]
    start_command: tuple[str, ...] | None = None
    restart_command: tuple[str, ...] | None = None
    config_path: Path | None = None
    stop_ok_codes: tuple[int, ...] = (0,)
    requires_system_proxy: bool = False
    socks_port: int | None = None


_TPWS_COMMON_VARS: Final[str] = """\
MODE_FILTER=autohostlist
TPWS_ENABLE=1
TPWS_SOCKS_ENABLE=1
TPWS_PORTS=80,443
INIT_APPLY_FW=1
DISABLE_IPV6=1
GZIP_LISTS=0
GETLIST=get_refilter_domains.sh"""


def _tpws_body(http_opts: str, https_opts: str) -> ConfigBody:
    return ConfigBody(
        f"{_TPWS_COMMON_VARS}\n"
        'TPWS_OPT="\n'
        f"--filter-tcp=80 {http_opts} <HOSTLIST> --new\n"
        f"--filter-tcp=443 {https_opts} <HOSTLIST>\n"
        '"\n'
    )


def _ciadpi_args(*args: str) -> ArgumentVector:
    return ArgumentVector(("-p", str(DEFAULT_SOCKS_PORT), *args))


_CATALOG: Final[dict[Engine, tuple[Strategy, ...]]] = {
    Engine.TRANSPARENT_PROXY: (
        Strategy(
            Engine.TRANSPARENT_PROXY,
            "split_disorder",
            "Split + Disorder",
            _tpws_body("--methodeol", "--split-pos=1,midsld --disorder"),
        ),
        Strategy(
            Engine.TRANSPARENT_PROXY,
            "discord_fix",
            "Discord Fix",
            _tpws_body("--methodeol", "--tlsrec=sniext --split-pos=1,midsld --disorder"),
        ),
        Strategy(
            Engine.TRANSPARENT_PROXY,
            "tlsrec_split",
            "TLSRec + Split",
            _tpws_body("--methodeol", "--tlsrec=midsld --split-pos=midsld --disorder"),
        ),
        Strategy(
            Engine.TRANSPARENT_PROXY,
            "aggressive",
            "Aggressive",
            _tpws_body(
                "--methodeol --hostdot",
                "--tlsrec=sniext --split-pos=1,midsld --disorder --oob",
            ),
        ),
    ),
    Engine.SOCKS5_PROXY: (
        Strategy(Engine.SOCKS5_PROXY, "disorder_simple", "Disorder (Simple)", _ciadpi_args("-d", "1")),
        Strategy(Engine.SOCKS5_PROXY, "split_simple", "Split (Simple)", _ciadpi_args("-s", "1")),
        Strategy(Engine.SOCKS5_PROXY, "disorder_oob", "Disorder + OOB", _ciadpi_args("-d", "1", "-o", "1")),
        Strategy(Engine.SOCKS5_PROXY, "split_tlsrec", "Split + TLSRec", _ciadpi_args("-s", "1", "-r", "1+s")),
        Strategy(Engine.SOCKS5_PROXY, "fake_ttl", "Fake (TTL 8)", _ciadpi_args("-f", "1", "-t", "8")),
    ),
}


def strategies_for(engine: Engine) -> tuple[Strategy, ...]:
    return _CATALOG[engine]


def default_strategy(engine: Engine) -> Strategy:
    return _CATALOG[engine][0]


def lookup(engine: Engine, strategy_id: str) -> Strategy:
    """Return the preset for ``(engine, strategy_id)``.

    The catalog is fixed, so an unknown pair is a programming error and raises
    ``KeyError``.
    """
    for strategy in _CATALOG[engine]:
        if strategy.id == strategy_id:
            return strategy
    raise KeyError(f"Unknown strategy for {engine.value}: {strategy_id!r}")


def find_strategy(engine: Engine, value: str | None) -> Strategy | None:
    """Match a persisted value by id or by label (older builds stored labels)."""
    if not value:
        return None
    for strategy in _CATALOG[engine]:
        if value in {strategy.id, strategy.label}:
            return strategy
    return None


def engine_profile(engine: Engine, config: AppConfig) -> EngineProfile:
    if engine is Engine.TRANSPARENT_PROXY:
        script = str(config.init_script)
        return EngineProfile(
            engine=engine,
            binary=config.tpws_binary,
            start_command=("sudo", "-n", script, "start"),
            stop_command=("sudo", "-n", script, "stop"),
            restart_command=("sudo", "-n", script, "restart"),
            config_path=config.config_file,
        )
    return EngineProfile(
        engine=engine,
        binary=config.ciadpi_binary,
        stop_command=("pkill", "-f", str(config.ciadpi_binary)),
        # pkill exits 1 when nothing matched.
        stop_ok_codes=(0, 1),
        requires_system_proxy=True,
        socks_port=config.socks_port,
    )


def build_start_spec(profile: EngineProfile, strategy: Strategy) -> StartSpec:
    if strategy.engine is not profile.engine:
        raise ValueError(
            f"Strategy {strategy.id!r} belongs to {strategy.engine.value}, not {profile.engine.value}"
        )
    definition = strategy.definition
    if isinstance(definition, ConfigBody):
        if profile.config_path is None or profile.start_command is None:
            raise ValueError(f"{profile.engine.value} has no config file or start command")
        return ConfigFileThenCommand(
            config_path=profile.config_path,
            body=definition.text,
            command=profile.start_command,
        )
    args = list(definition.args)
    if profile.socks_port is not None and "-p" in args:
        args[args.index("-p") + 1] = str(profile.socks_port)
    return DirectSpawn(binary=profile.binary, args=tuple(args))
