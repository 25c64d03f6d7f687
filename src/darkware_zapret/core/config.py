"""Application configuration with on-disk overrides."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
import logging
from pathlib import Path
from typing import Any, Final

from darkware_zapret.core.storage import get_config_dir, load_json

logger = logging.getLogger(__name__)

CONFIG_FILE: Final[str] = "config.json"

DEFAULT_INSTALL_DIR: Final[str] = "/opt/darkware-zapret"
DEFAULT_SUDOERS_FILE: Final[str] = "/etc/sudoers.d/darkware-zapret"
DEFAULT_SOCKS_HOST: Final[str] = "127.0.0.1"
DEFAULT_SOCKS_PORT: Final[int] = 1080

# Service names as printed by `networksetup -listallnetworkservices`.
DEFAULT_NETWORK_SERVICES: Final[tuple[str, ...]] = (
    "Wi-Fi",
    "Ethernet",
    "USB 10/100/1000 LAN",
    "Thunderbolt Ethernet",
    "Thunderbolt Bridge",
)


@dataclass(frozen=True, slots=True)
class AppConfig:
    install_dir: Path = Path(DEFAULT_INSTALL_DIR)
    sudoers_file: Path = Path(DEFAULT_SUDOERS_FILE)
    socks_host: str = DEFAULT_SOCKS_HOST
    socks_port: int = DEFAULT_SOCKS_PORT
    control_timeout_s: float = 10.0
    probe_timeout_s: float = 3.0
    poll_interval_ms: int = 2000
    network_services: tuple[str, ...] = field(default=DEFAULT_NETWORK_SERVICES)

    @property
    def config_file(self) -> Path:
        return self.install_dir / "config_custom"

    @property
    def init_script(self) -> Path:
        return self.install_dir / "init.d" / "macos" / "zapret"

    @property
    def tpws_binary(self) -> Path:
        return self.install_dir / "tpws" / "tpws"

    @property
    def ciadpi_binary(self) -> Path:
        return self.install_dir / "byedpi" / "ciadpi"

    @property
    def uninstall_script(self) -> Path:
        return self.install_dir / "uninstall_darkware.sh"


def _coerce(name: str, raw: Any, default: Any) -> Any:
    if isinstance(default, Path):
        if isinstance(raw, str) and raw.strip():
            return Path(raw.strip())
        raise ValueError(f"{name} must be a non-empty path string")
    if isinstance(default, tuple):
        if isinstance(raw, list) and all(isinstance(item, str) for item in raw):
            return tuple(item.strip() for item in raw if item.strip())
        raise ValueError(f"{name} must be a list of strings")
    if isinstance(default, bool) or isinstance(raw, bool):
        raise ValueError(f"{name} has an unsupported type")
    if isinstance(default, int):
        value = int(raw)
        if value <= 0:
            raise ValueError(f"{name} must be positive")
        return value
    if isinstance(default, float):
        value = float(raw)
        if value <= 0:
            raise ValueError(f"{name} must be positive")
        return value
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    raise ValueError(f"{name} must be a non-empty string")


def load_config(path: Path | None = None) -> AppConfig:
    """Read overrides from ``config.json``; unknown or invalid keys keep defaults."""
    path = path or (get_config_dir() / CONFIG_FILE)
    defaults = AppConfig()
    data = load_json(path, {})
    if not isinstance(data, dict):
        logger.warning("Ignoring malformed config file: %s", path)
        return defaults

    overrides: dict[str, Any] = {}
    for spec in fields(AppConfig):
        if spec.name not in data:
            continue
        try:
            overrides[spec.name] = _coerce(spec.name, data[spec.name], getattr(defaults, spec.name))
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring config key %s: %s", spec.name, exc)

    return replace(defaults, **overrides)
