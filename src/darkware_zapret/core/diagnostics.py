"""Diagnostics collection."""

from __future__ import annotations

import platform
import shutil
import sys

from darkware_zapret import __version__
from darkware_zapret.core.config import AppConfig
from darkware_zapret.core.errors import AppError
from darkware_zapret.core.installer import Installer
from darkware_zapret.core.presets import Engine
from darkware_zapret.core.process_probe import ProcessProbe
from darkware_zapret.core.proxy_manager import SystemProxyManager
from darkware_zapret.core.storage import get_config_dir, get_logs_dir
from darkware_zapret.core.supervisor import SupervisorStatus

MAX_CONFIG_LINES = 40


def _tool_available(name: str) -> bool:
    return shutil.which(name) is not None


def collect_diagnostics(
    config: AppConfig,
    *,
    status: SupervisorStatus | None = None,
    installer: Installer | None = None,
    probe: ProcessProbe | None = None,
    proxy: SystemProxyManager | None = None,
) -> str:
    installer = installer or Installer(config)
    probe = probe or ProcessProbe(config)
    proxy = proxy or SystemProxyManager(
        services=config.network_services,
        host=config.socks_host,
        timeout_s=config.probe_timeout_s,
    )

    lines: list[str] = []
    lines.append(f"darkware-zapret {__version__} diagnostics")
    lines.append("")

    lines.append("System")
    lines.append(f"- OS: {platform.system()} {platform.release()}")
    lines.append(f"- macOS: {platform.mac_ver()[0] or 'n/a'}")
    lines.append(f"- Arch: {platform.machine()}")
    lines.append(f"- Python: {sys.version.split()[0]}")
    lines.append("")

    lines.append("Tools")
    for tool in ("pgrep", "pkill", "networksetup", "osascript", "sudo"):
        lines.append(f"- {tool}: {'yes' if _tool_available(tool) else 'no'}")
    lines.append("")

    lines.append("Paths")
    lines.append(f"- Install dir: {config.install_dir}")
    lines.append(f"- Sudoers drop-in: {config.sudoers_file}")
    lines.append(f"- Engine config: {config.config_file}")
    lines.append(f"- Settings: {get_config_dir()}")
    lines.append(f"- Logs: {get_logs_dir()}")
    lines.append(f"- Installed: {'yes' if installer.is_installed() else 'no'}")
    lines.append("")

    lines.append("Processes")
    for engine in Engine:
        try:
            alive = "alive" if probe.is_alive(engine) else "not running"
        except AppError as exc:
            alive = f"unknown ({exc})"
        lines.append(f"- {engine.label}: {alive}")
    lines.append("")

    lines.append("System Proxy (SOCKS, machine-wide)")
    try:
        statuses = proxy.read_status()
    except AppError as exc:
        lines.append(f"- Error reading proxy settings: {exc}")
    else:
        if not statuses:
            lines.append("- No known network services on this host")
        for item in statuses:
            state = "on" if item.enabled else "off"
            lines.append(f"- {item.service}: {state} {item.server or '-'}:{item.port}")
    lines.append("")

    lines.append("Engine config")
    try:
        text = config.config_file.read_text(encoding="utf-8")
    except OSError as exc:
        lines.append(f"- Unreadable: {exc}")
    else:
        config_lines = text.splitlines()
        lines.extend(f"  {line}" for line in config_lines[:MAX_CONFIG_LINES])
        if len(config_lines) > MAX_CONFIG_LINES:
            lines.append(f"  ... ({len(config_lines) - MAX_CONFIG_LINES} more lines)")
    lines.append("")

    if status is not None:
        lines.append("Supervisor")
        lines.append(f"- State: {status.state.value}")
        lines.append(f"- Running: {'yes' if status.is_running else 'no'}")
        lines.append(f"- Busy: {'yes' if status.is_busy else 'no'}")
        lines.append(f"- Engine: {status.engine.label}")
        lines.append(f"- Strategy: {status.strategy.label} ({status.strategy.id})")
        observed = ", ".join(
            f"{engine.value}={'alive' if alive else 'dead'}"
            for engine, alive in status.observed.items()
        )
        lines.append(f"- Observed: {observed or 'not probed yet'}")
        lines.append(f"- Last error: {status.last_error or '-'}")
        lines.append("")

    return "\n".join(lines)
