"""Enable and disable the macOS SOCKS proxy through ``networksetup``.

The setting is applied per network service and affects every application on
the machine, not only traffic the engine is meant to handle. Services listed in
the configuration but absent on this host are skipped. A failure on one service
is recorded in the sweep result and the remaining services are still processed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import subprocess
from typing import Final, Sequence

from darkware_zapret.core.config import DEFAULT_NETWORK_SERVICES, DEFAULT_SOCKS_HOST
from darkware_zapret.core.errors import ProxyAdapterError
from darkware_zapret.core.process_manager import format_cmd

logger = logging.getLogger(__name__)

NETWORKSETUP: Final[str] = "/usr/sbin/networksetup"
_ERROR_MARKER: Final[str] = "** Error"


@dataclass(frozen=True, slots=True)
class ProxySweepResult:
    action: str
    applied: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    failures: tuple[tuple[str, str], ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary(self) -> str:
        return "; ".join(f"{service}: {detail}" for service, detail in self.failures)


@dataclass(frozen=True, slots=True)
class ServiceProxyStatus:
    service: str
    enabled: bool
    server: str
    port: int


@dataclass(slots=True)
class _Sweep:
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)


def _run(cmd: list[str], *, timeout_s: float) -> str:
    command_text = format_cmd(cmd)
    logger.info("Running command: %s", command_text)
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as exc:
        logger.error("Command timed out: %s", command_text)
        raise ProxyAdapterError(
            f"Command timed out: {command_text}",
            user_message="Timed out while changing system proxy settings.",
        ) from exc
    except OSError as exc:
        logger.exception("Command execution failed: %s", command_text)
        raise ProxyAdapterError(
            f"Command failed: {command_text}: {exc}",
            user_message="Failed to change system proxy settings (networksetup unavailable).",
        ) from exc

    stdout = (result.stdout or "").strip()
    stderr = (result.stderr or "").strip()
    logger.info(
        "Command result rc=%s cmd=%s stdout=%r stderr=%r",
        result.returncode,
        command_text,
        stdout,
        stderr,
    )

    # networksetup reports some errors on stdout with a zero exit code.
    if result.returncode != 0 or stdout.startswith(_ERROR_MARKER):
        detail = stderr or stdout or f"exit code {result.returncode}"
        raise ProxyAdapterError(
            f"Command failed: {command_text}: {detail}",
            user_message=f"Failed to change system proxy settings: {detail}",
        )
    return stdout


def _parse_services(output: str) -> list[str]:
    services: list[str] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("An asterisk"):
            continue
        # A leading asterisk marks a disabled service; it still accepts settings.
        services.append(line.lstrip("*").strip())
    return services


def _parse_proxy_status(service: str, output: str) -> ServiceProxyStatus:
    values: dict[str, str] = {}
    for raw_line in output.splitlines():
        key, sep, value = raw_line.partition(":")
        if sep:
            values[key.strip().lower()] = value.strip()
    try:
        port = int(values.get("port", "0") or 0)
    except ValueError:
        port = 0
    return ServiceProxyStatus(
        service=service,
        enabled=values.get("enabled", "").lower() == "yes",
        server=values.get("server", ""),
        port=port,
    )


class SystemProxyManager:
    def __init__(
        self,
        *,
        services: Sequence[str] = DEFAULT_NETWORK_SERVICES,
        host: str = DEFAULT_SOCKS_HOST,
        timeout_s: float = 10.0,
        networksetup: str = NETWORKSETUP,
    ) -> None:
        self._services = tuple(services)
        self._host = host
        self._timeout_s = timeout_s
        self._networksetup = networksetup

    @property
    def services(self) -> tuple[str, ...]:
        return self._services

    def present_services(self) -> list[str]:
        """Known services that exist on this host, in configured order."""
        output = _run([self._networksetup, "-listallnetworkservices"], timeout_s=self._timeout_s)
        available = set(_parse_services(output))
        return [service for service in self._services if service in available]

    def enable(self, port: int) -> ProxySweepResult:
        if int(port) <= 0:
            raise ProxyAdapterError(
                f"Invalid SOCKS proxy port: {port}",
                user_message="System proxy SOCKS port is invalid.",
            )

        def _apply(service: str) -> None:
            self._set(["-setsocksfirewallproxy", service, self._host, str(int(port))])
            self._set(["-setsocksfirewallproxystate", service, "on"])

        result = self._sweep("enable", _apply)
        logger.info(
            "System SOCKS proxy enabled on %s:%s for %s",
            self._host,
            port,
            ", ".join(result.applied) or "no services",
        )
        return result

    def disable(self) -> ProxySweepResult:
        def _apply(service: str) -> None:
            self._set(["-setsocksfirewallproxystate", service, "off"])

        result = self._sweep("disable", _apply)
        logger.info("System SOCKS proxy disabled for %s", ", ".join(result.applied) or "no services")
        return result

    def read_status(self) -> list[ServiceProxyStatus]:
        statuses: list[ServiceProxyStatus] = []
        for service in self.present_services():
            output = _run(
                [self._networksetup, "-getsocksfirewallproxy", service],
                timeout_s=self._timeout_s,
            )
            statuses.append(_parse_proxy_status(service, output))
        return statuses

    def _set(self, args: list[str]) -> None:
        _run([self._networksetup, *args], timeout_s=self._timeout_s)

    def _sweep(self, action: str, apply) -> ProxySweepResult:
        present = set(self.present_services())
        sweep = _Sweep()
        for service in self._services:
            if service not in present:
                sweep.skipped.append(service)
                continue
            try:
                apply(service)
            except ProxyAdapterError as exc:
                logger.error("Proxy %s failed for %s: %s", action, service, exc)
                sweep.failures.append((service, exc.user_message))
                continue
            sweep.applied.append(service)

        if sweep.failures:
            logger.warning(
                "Proxy %s finished with %d failure(s): %s",
                action,
                len(sweep.failures),
                "; ".join(f"{s}: {d}" for s, d in sweep.failures),
            )
        return ProxySweepResult(
            action=action,
            applied=tuple(sweep.applied),
            skipped=tuple(sweep.skipped),
            failures=tuple(sweep.failures),
        )
