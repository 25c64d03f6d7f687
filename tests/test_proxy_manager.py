from __future__ import annotations

import subprocess

import pytest

import darkware_zapret.core.proxy_manager as pm
from darkware_zapret.core.errors import ProxyAdapterError
from darkware_zapret.core.proxy_manager import SystemProxyManager

LISTING = (
    "An asterisk (*) denotes that a network service is disabled.\n"
    "Wi-Fi\n"
    "*Thunderbolt Bridge\n"
    "iPhone USB\n"
)


def _fake_run_factory(
    state: dict[str, dict[str, str]],
    calls: list[list[str]],
    *,
    failing: set[str] | None = None,
    listing: str = LISTING,
):
    failing = failing or set()

    def fake_run(cmd, check, capture_output, text, timeout):  # noqa: ANN001
        calls.append(list(cmd))
        assert cmd[0] == pm.NETWORKSETUP
        action = cmd[1]
        if action == "-listallnetworkservices":
            return subprocess.CompletedProcess(cmd, 0, stdout=listing, stderr="")

        service = cmd[2]
        if service in failing:
            # networksetup reports a missing privilege on stdout with rc=0.
            return subprocess.CompletedProcess(
                cmd, 0, stdout="** Error: authorization required\n", stderr=""
            )
        entry = state.setdefault(service, {"enabled": "No", "server": "", "port": "0"})
        if action == "-setsocksfirewallproxy":
            entry["server"], entry["port"] = cmd[3], cmd[4]
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        if action == "-setsocksfirewallproxystate":
            entry["enabled"] = "Yes" if cmd[3] == "on" else "No"
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        if action == "-getsocksfirewallproxy":
            stdout = (
                f"Enabled: {entry['enabled']}\n"
                f"Server: {entry['server']}\n"
                f"Port: {entry['port']}\n"
                "Authenticated Proxy Enabled: 0\n"
            )
            return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

        raise AssertionError(f"Unexpected command: {cmd}")

    return fake_run


def _manager() -> SystemProxyManager:
    return SystemProxyManager(services=("Wi-Fi", "Ethernet", "Thunderbolt Bridge"))


def test_present_services_skips_header_and_keeps_disabled(monkeypatch) -> None:
    calls: list[list[str]] = []
    monkeypatch.setattr(pm.subprocess, "run", _fake_run_factory({}, calls))

    assert _manager().present_services() == ["Wi-Fi", "Thunderbolt Bridge"]


def test_enable_sets_server_then_state_for_present_services(monkeypatch) -> None:
    calls: list[list[str]] = []
    state: dict[str, dict[str, str]] = {}
    monkeypatch.setattr(pm.subprocess, "run", _fake_run_factory(state, calls))

    result = _manager().enable(1080)

    assert result.ok
    assert result.applied == ("Wi-Fi", "Thunderbolt Bridge")
    assert result.skipped == ("Ethernet",)
    assert state["Wi-Fi"] == {"enabled": "Yes", "server": "127.0.0.1", "port": "1080"}
    wifi_calls = [c[1:] for c in calls if len(c) > 2 and c[2] == "Wi-Fi"]
    assert wifi_calls == [
        ["-setsocksfirewallproxy", "Wi-Fi", "127.0.0.1", "1080"],
        ["-setsocksfirewallproxystate", "Wi-Fi", "on"],
    ]
    assert not any("Ethernet" in c for c in calls)


def test_disable_turns_state_off(monkeypatch) -> None:
    calls: list[list[str]] = []
    state = {"Wi-Fi": {"enabled": "Yes", "server": "127.0.0.1", "port": "1080"}}
    monkeypatch.setattr(pm.subprocess, "run", _fake_run_factory(state, calls))

    result = _manager().disable()

    assert result.ok
    assert state["Wi-Fi"]["enabled"] == "No"
    assert ["-setsocksfirewallproxystate", "Wi-Fi", "off"] in [c[1:] for c in calls]


def test_service_failure_is_recorded_and_sweep_continues(monkeypatch) -> None:
    calls: list[list[str]] = []
    state: dict[str, dict[str, str]] = {}
    monkeypatch.setattr(pm.subprocess, "run", _fake_run_factory(state, calls, failing={"Wi-Fi"}))

    result = _manager().enable(1080)

    assert not result.ok
    assert result.applied == ("Thunderbolt Bridge",)
    assert [service for service, _ in result.failures] == ["Wi-Fi"]
    assert "authorization required" in result.summary()
    assert state["Thunderbolt Bridge"]["enabled"] == "Yes"


def test_listing_failure_raises(monkeypatch) -> None:
    def fake_run(cmd, check, capture_output, text, timeout):  # noqa: ANN001
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="not permitted")

    monkeypatch.setattr(pm.subprocess, "run", fake_run)

    with pytest.raises(ProxyAdapterError) as excinfo:
        _manager().disable()
    assert "not permitted" in excinfo.value.user_message


def test_missing_networksetup_raises(monkeypatch) -> None:
    def fake_run(cmd, check, capture_output, text, timeout):  # noqa: ANN001
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(pm.subprocess, "run", fake_run)

    with pytest.raises(ProxyAdapterError):
        _manager().present_services()


def test_enable_rejects_invalid_port(monkeypatch) -> None:
    calls: list[list[str]] = []
    monkeypatch.setattr(pm.subprocess, "run", _fake_run_factory({}, calls))

    with pytest.raises(ProxyAdapterError):
        _manager().enable(0)
    assert calls == []


def test_read_status_parses_each_present_service(monkeypatch) -> None:
    calls: list[list[str]] = []
    state = {
        "Wi-Fi": {"enabled": "Yes", "server": "127.0.0.1", "port": "1080"},
        "Thunderbolt Bridge": {"enabled": "No", "server": "", "port": "0"},
    }
    monkeypatch.setattr(pm.subprocess, "run", _fake_run_factory(state, calls))

    statuses = _manager().read_status()

    assert [(s.service, s.enabled, s.server, s.port) for s in statuses] == [
        ("Wi-Fi", True, "127.0.0.1", 1080),
        ("Thunderbolt Bridge", False, "", 0),
    ]
