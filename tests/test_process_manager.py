from __future__ import annotations

import subprocess

import pytest

import darkware_zapret.core.process_manager as procs
from darkware_zapret.core.errors import CommandFailedError, CommandTimeoutError, LaunchFailedError
from darkware_zapret.core.process_manager import ProcessLauncher


def test_run_returns_combined_output(monkeypatch) -> None:
    seen: dict[str, object] = {}

    def fake_run(cmd, check, stdout, stderr, text, timeout):  # noqa: ANN001
        seen["cmd"] = cmd
        seen["stderr"] = stderr
        seen["timeout"] = timeout
        return subprocess.CompletedProcess(cmd, 0, stdout="Starting tpws\n", stderr=None)

    monkeypatch.setattr(procs.subprocess, "run", fake_run)

    result = ProcessLauncher().run(("sudo", "-n", "/opt/x/zapret", "start"), timeout_s=7.0)

    assert result.ok
    assert result.output == "Starting tpws"
    assert seen["cmd"] == ["sudo", "-n", "/opt/x/zapret", "start"]
    assert seen["stderr"] is subprocess.STDOUT
    assert seen["timeout"] == 7.0


def test_run_nonzero_exit_raises_with_output_tail(monkeypatch) -> None:
    def fake_run(cmd, check, stdout, stderr, text, timeout):  # noqa: ANN001
        return subprocess.CompletedProcess(cmd, 1, stdout="sudo: a password is required\n", stderr=None)

    monkeypatch.setattr(procs.subprocess, "run", fake_run)

    with pytest.raises(CommandFailedError) as excinfo:
        ProcessLauncher().run(["sudo", "-n", "zapret", "stop"], timeout_s=1.0)
    assert excinfo.value.returncode == 1
    assert excinfo.value.user_message == "Failed: sudo: a password is required"


def test_run_accepts_extra_ok_codes(monkeypatch) -> None:
    def fake_run(cmd, check, stdout, stderr, text, timeout):  # noqa: ANN001
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr=None)

    monkeypatch.setattr(procs.subprocess, "run", fake_run)

    result = ProcessLauncher().run(["pkill", "-f", "ciadpi"], timeout_s=1.0, ok_codes=(0, 1))
    assert result.returncode == 1
    assert not result.ok


def test_run_timeout_and_exec_failure(monkeypatch) -> None:
    def fake_timeout(cmd, check, stdout, stderr, text, timeout):  # noqa: ANN001
        raise subprocess.TimeoutExpired(cmd, timeout)

    monkeypatch.setattr(procs.subprocess, "run", fake_timeout)
    with pytest.raises(CommandTimeoutError):
        ProcessLauncher().run(["sudo", "zapret", "start"], timeout_s=0.5)

    def fake_missing(cmd, check, stdout, stderr, text, timeout):  # noqa: ANN001
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(procs.subprocess, "run", fake_missing)
    with pytest.raises(LaunchFailedError):
        ProcessLauncher().run(["sudo", "zapret", "start"], timeout_s=0.5)


class FakePopen:
    def __init__(self, cmd, *, exit_code=None, stuck=False, **kwargs) -> None:  # noqa: ANN001
        self.args = cmd
        self.stuck = stuck
        self.killed = False
        self.kwargs = kwargs
        self.pid = 4321
        self._exit_code = exit_code
        self.terminated = False

    def poll(self):  # noqa: ANN201
        return self._exit_code

    def terminate(self) -> None:
        self.terminated = True
        if not self.stuck:
            self._exit_code = -15

    def kill(self) -> None:
        self.killed = True
        if not self.stuck:
            self._exit_code = -9

    def wait(self, timeout=None):  # noqa: ANN001, ANN201
        if self.stuck:
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self._exit_code


def test_spawn_starts_detached_and_logs_output(tmp_path, monkeypatch) -> None:
    binary = tmp_path / "ciadpi"
    binary.write_text("", encoding="utf-8")
    created: list[FakePopen] = []

    def fake_popen(cmd, **kwargs):  # noqa: ANN001
        proc = FakePopen(cmd, **kwargs)
        created.append(proc)
        return proc

    monkeypatch.setattr(procs.subprocess, "Popen", fake_popen)

    log_path = tmp_path / "logs" / "ciadpi.log"
    handle = ProcessLauncher().spawn(binary, ("-p", "1080", "-d", "1"), stdout_path=log_path, settle_s=0)

    assert created[0].args == [str(binary), "-p", "1080", "-d", "1"]
    assert created[0].kwargs["start_new_session"] is True
    assert handle.pid == 4321
    assert handle.is_running()
    assert log_path.exists()

    handle.stop()
    assert created[0].terminated
    assert not handle.is_running()


def test_spawn_missing_binary_raises(tmp_path) -> None:
    with pytest.raises(LaunchFailedError) as excinfo:
        ProcessLauncher().spawn(tmp_path / "ciadpi", ("-p", "1080"), settle_s=0)
    assert "not found" in excinfo.value.user_message


def test_spawn_immediate_exit_raises(tmp_path, monkeypatch) -> None:
    binary = tmp_path / "ciadpi"
    binary.write_text("", encoding="utf-8")
    monkeypatch.setattr(procs.subprocess, "Popen", lambda cmd, **kw: FakePopen(cmd, exit_code=2, **kw))

    with pytest.raises(LaunchFailedError) as excinfo:
        ProcessLauncher().spawn(binary, ("-p", "1080"), settle_s=0)
    assert "code 2" in excinfo.value.user_message


def test_stop_reports_process_that_survives_kill(tmp_path, monkeypatch) -> None:
    binary = tmp_path / "ciadpi"
    binary.write_text("", encoding="utf-8")
    created: list[FakePopen] = []

    def fake_popen(cmd, **kwargs):  # noqa: ANN001
        proc = FakePopen(cmd, stuck=True, **kwargs)
        created.append(proc)
        return proc

    monkeypatch.setattr(procs.subprocess, "Popen", fake_popen)
    log_path = tmp_path / "ciadpi.log"
    handle = ProcessLauncher().spawn(binary, ("-p", "1080"), stdout_path=log_path, settle_s=0)

    with pytest.raises(CommandTimeoutError) as excinfo:
        handle.stop(timeout_s=0.01)

    assert created[0].terminated
    assert created[0].killed
    assert "did not exit" in excinfo.value.user_message
    assert handle._log_handle is None
