"""External command execution and spawned process handles."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import shlex
import subprocess
import time
from typing import IO, Sequence

from darkware_zapret.core.errors import (
    CommandFailedError,
    CommandTimeoutError,
    LaunchFailedError,
)
from darkware_zapret.core.logging_setup import tail_lines

logger = logging.getLogger(__name__)

SPAWN_SETTLE_S = 0.3
STOP_GRACE_S = 3.0


@dataclass(frozen=True, slots=True)
class CommandResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_cmd(cmd: Sequence[str]) -> str:
    try:
        return shlex.join(list(cmd))
    except Exception:
        return str(cmd)


class ProcessHandle:
    """A spawned engine process with its log sink."""

    def __init__(self, process: subprocess.Popen, stdout_path: Path | None, log_handle: IO | None) -> None:
        self._process = process
        self._log_handle = log_handle
        self.stdout_path = stdout_path

    @property
    def pid(self) -> int:
        return self._process.pid

    def is_running(self) -> bool:
        return self._process.poll() is None

    def returncode(self) -> int | None:
        return self._process.poll()

    def stop(self, *, timeout_s: float = STOP_GRACE_S) -> None:
        """Terminate, then kill after ``timeout_s``.

        Raises ``CommandTimeoutError`` if the process outlives SIGKILL too.
        """
        try:
            if not self.is_running():
                return
            logger.info("Terminating pid=%s", self._process.pid)
            self._process.terminate()
            try:
                self._process.wait(timeout=timeout_s)
                return
            except subprocess.TimeoutExpired:
                logger.warning("pid=%s ignored SIGTERM; killing", self._process.pid)
            self._process.kill()
            try:
                self._process.wait(timeout=timeout_s)
            except subprocess.TimeoutExpired as exc:
                logger.error("pid=%s still alive after SIGKILL", self._process.pid)
                raise CommandTimeoutError(
                    f"pid={self._process.pid} did not exit after SIGKILL",
                    user_message=f"Process {self._process.pid} did not exit.",
                ) from exc
        finally:
            self._close_log()

    def _close_log(self) -> None:
        if self._log_handle is not None:
            try:
                self._log_handle.close()
            except OSError:
                logger.exception("Failed to close process log: %s", self.stdout_path)
            self._log_handle = None


class ProcessLauncher:
    def run(
        self,
        cmd: Sequence[str],
        *,
        timeout_s: float,
        ok_codes: Sequence[int] = (0,),
    ) -> CommandResult:
        """Run ``cmd`` to completion with stdout and stderr combined.

        Raises ``LaunchFailedError`` when the executable cannot be started,
        ``CommandTimeoutError`` when it outlives ``timeout_s`` and
        ``CommandFailedError`` for an exit code outside ``ok_codes``.
        """
        command_text = format_cmd(cmd)
        logger.info("Running command: %s", command_text)
        try:
            result = subprocess.run(
                list(cmd),
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            logger.error("Command timed out after %.1fs: %s", timeout_s, command_text)
            raise CommandTimeoutError(
                f"Command timed out: {command_text}",
                user_message=f"Timed out after {timeout_s:g}s: {Path(cmd[0]).name}",
            ) from exc
        except OSError as exc:
            logger.exception("Command execution failed: %s", command_text)
            raise LaunchFailedError(
                f"Exec failed: {command_text}: {exc}",
                user_message=f"Exec failed: {exc}",
            ) from exc

        output = (result.stdout or "").strip()
        logger.info("Command result rc=%s cmd=%s output=%r", result.returncode, command_text, output)

        if result.returncode not in ok_codes:
            detail = tail_lines(output, 5) or f"exit code {result.returncode}"
            raise CommandFailedError(
                f"Command failed rc={result.returncode}: {command_text}: {detail}",
                returncode=result.returncode,
                output=output,
                user_message=f"Failed: {detail}",
            )

        return CommandResult(returncode=result.returncode, output=output)

    def spawn(
        self,
        binary: Path,
        args: Sequence[str],
        *,
        stdout_path: Path | None = None,
        settle_s: float = SPAWN_SETTLE_S,
    ) -> ProcessHandle:
        """Start ``binary`` detached from our session and check it survives startup."""
        cmd = [str(binary), *args]
        command_text = format_cmd(cmd)
        if not binary.exists():
            raise LaunchFailedError(
                f"Binary not found: {binary}",
                user_message=f"{binary.name} not found at {binary}. Reinstall the service.",
            )

        log_handle = None
        try:
            if stdout_path is not None:
                stdout_path.parent.mkdir(parents=True, exist_ok=True)
                log_handle = stdout_path.open("a", encoding="utf-8")
            logger.info("Spawning: %s", command_text)
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_handle if log_handle is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            if log_handle is not None:
                log_handle.close()
            logger.exception("Spawn failed: %s", command_text)
            raise LaunchFailedError(
                f"Spawn failed: {command_text}: {exc}",
                user_message=f"Exec failed: {exc}",
            ) from exc

        handle = ProcessHandle(process, stdout_path, log_handle)
        if settle_s > 0:
            time.sleep(settle_s)
        if not handle.is_running():
            code = handle.returncode()
            handle.stop()
            hint = f" Logs: {stdout_path}" if stdout_path is not None else ""
            raise LaunchFailedError(
                f"{binary.name} exited during startup with code {code}",
                user_message=f"{binary.name} exited immediately (code {code}).{hint}",
            )

        logger.info("Spawned pid=%s: %s", handle.pid, command_text)
        return handle
