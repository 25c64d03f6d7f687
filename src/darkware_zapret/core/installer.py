"""Installation check and privileged install/uninstall through AppleScript."""

from __future__ import annotations

import logging
from pathlib import Path
import shutil
import subprocess
import tempfile
from typing import Final

from darkware_zapret.core.config import AppConfig
from darkware_zapret.core.errors import InstallError

logger = logging.getLogger(__name__)

OSASCRIPT: Final[str] = "/usr/bin/osascript"
INSTALL_SCRIPT: Final[str] = "install_darkware.sh"
BUNDLED_TREE: Final[str] = "zapret"
TEMP_DIR_NAME: Final[str] = "darkware_installer_temp"
INSTALL_TIMEOUT_S: Final[float] = 600.0


def _applescript_quote(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def _shell_quote(path: Path) -> str:
    return "'" + str(path).replace("'", "'\\''") + "'"


class Installer:
    def __init__(self, config: AppConfig, *, osascript: str = OSASCRIPT) -> None:
        self._config = config
        self._osascript = osascript

    def is_installed(self) -> bool:
        return self._config.install_dir.exists() and self._config.sudoers_file.exists()

    def install(self, resources_dir: Path, *, temp_root: Path | None = None) -> None:
        """Copy the bundled tree and script to a temp dir and run it as administrator.

        Running from a temporary copy keeps the script clear of quarantine and
        translocation on the bundled resources.
        """
        source_tree = resources_dir / BUNDLED_TREE
        source_script = resources_dir / INSTALL_SCRIPT
        if not source_tree.is_dir() or not source_script.is_file():
            raise InstallError(
                f"Installer resources missing in {resources_dir}",
                user_message="Resources not found",
            )

        work_dir = (temp_root or Path(tempfile.gettempdir())) / TEMP_DIR_NAME
        try:
            if work_dir.exists():
                shutil.rmtree(work_dir)
            work_dir.mkdir(parents=True)
            shutil.copytree(source_tree, work_dir / BUNDLED_TREE, symlinks=True)
            script = work_dir / INSTALL_SCRIPT
            shutil.copy2(source_script, script)
            script.chmod(0o755)
        except OSError as exc:
            logger.exception("Failed to prepare installer in %s", work_dir)
            raise InstallError(
                f"Failed to prepare installer: {exc}",
                user_message=f"Prep failed: {exc}",
            ) from exc

        self._run_privileged(_shell_quote(script), action="Installation")
        if not self.is_installed():
            raise InstallError(
                "Install script finished but the installation is incomplete",
                user_message="Installation failed",
            )
        logger.info("Installed into %s", self._config.install_dir)

    def uninstall(self) -> None:
        script = self._config.uninstall_script
        if not script.is_file():
            raise InstallError(
                f"Uninstall script missing: {script}",
                user_message="Uninstall script not found. Is the service installed?",
            )
        self._run_privileged(_shell_quote(script), action="Uninstall")
        logger.info("Uninstalled from %s", self._config.install_dir)

    def _run_privileged(self, command: str, *, action: str) -> None:
        source = f'do shell script "{_applescript_quote(command)}" with administrator privileges'
        logger.info("%s: running %s with administrator privileges", action, command)
        try:
            result = subprocess.run(
                [self._osascript, "-e", source],
                check=False,
                capture_output=True,
                text=True,
                timeout=INSTALL_TIMEOUT_S,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.exception("%s failed to run", action)
            raise InstallError(f"{action} failed: {exc}", user_message=f"{action} failed") from exc

        if result.returncode != 0:
            detail = (result.stderr or "").strip() or (result.stdout or "").strip()
            logger.error("%s failed rc=%s: %s", action, result.returncode, detail)
            raise InstallError(
                f"{action} failed rc={result.returncode}: {detail}",
                user_message=detail or f"{action} failed",
            )
