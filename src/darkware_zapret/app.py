"""Application entry point."""

from __future__ import annotations

import logging
import os
from pathlib import Path
import sys

from PyQt6.QtWidgets import QApplication, QSystemTrayIcon

from darkware_zapret import __version__
from darkware_zapret.core.config import load_config
from darkware_zapret.core.installer import Installer
from darkware_zapret.core.logging_setup import setup_logging
from darkware_zapret.core.storage import SettingsStore, ensure_dirs
from darkware_zapret.core.supervisor import EngineSupervisor
from darkware_zapret.ui.reconciler import ReconciliationLoop
from darkware_zapret.ui.tray import TrayController
from darkware_zapret.ui.workers import QtTaskRunner

logger = logging.getLogger(__name__)

RESOURCES_ENV = "DARKWARE_ZAPRET_RESOURCES"


def default_resources_dir() -> Path:
    override = os.environ.get(RESOURCES_ENV)
    if override:
        return Path(override)
    # Inside an app bundle the interpreter sits in Contents/MacOS.
    return Path(sys.executable).resolve().parent.parent / "Resources"


def main(argv: list[str] | None = None) -> int:
    ensure_dirs()
    log_path = setup_logging()
    logger.info("darkware-zapret %s starting; log file %s", __version__, log_path)

    config = load_config()
    settings = SettingsStore()
    installer = Installer(config)

    app = QApplication(argv if argv is not None else sys.argv)
    app.setApplicationName("Darkware Zapret")
    app.setQuitOnLastWindowClosed(False)

    if not QSystemTrayIcon.isSystemTrayAvailable():
        logger.error("No system tray available")
        return 1

    runner = QtTaskRunner(app)
    supervisor = EngineSupervisor(
        config=config,
        settings=settings,
        installer=installer,
        runner=runner,
    )
    reconciler = ReconciliationLoop(
        supervisor,
        installer,
        interval_ms=config.poll_interval_ms,
        parent=app,
    )
    tray = TrayController(
        app,
        config=config,
        supervisor=supervisor,
        installer=installer,
        reconciler=reconciler,
        runner=runner,
        resources_dir=default_resources_dir(),
    )

    def _on_quit() -> None:
        reconciler.stop()
        supervisor.shutdown()
        tray.close()

    app.aboutToQuit.connect(_on_quit)
    tray.show()
    reconciler.start()
    return app.exec()
