"""Periodic reconciliation of published status with the process table."""

from __future__ import annotations

import logging

from PyQt6.QtCore import QObject, QTimer

from darkware_zapret.core.installer import Installer
from darkware_zapret.core.supervisor import EngineSupervisor

logger = logging.getLogger(__name__)


class ReconciliationLoop(QObject):
    def __init__(
        self,
        supervisor: EngineSupervisor,
        installer: Installer,
        *,
        interval_ms: int,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._supervisor = supervisor
        self._installer = installer
        self._timer = QTimer(self)
        self._timer.setInterval(interval_ms)
        self._timer.timeout.connect(self.tick)

    def start(self) -> None:
        logger.info("Reconciliation every %d ms", self._timer.interval())
        self.tick()
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()

    def tick(self) -> None:
        if not self._installer.is_installed():
            return
        self._supervisor.poll_once()
