"""Diagnostics window."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from PyQt6.QtCore import Qt, QUrl
from PyQt6.QtGui import QDesktopServices
from PyQt6.QtWidgets import (
    QApplication,
    QHBoxLayout,
    QLabel,
    QPushButton,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from darkware_zapret.core.config import AppConfig
from darkware_zapret.core.storage import get_logs_dir
from darkware_zapret.ui.workers import QtTaskRunner

logger = logging.getLogger(__name__)

ReportJob = Callable[[], str]


class DiagnosticsWidget(QWidget):
    def __init__(
        self,
        config: AppConfig,
        runner: QtTaskRunner,
        make_job: Callable[[], ReportJob],
    ) -> None:
        """``make_job`` runs on the GUI thread; the job it returns runs on the pool."""
        super().__init__()
        self.setWindowTitle("Darkware Zapret Diagnostics")
        self.resize(720, 520)
        self._config = config
        self._runner = runner
        self._make_job = make_job
        self._refreshing = False

        self.hint_label = QLabel("")
        self.hint_label.setAlignment(Qt.AlignmentFlag.AlignLeft | Qt.AlignmentFlag.AlignVCenter)
        self.hint_label.setWordWrap(True)

        self.report_area = QTextEdit()
        self.report_area.setReadOnly(True)
        self.report_area.setLineWrapMode(QTextEdit.LineWrapMode.NoWrap)

        self.refresh_button = QPushButton("Refresh")
        self.copy_button = QPushButton("Copy report")
        self.open_config_button = QPushButton("Show engine config")
        self.open_logs_button = QPushButton("Open logs folder")

        self.refresh_button.clicked.connect(self.refresh)
        self.copy_button.clicked.connect(self.copy_report)
        self.open_config_button.clicked.connect(self.show_engine_config)
        self.open_logs_button.clicked.connect(self.open_logs_folder)

        buttons = QHBoxLayout()
        buttons.setSpacing(8)
        for button in (
            self.refresh_button,
            self.copy_button,
            self.open_config_button,
            self.open_logs_button,
        ):
            buttons.addWidget(button)
        buttons.addStretch(1)

        layout = QVBoxLayout()
        layout.setSpacing(10)
        layout.addWidget(self.hint_label)
        layout.addLayout(buttons)
        layout.addWidget(self.report_area, 1)
        self.setLayout(layout)

    def set_hint(self, text: str) -> None:
        self.hint_label.setText(text)

    def refresh(self) -> None:
        if self._refreshing:
            return
        self._refreshing = True
        self.set_hint("")
        self.report_area.setPlainText("Collecting diagnostics...")
        self.refresh_button.setEnabled(False)
        job = self._make_job()

        def _collect() -> str:
            try:
                return job()
            except Exception as exc:
                logger.exception("Diagnostics failed")
                return f"Diagnostics error: {exc}"

        self._runner(_collect, self._on_report)

    def _on_report(self, text: str) -> None:
        self._refreshing = False
        self.report_area.setPlainText(text)
        self.refresh_button.setEnabled(True)

    def copy_report(self) -> None:
        QApplication.clipboard().setText(self.report_area.toPlainText())
        self.set_hint("Report copied to clipboard.")

    def show_engine_config(self) -> None:
        self._reveal(self._config.config_file, missing="Engine config not written yet")

    def open_logs_folder(self) -> None:
        self._reveal(get_logs_dir(), missing="Logs folder does not exist yet")

    def _reveal(self, path: Path, *, missing: str) -> None:
        if not path.exists():
            self.set_hint(f"{missing}: {path}")
            return
        if not QDesktopServices.openUrl(QUrl.fromLocalFile(str(path))):
            logger.warning("Could not open %s", path)
            self.set_hint(f"Could not open {path}")
            return
        self.set_hint(f"Opened {path}")
