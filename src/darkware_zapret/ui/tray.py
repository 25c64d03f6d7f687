"""Menu-bar tray icon and menu."""

from __future__ import annotations

from functools import partial
import logging
from pathlib import Path
from typing import Callable

from PyQt6.QtCore import QObject
from PyQt6.QtGui import QAction, QActionGroup, QIcon
from PyQt6.QtWidgets import QApplication, QMenu, QStyle, QSystemTrayIcon

from darkware_zapret import __version__
from darkware_zapret.core.config import AppConfig
from darkware_zapret.core.diagnostics import collect_diagnostics
from darkware_zapret.core.errors import AppError
from darkware_zapret.core.installer import Installer
from darkware_zapret.core.presets import Engine, strategies_for
from darkware_zapret.core.supervisor import EngineSupervisor, SupervisorStatus
from darkware_zapret.ui.diagnostics_widget import DiagnosticsWidget
from darkware_zapret.ui.reconciler import ReconciliationLoop
from darkware_zapret.ui.workers import QtTaskRunner

logger = logging.getLogger(__name__)

APP_TITLE = "Darkware Zapret"
PROXY_NOTICE = "ByeDPI changes the SOCKS proxy of every network service on this Mac."
MAX_ERROR_CHARS = 80


class TrayController(QObject):
    def __init__(
        self,
        app: QApplication,
        *,
        config: AppConfig,
        supervisor: EngineSupervisor,
        installer: Installer,
        reconciler: ReconciliationLoop,
        runner: QtTaskRunner,
        resources_dir: Path,
    ) -> None:
        super().__init__()
        self._app = app
        self._config = config
        self._supervisor = supervisor
        self._installer = installer
        self._reconciler = reconciler
        self._runner = runner
        self._resources_dir = resources_dir
        self._installing = False
        self._install_error: str | None = None
        self._diagnostics: DiagnosticsWidget | None = None

        style = app.style()
        self._icon_on: QIcon = style.standardIcon(QStyle.StandardPixmap.SP_DialogApplyButton)
        self._icon_off: QIcon = style.standardIcon(QStyle.StandardPixmap.SP_DialogCancelButton)

        self._menu = QMenu()
        self._menu.aboutToShow.connect(self._on_menu_about_to_show)

        self._status_action = QAction("Status: Inactive", self._menu)
        self._status_action.setEnabled(False)
        self._toggle_action = QAction("Enable", self._menu)
        self._toggle_action.triggered.connect(self._on_toggle)

        self._engine_menu = QMenu("Engine", self._menu)
        self._engine_group = QActionGroup(self._engine_menu)
        self._engine_group.setExclusive(True)
        self._engine_actions: dict[Engine, QAction] = {}
        for engine in Engine:
            action = QAction(engine.label, self._engine_menu)
            action.setCheckable(True)
            action.triggered.connect(partial(self._on_engine_selected, engine))
            self._engine_group.addAction(action)
            self._engine_menu.addAction(action)
            self._engine_actions[engine] = action

        self._strategy_menu = QMenu("Strategy", self._menu)
        self._strategy_group = QActionGroup(self._strategy_menu)
        self._strategy_group.setExclusive(True)

        self._error_action = QAction("", self._menu)
        self._error_action.setEnabled(False)

        self._install_action = QAction("Install Service", self._menu)
        self._install_action.triggered.connect(self._on_install)
        self._uninstall_action = QAction("Uninstall Service", self._menu)
        self._uninstall_action.triggered.connect(self._on_uninstall)

        diagnostics_action = QAction("Diagnostics…", self._menu)
        diagnostics_action.triggered.connect(self._on_diagnostics)
        version_action = QAction(f"v{__version__}", self._menu)
        version_action.setEnabled(False)
        quit_action = QAction("Quit", self._menu)
        quit_action.triggered.connect(app.quit)

        self._menu.addAction(self._status_action)
        self._menu.addAction(self._toggle_action)
        self._menu.addSeparator()
        self._menu.addMenu(self._engine_menu)
        self._menu.addMenu(self._strategy_menu)
        self._menu.addAction(self._error_action)
        self._menu.addSeparator()
        self._menu.addAction(self._install_action)
        self._menu.addAction(self._uninstall_action)
        self._menu.addAction(diagnostics_action)
        self._menu.addSeparator()
        self._menu.addAction(version_action)
        self._menu.addAction(quit_action)

        self._tray = QSystemTrayIcon(self._icon_off, self)
        self._tray.setContextMenu(self._menu)

        self._unsubscribe = supervisor.subscribe(self._render)
        self._render(supervisor.get_status())

    def show(self) -> None:
        self._tray.show()

    def close(self) -> None:
        self._unsubscribe()
        self._tray.hide()

    def _on_menu_about_to_show(self) -> None:
        self._supervisor.poll_once()
        self._render(self._supervisor.get_status())

    def _render(self, status: SupervisorStatus) -> None:
        installed = self._installer.is_installed()
        busy = status.is_busy or self._installing

        state_text = "Active" if status.is_running else "Inactive"
        if status.is_busy:
            state_text = f"{status.state.value.capitalize()}…"
        self._status_action.setText(f"Status: {state_text}")
        self._toggle_action.setText("Disable" if status.is_running else "Enable")
        self._toggle_action.setEnabled(installed and not busy)

        for engine, action in self._engine_actions.items():
            action.setChecked(engine is status.engine)
        self._engine_menu.setEnabled(installed and not busy)
        self._rebuild_strategy_menu(status)
        self._strategy_menu.setEnabled(installed and not busy)

        error = self._install_error if not installed else status.last_error
        if error:
            short = error if len(error) <= MAX_ERROR_CHARS else f"{error[:MAX_ERROR_CHARS - 1]}…"
            self._error_action.setText(f"Error: {short}")
        self._error_action.setVisible(bool(error))

        self._install_action.setVisible(not installed)
        self._install_action.setEnabled(not busy)
        self._install_action.setText("Installing…" if self._installing else "Install Service")
        self._uninstall_action.setVisible(installed)
        self._uninstall_action.setEnabled(not busy and not status.is_running)

        self._tray.setIcon(self._icon_on if status.is_running else self._icon_off)
        tooltip = f"{APP_TITLE}: {state_text} ({status.engine.label}, {status.strategy.label})"
        if status.engine is Engine.SOCKS5_PROXY:
            tooltip = f"{tooltip}\n{PROXY_NOTICE}"
        self._tray.setToolTip(tooltip)

    def _rebuild_strategy_menu(self, status: SupervisorStatus) -> None:
        for action in self._strategy_group.actions():
            self._strategy_group.removeAction(action)
        self._strategy_menu.clear()
        for strategy in strategies_for(status.engine):
            action = QAction(strategy.label, self._strategy_menu)
            action.setCheckable(True)
            action.setChecked(strategy.id == status.strategy.id)
            action.triggered.connect(partial(self._on_strategy_selected, status.engine, strategy.id))
            self._strategy_group.addAction(action)
            self._strategy_menu.addAction(action)

    def _on_toggle(self) -> None:
        self._report(self._supervisor.toggle())

    def _on_engine_selected(self, engine: Engine, _checked: bool = False) -> None:
        self._report(self._supervisor.set_engine(engine))

    def _on_strategy_selected(self, engine: Engine, strategy_id: str, _checked: bool = False) -> None:
        self._report(self._supervisor.set_strategy(engine, strategy_id))

    def _report(self, rejection: AppError | None) -> None:
        if rejection is not None:
            self._tray.showMessage(APP_TITLE, rejection.user_message, QSystemTrayIcon.MessageIcon.Warning)

    def _on_install(self) -> None:
        self._run_installer(partial(self._installer.install, self._resources_dir), "Installed.")

    def _on_uninstall(self) -> None:
        self._run_installer(self._installer.uninstall, "Uninstalled.")

    def _run_installer(self, fn, done_message: str) -> None:
        if self._installing:
            return
        self._installing = True
        self._install_error = None
        self._render(self._supervisor.get_status())

        def _job() -> AppError | None:
            try:
                fn()
            except AppError as exc:
                return exc
            except Exception as exc:
                logger.exception("Installer action crashed")
                return AppError(f"Installer crashed: {exc}", user_message=f"Unexpected failure: {exc}")
            return None

        self._runner(_job, partial(self._on_installer_done, done_message))

    def _on_installer_done(self, done_message: str, error: AppError | None) -> None:
        self._installing = False
        if error is not None:
            logger.error("Installer action failed: %s", error)
            self._install_error = error.user_message
            self._tray.showMessage(APP_TITLE, error.user_message, QSystemTrayIcon.MessageIcon.Critical)
        else:
            self._tray.showMessage(APP_TITLE, done_message, QSystemTrayIcon.MessageIcon.Information)
            self._reconciler.tick()
        self._render(self._supervisor.get_status())

    def _on_diagnostics(self) -> None:
        if self._diagnostics is None:
            self._diagnostics = DiagnosticsWidget(self._config, self._runner, self._diagnostics_job)
        self._diagnostics.show()
        self._diagnostics.raise_()
        self._diagnostics.activateWindow()
        self._diagnostics.refresh()

    def _diagnostics_job(self) -> Callable[[], str]:
        status = self._supervisor.get_status()
        config = self._config
        installer = self._installer
        return lambda: collect_diagnostics(config, status=status, installer=installer)
