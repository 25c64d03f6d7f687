"""Thread-pool task runner that delivers results on the GUI thread."""

from __future__ import annotations

import logging
from typing import Any, Callable

from PyQt6.QtCore import QObject, QRunnable, QThreadPool, pyqtSignal, pyqtSlot

logger = logging.getLogger(__name__)


class TaskWorkerSignals(QObject):
    result = pyqtSignal(object)
    error = pyqtSignal(object)


class TaskWorker(QRunnable):
    def __init__(self, task_id: int, fn: Callable[[], Any]) -> None:
        super().__init__()
        self.task_id = task_id
        self.fn = fn
        self.signals = TaskWorkerSignals()

    def run(self) -> None:
        try:
            payload = self.fn()
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("Background task failed")
            self.signals.error.emit((self.task_id, str(exc)))
            return
        self.signals.result.emit((self.task_id, payload))


class QtTaskRunner(QObject):
    """Callable ``runner(job, on_done)`` backed by ``QThreadPool``.

    ``job`` runs on a pool thread. The signals are connected to slots on this
    object, so ``on_done`` always runs on the thread that owns the runner.
    """

    def __init__(self, parent: QObject | None = None, *, pool: QThreadPool | None = None) -> None:
        super().__init__(parent)
        self._pool = pool or QThreadPool.globalInstance()
        self._pending: dict[int, tuple[TaskWorker, Callable[[Any], None]]] = {}
        self._next_id = 0

    def __call__(self, job: Callable[[], Any], on_done: Callable[[Any], None]) -> None:
        self._next_id += 1
        worker = TaskWorker(self._next_id, job)
        worker.setAutoDelete(False)
        worker.signals.result.connect(self._on_result)
        worker.signals.error.connect(self._on_error)
        self._pending[worker.task_id] = (worker, on_done)
        self._pool.start(worker)

    @pyqtSlot(object)
    def _on_result(self, payload: object) -> None:
        task_id, value = payload  # type: ignore[misc]
        entry = self._pending.pop(task_id, None)
        if entry is None:  # pragma: no cover - defensive
            return
        _worker, on_done = entry
        on_done(value)

    @pyqtSlot(object)
    def _on_error(self, payload: object) -> None:
        task_id, message = payload  # type: ignore[misc]
        self._pending.pop(task_id, None)
        logger.error("Task %s crashed: %s", task_id, message)
