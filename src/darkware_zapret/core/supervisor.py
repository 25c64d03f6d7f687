"""Engine lifecycle supervisor.

The supervisor owns the desired engine/strategy selection and the published
status. Every control intent becomes a transaction that runs on a worker
through the task runner; the worker returns a typed result which is applied
back on the thread that owns the supervisor. Only one transaction may be in
flight, intents arriving meanwhile are rejected with ``BusyError``.

Stopping is best-effort: a failed stop is reported in ``last_error`` but the
supervisor still lands in ``idle`` so the user can always retry. Control
transactions cannot be cancelled once submitted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from pathlib import Path
import threading
from typing import Any, Callable, Final, TypeVar

from darkware_zapret.core.config import AppConfig
from darkware_zapret.core.errors import (
    AppError,
    BusyError,
    ConfigWriteError,
    LaunchFailedError,
    NotInstalledError,
    ProbeUnavailableError,
    ProxyAdapterError,
)
from darkware_zapret.core.installer import Installer
from darkware_zapret.core.presets import (
    ConfigFileThenCommand,
    Engine,
    EngineProfile,
    Strategy,
    build_start_spec,
    default_strategy,
    engine_profile,
    find_strategy,
    lookup,
)
from darkware_zapret.core.process_manager import ProcessHandle, ProcessLauncher
from darkware_zapret.core.process_probe import ProcessProbe
from darkware_zapret.core.proxy_manager import SystemProxyManager
from darkware_zapret.core.storage import SettingsStore, get_logs_dir

logger = logging.getLogger(__name__)

T = TypeVar("T")

TaskRunner = Callable[[Callable[[], Any], Callable[[Any], None]], None]
StatusListener = Callable[["SupervisorStatus"], None]

KEY_ENGINE: Final[str] = "engine"
KEY_STRATEGY_PREFIX: Final[str] = "strategy."
# Builds before engine selection stored the tpws strategy label under this key.
LEGACY_STRATEGY_KEY: Final[str] = "ZapretStrategy"

DEFAULT_ENGINE: Final[Engine] = Engine.TRANSPARENT_PROXY


def run_inline(job: Callable[[], T], on_done: Callable[[T], None]) -> None:
    on_done(job())


class SupervisorState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    SWITCHING = "switching"
    RESTARTING = "restarting"


@dataclass(frozen=True, slots=True)
class SupervisorStatus:
    is_running: bool
    is_busy: bool
    last_error: str | None
    engine: Engine
    strategy: Strategy
    state: SupervisorState
    observed: dict[Engine, bool] = field(default_factory=dict)


@dataclass(slots=True)
class DesiredState:
    engine: Engine
    strategies: dict[Engine, Strategy]
    running: bool = False

    @property
    def strategy(self) -> Strategy:
        return self.strategies[self.engine]


@dataclass(frozen=True, slots=True)
class TransactionResult:
    running: bool
    error: AppError | None = None
    warnings: tuple[AppError, ...] = ()
    observed: dict[Engine, bool] | None = None


@dataclass(frozen=True, slots=True)
class ProbeResult:
    engine: Engine
    alive: bool | None
    error: ProbeUnavailableError | None = None


def _strategy_key(engine: Engine) -> str:
    return f"{KEY_STRATEGY_PREFIX}{engine.value}"


def _load_desired(settings: SettingsStore) -> DesiredState:
    raw_engine = settings.get_string(KEY_ENGINE)
    try:
        engine = Engine(raw_engine) if raw_engine else DEFAULT_ENGINE
    except ValueError:
        logger.warning("Ignoring unknown persisted engine %r", raw_engine)
        engine = DEFAULT_ENGINE

    strategies: dict[Engine, Strategy] = {}
    for candidate in Engine:
        stored = settings.get_string(_strategy_key(candidate))
        if stored is None and candidate is Engine.TRANSPARENT_PROXY:
            stored = settings.get_string(LEGACY_STRATEGY_KEY)
        strategies[candidate] = find_strategy(candidate, stored) or default_strategy(candidate)
    return DesiredState(engine=engine, strategies=strategies)


class EngineSupervisor:
    def __init__(
        self,
        *,
        config: AppConfig,
        settings: SettingsStore,
        installer: Installer,
        launcher: ProcessLauncher | None = None,
        probe: ProcessProbe | None = None,
        proxy: SystemProxyManager | None = None,
        runner: TaskRunner = run_inline,
        logs_dir: Path | None = None,
    ) -> None:
        self._config = config
        self._settings = settings
        self._installer = installer
        self._launcher = launcher or ProcessLauncher()
        self._probe = probe or ProcessProbe(config)
        self._proxy = proxy or SystemProxyManager(
            services=config.network_services,
            host=config.socks_host,
            timeout_s=config.control_timeout_s,
        )
        self._runner = runner
        self._logs_dir = logs_dir or get_logs_dir()

        self._desired = _load_desired(settings)
        self._observed: dict[Engine, bool] = {}
        self._is_running = False
        self._busy = False
        self._state = SupervisorState.IDLE
        self._last_error: str | None = None
        self._generation = 0
        self._probe_in_flight = False
        self._listeners: list[StatusListener] = []
        # Held by a worker for the whole of a transaction; shutdown waits on it.
        self._txn_lock = threading.Lock()
        self._closed = False
        # Touched only while holding _txn_lock.
        self._handles: dict[Engine, ProcessHandle] = {}

        self._status = self._snapshot()

    # Published state

    def get_status(self) -> SupervisorStatus:
        return self._status

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _snapshot(self) -> SupervisorStatus:
        return SupervisorStatus(
            is_running=self._is_running,
            is_busy=self._busy,
            last_error=self._last_error,
            engine=self._desired.engine,
            strategy=self._desired.strategy,
            state=self._state,
            observed=dict(self._observed),
        )

    def _publish(self) -> None:
        self._status = self._snapshot()
        for listener in list(self._listeners):
            try:
                listener(self._status)
            except Exception:
                logger.exception("Status listener failed")

    # Intents

    def toggle(self) -> AppError | None:
        rejection = self._admit("toggle")
        if rejection is not None:
            return rejection

        if self._is_running:
            logger.info("Stopping %s", self._desired.engine.value)
            self._begin(SupervisorState.STOPPING, self._job_stop_all)
            return None

        engine = self._desired.engine
        strategy = self._desired.strategy
        logger.info("Starting %s with strategy %s", engine.value, strategy.id)
        self._begin(SupervisorState.STARTING, lambda: self._job_start(engine, strategy))
        return None

    def set_strategy(self, engine: Engine, strategy_id: str) -> AppError | None:
        strategy = lookup(engine, strategy_id)
        if self._desired.strategies[engine] == strategy:
            return None

        rejection = self._admit("set_strategy")
        if rejection is not None:
            return rejection

        previous = self._desired.strategies[engine]
        self._desired.strategies[engine] = strategy
        self._settings.set_string(_strategy_key(engine), strategy.id)
        logger.info("Strategy for %s: %s -> %s", engine.value, previous.id, strategy.id)

        if self._is_running and engine is self._desired.engine:
            self._begin(SupervisorState.RESTARTING, lambda: self._job_restart(engine, strategy))
            return None

        profile = engine_profile(engine, self._config)
        if profile.config_path is not None:
            running = self._is_running
            self._begin(self._state, lambda: self._job_write_config(engine, strategy, running))
        else:
            self._publish()
        return None

    def set_engine(self, engine: Engine) -> AppError | None:
        if engine is self._desired.engine:
            return None

        rejection = self._admit("set_engine")
        if rejection is not None:
            return rejection

        previous = self._desired.engine
        self._desired.engine = engine
        logger.info("Engine: %s -> %s", previous.value, engine.value)

        if self._is_running:
            # Persisted by the switch once the old engine is confirmed gone.
            strategy = self._desired.strategy
            self._begin(SupervisorState.SWITCHING, lambda: self._job_switch(engine, strategy))
            return None

        self._settings.set_string(KEY_ENGINE, engine.value)
        self._publish()
        return None

    def poll_once(self) -> None:
        """Probe the selected engine and correct ``is_running`` on drift."""
        if self._closed or self._busy or self._probe_in_flight:
            return
        if not self._installer.is_installed():
            return

        engine = self._desired.engine
        generation = self._generation
        self._probe_in_flight = True
        self._runner(
            lambda: self._job_probe(engine),
            lambda result: self._apply_probe(generation, result),
        )

    def shutdown(self) -> None:
        """Stop every engine synchronously on the calling thread.

        A transaction already executing on a worker is waited for, and one
        still queued is turned into a no-op, so nothing can start an engine
        or enable the proxy after this returns. Every step of a transaction
        is bounded by its timeout, so the wait is too.
        """
        if self._closed:
            return
        in_flight = self._busy
        with self._txn_lock:
            self._closed = True
            if in_flight or self._is_running:
                logger.info("Shutting down: stopping all engines (in flight: %s)", in_flight)
                for exc in self._stop_all():
                    logger.error("Stop during shutdown failed: %s", exc)
        self._busy = False
        self._is_running = False
        self._desired.running = False
        self._state = SupervisorState.IDLE
        self._publish()

    # Transaction bookkeeping (owning thread)

    def _admit(self, operation: str) -> AppError | None:
        rejection: AppError | None = None
        if self._closed:
            rejection = AppError(f"Rejected {operation}: supervisor is shut down", user_message="Shutting down.")
        elif not self._installer.is_installed():
            rejection = NotInstalledError()
        elif self._busy:
            rejection = BusyError(operation)
        if rejection is None:
            return None
        logger.warning("%s", rejection)
        self._last_error = rejection.user_message
        self._publish()
        return rejection

    def _begin(self, state: SupervisorState, job: Callable[[], TransactionResult]) -> None:
        self._busy = True
        self._state = state
        self._last_error = None
        self._generation += 1
        self._publish()

        def _guarded() -> TransactionResult:
            # An unexpected crash must still clear the busy flag.
            try:
                with self._txn_lock:
                    if self._closed:
                        logger.info("Skipping %s transaction after shutdown", state.value)
                        return TransactionResult(running=False)
                    return job()
            except Exception as exc:
                logger.exception("Transaction crashed in state %s", state.value)
                return TransactionResult(
                    running=False,
                    error=AppError(f"Unexpected failure: {exc}", user_message=f"Unexpected failure: {exc}"),
                )

        self._runner(_guarded, self._finish)

    def _finish(self, result: TransactionResult) -> None:
        if self._closed:
            # shutdown() already stopped everything and published the final state.
            return
        self._busy = False
        self._is_running = result.running
        self._desired.running = result.running
        self._state = SupervisorState.RUNNING if result.running else SupervisorState.IDLE
        if result.observed is not None:
            self._observed = dict(result.observed)

        messages = [exc.user_message for exc in (result.error, *result.warnings) if exc is not None]
        self._last_error = "; ".join(messages) if messages else None
        if result.error is not None:
            logger.error("Transaction failed: %s", result.error)
        self._publish()

    def _apply_probe(self, generation: int, result: ProbeResult) -> None:
        self._probe_in_flight = False
        if self._closed:
            return
        if result.alive is None:
            logger.debug("Probe unavailable, keeping observed state: %s", result.error)
            return

        self._observed[result.engine] = result.alive
        stale = (
            generation != self._generation
            or self._busy
            or result.engine is not self._desired.engine
        )
        if stale or result.alive == self._is_running:
            self._publish()
            return

        logger.warning(
            "%s process is %s but status says %s; correcting",
            result.engine.value,
            "alive" if result.alive else "gone",
            "running" if self._is_running else "stopped",
        )
        self._is_running = result.alive
        self._desired.running = result.alive
        self._state = SupervisorState.RUNNING if result.alive else SupervisorState.IDLE

        profile = engine_profile(result.engine, self._config)
        if profile.requires_system_proxy:
            if result.alive:
                # A ciadpi left over from an earlier session carries no traffic until the proxy points at it.
                self._begin(SupervisorState.STARTING, lambda: self._job_claim_proxy(result.engine))
            else:
                self._begin(SupervisorState.STOPPING, lambda: self._job_release_proxy(result.engine))
            return
        self._publish()

    # Jobs (worker thread)

    def _job_probe(self, engine: Engine) -> ProbeResult:
        try:
            return ProbeResult(engine=engine, alive=self._probe.is_alive(engine))
        except ProbeUnavailableError as exc:
            return ProbeResult(engine=engine, alive=None, error=exc)
        except Exception as exc:
            logger.exception("Probe for %s crashed", engine.value)
            return ProbeResult(
                engine=engine,
                alive=None,
                error=ProbeUnavailableError(f"Probe crashed: {exc}"),
            )

    def _job_start(self, engine: Engine, strategy: Strategy) -> TransactionResult:
        warnings: list[AppError] = []
        try:
            if self._any_alive():
                logger.warning("Found a leftover engine process before start; stopping all")
                warnings.extend(self._stop_all())
                self._confirm_all_dead()
            warnings.extend(self._start_engine(engine, strategy))
        except AppError as exc:
            warnings.extend(self._cleanup_failed_start(engine))
            return TransactionResult(running=False, error=exc, warnings=tuple(warnings))
        return TransactionResult(
            running=True,
            warnings=tuple(warnings),
            observed=self._observed_after_start(engine),
        )

    def _job_stop_all(self) -> TransactionResult:
        errors = self._stop_all()
        return TransactionResult(
            running=False,
            warnings=tuple(errors),
            observed={candidate: False for candidate in Engine},
        )

    def _job_switch(self, engine: Engine, strategy: Strategy) -> TransactionResult:
        warnings = list(self._stop_all())
        try:
            self._confirm_all_dead()
            warnings.extend(self._persist_engine(engine))
            warnings.extend(self._start_engine(engine, strategy))
        except AppError as exc:
            warnings.extend(self._cleanup_failed_start(engine))
            return TransactionResult(running=False, error=exc, warnings=tuple(warnings))
        return TransactionResult(
            running=True,
            warnings=tuple(warnings),
            observed=self._observed_after_start(engine),
        )

    def _job_restart(self, engine: Engine, strategy: Strategy) -> TransactionResult:
        profile = engine_profile(engine, self._config)
        warnings: list[AppError] = []
        try:
            spec = build_start_spec(profile, strategy)
            if isinstance(spec, ConfigFileThenCommand) and profile.restart_command is not None:
                self._write_config(spec.config_path, spec.body)
                self._launcher.run(profile.restart_command, timeout_s=self._config.control_timeout_s)
            else:
                self._stop_engine(engine)
                if not self._probe.wait_until_dead(engine, timeout_s=self._config.control_timeout_s):
                    raise LaunchFailedError(
                        f"{engine.value} still alive after stop; not restarting",
                        user_message=f"{engine.label} did not stop; restart aborted.",
                    )
                warnings.extend(self._start_engine(engine, strategy))
        except AppError as exc:
            warnings.extend(self._cleanup_failed_start(engine))
            return TransactionResult(running=False, error=exc, warnings=tuple(warnings))
        return TransactionResult(
            running=True,
            warnings=tuple(warnings),
            observed=self._observed_after_start(engine),
        )

    def _job_write_config(self, engine: Engine, strategy: Strategy, running: bool) -> TransactionResult:
        profile = engine_profile(engine, self._config)
        spec = build_start_spec(profile, strategy)
        error: AppError | None = None
        if isinstance(spec, ConfigFileThenCommand):
            try:
                self._write_config(spec.config_path, spec.body)
            except ConfigWriteError as exc:
                error = exc
        return TransactionResult(running=running, error=error)

    def _job_claim_proxy(self, engine: Engine) -> TransactionResult:
        profile = engine_profile(engine, self._config)
        observed = self._observed_after_start(engine)
        try:
            warnings = self._enable_proxy(profile)
        except AppError as exc:
            return TransactionResult(running=True, warnings=(exc,), observed=observed)
        return TransactionResult(running=True, warnings=tuple(warnings), observed=observed)

    def _job_release_proxy(self, engine: Engine) -> TransactionResult:
        warnings: list[AppError] = []
        handle = self._handles.pop(engine, None)
        try:
            if handle is not None:
                handle.stop()
        except AppError as exc:
            logger.error("Stopping %s handle failed: %s", engine.value, exc)
            warnings.append(exc)
        finally:
            warnings.extend(self._release_proxy())
        return TransactionResult(running=False, warnings=tuple(warnings))

    # Steps (worker thread)

    def _start_engine(self, engine: Engine, strategy: Strategy) -> list[AppError]:
        profile = engine_profile(engine, self._config)
        spec = build_start_spec(profile, strategy)
        if isinstance(spec, ConfigFileThenCommand):
            self._write_config(spec.config_path, spec.body)
            self._launcher.run(spec.command, timeout_s=self._config.control_timeout_s)
            return []

        self._handles[engine] = self._launcher.spawn(
            spec.binary,
            spec.args,
            stdout_path=self._logs_dir / f"{spec.binary.name}.log",
        )
        return self._enable_proxy(profile)

    def _enable_proxy(self, profile: EngineProfile) -> list[AppError]:
        if not profile.requires_system_proxy or profile.socks_port is None:
            return []
        sweep = self._proxy.enable(profile.socks_port)
        if sweep.ok:
            return []
        return [
            ProxyAdapterError(
                f"Proxy enable incomplete: {sweep.summary()}",
                user_message=f"System proxy not set on: {sweep.summary()}",
            )
        ]

    def _stop_engine(self, engine: Engine) -> None:
        profile = engine_profile(engine, self._config)
        handle = self._handles.pop(engine, None)
        handle_error: AppError | None = None
        if handle is not None:
            try:
                handle.stop()
            except AppError as exc:
                logger.error("Stopping %s handle failed: %s", engine.value, exc)
                handle_error = exc
        self._launcher.run(
            profile.stop_command,
            timeout_s=self._config.control_timeout_s,
            ok_codes=profile.stop_ok_codes,
        )
        if handle_error is not None:
            raise handle_error

    def _stop_all(self) -> list[AppError]:
        """Stop every known engine, then turn the system proxy off exactly once."""
        errors: list[AppError] = []
        try:
            for engine in Engine:
                try:
                    self._stop_engine(engine)
                except AppError as exc:
                    logger.error("Stopping %s failed: %s", engine.value, exc)
                    errors.append(exc)
        finally:
            # Runs even when a stop step crashes outright.
            errors.extend(self._release_proxy())
        return errors

    def _release_proxy(self) -> list[AppError]:
        try:
            sweep = self._proxy.disable()
        except AppError as exc:
            logger.error("Disabling system proxy failed: %s", exc)
            return [exc]
        if sweep.ok:
            return []
        return [
            ProxyAdapterError(
                f"Proxy disable incomplete: {sweep.summary()}",
                user_message=f"System proxy still set on: {sweep.summary()}",
            )
        ]

    def _cleanup_failed_start(self, engine: Engine) -> list[AppError]:
        errors: list[AppError] = []
        try:
            self._stop_engine(engine)
        except AppError as exc:
            logger.error("Cleanup after failed start of %s failed: %s", engine.value, exc)
            errors.append(exc)
        finally:
            if engine_profile(engine, self._config).requires_system_proxy:
                errors.extend(self._release_proxy())
        return errors

    def _persist_engine(self, engine: Engine) -> list[AppError]:
        try:
            self._settings.set_string(KEY_ENGINE, engine.value)
        except OSError as exc:
            logger.exception("Failed to persist engine choice")
            return [ConfigWriteError(f"Failed to save settings: {exc}", user_message=f"Engine choice not saved: {exc}")]
        return []

    def _any_alive(self) -> bool:
        for engine in Engine:
            try:
                if self._probe.is_alive(engine):
                    return True
            except ProbeUnavailableError:
                logger.warning("Cannot tell whether %s is alive", engine.value)
                return True
        return False

    def _confirm_all_dead(self) -> None:
        for engine in Engine:
            if not self._probe.wait_until_dead(engine, timeout_s=self._config.control_timeout_s):
                raise LaunchFailedError(
                    f"{engine.value} still alive after stop-all; refusing to start",
                    user_message=f"{engine.label} is still running; start aborted.",
                )

    def _observed_after_start(self, engine: Engine) -> dict[Engine, bool]:
        return {candidate: candidate is engine for candidate in Engine}

    def _write_config(self, path: Path, body: str) -> None:
        try:
            path.write_text(body, encoding="utf-8")
        except OSError as exc:
            logger.exception("Failed to write engine config: %s", path)
            raise ConfigWriteError(
                f"Failed to write {path}: {exc}",
                user_message=f"Failed to write config: {exc}",
            ) from exc
        logger.info("Wrote engine config: %s", path)
