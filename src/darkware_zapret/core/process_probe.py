"""Process table queries for engine liveness."""

from __future__ import annotations

import logging
import subprocess
import time

from darkware_zapret.core.config import AppConfig
from darkware_zapret.core.errors import ProbeUnavailableError
from darkware_zapret.core.presets import Engine, engine_profile

logger = logging.getLogger(__name__)

PGREP = "/usr/bin/pgrep"
WAIT_POLL_S = 0.2


class ProcessProbe:
    def __init__(self, config: AppConfig, *, pgrep: str = PGREP) -> None:
        self._config = config
        self._pgrep = pgrep

    def pattern(self, engine: Engine) -> str:
        return str(engine_profile(engine, self._config).binary)

    def is_alive(self, engine: Engine) -> bool:
        """``pgrep`` exits 0 on a match and 1 on none; anything else is a probe failure."""
        pattern = self.pattern(engine)
        try:
            result = subprocess.run(
                [self._pgrep, "-f", pattern],
                check=False,
                capture_output=True,
                text=True,
                timeout=self._config.probe_timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProbeUnavailableError(
                f"pgrep timed out for {pattern}",
                user_message="Process check timed out.",
            ) from exc
        except OSError as exc:
            raise ProbeUnavailableError(
                f"pgrep failed for {pattern}: {exc}",
                user_message="Unable to query running processes.",
            ) from exc

        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False

        detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
        raise ProbeUnavailableError(
            f"pgrep failed for {pattern}: {detail}",
            user_message="Unable to query running processes.",
        )

    def wait_until_dead(self, engine: Engine, *, timeout_s: float) -> bool:
        deadline = time.monotonic() + timeout_s
        while True:
            if not self.is_alive(engine):
                return True
            if time.monotonic() >= deadline:
                logger.warning("%s still alive after %.1fs", engine.value, timeout_s)
                return False
            time.sleep(WAIT_POLL_S)
