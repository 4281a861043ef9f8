"""Readiness gating for freshly launched daemons.

A daemon is considered ready once an externally observable artifact
appears (its unix socket or pid file). ReadinessGate polls a
ReadinessCheck until it holds or its timeout elapses; a timeout aborts
the bring-up so no dependent daemon is ever started against a store that
is not accepting connections.

Usage:
    from ovnstack.readiness import ReadinessCheck, ReadinessGate, paths_exist

    check = ReadinessCheck(
        predicate=paths_exist("/usr/local/var/run/openvswitch/db.sock"),
        poll_interval=1.0,
        timeout=60.0,
        failure_message="ovsdb-server did not start",
    )
    ReadinessGate().await_ready(check, service="ovsdb-server")
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .errors import ConfigurationError, ReadinessTimeoutError
from .metrics import READINESS_TIMEOUTS, READINESS_WAIT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadinessCheck:
    """Stateless description of a readiness condition."""
    predicate: Callable[[], bool]
    poll_interval: float = 1.0
    timeout: float = 60.0
    failure_message: str = "service did not become ready"
    description: str = ""

    def __post_init__(self) -> None:
        if self.poll_interval <= 0:
            raise ConfigurationError(
                f"poll_interval must be positive, got {self.poll_interval}"
            )
        if self.timeout < 0:
            raise ConfigurationError(f"timeout must not be negative, got {self.timeout}")


def paths_exist(*paths: str | Path) -> Callable[[], bool]:
    """Predicate that holds once every path exists."""
    targets = tuple(Path(p) for p in paths)

    def _check() -> bool:
        return all(p.exists() for p in targets)

    _check.__name__ = "paths_exist(" + ", ".join(str(p) for p in targets) + ")"
    return _check


class ReadinessGate:
    """Blocks until a ReadinessCheck holds, or fails the bring-up.

    ``clock`` and ``sleep`` are injectable so tests can drive time.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._clock = clock
        self._sleep = sleep

    def await_ready(self, check: ReadinessCheck, service: Optional[str] = None) -> int:
        """Poll ``check`` until it holds; return the number of attempts.

        Raises ReadinessTimeoutError once ``check.timeout`` seconds pass
        without the predicate holding.
        """
        label = service or check.description or "service"
        start = self._clock()
        deadline = start + check.timeout
        attempts = 0

        while True:
            attempts += 1
            if check.predicate():
                waited = self._clock() - start
                READINESS_WAIT.labels(service=label).observe(waited)
                logger.info(f"{label} ready after {waited:.1f}s ({attempts} checks)")
                return attempts

            now = self._clock()
            if now >= deadline:
                READINESS_TIMEOUTS.labels(service=label).inc()
                logger.error(f"{check.failure_message} (waited {check.timeout:.0f}s)")
                raise ReadinessTimeoutError(
                    check.failure_message,
                    timeout_seconds=check.timeout,
                    attempts=attempts,
                    context={"service": label},
                )
            self._sleep(min(check.poll_interval, deadline - now))


class AssumeReadyGate(ReadinessGate):
    """Gate used for dry runs: nothing was started, so nothing is awaited."""

    def await_ready(self, check: ReadinessCheck, service: Optional[str] = None) -> int:
        label = service or check.description or "service"
        logger.info(f"DRY RUN - assuming {label} is ready")
        return 0
