"""Launching daemons and tracking what was launched.

ProcessLauncher starts one ServiceSpec at a time, detached, after giving
it a fresh timestamped log file. The stable ``<name>.log`` symlink always
points at the latest run so repeated bring-ups never clobber old logs.
"""

from __future__ import annotations

import getpass
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional

from .errors import CommandError, LaunchError
from .metrics import SERVICE_LAUNCHES
from .registry import ServiceSpec
from .runner import CommandRunner

logger = logging.getLogger(__name__)

LOG_TIME_FORMAT = "%Y-%m-%d-%H%M%S"


@dataclass
class RuntimeHandle:
    """A daemon started during this session."""
    service_name: str
    pid: Optional[int]
    pid_file: Optional[Path]
    socket: Optional[Path]
    log_file: Optional[Path]
    started_at: datetime = field(default_factory=datetime.now)


class RuntimeRegistry:
    """Handles for the daemons started by one orchestrator session."""

    def __init__(self) -> None:
        self._handles: dict[str, RuntimeHandle] = {}

    def add(self, handle: RuntimeHandle) -> None:
        self._handles[handle.service_name] = handle

    def get(self, name: str) -> Optional[RuntimeHandle]:
        return self._handles.get(name)

    def discard(self, name: str) -> Optional[RuntimeHandle]:
        return self._handles.pop(name, None)

    def __contains__(self, name: object) -> bool:
        return name in self._handles

    def __iter__(self) -> Iterator[RuntimeHandle]:
        return iter(list(self._handles.values()))

    def __len__(self) -> int:
        return len(self._handles)

    @property
    def names(self) -> list[str]:
        return list(self._handles)


class ProcessLauncher:
    """Starts daemons detached and records a RuntimeHandle for each."""

    def __init__(
        self,
        runner: CommandRunner,
        log_dir: str | Path,
        run_dir: str | Path,
        ovs_log_dir: str | Path | None = None,
        user: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.runner = runner
        self.log_dir = Path(log_dir)
        self.run_dir = Path(run_dir)
        self.ovs_log_dir = Path(ovs_log_dir) if ovs_log_dir else None
        self.user = user or getpass.getuser()
        self._clock = clock
        self._ownership_fixed = False

    def ensure_runtime_ownership(self) -> None:
        """Give the invoking user the shared run/log directories, once."""
        if self._ownership_fixed:
            return
        for directory in filter(None, (self.run_dir, self.ovs_log_dir)):
            try:
                self.runner.run(["mkdir", "-p", str(directory)], sudo=True)
                self.runner.run(["chown", self.user, str(directory)], sudo=True)
            except CommandError as e:
                raise LaunchError(
                    f"Cannot take ownership of {directory}: {e.message}",
                    context=dict(e.context),
                ) from e
        self._ownership_fixed = True
        logger.debug(f"Runtime directories owned by {self.user}")

    def rotate_log(self, name: str) -> Path:
        """Create ``<name>.log.<timestamp>`` and point ``<name>.log`` at it."""
        link = self.log_dir / f"{name}.log"
        if self.runner.dry_run:
            return link
        stamp = self._clock().strftime(LOG_TIME_FORMAT)
        target = self.log_dir / f"{name}.log.{stamp}"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            target.touch()
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(target.name)
        except OSError as e:
            raise LaunchError(f"Cannot prepare log file {target}: {e}", service=name) from e
        return link

    def launch(self, service: ServiceSpec) -> RuntimeHandle:
        """Start ``service`` detached. Failure to start is fatal, not retried."""
        if not service.launch_command:
            raise LaunchError(f"{service.name} has no launch command", service=service.name)

        if service.needs_runtime_dir:
            self.ensure_runtime_ownership()
        log_file = self.rotate_log(service.log_basename)

        logger.info(f"Starting {service.name}")
        try:
            pid = self.runner.spawn(
                list(service.launch_command),
                log_file=None if self.runner.dry_run else log_file,
                sudo=service.run_as_root,
            )
        except CommandError as e:
            SERVICE_LAUNCHES.labels(service=service.name, outcome="failed").inc()
            raise LaunchError(
                f"{service.name} could not be started: {e.message}",
                service=service.name,
                context=dict(e.context),
            ) from e

        SERVICE_LAUNCHES.labels(service=service.name, outcome="started").inc()
        return RuntimeHandle(
            service_name=service.name,
            pid=pid,
            pid_file=service.pid_file,
            socket=service.socket,
            log_file=log_file,
            started_at=self._clock(),
        )

    def run_post_start(self, service: ServiceSpec) -> None:
        """Run the commands that finish configuring a ready daemon."""
        for cmd in service.post_start:
            try:
                self.runner.run(list(cmd), sudo=service.run_as_root)
            except CommandError as e:
                raise LaunchError(
                    f"Post-start step for {service.name} failed: {e.message}",
                    service=service.name,
                    context=dict(e.context),
                ) from e
