"""Stopping the daemons and removing session-scoped kernel state.

Teardown is best effort: a service that is not running is skipped, and a
stop command that fails is reported as a warning while the remaining
services are still stopped.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import CommandError, TeardownError
from .launcher import RuntimeRegistry
from .metrics import TEARDOWN_FAILURES
from .registry import ServiceGraph, ServiceSpec
from .runner import CommandRunner

logger = logging.getLogger(__name__)

PROC_MODULES = Path("/proc/modules")
# Unloaded in this order; vport_geneve holds a reference on openvswitch
DATAPATH_MODULES = ("vport_geneve", "openvswitch")


@dataclass
class TeardownReport:
    """What teardown did. ``failures`` never aborts the run."""
    stopped: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[TeardownError] = field(default_factory=list)
    datapaths_removed: list[str] = field(default_factory=list)
    modules_unloaded: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _pid_running(pid_file: Path) -> bool:
    """True if the pid in ``pid_file`` names a live process."""
    try:
        pid = int(pid_file.read_text().strip())
    except FileNotFoundError:
        return False
    except (OSError, ValueError):
        # Unreadable or garbled: let the stop command decide
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Owned by root; it exists
        return True
    return True


class TeardownCoordinator:
    """Stops services in reverse startup order."""

    def __init__(
        self,
        runner: CommandRunner,
        proc_modules: str | Path = PROC_MODULES,
        datapath_modules: tuple[str, ...] = DATAPATH_MODULES,
        unload_modules: bool = True,
    ):
        self.runner = runner
        self.proc_modules = Path(proc_modules)
        self.datapath_modules = datapath_modules
        # Distribution-provided modules are left loaded
        self.unload_modules = unload_modules

    def teardown(
        self,
        graph: ServiceGraph,
        registry: Optional[RuntimeRegistry] = None,
    ) -> TeardownReport:
        report = TeardownReport()
        for spec in graph.teardown_order:
            self._stop(spec, report, registry)

        if any(spec.owns_datapath for spec in graph):
            self._remove_datapaths(report)
            if self.unload_modules:
                self._unload_modules(report)

        if report.failures:
            logger.warning(
                f"Teardown finished with {len(report.failures)} failure(s): "
                + ", ".join(f.service or "?" for f in report.failures)
            )
        else:
            logger.info(f"Teardown complete: stopped {len(report.stopped)} service(s)")
        return report

    def _stop(
        self,
        spec: ServiceSpec,
        report: TeardownReport,
        registry: Optional[RuntimeRegistry],
    ) -> None:
        if not spec.stop_command or (
            spec.pid_file is not None
            and not self.runner.dry_run
            and not _pid_running(spec.pid_file)
        ):
            logger.debug(f"{spec.name} is not running")
            self._remove_artifacts(spec)
            report.skipped.append(spec.name)
            if registry is not None:
                registry.discard(spec.name)
            return

        logger.info(f"Stopping {spec.name}")
        try:
            self.runner.run(list(spec.stop_command), sudo=spec.run_as_root)
        except CommandError as e:
            TEARDOWN_FAILURES.labels(service=spec.name).inc()
            failure = TeardownError(
                f"Failed to stop {spec.name}: {e.message}",
                service=spec.name,
                context=dict(e.context),
            )
            logger.warning(str(failure))
            report.failures.append(failure)
            return

        self._remove_artifacts(spec)
        if registry is not None:
            handle = registry.discard(spec.name)
            if handle is not None:
                logger.debug(f"{spec.name} ran since {handle.started_at:%H:%M:%S}")
        report.stopped.append(spec.name)

    def _remove_artifacts(self, spec: ServiceSpec) -> None:
        if self.runner.dry_run:
            return
        for path in (spec.pid_file, spec.socket):
            if path is None:
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")

    def _remove_datapaths(self, report: TeardownReport) -> None:
        try:
            result = self.runner.run(["ovs-dpctl", "dump-dps"], sudo=True, check=False)
        except CommandError as e:
            logger.warning(f"Cannot list datapaths: {e.message}")
            return
        if result.returncode != 0:
            logger.warning(f"ovs-dpctl dump-dps exited with status {result.returncode}")
            return

        for dp in (line.strip() for line in (result.stdout or "").splitlines()):
            if not dp:
                continue
            try:
                self.runner.run(["ovs-dpctl", "del-dp", dp], sudo=True)
            except CommandError as e:
                TEARDOWN_FAILURES.labels(service="datapath").inc()
                failure = TeardownError(
                    f"Failed to delete datapath {dp}: {e.message}", service="datapath"
                )
                logger.warning(str(failure))
                report.failures.append(failure)
                continue
            report.datapaths_removed.append(dp)

    def _loaded_modules(self) -> set[str]:
        try:
            text = self.proc_modules.read_text()
        except OSError:
            return set()
        return {line.split()[0] for line in text.splitlines() if line.strip()}

    def _unload_modules(self, report: TeardownReport) -> None:
        loaded = self._loaded_modules()
        for module in self.datapath_modules:
            if module not in loaded:
                continue
            try:
                self.runner.run(["rmmod", module], sudo=True)
            except CommandError as e:
                TEARDOWN_FAILURES.labels(service=module).inc()
                failure = TeardownError(f"Failed to unload {module}: {e.message}", service=module)
                logger.warning(str(failure))
                report.failures.append(failure)
                continue
            report.modules_unloaded.append(module)
