"""OVN bring-up/teardown orchestrator.

The host bring-up tool calls the entry points in this order:

- install
- configure
- bootstrap
- start_stores
- disable_libvirt_apparmor
- configure_plugin
- start_controllers
- stop
- cleanup

``run_phase`` maps the host tool's ``stack install`` / ``stack post-config``
/ ``unstack`` hooks onto those entry points.

Usage:
    from ovnstack.config import load_config
    from ovnstack.orchestrator import OvnStackOrchestrator

    orchestrator = OvnStackOrchestrator(load_config())
    orchestrator.run_phase("stack", "install")
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .bootstrap import StateStoreBootstrapper
from .catalog import build_catalog, external_services
from .config import OvnConfig
from .errors import CommandError, ConfigurationError
from .launcher import ProcessLauncher, RuntimeHandle, RuntimeRegistry
from .readiness import AssumeReadyGate, ReadinessGate
from .registry import Phase, ServiceGraph, ServiceRegistry, ServiceSpec
from .runner import CommandRunner
from .teardown import PROC_MODULES, TeardownCoordinator, TeardownReport

logger = logging.getLogger(__name__)

# Any of these makes the plugin act at all
RELEVANT_SERVICES = ("q-svc", "ovn", "ovn-northd", "ovn-controller")

DHCP_MTU_OPTION = "dhcp-option=26"

# Newer libvirt cannot attach guests to OVS ports under the enforcing profile
LIBVIRTD_APPARMOR_PROFILE = Path("/etc/apparmor.d/usr.sbin.libvirtd")


class OvnStackOrchestrator:
    """Sequences store bootstrap, daemon launch/readiness and teardown.

    All state lives on the instance: the configuration passed in, the
    resolved service graph and the handles of daemons started by this
    session.
    """

    def __init__(
        self,
        config: OvnConfig,
        runner: Optional[CommandRunner] = None,
        gate: Optional[ReadinessGate] = None,
        catalog: Optional[list[ServiceSpec]] = None,
        proc_modules: str | Path = PROC_MODULES,
        clock: Callable[[], datetime] = datetime.now,
    ):
        # Conflicts abort before anything is touched
        config.check_conflicts()
        self.config = config
        self.runner = runner or CommandRunner(use_sudo=config.use_sudo)
        if gate is None:
            gate = AssumeReadyGate() if self.runner.dry_run else ReadinessGate()
        self.gate = gate
        self.bootstrapper = StateStoreBootstrapper(self.runner)
        self.launcher = ProcessLauncher(
            self.runner,
            log_dir=config.resolved_log_dir,
            run_dir=config.run_dir,
            ovs_log_dir=config.ovs_log_dir,
            user=config.stack_user,
            clock=clock,
        )
        self.teardown_coordinator = TeardownCoordinator(
            self.runner, proc_modules, unload_modules=config.build_modules
        )
        self.handles = RuntimeRegistry()
        self.system_id: Optional[str] = None
        self._catalog = catalog
        self._graph: Optional[ServiceGraph] = None
        self._ready: set[str] = set()

    # ------------------------------------------------------------------
    # Service graph
    # ------------------------------------------------------------------

    @property
    def graph(self) -> ServiceGraph:
        if self._graph is None:
            catalog = self._catalog or build_catalog(self.config, self.system_id)
            self._graph = ServiceRegistry(catalog).resolve(
                self.config.flags(), external=external_services(self.config)
            )
        return self._graph

    def is_relevant(self) -> bool:
        return any(self.config.is_service_enabled(name) for name in RELEVANT_SERVICES)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def install(self) -> None:
        """Run the configured install commands (skipped when offline)."""
        if self.config.offline:
            logger.info("OFFLINE set, skipping OVN installation")
            return
        if not self.config.install_commands:
            logger.info("No install commands configured")
            return
        logger.info("Installing OVN and dependent packages")
        cwd = self.config.dest if self.config.dest.is_dir() else None
        for cmd in self.config.install_commands:
            self.runner.run(list(cmd), cwd=cwd)

    def configure(self) -> str:
        """Resolve the system id, generating and persisting one if needed."""
        logger.info("Configuring OVN")
        system_id = self.config.system_id
        if not system_id:
            uuid_file = self.config.uuid_file
            if uuid_file.exists():
                system_id = uuid_file.read_text().strip()
                try:
                    system_id = str(uuid.UUID(system_id))
                except ValueError as e:
                    raise ConfigurationError(
                        f"{uuid_file} does not contain a UUID",
                        context={"content": system_id[:64]},
                    ) from e
            elif self.runner.dry_run:
                system_id = str(uuid.uuid4())
                logger.info(f"DRY RUN - would save system id {system_id} to {uuid_file}")
            else:
                system_id = str(uuid.uuid4())
                uuid_file.parent.mkdir(parents=True, exist_ok=True)
                uuid_file.write_text(system_id + "\n")
                logger.info(f"Generated system id {system_id}, saved to {uuid_file}")

        if system_id != self.system_id:
            self.system_id = system_id
            # The local ovsdb-server's post-start steps embed the system id
            self._graph = None
        return system_id

    def configure_plugin(self) -> None:
        """Validate routing settings and advertise the overlay MTU over DHCP."""
        logger.info("Configuring Neutron for OVN")
        self.config.check_conflicts()
        if self.config.is_service_enabled("q-dhcp"):
            self.configure_dhcp_mtu()

    def configure_dhcp_mtu(self, path: Optional[Path] = None) -> bool:
        """Append the DHCP MTU option unless one is already configured.

        Returns True if the file was changed.
        """
        path = Path(path or self.config.dnsmasq_config)
        line = f"{DHCP_MTU_OPTION},{self.config.overlay_mtu}"
        if path.exists() and DHCP_MTU_OPTION in path.read_text():
            logger.debug(f"{path} already sets {DHCP_MTU_OPTION}")
            return False

        logger.info(f"Advertising overlay MTU {self.config.overlay_mtu} via {path}")
        if self.runner.dry_run:
            self.runner.run(["tee", "-a", str(path)])
            return True
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(line + "\n")
        except PermissionError:
            self.runner.run(["sh", "-c", f"echo '{line}' >> '{path}'"], sudo=True)
        return True

    def disable_libvirt_apparmor(self) -> bool:
        """Put libvirtd's AppArmor profile in complain mode, if AppArmor is on.

        Best effort: returns True only when the profile was switched.
        """
        try:
            status = self.runner.run(["aa-status", "--enabled"], sudo=True, check=False)
        except CommandError as e:
            logger.debug(f"AppArmor status unavailable: {e.message}")
            return False
        if status.returncode != 0:
            logger.debug("AppArmor is not enabled")
            return False

        logger.info(f"Setting {LIBVIRTD_APPARMOR_PROFILE.name} to complain mode")
        try:
            self.runner.run(["aa-complain", str(LIBVIRTD_APPARMOR_PROFILE)], sudo=True)
        except CommandError as e:
            logger.warning(f"Could not relax the libvirtd AppArmor profile: {e.message}")
            return False
        return True

    def bootstrap(self) -> list[Path]:
        """Recreate the stores of every enabled service."""
        return self.bootstrapper.reset_and_create(self.config.store_dir, self.graph.stores())

    def start_stores(self) -> list[RuntimeHandle]:
        """Launch and gate the store-phase daemons."""
        if self.system_id is None:
            self.configure()
        logger.info("Starting OVS")
        return [self._bring_up(spec) for spec in self.graph.phase(Phase.STORES)]

    def start_controllers(self) -> list[RuntimeHandle]:
        """Launch and gate the controller daemons after their stores."""
        logger.info("Starting OVN")
        return [self._bring_up(spec) for spec in self.graph.phase(Phase.CONTROLLERS)]

    def stop(self) -> TeardownReport:
        """Stop every enabled service; failures are reported, not raised."""
        return self.teardown_coordinator.teardown(self.graph, self.handles)

    def cleanup(self) -> bool:
        """Uninstall the OVS build. Best effort; returns False on failure."""
        source_dir = self.config.source_dir
        if not self.runner.dry_run and not source_dir.is_dir():
            logger.debug(f"{source_dir} not present, nothing to uninstall")
            return True
        try:
            self.runner.run(["make", "uninstall"], sudo=True, cwd=source_dir)
        except CommandError as e:
            logger.warning(f"make uninstall failed: {e.message}")
            return False
        return True

    def publish_client_env(self, profile: Optional[Path] = None) -> bool:
        """Export OVN_NB_DB/OVN_SB_DB so OVN commands work from any shell."""
        profile = Path(profile or Path.home() / ".bash_profile")
        if profile.exists() and "OVN" in profile.read_text():
            return False
        if self.runner.dry_run:
            logger.info(f"DRY RUN - would export OVN client settings in {profile}")
            return True
        with open(profile, "a") as f:
            f.write(
                "\n# Enable OVN commands from any node.\n"
                f"export OVN_NB_DB={self.config.nb_endpoint}\n"
                f"export OVN_SB_DB={self.config.sb_endpoint}\n"
            )
        return True

    def run_phase(self, mode: str, phase: Optional[str] = None) -> Optional[TeardownReport]:
        """Dispatch a host-tool hook (``stack install``, ``unstack``, ...)."""
        if not self.is_relevant():
            logger.info("No OVN services enabled, nothing to do")
            return None

        if mode == "stack" and phase == "install":
            self.install()
            self.configure()
            self.bootstrap()
            # Started at install time: later host phases run ovs-vsctl
            self.start_stores()
            self.disable_libvirt_apparmor()
        elif mode == "stack" and phase == "post-config":
            self.configure_plugin()
            self.start_controllers()
            self.publish_client_env()
        elif mode == "unstack":
            report = self.stop()
            self.cleanup()
            return report
        else:
            logger.debug(f"Nothing to do for {mode} {phase or ''}".rstrip())
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _confirm_dependencies(self, spec: ServiceSpec) -> None:
        # Dependencies started by an earlier invocation are re-checked once
        for name in self.graph.dependencies(spec.name):
            if name in self._ready:
                continue
            dep = self.graph.get(name)
            if dep.readiness is not None:
                self.gate.await_ready(dep.readiness, service=dep.name)
            self._ready.add(name)

    def _bring_up(self, spec: ServiceSpec) -> RuntimeHandle:
        self._confirm_dependencies(spec)
        handle = self.launcher.launch(spec)
        self.handles.add(handle)
        if spec.readiness is not None:
            logger.info(f"Waiting for {spec.name} to start ...")
            self.gate.await_ready(spec.readiness, service=spec.name)
        self._ready.add(spec.name)
        self.launcher.run_post_start(spec)
        return handle
