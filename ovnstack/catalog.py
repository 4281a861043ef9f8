"""The OVN/OVS service catalog.

Builds the ServiceSpecs for one configuration:

    ovsdb-nb, ovsdb-sb    OVN northbound/southbound ovsdb-server  (ovn-northd)
    ovsdb-server          local Open_vSwitch database (conf.db)   (ovn-controller)
    ovs-vswitchd          switch daemon, owns the kernel datapath (ovn-controller)
    ovn-controller        chassis controller                      (ovn-controller)
    ovn-northd            NB -> SB translation daemon             (ovn-northd)

The ``ovn`` flag enables all of them. Every daemon gets an explicit
``--unixctl`` path so stop commands do not depend on compiled-in run
directories.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .config import OvnConfig, StoreMode
from .readiness import ReadinessCheck, paths_exist
from .registry import DataFile, Phase, ServiceGraph, ServiceRegistry, ServiceSpec

NORTHD_FLAGS = ("ovn", "ovn-northd")
CONTROLLER_FLAGS = ("ovn", "ovn-controller")
REMOTE_STORES = frozenset({"ovsdb-nb", "ovsdb-sb"})

INTEGRATION_BRIDGE = "br-int"
CONSOLE_LOG_PATTERN = "PATTERN:CONSOLE:%D{%Y-%m-%dT%H:%M:%S.###Z}|%05N|%c%T|%p|%m"


def _ctl(config: OvnConfig, name: str) -> Path:
    return config.run_dir / f"{name}.ctl"


def _log(config: OvnConfig, name: str) -> Path:
    return config.resolved_log_dir / f"{name}.log"


def _daemon_args(config: OvnConfig, name: str, pid_file: Path) -> list[str]:
    return [
        f"--pidfile={pid_file}",
        "--detach",
        "-vconsole:off",
        f"--log-file={_log(config, name)}",
        f"--unixctl={_ctl(config, name)}",
    ]


def _check(config: OvnConfig, name: str, *paths: Path) -> ReadinessCheck:
    return ReadinessCheck(
        predicate=paths_exist(*paths),
        poll_interval=config.poll_interval,
        timeout=config.service_timeout,
        failure_message=f"{name} did not start",
        description=name,
    )


def _stop(config: OvnConfig, name: str) -> tuple[str, ...]:
    return ("ovs-appctl", "-t", str(_ctl(config, name)), "exit")


def _ovn_store(config: OvnConfig, direction: str, port: int, schema: str) -> ServiceSpec:
    name = f"ovsdb-{direction}"
    log_name = f"ovsdb-server-{direction}"
    sock = config.run_dir / f"{direction}_db.sock"
    pid = config.run_dir / f"ovsdb-server-{direction}.pid"
    db = DataFile(
        path=config.store_dir / f"ovn{direction}.db",
        schema=config.source_dir / "ovn" / schema,
    )
    return ServiceSpec(
        name=name,
        flags=NORTHD_FLAGS,
        phase=Phase.STORES,
        launch_command=(
            "ovsdb-server",
            f"--remote=punix:{sock}",
            f"--remote=ptcp:{port}:{config.host_ip}",
            *_daemon_args(config, log_name, pid),
            str(db.path),
        ),
        readiness=_check(config, f"{direction} ovsdb-server", sock),
        stop_command=_stop(config, log_name),
        pid_file=pid,
        socket=sock,
        log_name=log_name,
        store=db,
        needs_runtime_dir=True,
    )


def _local_ovsdb(config: OvnConfig, system_id: Optional[str]) -> ServiceSpec:
    sock = config.run_dir / "db.sock"
    pid = config.run_dir / "ovsdb-server.pid"
    db = DataFile(
        path=config.store_dir / "conf.db",
        schema=config.source_dir / "vswitchd" / "vswitch.ovsschema",
    )
    vsctl = ("ovs-vsctl", "--no-wait")
    post_start = [
        (*vsctl, "init"),
        (*vsctl, "set", "open_vswitch", ".", "system-type=devstack"),
    ]
    if system_id:
        post_start.append(
            (*vsctl, "set", "open_vswitch", ".", f"external-ids:system-id={system_id}")
        )
    post_start += [
        (*vsctl, "set", "open_vswitch", ".", f"external-ids:ovn-remote={config.sb_endpoint}"),
        (*vsctl, "set", "open_vswitch", ".", f"external-ids:ovn-bridge={INTEGRATION_BRIDGE}"),
        (*vsctl, "set", "open_vswitch", ".", "external-ids:ovn-encap-type=geneve"),
        (*vsctl, "set", "open_vswitch", ".", f"external-ids:ovn-encap-ip={config.host_ip}"),
        (*vsctl, "--", "--may-exist", "add-br", INTEGRATION_BRIDGE),
        (*vsctl, "br-set-external-id", INTEGRATION_BRIDGE, "bridge-id", INTEGRATION_BRIDGE),
        (
            *vsctl, "set", "bridge", INTEGRATION_BRIDGE,
            "fail-mode=secure", "other-config:disable-in-band=true",
        ),
    ]
    return ServiceSpec(
        name="ovsdb-server",
        flags=CONTROLLER_FLAGS,
        phase=Phase.STORES,
        launch_command=(
            "ovsdb-server",
            f"--remote=punix:{sock}",
            "--remote=db:Open_vSwitch,Open_vSwitch,manager_options",
            *_daemon_args(config, "ovsdb-server", pid),
            str(db.path),
        ),
        readiness=_check(config, "ovsdb-server", sock),
        stop_command=_stop(config, "ovsdb-server"),
        pid_file=pid,
        socket=sock,
        store=db,
        post_start=tuple(post_start),
        needs_runtime_dir=True,
    )


def _vswitchd(config: OvnConfig) -> ServiceSpec:
    pid = config.run_dir / "ovs-vswitchd.pid"
    daemon = " ".join([
        "ovs-vswitchd",
        f"unix:{config.run_dir / 'db.sock'}",
        *_daemon_args(config, "ovs-vswitchd", pid),
    ])
    return ServiceSpec(
        name="ovs-vswitchd",
        flags=CONTROLLER_FLAGS,
        depends_on=frozenset({"ovsdb-server"}),
        phase=Phase.STORES,
        # Raise the open file limit before exec'ing the daemon
        launch_command=("sh", "-c", f"ulimit -n 32000 && exec {daemon}"),
        readiness=_check(config, "ovs-vswitchd", pid),
        stop_command=_stop(config, "ovs-vswitchd"),
        pid_file=pid,
        run_as_root=True,
        owns_datapath=True,
    )


def _ovn_controller(config: OvnConfig) -> ServiceSpec:
    pid = config.run_dir / "ovn-controller.pid"
    return ServiceSpec(
        name="ovn-controller",
        flags=CONTROLLER_FLAGS,
        depends_on=frozenset({"ovsdb-server", "ovs-vswitchd"}),
        phase=Phase.CONTROLLERS,
        launch_command=(
            "ovn-controller",
            *_daemon_args(config, "ovn-controller", pid),
            f"unix:{config.run_dir / 'db.sock'}",
        ),
        readiness=_check(config, "ovn-controller", pid),
        stop_command=_stop(config, "ovn-controller"),
        pid_file=pid,
        post_start=(
            ("ovs-appctl", "-t", str(_ctl(config, "ovn-controller")),
             "vlog/set", CONSOLE_LOG_PATTERN),
        ),
        run_as_root=True,
    )


def _ovn_northd(config: OvnConfig) -> ServiceSpec:
    pid = config.run_dir / "ovn-northd.pid"
    if config.store_mode == StoreMode.REMOTE:
        nb_db, sb_db = config.nb_endpoint, config.sb_endpoint
    else:
        nb_db = f"unix:{config.run_dir / 'nb_db.sock'}"
        sb_db = f"unix:{config.run_dir / 'sb_db.sock'}"
    return ServiceSpec(
        name="ovn-northd",
        flags=NORTHD_FLAGS,
        depends_on=frozenset({"ovsdb-nb", "ovsdb-sb"}),
        phase=Phase.CONTROLLERS,
        launch_command=(
            "ovn-northd",
            f"--ovnnb-db={nb_db}",
            f"--ovnsb-db={sb_db}",
            *_daemon_args(config, "ovn-northd", pid),
        ),
        readiness=_check(config, "ovn-northd", pid),
        stop_command=_stop(config, "ovn-northd"),
        pid_file=pid,
        post_start=(
            ("ovs-appctl", "-t", str(_ctl(config, "ovn-northd")),
             "vlog/set", CONSOLE_LOG_PATTERN),
        ),
        needs_runtime_dir=True,
    )


def build_catalog(config: OvnConfig, system_id: Optional[str] = None) -> list[ServiceSpec]:
    """All OVN/OVS services, in declaration (tie-break) order."""
    return [
        _ovn_store(config, "nb", config.nb_port, "ovn-nb.ovsschema"),
        _ovn_store(config, "sb", config.sb_port, "ovn-sb.ovsschema"),
        _local_ovsdb(config, system_id),
        _vswitchd(config),
        _ovn_controller(config),
        _ovn_northd(config),
    ]


def external_services(config: OvnConfig) -> frozenset[str]:
    """Services reached through remote endpoints instead of run locally."""
    if config.store_mode == StoreMode.REMOTE:
        return REMOTE_STORES
    return frozenset()


def resolve_services(config: OvnConfig, system_id: Optional[str] = None) -> ServiceGraph:
    """Enabled OVN services for ``config``."""
    registry = ServiceRegistry(build_catalog(config, system_id))
    return registry.resolve(config.flags(), external=external_services(config))
