"""Command-line entry point for the OVN bring-up orchestrator.

Usage:
    # Host-tool hooks
    ovnstack stack install
    ovnstack stack post-config
    ovnstack unstack

    # Individual steps
    ovnstack bootstrap
    ovnstack start-stores
    ovnstack start-controllers
    ovnstack stop

    # Show what would be started, in order
    ovnstack status

    # Print commands instead of running them
    ovnstack --dry-run stack install
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from .config import load_config
from .errors import OvnStackError
from .logging_config import setup_logging
from .orchestrator import OvnStackOrchestrator
from .runner import CommandRunner, DryRunRunner

logger = logging.getLogger("ovnstack.cli")

STEPS = (
    "install",
    "configure",
    "bootstrap",
    "start-stores",
    "disable-libvirt-apparmor",
    "start-controllers",
    "stop",
    "cleanup",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ovnstack",
        description="Bring up and tear down the OVN/OVS daemons",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", help="YAML settings file (default: $OVNSTACK_CONFIG)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the commands that would be executed without running them",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", help="Also write orchestrator logs to this file")

    sub = parser.add_subparsers(dest="command", required=True)
    stack = sub.add_parser("stack", help="Run a stack phase hook")
    stack.add_argument("phase", help="Phase name, e.g. install or post-config")
    sub.add_parser("unstack", help="Stop services and clean up")
    sub.add_parser("status", help="List enabled services in startup order")
    for step in STEPS:
        sub.add_parser(step, help=f"Run only the {step} step")
    return parser


def _print_status(orchestrator: OvnStackOrchestrator) -> None:
    graph = orchestrator.graph
    config = orchestrator.config
    print(f"Store mode: {config.store_mode.value}  NB: {config.nb_endpoint}  SB: {config.sb_endpoint}")
    print(f"Overlay MTU: {config.overlay_mtu}")
    if graph.external:
        print(f"External services: {', '.join(sorted(graph.external))}")
    if not len(graph):
        print("No services enabled")
        return
    width = max(len(name) for name in graph.names)
    for spec in graph.startup_order:
        ready = spec.readiness is not None and spec.readiness.predicate()
        deps = ", ".join(graph.dependencies(spec.name)) or "-"
        state = "ready" if ready else "down"
        print(f"  {spec.name:<{width}}  {spec.phase.value:<11}  {state:<5}  after: {deps}")


def run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    runner = DryRunRunner(config.use_sudo) if args.dry_run else CommandRunner(config.use_sudo)
    orchestrator = OvnStackOrchestrator(config, runner=runner)

    command = args.command
    if command == "stack":
        orchestrator.run_phase("stack", args.phase)
    elif command == "unstack":
        report = orchestrator.run_phase("unstack")
        if report is not None and not report.ok:
            return 2
    elif command == "status":
        _print_status(orchestrator)
    elif command == "stop":
        if not orchestrator.stop().ok:
            return 2
    else:
        getattr(orchestrator, command.replace("-", "_"))()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        "ovnstack",
        level=logging.DEBUG if args.verbose else logging.INFO,
        log_file=args.log_file,
    )
    try:
        return run(args)
    except OvnStackError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
