"""Bring-up and teardown of the OVN/OVS daemons for development hosts.

Usage:
    from ovnstack import OvnStackOrchestrator, load_config

    orchestrator = OvnStackOrchestrator(load_config())
    orchestrator.run_phase("stack", "install")
"""

from ovnstack.config import OvnConfig, StoreMode, load_config, overlay_mtu
from ovnstack.errors import (
    BootstrapError,
    CommandError,
    ConfigConflictError,
    ConfigurationError,
    LaunchError,
    OvnStackError,
    ReadinessTimeoutError,
    TeardownError,
)
from ovnstack.orchestrator import OvnStackOrchestrator
from ovnstack.readiness import ReadinessCheck, ReadinessGate, paths_exist
from ovnstack.registry import DataFile, Phase, ServiceGraph, ServiceRegistry, ServiceSpec

__version__ = "0.1.0"

__all__ = [
    "BootstrapError",
    "CommandError",
    "ConfigConflictError",
    "ConfigurationError",
    "DataFile",
    "LaunchError",
    "OvnConfig",
    "OvnStackError",
    "OvnStackOrchestrator",
    "Phase",
    "ReadinessCheck",
    "ReadinessGate",
    "ReadinessTimeoutError",
    "ServiceGraph",
    "ServiceRegistry",
    "ServiceSpec",
    "StoreMode",
    "TeardownError",
    "load_config",
    "overlay_mtu",
]
