"""Configuration for the OVN bring-up orchestrator.

Settings come from three layers, later layers winning:

1. Field defaults below (a single-node devstack-style layout)
2. An optional YAML file (``--config`` or ``OVNSTACK_CONFIG``)
3. Environment variables (``HOST_IP``, ``OVN_NB_REMOTE``, ...)

The resulting ``OvnConfig`` is frozen and passed explicitly to the
orchestrator; nothing reads the environment after construction.

Environment Variables:
    HOST_IP: Address the OVN databases listen on (default: 127.0.0.1)
    DEST: Source checkout root (default: /opt/stack)
    DATA_DIR: Data root; stores live in DATA_DIR/ovs (default: DEST/data)
    LOGDIR: Per-run daemon logs (default: DEST/logs)
    ENABLED_SERVICES: Comma-separated service/feature flags
    OVN_NB_REMOTE / OVN_SB_REMOTE: Store endpoints (default: tcp:HOST_IP:6641/6642)
    OVN_STORE_MODE: "local" runs the NB/SB stores here, "remote" uses the remotes
    OVN_L3_MODE: Use OVN native L3 routing (default: true)
    OVN_BUILD_MODULES: Kernel modules are built for this host and unloaded on teardown (default: true)
    OVN_NATIVE_MTU: MTU of the physical network (default: 1500)
    OVN_UUID: Preset system id; generated and persisted when unset
    SERVICE_TIMEOUT: Seconds to wait for a daemon to become ready (default: 60)
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigConflictError, ConfigurationError

logger = logging.getLogger(__name__)

# GENEVE encapsulation overhead subtracted from the native MTU.
GENEVE_OVERHEAD = 58

CONFIG_PATH_ENV = "OVNSTACK_CONFIG"

# Environment variable -> OvnConfig field
ENV_FIELDS: dict[str, str] = {
    "HOST_IP": "host_ip",
    "DEST": "dest",
    "DATA_DIR": "data_dir",
    "LOGDIR": "log_dir",
    "OVN_STATE_DIR": "state_dir",
    "OVS_RUN_DIR": "run_dir",
    "OVS_LOG_DIR": "ovs_log_dir",
    "ENABLED_SERVICES": "enabled_services",
    "OVN_NB_REMOTE": "nb_remote",
    "OVN_SB_REMOTE": "sb_remote",
    "OVN_STORE_MODE": "store_mode",
    "OVN_L3_MODE": "l3_mode",
    "OVN_BUILD_MODULES": "build_modules",
    "OVN_NATIVE_MTU": "native_mtu",
    "OVN_UUID": "system_id",
    "OVN_REPO": "repo",
    "SERVICE_TIMEOUT": "service_timeout",
    "OVN_POLL_INTERVAL": "poll_interval",
    "OFFLINE": "offline",
    "STACK_USER": "stack_user",
    "OVN_USE_SUDO": "use_sudo",
    "OVN_DNSMASQ_CONFIG": "dnsmasq_config",
}


class StoreMode(str, Enum):
    """Where the northbound/southbound stores run."""
    LOCAL = "local"
    REMOTE = "remote"


class OvnConfig(BaseModel):
    """Explicit configuration for one bring-up/teardown run."""

    model_config = ConfigDict(frozen=True)

    host_ip: str = "127.0.0.1"
    dest: Path = Path("/opt/stack")
    data_dir: Path | None = None
    log_dir: Path | None = None
    state_dir: Path = Path(".")
    run_dir: Path = Path("/usr/local/var/run/openvswitch")
    ovs_log_dir: Path = Path("/usr/local/var/log/openvswitch")
    enabled_services: frozenset[str] = frozenset({"ovn-northd", "ovn-controller", "q-svc"})
    nb_remote: str | None = None
    sb_remote: str | None = None
    nb_port: int = 6641
    sb_port: int = 6642
    store_mode: StoreMode = StoreMode.LOCAL
    l3_mode: bool = True
    build_modules: bool = True
    native_mtu: int = Field(default=1500, gt=GENEVE_OVERHEAD)
    system_id: str | None = None
    repo: str = "https://github.com/openvswitch/ovs.git"
    service_timeout: float = Field(default=60.0, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)
    offline: bool = False
    stack_user: str | None = None
    use_sudo: bool = True
    install_commands: list[list[str]] = Field(default_factory=list)
    dnsmasq_config: Path = Path("/etc/neutron/dnsmasq.conf")

    @field_validator("enabled_services", mode="before")
    @classmethod
    def _split_services(cls, value: Any) -> Any:
        if isinstance(value, str):
            return frozenset(s.strip() for s in value.split(",") if s.strip())
        return value

    @field_validator("system_id", "nb_remote", "sb_remote", "stack_user", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("system_id")
    @classmethod
    def _valid_uuid(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            return str(uuid.UUID(value))
        except ValueError as e:
            raise ValueError(f"not a UUID: {value!r}") from e

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def repo_name(self) -> str:
        return os.path.basename(self.repo.rstrip("/")).split(".")[0]

    @property
    def source_dir(self) -> Path:
        return self.dest / self.repo_name

    @property
    def resolved_data_dir(self) -> Path:
        return self.data_dir or self.dest / "data"

    @property
    def resolved_log_dir(self) -> Path:
        return self.log_dir or self.dest / "logs"

    @property
    def store_dir(self) -> Path:
        """Directory holding conf.db, ovnnb.db and ovnsb.db."""
        return self.resolved_data_dir / "ovs"

    @property
    def nb_endpoint(self) -> str:
        return self.nb_remote or f"tcp:{self.host_ip}:{self.nb_port}"

    @property
    def sb_endpoint(self) -> str:
        return self.sb_remote or f"tcp:{self.host_ip}:{self.sb_port}"

    @property
    def overlay_mtu(self) -> int:
        """MTU advertised to DHCP clients on overlay networks."""
        return overlay_mtu(self.native_mtu)

    @property
    def uuid_file(self) -> Path:
        return self.state_dir / "ovn-uuid"

    def is_service_enabled(self, name: str) -> bool:
        return name in self.enabled_services

    def flags(self) -> dict[str, bool]:
        """Feature-flag view consumed by the service registry."""
        return {name: True for name in self.enabled_services}

    def check_conflicts(self) -> None:
        """Raise ConfigConflictError for mutually exclusive settings."""
        if self.l3_mode and self.is_service_enabled("q-l3"):
            raise ConfigConflictError(
                "The q-l3 service must be disabled with OVN_L3_MODE set to True.",
                settings=("OVN_L3_MODE", "q-l3"),
            )


def overlay_mtu(native_mtu: int, overhead: int = GENEVE_OVERHEAD) -> int:
    """Native MTU minus the encapsulation overhead."""
    if native_mtu <= overhead:
        raise ConfigurationError(
            f"Native MTU {native_mtu} does not leave room for {overhead} bytes of overlay overhead",
            context={"native_mtu": native_mtu},
        )
    return native_mtu - overhead


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML mapping of OvnConfig fields."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {config_path}")
    # Allow the file to nest settings under an 'ovn' key
    return dict(data.get("ovn", data))


def load_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> OvnConfig:
    """Build an OvnConfig from an optional YAML file and the environment."""
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    path = config_path or env.get(CONFIG_PATH_ENV)
    if path:
        values.update(load_yaml_config(path))
        logger.debug(f"Loaded config file {path}")

    # A variable that is set but blank means "use the default", as in shell
    for env_name, field_name in ENV_FIELDS.items():
        value = env.get(env_name, "")
        if value.strip():
            values[field_name] = value

    try:
        config = OvnConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    config.check_conflicts()
    return config
