"""
Shared pytest fixtures for ovnstack tests.

No test runs a real OVS binary: commands go through FakeRunner, which
records every call and can simulate daemons writing their sockets and
pid files. Time is driven by FakeClock so readiness timeouts are instant.
"""

import os
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

# Ensure the repository root is on sys.path so `import ovnstack` works
# without installing the package.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from ovnstack.config import OvnConfig
from ovnstack.errors import CommandError
from ovnstack.runner import CommandRunner


# =============================================================================
# FAKES
# =============================================================================


class FakeRunner(CommandRunner):
    """Records commands instead of executing them.

    - ``ovsdb-tool create <db> <schema>`` copies the schema into <db>
    - spawned daemons write their ``--pidfile=`` and ``--remote=punix:``
      paths when ``simulate_daemons`` is set
    - ``fail`` maps a program name (argv[0]) to an exit code
    - ``missing`` lists programs that cannot be started at all
    - ``outputs`` maps a joined argv to stdout
    """

    def __init__(self, simulate_daemons: bool = True):
        super().__init__(use_sudo=False)
        self.simulate_daemons = simulate_daemons
        self.calls: List[Dict] = []
        self.fail: Dict[str, int] = {}
        self.missing: set = set()
        self.outputs: Dict[str, str] = {}
        self.no_ready: set = set()
        self.on_spawn: Optional[Callable[[List[str]], None]] = None

    @property
    def commands(self) -> List[List[str]]:
        return [c["cmd"] for c in self.calls]

    def spawned(self) -> List[List[str]]:
        return [c["cmd"] for c in self.calls if c["kind"] == "spawn"]

    def ran(self, program: str) -> List[List[str]]:
        return [c["cmd"] for c in self.calls if c["kind"] == "run" and c["cmd"][0] == program]

    def run(self, cmd, *, sudo=False, check=True, cwd=None, timeout=None):
        cmd = list(cmd)
        self.calls.append({"kind": "run", "cmd": cmd, "sudo": sudo, "cwd": cwd})
        if cmd[0] in self.missing:
            raise CommandError(f"Could not run {cmd[0]}: not found", command=cmd)
        code = self.fail.get(cmd[0], 0)
        if code and check:
            raise CommandError(f"{cmd[0]} exited with status {code}", command=cmd, exit_code=code)
        if code == 0 and cmd[:2] == ["ovsdb-tool", "create"]:
            Path(cmd[2]).write_text(Path(cmd[3]).read_text())
        stdout = self.outputs.get(" ".join(cmd), "")
        return subprocess.CompletedProcess(args=cmd, returncode=code, stdout=stdout, stderr="")

    def spawn(self, cmd, *, log_file=None, sudo=False, cwd=None):
        cmd = list(cmd)
        self.calls.append({"kind": "spawn", "cmd": cmd, "sudo": sudo, "log_file": log_file})
        if cmd[0] in self.missing:
            raise CommandError(f"Could not start {cmd[0]}: not found", command=cmd)
        if self.on_spawn is not None:
            self.on_spawn(cmd)
        if self.simulate_daemons:
            self._simulate(cmd)
        return 4000 + len(self.calls)

    def _simulate(self, cmd: List[str]) -> None:
        args = shlex.split(cmd[-1]) if cmd[0] == "sh" else cmd
        if any(name in args[0] for name in self.no_ready):
            return
        for arg in args:
            if arg.startswith("--pidfile="):
                path = Path(arg.split("=", 1)[1])
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(f"{os.getpid()}\n")
            elif arg.startswith("--remote=punix:"):
                path = Path(arg.split(":", 1)[1])
                path.parent.mkdir(parents=True, exist_ok=True)
                path.touch()


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config_factory(tmp_path) -> Callable[..., OvnConfig]:
    """OvnConfig rooted in tmp_path, with schema files present."""
    source = tmp_path / "stack" / "ovs"
    (source / "ovn").mkdir(parents=True)
    (source / "vswitchd").mkdir(parents=True)
    (source / "ovn" / "ovn-nb.ovsschema").write_text('{"name": "OVN_Northbound"}')
    (source / "ovn" / "ovn-sb.ovsschema").write_text('{"name": "OVN_Southbound"}')
    (source / "vswitchd" / "vswitch.ovsschema").write_text('{"name": "Open_vSwitch"}')

    def _create(**overrides) -> OvnConfig:
        values = dict(
            dest=tmp_path / "stack",
            data_dir=tmp_path / "data",
            log_dir=tmp_path / "logs",
            state_dir=tmp_path / "state",
            run_dir=tmp_path / "run",
            ovs_log_dir=tmp_path / "ovslog",
            stack_user="stack",
            host_ip="192.0.2.10",
            service_timeout=5,
            poll_interval=1,
            dnsmasq_config=tmp_path / "neutron" / "dnsmasq.conf",
            enabled_services=frozenset({"q-svc", "ovn-northd", "ovn-controller"}),
        )
        values.update(overrides)
        return OvnConfig(**values)

    return _create


@pytest.fixture
def ovn_config(config_factory) -> OvnConfig:
    return config_factory()
