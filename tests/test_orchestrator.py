"""Tests for ovnstack/orchestrator.py - bring-up sequencing and entry points."""

import uuid
from pathlib import Path

import pytest

from ovnstack.errors import ConfigConflictError, ConfigurationError, ReadinessTimeoutError
from ovnstack.orchestrator import OvnStackOrchestrator
from ovnstack.readiness import ReadinessCheck, ReadinessGate, paths_exist
from ovnstack.registry import DataFile, Phase, ServiceSpec


class RecordingGate(ReadinessGate):
    """ReadinessGate on a fake clock that logs each service it gates."""

    def __init__(self, clock, events):
        super().__init__(clock=clock, sleep=clock.sleep)
        self.events = events

    def await_ready(self, check, service=None):
        attempts = super().await_ready(check, service)
        self.events.append(("ready", service))
        return attempts


def _generic_catalog(tmp_path, timeout=60, controller_check=None):
    run, schemas = tmp_path / "run", tmp_path / "schemas"
    schemas.mkdir(exist_ok=True)
    specs = []
    for name in ("storeA", "storeB"):
        (schemas / f"{name}.schema").write_text(f'{{"name": "{name}"}}')
        sock = run / f"{name}.sock"
        specs.append(ServiceSpec(
            name=name,
            phase=Phase.STORES,
            launch_command=(name, f"--remote=punix:{sock}", f"--pidfile={run / (name + '.pid')}"),
            readiness=ReadinessCheck(paths_exist(sock), poll_interval=1, timeout=timeout,
                                     failure_message=f"{name} did not start"),
            stop_command=("ovs-appctl", "-t", str(run / f"{name}.ctl"), "exit"),
            pid_file=run / f"{name}.pid",
            socket=sock,
            store=DataFile(tmp_path / "data" / "ovs" / f"{name}.db", schemas / f"{name}.schema"),
        ))
    pid = run / "controller.pid"
    specs.append(ServiceSpec(
        name="controller",
        depends_on=frozenset({"storeA", "storeB"}),
        phase=Phase.CONTROLLERS,
        launch_command=("controller", f"--pidfile={pid}"),
        readiness=controller_check or ReadinessCheck(
            paths_exist(pid), poll_interval=1, timeout=timeout,
            failure_message="controller did not start",
        ),
        stop_command=("ovs-appctl", "-t", str(run / "controller.ctl"), "exit"),
        pid_file=pid,
    ))
    return specs


@pytest.fixture
def events():
    return []


@pytest.fixture
def scenario(config_factory, fake_runner, fake_clock, events, tmp_path):
    """Orchestrator over storeA, storeB and controller, all enabled."""

    def _create(enabled=("storeA", "storeB", "controller"), **catalog_kwargs):
        config = config_factory(enabled_services=frozenset(enabled))
        fake_runner.on_spawn = lambda cmd: events.append(("launch", cmd[0]))
        return OvnStackOrchestrator(
            config,
            runner=fake_runner,
            gate=RecordingGate(fake_clock, events),
            catalog=_generic_catalog(tmp_path, **catalog_kwargs),
            proc_modules=tmp_path / "modules",
        )

    return _create


class TestBringUpOrder:

    def test_stores_then_controller(self, scenario, fake_runner, events, tmp_path):
        orchestrator = scenario()
        created = orchestrator.bootstrap()
        assert [p.name for p in created] == ["storeA.db", "storeB.db"]

        orchestrator.start_stores()
        orchestrator.start_controllers()

        assert events == [
            ("launch", "storeA"), ("ready", "storeA"),
            ("launch", "storeB"), ("ready", "storeB"),
            ("launch", "controller"), ("ready", "controller"),
        ]
        assert orchestrator.handles.names == ["storeA", "storeB", "controller"]

    def test_teardown_reverses_order(self, scenario, fake_runner):
        orchestrator = scenario()
        orchestrator.start_stores()
        orchestrator.start_controllers()

        report = orchestrator.stop()

        stopped = [Path(cmd[2]).stem for cmd in fake_runner.ran("ovs-appctl")]
        assert stopped == ["controller", "storeB", "storeA"]
        assert report.stopped == ["controller", "storeB", "storeA"]
        assert len(orchestrator.handles) == 0

    def test_controllers_in_new_session_confirm_stores_first(
        self, scenario, fake_runner, events
    ):
        scenario().start_stores()
        events.clear()

        scenario().start_controllers()

        assert events == [
            ("ready", "storeA"), ("ready", "storeB"),
            ("launch", "controller"), ("ready", "controller"),
        ]

    def test_controller_blocked_when_store_never_ready(self, scenario, fake_runner, events):
        with pytest.raises(ReadinessTimeoutError, match="storeA did not start"):
            scenario().start_controllers()
        assert fake_runner.spawned() == []


class TestReadinessTimeout:

    def test_controller_timeout_leaves_stores_running(
        self, scenario, fake_runner, fake_clock, tmp_path
    ):
        fake_runner.no_ready.add("controller")
        orchestrator = scenario()
        orchestrator.start_stores()
        sleeps_before = len(fake_clock.sleeps)

        with pytest.raises(ReadinessTimeoutError, match="controller did not start") as exc_info:
            orchestrator.start_controllers()

        assert 60 <= exc_info.value.attempts <= 61
        assert len(fake_clock.sleeps) - sleeps_before == 60
        # No rollback: stores keep running and nothing was stopped
        assert orchestrator.handles.names == ["storeA", "storeB", "controller"]
        assert fake_runner.ran("ovs-appctl") == []
        assert (tmp_path / "run" / "storeA.sock").exists()
        assert (tmp_path / "run" / "storeB.sock").exists()


class TestDisabledServices:

    def test_disabled_service_never_launched_or_probed(self, scenario, fake_runner, events):
        def never(*_):
            raise AssertionError("disabled service was probed")

        orchestrator = scenario(
            enabled=("storeA",),
            controller_check=ReadinessCheck(never, failure_message="controller"),
        )
        orchestrator.bootstrap()
        orchestrator.start_stores()
        orchestrator.start_controllers()

        assert events == [("launch", "storeA"), ("ready", "storeA")]
        assert [cmd[0] for cmd in fake_runner.spawned()] == ["storeA"]
        assert [Path(cmd[2]).name for cmd in fake_runner.ran("ovsdb-tool")] == ["storeA.db"]

    def test_teardown_without_start_is_clean(self, scenario, fake_runner):
        report = scenario().stop()
        assert report.ok
        assert report.stopped == []
        assert fake_runner.commands == []


class TestConfigure:

    def test_preset_system_id(self, config_factory, fake_runner):
        preset = str(uuid.uuid4())
        orchestrator = OvnStackOrchestrator(config_factory(system_id=preset), runner=fake_runner)
        assert orchestrator.configure() == preset
        assert not orchestrator.config.uuid_file.exists()

    def test_generated_id_is_persisted_and_reused(self, config_factory, fake_runner):
        config = config_factory()
        first = OvnStackOrchestrator(config, runner=fake_runner).configure()
        assert config.uuid_file.read_text().strip() == first

        second = OvnStackOrchestrator(config, runner=fake_runner).configure()
        assert second == first

    def test_garbled_uuid_file(self, config_factory, fake_runner):
        config = config_factory()
        config.uuid_file.parent.mkdir(parents=True)
        config.uuid_file.write_text("garbage\n")
        with pytest.raises(ConfigurationError):
            OvnStackOrchestrator(config, runner=fake_runner).configure()

    def test_conflict_detected_before_anything_runs(self, config_factory, fake_runner):
        config = config_factory(enabled_services=frozenset({"q-l3", "ovn-northd"}), l3_mode=True)
        with pytest.raises(ConfigConflictError):
            OvnStackOrchestrator(config, runner=fake_runner)
        assert fake_runner.commands == []


class TestConfigurePlugin:

    def test_dhcp_mtu_written_once(self, config_factory, fake_runner):
        config = config_factory(enabled_services=frozenset({"q-svc", "q-dhcp"}))
        orchestrator = OvnStackOrchestrator(config, runner=fake_runner)

        orchestrator.configure_plugin()
        orchestrator.configure_plugin()

        assert config.dnsmasq_config.read_text() == "dhcp-option=26,1442\n"

    def test_existing_option_kept(self, config_factory, fake_runner):
        config = config_factory(enabled_services=frozenset({"q-dhcp"}), native_mtu=9000)
        config.dnsmasq_config.parent.mkdir(parents=True)
        config.dnsmasq_config.write_text("dhcp-option=26,1400\n")

        changed = OvnStackOrchestrator(config, runner=fake_runner).configure_dhcp_mtu()

        assert changed is False
        assert config.dnsmasq_config.read_text() == "dhcp-option=26,1400\n"

    def test_no_dhcp_no_file(self, ovn_config, fake_runner):
        OvnStackOrchestrator(ovn_config, runner=fake_runner).configure_plugin()
        assert not ovn_config.dnsmasq_config.exists()


class TestEntryPoints:

    def test_install_runs_configured_commands(self, config_factory, fake_runner):
        config = config_factory(install_commands=[["./boot.sh"], ["make", "install"]])
        OvnStackOrchestrator(config, runner=fake_runner).install()
        assert fake_runner.commands == [["./boot.sh"], ["make", "install"]]

    def test_install_skipped_offline(self, config_factory, fake_runner):
        config = config_factory(offline=True, install_commands=[["make"]])
        OvnStackOrchestrator(config, runner=fake_runner).install()
        assert fake_runner.commands == []

    def test_cleanup_is_best_effort(self, ovn_config, fake_runner):
        fake_runner.fail["make"] = 2
        assert OvnStackOrchestrator(ovn_config, runner=fake_runner).cleanup() is False

    def test_cleanup_without_checkout(self, config_factory, fake_runner, tmp_path):
        config = config_factory(dest=tmp_path / "elsewhere")
        assert OvnStackOrchestrator(config, runner=fake_runner).cleanup() is True
        assert fake_runner.commands == []

    def test_publish_client_env_once(self, ovn_config, fake_runner, tmp_path):
        profile = tmp_path / ".bash_profile"
        orchestrator = OvnStackOrchestrator(ovn_config, runner=fake_runner)

        assert orchestrator.publish_client_env(profile) is True
        assert orchestrator.publish_client_env(profile) is False

        text = profile.read_text()
        assert "export OVN_NB_DB=tcp:192.0.2.10:6641" in text
        assert "export OVN_SB_DB=tcp:192.0.2.10:6642" in text
        assert text.count("OVN_NB_DB") == 1


class TestRunPhase:

    @pytest.fixture
    def ovn(self, ovn_config, fake_runner, fake_clock, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        return OvnStackOrchestrator(
            ovn_config,
            runner=fake_runner,
            gate=ReadinessGate(clock=fake_clock, sleep=fake_clock.sleep),
            proc_modules=tmp_path / "modules",
        )

    def test_irrelevant_configuration_does_nothing(self, config_factory, fake_runner):
        config = config_factory(enabled_services=frozenset({"q-dhcp", "n-cpu"}))
        assert OvnStackOrchestrator(config, runner=fake_runner).run_phase("stack", "install") is None
        assert fake_runner.commands == []

    def test_unknown_phase_ignored(self, ovn, fake_runner):
        assert ovn.run_phase("stack", "extra") is None
        assert fake_runner.commands == []

    def test_full_lifecycle(self, ovn, ovn_config, fake_runner, tmp_path):
        ovn.run_phase("stack", "install")

        store_dir = ovn_config.store_dir
        assert sorted(p.name for p in store_dir.glob("*.db")) == ["conf.db", "ovnnb.db", "ovnsb.db"]
        spawned = [cmd[0] if cmd[0] != "sh" else "ovs-vswitchd" for cmd in fake_runner.spawned()]
        assert spawned == ["ovsdb-server", "ovsdb-server", "ovsdb-server", "ovs-vswitchd"]
        system_id = ovn_config.uuid_file.read_text().strip()
        vsctl = [" ".join(cmd) for cmd in fake_runner.ran("ovs-vsctl")]
        assert f"ovs-vsctl --no-wait set open_vswitch . external-ids:system-id={system_id}" in vsctl

        ovn.run_phase("stack", "post-config")
        assert [cmd[0] for cmd in fake_runner.spawned()[4:]] == ["ovn-controller", "ovn-northd"]
        assert "OVN_NB_DB" in (tmp_path / ".bash_profile").read_text()

        report = ovn.run_phase("unstack")
        assert report.stopped == [
            "ovn-northd", "ovn-controller", "ovs-vswitchd",
            "ovsdb-server", "ovsdb-sb", "ovsdb-nb",
        ]
        assert report.ok
        make = [c for c in fake_runner.calls if c["cmd"] == ["make", "uninstall"]]
        assert make and make[0]["cwd"] == ovn_config.source_dir


class TestLibvirtAppArmor:

    def test_profile_relaxed_when_apparmor_enabled(self, ovn_config, fake_runner):
        changed = OvnStackOrchestrator(ovn_config, runner=fake_runner).disable_libvirt_apparmor()

        assert changed is True
        assert fake_runner.ran("aa-complain") == [
            ["aa-complain", "/etc/apparmor.d/usr.sbin.libvirtd"]
        ]
        assert all(c["sudo"] for c in fake_runner.calls)

    def test_nothing_done_when_apparmor_disabled(self, ovn_config, fake_runner):
        fake_runner.fail["aa-status"] = 1
        changed = OvnStackOrchestrator(ovn_config, runner=fake_runner).disable_libvirt_apparmor()

        assert changed is False
        assert fake_runner.ran("aa-status") == [["aa-status", "--enabled"]]
        assert fake_runner.ran("aa-complain") == []

    def test_apparmor_tools_absent(self, ovn_config, fake_runner):
        fake_runner.missing.add("aa-status")
        assert OvnStackOrchestrator(ovn_config, runner=fake_runner).disable_libvirt_apparmor() is False
        assert fake_runner.ran("aa-complain") == []

    def test_complain_failure_is_not_fatal(self, ovn_config, fake_runner):
        fake_runner.fail["aa-complain"] = 1
        assert OvnStackOrchestrator(ovn_config, runner=fake_runner).disable_libvirt_apparmor() is False

    def test_runs_after_stores_in_install_phase(
        self, ovn_config, fake_runner, fake_clock, tmp_path
    ):
        orchestrator = OvnStackOrchestrator(
            ovn_config,
            runner=fake_runner,
            gate=ReadinessGate(clock=fake_clock, sleep=fake_clock.sleep),
            proc_modules=tmp_path / "modules",
        )
        orchestrator.run_phase("stack", "install")

        kinds = [(c["kind"], c["cmd"][0]) for c in fake_runner.calls]
        last_spawn = max(i for i, (kind, _) in enumerate(kinds) if kind == "spawn")
        assert kinds.index(("run", "aa-status")) > last_spawn
        assert kinds[-1] == ("run", "aa-complain")


class TestKernelModules:

    @pytest.mark.parametrize("build_modules, expected", [(True, True), (False, False)])
    def test_module_unload_follows_build_setting(
        self, config_factory, fake_runner, build_modules, expected
    ):
        orchestrator = OvnStackOrchestrator(
            config_factory(build_modules=build_modules), runner=fake_runner
        )
        assert orchestrator.teardown_coordinator.unload_modules is expected
