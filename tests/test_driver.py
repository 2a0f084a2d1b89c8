import pytest

from fakes import FakeBuilder, FakeSupervisor, make_settings, write_lease
from xhyve_driver import store
from xhyve_driver.driver import XhyveDriver
from xhyve_driver.errors import (
    AddressResolutionError,
    BuildError,
    MachineExistsError,
    MachineNotExistError,
    MachineNotRunningError,
    ProcessError,
    ShutdownTimeoutError,
)
from xhyve_driver.models import MachinePhase, MachineState, ProcessStatus
from xhyve_driver.supervisor import XhyveSupervisor


MAC = "aa:bb:cc:dd:ee:ff"


def _driver(tmp_path, builder=None, supervisor=None, sleep=None, **overrides):
    settings = make_settings(tmp_path, **overrides)
    driver = XhyveDriver(
        settings,
        builder=builder or FakeBuilder(),
        supervisor=supervisor or FakeSupervisor(mac=MAC),
        sleep=sleep or (lambda _sec: None),
    )
    return driver, settings


def _running(tmp_path, **kwargs):
    driver, settings = _driver(tmp_path, **kwargs)
    write_lease(settings.lease_file, "192.168.64.2", MAC)
    state = driver.create(settings.machine_config("dev"))
    return driver, settings, state


def test_create_reaches_running_with_address(tmp_path):
    driver, settings, state = _running(tmp_path)

    assert state.phase == MachinePhase.RUNNING
    assert state.ip_address == "192.168.64.2"
    assert state.uuid == "X"
    assert driver.get_state("dev") == MachinePhase.RUNNING
    assert driver.get_ip("dev") == "192.168.64.2"
    assert driver.get_url("dev") == "tcp://192.168.64.2:2376"
    assert driver.get_ssh_hostname("dev") == "192.168.64.2"
    assert driver.get_ssh_port() == 22
    assert driver.get_ssh_username() == "docker"
    assert driver.get_ssh_key_path("dev").endswith("machines/dev/id_rsa")
    assert driver.driver_name == "xhyve"


def test_create_waits_for_lease_to_appear(tmp_path):
    calls = []
    lease_file = tmp_path / "dhcpd_leases"
    lease_file.write_text("", encoding="utf-8")

    def sleep(sec):
        calls.append(sec)
        if len(calls) == 2:
            write_lease(lease_file, "192.168.64.9", MAC)

    driver, settings = _driver(tmp_path, sleep=sleep, boot_wait_attempts=5)

    state = driver.create(settings.machine_config("dev"))

    assert state.ip_address == "192.168.64.9"
    assert len(calls) == 2


def test_create_ignores_other_machines_leases(tmp_path):
    driver, settings = _driver(tmp_path)
    write_lease(settings.lease_file, "192.168.64.3", "12:34:56:78:9a:bc", name="other")

    with pytest.raises(AddressResolutionError):
        driver.create(settings.machine_config("dev"))


def test_create_timeout_leaves_machine_absent(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    sleeps = []
    driver, settings = _driver(tmp_path, supervisor=supervisor, sleep=sleeps.append)

    with pytest.raises(AddressResolutionError) as exc_info:
        driver.create(settings.machine_config("dev"))

    assert "didn't return an IP" in str(exc_info.value)
    assert len(sleeps) == settings.boot_wait_attempts - 1
    assert driver.get_state("dev") == MachinePhase.ABSENT
    assert ("TERMINATE", 1001) in supervisor.signals
    assert (tmp_path / "storage" / "machines" / "dev").exists()


def test_build_failure_leaves_machine_absent(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, settings = _driver(tmp_path, builder=FakeBuilder(fail_stage="mount"), supervisor=supervisor)

    with pytest.raises(BuildError):
        driver.create(settings.machine_config("dev"))

    assert driver.get_state("dev") == MachinePhase.ABSENT
    assert supervisor.launched == []


def test_create_twice_rejected(tmp_path):
    driver, settings, _state = _running(tmp_path)

    with pytest.raises(MachineExistsError):
        driver.create(settings.machine_config("dev"))


def test_process_exit_during_boot_is_process_error(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    original_launch = supervisor.launch

    def launch_then_die(config, instance_id):
        pid = original_launch(config, instance_id)
        supervisor.statuses[pid] = ProcessStatus.EXITED
        return pid

    supervisor.launch = launch_then_die
    driver, settings = _driver(tmp_path, supervisor=supervisor)

    with pytest.raises(ProcessError):
        driver.create(settings.machine_config("dev"))
    assert driver.get_state("dev") == MachinePhase.ABSENT


def test_stop_then_stop_again_is_noop(tmp_path):
    driver, _settings, _state = _running(tmp_path)

    stopped = driver.stop("dev")
    assert stopped.phase == MachinePhase.STOPPED
    assert stopped.ip_address == ""

    again = driver.stop("dev")
    assert again.phase == MachinePhase.STOPPED
    assert driver.get_state("dev") == MachinePhase.STOPPED


def test_stop_timeout_keeps_recorded_state(tmp_path):
    supervisor = FakeSupervisor(mac=MAC, exits_on_shutdown=False)
    driver, _settings, _state = _running(tmp_path, supervisor=supervisor)

    with pytest.raises(ShutdownTimeoutError):
        driver.stop("dev")

    recorded = driver.describe("dev")
    assert recorded.phase == MachinePhase.RUNNING
    assert recorded.ip_address == "192.168.64.2"


def test_start_after_stop(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, _settings, _state = _running(tmp_path, supervisor=supervisor)
    driver.stop("dev")

    state = driver.start("dev")

    assert state.phase == MachinePhase.RUNNING
    assert state.ip_address == "192.168.64.2"
    assert len(supervisor.launched) == 2


def test_start_when_running_is_noop(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, _settings, _state = _running(tmp_path, supervisor=supervisor)

    state = driver.start("dev")

    assert state.phase == MachinePhase.RUNNING
    assert len(supervisor.launched) == 1


def test_restart_running_machine(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, _settings, first = _running(tmp_path, supervisor=supervisor)

    state = driver.restart("dev")

    assert state.phase == MachinePhase.RUNNING
    assert ("TERM", first.pid) in supervisor.signals
    assert state.pid != first.pid


def test_restart_stopped_machine_skips_stop(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, _settings, _state = _running(tmp_path, supervisor=supervisor)
    driver.stop("dev")
    signals_before = list(supervisor.signals)

    state = driver.restart("dev")

    assert state.phase == MachinePhase.RUNNING
    assert supervisor.signals == signals_before


def test_exited_process_is_observed_as_stopped(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, _settings, state = _running(tmp_path, supervisor=supervisor)
    supervisor.statuses[state.pid] = ProcessStatus.EXITED

    assert driver.get_state("dev") == MachinePhase.STOPPED
    assert driver.describe("dev").ip_address == ""
    with pytest.raises(MachineNotRunningError):
        driver.get_ip("dev")


def test_unknown_process_status_is_not_reported_running(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, _settings, state = _running(tmp_path, supervisor=supervisor)
    supervisor.statuses[state.pid] = ProcessStatus.UNKNOWN

    assert driver.get_state("dev") == MachinePhase.UNKNOWN
    with pytest.raises(MachineNotRunningError):
        driver.get_url("dev")


def test_kill_is_observed_asynchronously(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, settings, state = _running(tmp_path, supervisor=supervisor)

    killed = driver.kill("dev")

    assert ("KILL", state.pid) in supervisor.signals
    assert killed.phase == MachinePhase.RUNNING
    recorded, _config = store.get_machine(settings.state_db_path, "dev")
    assert recorded.phase == MachinePhase.RUNNING
    assert driver.get_state("dev") == MachinePhase.STOPPED


def test_remove_running_machine(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, settings, state = _running(tmp_path, supervisor=supervisor)
    machine_dir = settings.machine_config("dev").machine_dir

    removed = driver.remove("dev")

    assert removed.phase == MachinePhase.REMOVED
    assert ("TERM", state.pid) in supervisor.signals
    assert not machine_dir.exists()
    assert driver.get_state("dev") == MachinePhase.ABSENT


def test_remove_falls_back_to_terminate(tmp_path):
    supervisor = FakeSupervisor(mac=MAC, exits_on_shutdown=False)
    driver, _settings, state = _running(tmp_path, supervisor=supervisor)

    removed = driver.remove("dev")

    assert removed.phase == MachinePhase.REMOVED
    assert ("TERMINATE", state.pid) in supervisor.signals


def test_remove_absent_machine(tmp_path):
    driver, _settings = _driver(tmp_path)

    assert driver.remove("ghost").phase == MachinePhase.ABSENT


def test_operations_on_absent_machine(tmp_path):
    driver, _settings = _driver(tmp_path)

    for op in (driver.start, driver.stop, driver.restart, driver.kill, driver.get_ip):
        with pytest.raises(MachineNotExistError):
            op("ghost")


def test_get_ip_follows_lease_renewal(tmp_path):
    driver, settings, _state = _running(tmp_path)
    write_lease(settings.lease_file, "192.168.64.20", MAC)

    assert driver.get_ip("dev") == "192.168.64.20"
    assert driver.describe("dev").ip_address == "192.168.64.20"


def test_stop_unknown_machine_sends_shutdown(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, _settings, state = _running(tmp_path, supervisor=supervisor)
    supervisor.statuses[state.pid] = ProcessStatus.UNKNOWN

    stopped = driver.stop("dev")

    assert ("TERM", state.pid) in supervisor.signals
    assert stopped.phase == MachinePhase.STOPPED
    assert driver.get_state("dev") == MachinePhase.STOPPED


def test_restart_unknown_machine_stops_first(tmp_path):
    supervisor = FakeSupervisor(mac=MAC)
    driver, _settings, state = _running(tmp_path, supervisor=supervisor)
    supervisor.statuses[state.pid] = ProcessStatus.UNKNOWN

    restarted = driver.restart("dev")

    assert ("TERM", state.pid) in supervisor.signals
    assert restarted.phase == MachinePhase.RUNNING
    assert len(supervisor.launched) == 2


def test_remove_machine_whose_process_cannot_be_signalled(tmp_path, monkeypatch):
    settings = make_settings(tmp_path)
    driver = XhyveDriver(
        settings,
        builder=FakeBuilder(),
        supervisor=XhyveSupervisor(settings),
        sleep=lambda _sec: None,
    )
    config = settings.machine_config("dev")
    config.machine_dir.mkdir(parents=True)
    store.upsert_machine(
        settings.state_db_path,
        MachineState(name="dev", phase=MachinePhase.RUNNING, ip_address="192.168.64.2", pid=424242),
        config,
    )

    def not_permitted(pid, signum):
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr("xhyve_driver.supervisor.os.kill", not_permitted)
    assert driver.get_state("dev") == MachinePhase.UNKNOWN

    removed = driver.remove("dev")

    assert removed.phase == MachinePhase.REMOVED
    assert not config.machine_dir.exists()
    assert driver.get_state("dev") == MachinePhase.ABSENT
