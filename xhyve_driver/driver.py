"""Lifecycle controller for a single xhyve machine.

The controller owns every ``MachineState`` it hands out. Transitions are
applied to a working copy and committed to the store only once they
succeed, so a failed call leaves the recorded state as it was. Files
written to the machine directory before a failure are kept.

Calls for the same machine must be serialized by the caller.
"""

import logging
import shutil
import time
from typing import Callable

from xhyve_driver import store
from xhyve_driver.artifacts import ArtifactBuilder
from xhyve_driver.config import DriverSettings
from xhyve_driver.errors import (
    AddressResolutionError,
    InvalidTransitionError,
    MachineExistsError,
    MachineNotExistError,
    MachineNotRunningError,
    ProcessError,
    ShutdownTimeoutError,
)
from xhyve_driver.leases import LeaseTableReader
from xhyve_driver.metrics import metrics
from xhyve_driver.models import MachineConfig, MachinePhase, MachineState, ProcessStatus
from xhyve_driver.state_machine import can_transition
from xhyve_driver.supervisor import XhyveSupervisor


logger = logging.getLogger(__name__)

DRIVER_NAME = "xhyve"

_LIVE_PHASES = {MachinePhase.BOOTING, MachinePhase.RUNNING, MachinePhase.STOPPING}


class XhyveDriver:
    def __init__(
        self,
        settings: DriverSettings,
        builder: ArtifactBuilder | None = None,
        supervisor: XhyveSupervisor | None = None,
        lease_reader: LeaseTableReader | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.builder = builder or ArtifactBuilder(settings)
        self.supervisor = supervisor or XhyveSupervisor(settings)
        self.lease_reader = lease_reader or LeaseTableReader(settings.lease_file)
        self.sleep = sleep
        store.initialize_state(settings.state_db_path)

    @property
    def driver_name(self) -> str:
        return DRIVER_NAME

    # -- persistence helpers -------------------------------------------------

    def _load(self, name: str) -> tuple[MachineState, MachineConfig]:
        record = store.get_machine(self.settings.state_db_path, name)
        if record is None:
            raise MachineNotExistError(name)
        state, config = record
        state.ssh_port = self.settings.ssh_port
        return state, config

    def _commit(self, state: MachineState, config: MachineConfig) -> MachineState:
        store.upsert_machine(self.settings.state_db_path, state, config)
        return state.model_copy()

    def _move(self, state: MachineState, target: MachinePhase) -> None:
        if not can_transition(state.phase.value, target.value):
            raise InvalidTransitionError(state.name, state.phase.value, target.value)
        logger.debug("machine transition name=%s from=%s to=%s", state.name, state.phase.value, target.value)
        state.phase = target

    def _observe(self, state: MachineState) -> MachinePhase:
        """Fold the hypervisor process status into ``state``; returns the phase to report."""
        if state.phase not in _LIVE_PHASES:
            return state.phase
        status = self.supervisor.status(state.pid)
        if status == ProcessStatus.EXITED:
            logger.info("xhyve process gone name=%s pid=%s", state.name, state.pid)
            state.phase = MachinePhase.STOPPED
            state.ip_address = ""
            state.pid = 0
            state.reason = "process_exited"
            return state.phase
        if status == ProcessStatus.UNKNOWN:
            return MachinePhase.UNKNOWN
        return state.phase

    # -- lifecycle -----------------------------------------------------------

    def create(self, config: MachineConfig) -> MachineState:
        if store.get_machine(self.settings.state_db_path, config.name) is not None:
            raise MachineExistsError(config.name)

        state = MachineState(name=config.name, ssh_port=self.settings.ssh_port)
        self._move(state, MachinePhase.PROVISIONING)
        logger.info("creating machine name=%s dir=%s", config.name, config.machine_dir)
        try:
            state.uuid = self.builder.build(config)
            self._move(state, MachinePhase.BOOTING)
            logger.info("starting machine name=%s", config.name)
            self._boot(state, config)
        except Exception as exc:
            metrics.inc("machine_create_failures_total")
            logger.error("create failed name=%s reason=%s", config.name, exc)
            raise
        metrics.inc("machines_created_total")
        return self._commit(state, config)

    def start(self, name: str) -> MachineState:
        recorded, config = self._load(name)
        state = recorded.model_copy()
        phase = self._observe(state)
        if phase == MachinePhase.RUNNING:
            logger.info("machine already running name=%s", name)
            return self._commit(state, config)
        if phase == MachinePhase.UNKNOWN:
            raise ProcessError(f"cannot tell whether machine {name} is still running")

        self._move(state, MachinePhase.BOOTING)
        logger.info("starting machine name=%s", name)
        self._boot(state, config)
        return self._commit(state, config)

    def _boot(self, state: MachineState, config: MachineConfig) -> None:
        if state.mac_address is None:
            state.mac_address = self.supervisor.query_mac_address(config, state.uuid)
        state.pid = self.supervisor.launch(config, state.uuid)
        try:
            state.ip_address = self._wait_for_ip(state)
        except Exception:
            self.supervisor.terminate(state.pid)
            raise
        state.reason = None
        self._move(state, MachinePhase.RUNNING)
        logger.info(
            "machine running name=%s pid=%s ip_address=%s", state.name, state.pid, state.ip_address
        )

    def _wait_for_ip(self, state: MachineState) -> str:
        attempts = self.settings.boot_wait_attempts
        interval = self.settings.boot_wait_interval_sec
        logger.info("waiting for machine to come online name=%s", state.name)
        for attempt in range(1, attempts + 1):
            metrics.inc("boot_wait_attempts_total")
            if self.supervisor.status(state.pid) == ProcessStatus.EXITED:
                raise ProcessError(
                    f"xhyve exited while machine {state.name} was booting, see {state.name}/console.log"
                )
            try:
                ip = self.lease_reader.resolve(state.mac_address)
            except AddressResolutionError as exc:
                metrics.inc("address_resolution_failures_total")
                logger.debug("not there yet %d/%d, error: %s", attempt, attempts, exc)
                ip = None
            else:
                if not ip:
                    logger.debug("not there yet %d/%d, no lease", attempt, attempts)
            if ip:
                logger.debug("got an ip name=%s ip_address=%s", state.name, ip)
                return ip
            if attempt < attempts:
                self.sleep(interval)
        raise AddressResolutionError(
            f"Machine didn't return an IP after {attempts * interval:g} seconds, aborting"
        )

    def stop(self, name: str) -> MachineState:
        recorded, config = self._load(name)
        state = recorded.model_copy()
        phase = self._observe(state)
        if phase == MachinePhase.STOPPED:
            return self._commit(state, config)
        if phase == MachinePhase.UNKNOWN:
            state.phase = MachinePhase.RUNNING

        self._move(state, MachinePhase.STOPPING)
        logger.info("stopping machine name=%s pid=%s", name, state.pid)
        self.supervisor.request_shutdown(state.pid)
        self._wait_for_exit(state)

        state.ip_address = ""
        state.pid = 0
        state.reason = None
        self._move(state, MachinePhase.STOPPED)
        return self._commit(state, config)

    def _wait_for_exit(self, state: MachineState) -> None:
        deadline = time.monotonic() + self.settings.stop_timeout_sec
        while self.supervisor.status(state.pid) != ProcessStatus.EXITED:
            if time.monotonic() >= deadline:
                logger.error("stop timed out name=%s pid=%s", state.name, state.pid)
                raise ShutdownTimeoutError(state.name, self.settings.stop_timeout_sec)
            self.sleep(self.settings.stop_poll_interval_sec)

    def restart(self, name: str) -> MachineState:
        if self.get_state(name) in {MachinePhase.RUNNING, MachinePhase.UNKNOWN}:
            self.stop(name)
        return self.start(name)

    def remove(self, name: str) -> MachineState:
        record = store.get_machine(self.settings.state_db_path, name)
        if record is None:
            logger.info("machine does not exist, assuming it has been removed already name=%s", name)
            return MachineState(name=name, phase=MachinePhase.ABSENT)
        state, config = record
        phase = self._observe(state)
        if phase in {MachinePhase.RUNNING, MachinePhase.UNKNOWN}:
            try:
                state = self.stop(name)
            except ProcessError as exc:
                logger.warning("forcing machine off for removal name=%s reason=%s", name, exc)
                try:
                    self.supervisor.terminate(state.pid)
                except ProcessError as term_exc:
                    logger.warning(
                        "could not terminate xhyve, removing anyway name=%s pid=%s reason=%s",
                        name,
                        state.pid,
                        term_exc,
                    )

        try:
            shutil.rmtree(config.machine_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("machine dir cleanup failed name=%s reason=%s", name, exc)
        store.delete_machine(self.settings.state_db_path, name)

        state.phase = MachinePhase.REMOVED
        state.ip_address = ""
        state.pid = 0
        logger.info("machine removed name=%s", name)
        return state

    def kill(self, name: str) -> MachineState:
        """Ask for an immediate power-off.

        The move to ``STOPPED`` is only recorded once a later query sees the
        process gone.
        """
        state, _config = self._load(name)
        logger.info("killing machine name=%s pid=%s", name, state.pid)
        self.supervisor.kill(state.pid)
        return state

    # -- queries -------------------------------------------------------------

    def get_state(self, name: str) -> MachinePhase:
        record = store.get_machine(self.settings.state_db_path, name)
        if record is None:
            return MachinePhase.ABSENT
        state, config = record
        before = state.phase
        phase = self._observe(state)
        if state.phase != before:
            self._commit(state, config)
        return phase

    def describe(self, name: str) -> MachineState:
        state, config = self._load(name)
        before = state.phase
        self._observe(state)
        if state.phase != before:
            self._commit(state, config)
        return state

    def list_machines(self) -> list[MachineState]:
        return [state for state, _config in store.list_machines(self.settings.state_db_path)]

    def get_ip(self, name: str) -> str:
        state, config = self._load(name)
        phase = self._observe(state)
        if phase != MachinePhase.RUNNING:
            if state.phase == MachinePhase.STOPPED:
                self._commit(state, config)
            raise MachineNotRunningError(name, phase.value)
        try:
            ip = self.lease_reader.resolve(state.mac_address)
        except AddressResolutionError as exc:
            logger.debug("lease lookup failed, using recorded address name=%s reason=%s", name, exc)
            ip = None
        if ip and ip != state.ip_address:
            logger.info("machine address changed name=%s old=%s new=%s", name, state.ip_address, ip)
            state.ip_address = ip
            self._commit(state, config)
        return state.ip_address

    def get_url(self, name: str) -> str:
        ip = self.get_ip(name)
        if not ip:
            return ""
        return f"tcp://{ip}:{self.settings.docker_port}"

    def get_ssh_hostname(self, name: str) -> str:
        return self.get_ip(name)

    def get_ssh_port(self) -> int:
        return self.settings.ssh_port

    def get_ssh_username(self) -> str:
        return self.settings.ssh_user

    def get_ssh_key_path(self, name: str) -> str:
        _state, config = self._load(name)
        return str(config.ssh_key_path)
