import logging
import os
import re
import signal
import subprocess
import time

from xhyve_driver.config import DriverSettings
from xhyve_driver.errors import ProcessError
from xhyve_driver.models import MachineConfig, ProcessStatus


logger = logging.getLogger(__name__)

# ACPI tables, host bridge, LPC bus, serial console on com1, vmnet NIC.
FIXED_DEVICE_ARGS = "-A -s 0:0,hostbridge -s 31,lpc -l com1 -s 2:0,virtio-net".split()

_MAC_RE = re.compile(r"MAC:\s*([0-9A-Fa-f]{1,2}(?::[0-9A-Fa-f]{1,2}){5})")


def build_xhyve_command(binary: str, config: MachineConfig, instance_id: str) -> list[str]:
    return [
        binary,
        *FIXED_DEVICE_ARGS,
        "-m",
        f"{config.memory_mb}M",
        "-s",
        f"3,ahci-cd,{config.iso_path}",
        "-s",
        f"4,virtio-blk,{config.disk_path}",
        "-U",
        instance_id,
        "-f",
        f"kexec,{config.kernel_path},{config.initrd_path},{config.boot_cmd}",
    ]


class XhyveSupervisor:
    """Owns the hypervisor processes it spawns.

    xhyve has no control channel, so liveness comes from the ``Popen`` handle
    when this process spawned the VM, and from signalling the recorded pid
    otherwise. When neither gives an answer the status is ``UNKNOWN``.
    """

    def __init__(self, settings: DriverSettings):
        self.settings = settings
        self._procs: dict[int, subprocess.Popen] = {}

    def command_for(self, config: MachineConfig, instance_id: str) -> list[str]:
        return build_xhyve_command(self.settings.xhyve_binary, config, instance_id)

    def launch(self, config: MachineConfig, instance_id: str) -> int:
        cmd = self.command_for(config, instance_id)
        config.launch_command_path.write_text(" ".join(cmd) + "\n", encoding="utf-8")
        logger.info("launching xhyve name=%s command=%s", config.name, " ".join(cmd))
        try:
            with config.console_log_path.open("ab") as console:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=console,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            raise ProcessError(f"xhyve launch failed for {config.name}: {exc}") from exc
        self._procs[proc.pid] = proc
        return int(proc.pid)

    def query_mac_address(self, config: MachineConfig, instance_id: str) -> str | None:
        cmd = [*self.command_for(config, instance_id), "-M"]
        try:
            completed = subprocess.run(
                cmd, check=True, capture_output=True, text=True, timeout=30
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("mac address query failed name=%s reason=%s", config.name, exc)
            return None
        match = _MAC_RE.search(f"{completed.stdout}\n{completed.stderr}")
        if not match:
            logger.warning("mac address query returned no MAC name=%s", config.name)
            return None
        return match.group(1).lower()

    def status(self, pid: int) -> ProcessStatus:
        if pid <= 0:
            return ProcessStatus.EXITED
        proc = self._procs.get(pid)
        if proc is not None:
            if proc.poll() is None:
                return ProcessStatus.RUNNING
            self._procs.pop(pid, None)
            return ProcessStatus.EXITED
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return ProcessStatus.EXITED
        except PermissionError:
            return ProcessStatus.UNKNOWN
        return ProcessStatus.RUNNING

    def _signal(self, pid: int, signum: int) -> None:
        if pid <= 0:
            return
        try:
            os.kill(pid, signum)
        except ProcessLookupError:
            return
        except PermissionError as exc:
            raise ProcessError(f"not allowed to signal xhyve pid={pid}: {exc}") from exc

    def request_shutdown(self, pid: int) -> None:
        self._signal(pid, signal.SIGTERM)

    def kill(self, pid: int) -> None:
        self._signal(pid, signal.SIGKILL)

    def terminate(self, pid: int) -> ProcessStatus:
        self.request_shutdown(pid)
        deadline = time.monotonic() + self.settings.terminate_grace_sec
        while time.monotonic() < deadline:
            if self.status(pid) == ProcessStatus.EXITED:
                return ProcessStatus.EXITED
            time.sleep(0.1)
        logger.warning("xhyve ignored SIGTERM, killing pid=%s", pid)
        self.kill(pid)
        proc = self._procs.get(pid)
        if proc is not None:
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                return ProcessStatus.UNKNOWN
        return self.status(pid)
