import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


ISO_FILENAME = "boot2docker.iso"
KERNEL_FILENAME = "vmlinuz64"
INITRD_FILENAME = "initrd.img"
USERDATA_FILENAME = "userdata.tar"
SSH_KEY_FILENAME = "id_rsa"

_MACHINE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class MachinePhase(str, Enum):
    ABSENT = "ABSENT"
    PROVISIONING = "PROVISIONING"
    BOOTING = "BOOTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    REMOVED = "REMOVED"
    # Reported only, never recorded: the process can't be inspected.
    UNKNOWN = "UNKNOWN"


class ProcessStatus(str, Enum):
    RUNNING = "RUNNING"
    EXITED = "EXITED"
    UNKNOWN = "UNKNOWN"


class MachineConfig(BaseModel):
    """Inputs fixed at creation time.

    All artifact paths derive from ``storage_path`` and ``name`` so nothing
    in the driver depends on a hardcoded location.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    cpu_count: int = Field(default=1)
    memory_mb: int = Field(default=1024, ge=1)
    disk_size_mb: int = Field(default=20000, ge=1)
    boot_cmd: str
    boot_image_url: str = Field(default="")
    storage_path: str

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _MACHINE_NAME_RE.match(value):
            raise ValueError(f"invalid machine name {value!r}")
        return value

    @field_validator("cpu_count")
    @classmethod
    def _check_cpu_count(cls, value: int) -> int:
        if value < 1 and value != -1:
            raise ValueError("cpu_count must be >= 1 or -1 for all host CPUs")
        return value

    @property
    def machine_dir(self) -> Path:
        return Path(self.storage_path) / "machines" / self.name

    @property
    def iso_path(self) -> Path:
        return self.machine_dir / ISO_FILENAME

    @property
    def kernel_path(self) -> Path:
        return self.machine_dir / KERNEL_FILENAME

    @property
    def initrd_path(self) -> Path:
        return self.machine_dir / INITRD_FILENAME

    @property
    def disk_path(self) -> Path:
        return self.machine_dir / f"{self.name}.img"

    @property
    def userdata_path(self) -> Path:
        return self.machine_dir / USERDATA_FILENAME

    @property
    def ssh_key_path(self) -> Path:
        return self.machine_dir / SSH_KEY_FILENAME

    @property
    def public_key_path(self) -> Path:
        return self.machine_dir / f"{SSH_KEY_FILENAME}.pub"

    @property
    def mount_point(self) -> Path:
        return self.machine_dir / "b2d-mnt"

    @property
    def console_log_path(self) -> Path:
        return self.machine_dir / "console.log"

    @property
    def launch_command_path(self) -> Path:
        return self.machine_dir / "launch-command.txt"


class MachineState(BaseModel):
    name: str
    uuid: str = ""
    phase: MachinePhase = MachinePhase.ABSENT
    ip_address: str = ""
    mac_address: str | None = None
    pid: int = 0
    reason: str | None = None
    ssh_port: int = 22


@dataclass(frozen=True)
class LeaseEntry:
    hw_address: str
    ip_address: str
    order: int
