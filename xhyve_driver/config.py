from functools import lru_cache
import os
import platform
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from xhyve_driver.models import MachineConfig


DEFAULT_BOOT_CMD = (
    "loglevel=3 user=docker console=ttyS0 console=tty0 noembed nomodeset "
    "norestore waitusb=10:LABEL=boot2docker-data base host=boot2docker"
)


class DriverSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="XHYVE_", extra="ignore")

    boot2docker_url: str = Field(default="")
    cpu_count: int = Field(default=1)
    memory_size: int = Field(default=1024, ge=1)
    disk_size: int = Field(default=20000, ge=1)
    boot_cmd: str = Field(default=DEFAULT_BOOT_CMD)

    storage_path: str = Field(default=str(Path.home() / ".docker" / "machine"))
    state_db_path: str = Field(default="./xhyve_driver.db")
    lease_file: str = Field(default="/var/db/dhcpd_leases")

    xhyve_binary: str = Field(default="xhyve")
    hdiutil_binary: str = Field(default="hdiutil")
    ssh_keygen_binary: str = Field(default="ssh-keygen")

    ssh_user: str = Field(default="docker")
    ssh_port: int = Field(default=22, ge=1)
    docker_port: int = Field(default=2376, ge=1)

    boot_wait_attempts: int = Field(default=60, ge=1)
    boot_wait_interval_sec: float = Field(default=2.0, ge=0)
    stop_timeout_sec: float = Field(default=120.0, ge=0)
    stop_poll_interval_sec: float = Field(default=1.0, ge=0)
    terminate_grace_sec: float = Field(default=10.0, ge=0)

    disk_block_size: int = Field(default=1024 * 1024, ge=512)
    seed_disk_with_userdata: bool = Field(default=True)

    download_retry_attempts: int = Field(default=3, ge=1)
    download_retry_sleep_sec: float = Field(default=5.0, ge=0)
    download_timeout_sec: float = Field(default=60.0, gt=0)

    reconcile_interval_sec: float = Field(default=10.0, gt=0)
    disable_workers: bool = Field(default=False)

    log_level: str = Field(default="INFO")

    def ensure_dirs(self) -> None:
        for path in (Path(self.storage_path) / "machines", Path(self.storage_path) / "cache"):
            path.mkdir(parents=True, exist_ok=True)

    @property
    def cache_dir(self) -> Path:
        return Path(self.storage_path) / "cache"

    def resolved_cpu_count(self, requested: int | None = None) -> int:
        count = self.cpu_count if requested is None else requested
        if count == -1:
            return os.cpu_count() or 1
        return count

    def machine_config(
        self,
        name: str,
        *,
        cpu_count: int | None = None,
        memory_mb: int | None = None,
        disk_size_mb: int | None = None,
        boot_cmd: str | None = None,
        boot_image_url: str | None = None,
    ) -> MachineConfig:
        return MachineConfig(
            name=name,
            cpu_count=self.resolved_cpu_count(cpu_count),
            memory_mb=memory_mb if memory_mb is not None else self.memory_size,
            disk_size_mb=disk_size_mb if disk_size_mb is not None else self.disk_size,
            boot_cmd=boot_cmd if boot_cmd is not None else self.boot_cmd,
            boot_image_url=(
                boot_image_url if boot_image_url is not None else self.boot2docker_url
            ),
            storage_path=self.storage_path,
        )


def host_supports_xhyve() -> bool:
    return platform.system().lower() == "darwin"


@lru_cache(maxsize=1)
def get_driver_settings() -> DriverSettings:
    settings = DriverSettings()
    settings.ensure_dirs()
    return settings
