import logging
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Callable

from xhyve_driver.config import DriverSettings
from xhyve_driver.errors import BuildError
from xhyve_driver.images import ImageCache
from xhyve_driver.models import MachineConfig
from xhyve_driver.userdata import package_credentials


logger = logging.getLogger(__name__)

BOOT_KERNEL_PATH = "boot/vmlinuz64"
BOOT_INITRD_PATH = "boot/initrd.img"

Runner = Callable[[list[str]], None]


def run_command(cmd: list[str]) -> None:
    logger.debug("running command=%s", " ".join(cmd))
    subprocess.run(cmd, check=True, capture_output=True, text=True)


def _command_detail(exc: Exception) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        stderr = (exc.stderr or "").strip()
        stdout = (exc.stdout or "").strip()
        return stderr or stdout or str(exc)
    return str(exc)


def allocate_disk_image(
    path: Path, size_mb: int, block_size: int = 1024 * 1024, seed: bytes | None = None
) -> int:
    """Create a sparse disk image of exactly ``size_mb`` blocks.

    ``seed`` is written at offset 0; the rest of the file reads as zeros.
    """
    size = size_mb * block_size
    if seed and len(seed) > size:
        raise BuildError(
            stage="disk_image",
            detail=f"seed of {len(seed)} bytes does not fit a {size} byte disk",
        )
    try:
        with path.open("wb") as fh:
            if seed:
                fh.write(seed)
            fh.truncate(size)
    except OSError as exc:
        raise BuildError(stage="disk_image", detail=f"allocating {path} failed: {exc}") from exc
    return size


def new_instance_id() -> str:
    return str(uuid.uuid4())


class ArtifactBuilder:
    def __init__(
        self,
        settings: DriverSettings,
        image_cache: ImageCache | None = None,
        runner: Runner = run_command,
    ):
        self.settings = settings
        self.image_cache = image_cache or ImageCache(settings)
        self.runner = runner

    def build(self, config: MachineConfig) -> str:
        """Produce every file the machine needs before first boot; returns its UUID."""
        try:
            config.machine_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BuildError(stage="machine_dir", detail=str(exc)) from exc

        logger.info("copying boot image name=%s", config.name)
        self.image_cache.copy_to_machine_dir(config)

        logger.info("creating ssh key name=%s", config.name)
        self.generate_ssh_key(config.ssh_key_path)

        logger.debug("extracting kernel images name=%s iso=%s", config.name, config.iso_path)
        self.extract_kernel_images(config)

        logger.debug("making userdata key bundle name=%s", config.name)
        bundle = package_credentials(config.public_key_path, config.userdata_path)

        logger.info("creating blank disk image name=%s size_mb=%s", config.name, config.disk_size_mb)
        seed = bundle if self.settings.seed_disk_with_userdata else None
        allocate_disk_image(
            config.disk_path, config.disk_size_mb, self.settings.disk_block_size, seed=seed
        )

        instance_id = new_instance_id()
        logger.debug("generated uuid name=%s uuid=%s", config.name, instance_id)
        return instance_id

    def generate_ssh_key(self, key_path: Path) -> None:
        try:
            key_path.unlink(missing_ok=True)
            Path(f"{key_path}.pub").unlink(missing_ok=True)
        except OSError as exc:
            raise BuildError(stage="ssh_key", detail=f"removing old key {key_path} failed: {exc}") from exc
        cmd = [
            self.settings.ssh_keygen_binary,
            "-t",
            "rsa",
            "-b",
            "2048",
            "-N",
            "",
            "-q",
            "-f",
            str(key_path),
        ]
        try:
            self.runner(cmd)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise BuildError(stage="ssh_key", detail=_command_detail(exc)) from exc

    def extract_kernel_images(self, config: MachineConfig) -> None:
        mount_point = config.mount_point
        try:
            mount_point.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BuildError(stage="mount", detail=f"creating {mount_point} failed: {exc}") from exc
        attach = [
            self.settings.hdiutil_binary,
            "attach",
            str(config.iso_path),
            "-nobrowse",
            "-readonly",
            "-mountpoint",
            str(mount_point),
        ]
        try:
            self.runner(attach)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise BuildError(stage="mount", detail=_command_detail(exc)) from exc

        try:
            for source, dest in (
                (BOOT_KERNEL_PATH, config.kernel_path),
                (BOOT_INITRD_PATH, config.initrd_path),
            ):
                logger.debug("extracting %s to %s", source, dest)
                try:
                    shutil.copyfile(mount_point / source, dest)
                except OSError as exc:
                    raise BuildError(
                        stage="copy", detail=f"copying {source} from {config.iso_path} failed: {exc}"
                    ) from exc
        finally:
            self._detach(mount_point)

    def _detach(self, mount_point: Path) -> None:
        detach = [self.settings.hdiutil_binary, "detach", str(mount_point)]
        try:
            self.runner(detach)
        except (OSError, subprocess.CalledProcessError) as exc:
            logger.warning(
                "unmount failed mount_point=%s reason=%s", mount_point, _command_detail(exc)
            )
            return
        try:
            mount_point.rmdir()
        except OSError:
            logger.debug("mount point left in place path=%s", mount_point)
