"""Credential bundle consumed by the boot2docker automount script.

The guest checks whether its data disk starts with ``MAGIC_STRING`` and, if
so, formats the disk and unpacks this archive into the docker user's home.
Entry order matters: the sentinel has to be the first header in the archive.
"""

import io
import logging
import os
import tarfile
import tempfile
import time
from pathlib import Path

from xhyve_driver.errors import MachineIOError, MissingKeyMaterialError


logger = logging.getLogger(__name__)

MAGIC_STRING = "boot2docker, this is xhyve speaking"
SSH_DIR = ".ssh"
AUTHORIZED_KEY_NAMES = ("authorized_keys", "authorized_keys2")


def _add_file(tw: tarfile.TarFile, name: str, payload: bytes, mode: int, mtime: int) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(payload)
    info.mode = mode
    info.mtime = mtime
    tw.addfile(info, io.BytesIO(payload))


def build_bundle(public_key: bytes) -> bytes:
    mtime = int(time.time())
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.USTAR_FORMAT) as tw:
        _add_file(tw, MAGIC_STRING, MAGIC_STRING.encode("ascii"), 0o644, mtime)

        ssh_dir = tarfile.TarInfo(name=SSH_DIR)
        ssh_dir.type = tarfile.DIRTYPE
        ssh_dir.mode = 0o700
        ssh_dir.mtime = mtime
        tw.addfile(ssh_dir)

        for key_name in AUTHORIZED_KEY_NAMES:
            _add_file(tw, f"{SSH_DIR}/{key_name}", public_key, 0o644, mtime)
    return buf.getvalue()


def package_credentials(public_key_path: str | Path, output_path: str | Path) -> bytes:
    key_path = Path(public_key_path)
    try:
        public_key = key_path.read_bytes()
    except OSError as exc:
        raise MissingKeyMaterialError(str(key_path), exc.strerror or str(exc)) from exc

    raw = build_bundle(public_key)
    out = Path(output_path)
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=out.parent, prefix=f".{out.name}.")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(raw)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, out)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as exc:
        raise MachineIOError(f"writing credential bundle {out} failed: {exc}") from exc

    logger.debug("credential bundle written path=%s bytes=%s", out, len(raw))
    return raw
