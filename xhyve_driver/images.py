import logging
import shutil
from pathlib import Path
from urllib.parse import urlparse

import httpx

from xhyve_driver.config import DriverSettings
from xhyve_driver.errors import BuildError
from xhyve_driver.http import RequestFailure, RetryPolicy, download_with_retry, request_with_retry
from xhyve_driver.models import ISO_FILENAME, MachineConfig


logger = logging.getLogger(__name__)

LATEST_RELEASE_API = "https://api.github.com/repos/boot2docker/boot2docker/releases/latest"
RELEASE_DOWNLOAD_URL = (
    "https://github.com/boot2docker/boot2docker/releases/download/{tag}/" + ISO_FILENAME
)


def resolve_latest_release_url(client: httpx.Client, retry: RetryPolicy) -> str:
    response = request_with_retry(
        client,
        "GET",
        LATEST_RELEASE_API,
        retry,
        headers={"Accept": "application/vnd.github+json"},
    )
    try:
        tag = response.json().get("tag_name")
    except (ValueError, AttributeError) as exc:
        raise BuildError(
            stage="boot_image", detail=f"unexpected latest release response: {exc}"
        ) from exc
    if not tag:
        raise BuildError(stage="boot_image", detail="latest boot2docker release has no tag")
    return RELEASE_DOWNLOAD_URL.format(tag=tag)


def _local_source(url: str) -> Path | None:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(parsed.path)
    if parsed.scheme == "" and url:
        return Path(url)
    return None


class ImageCache:
    """Global boot image cache shared by every machine under ``storage_path``."""

    def __init__(self, settings: DriverSettings, client: httpx.Client | None = None):
        self.settings = settings
        self._client = client
        self.retry = RetryPolicy(
            settings.download_retry_attempts, settings.download_retry_sleep_sec
        )

    @property
    def cached_iso(self) -> Path:
        return self.settings.cache_dir / ISO_FILENAME

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.settings.download_timeout_sec,
                follow_redirects=True,
                headers={"User-Agent": "xhyve-machine-driver/0.1"},
            )
        return self._client

    def refresh(self, url: str) -> Path:
        cached = self.cached_iso
        source = _local_source(url)
        if source is not None:
            if not source.is_file():
                raise BuildError(stage="boot_image", detail=f"boot image not found: {source}")
            try:
                cached.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source, cached)
            except OSError as exc:
                raise BuildError(
                    stage="boot_image", detail=f"copying {source} to {cached} failed: {exc}"
                ) from exc
            return cached

        if not url and cached.exists():
            logger.debug("boot image cache hit path=%s", cached)
            return cached

        try:
            target = url or resolve_latest_release_url(self._http(), self.retry)
            logger.info("downloading boot image url=%s dest=%s", target, cached)
            size = download_with_retry(self._http(), target, cached, self.retry)
        except RequestFailure as exc:
            raise BuildError(stage="boot_image", detail=str(exc)) from exc
        logger.info("boot image downloaded path=%s bytes=%s", cached, size)
        return cached

    def copy_to_machine_dir(self, config: MachineConfig) -> Path:
        cached = self.refresh(config.boot_image_url)
        try:
            config.machine_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(cached, config.iso_path)
        except OSError as exc:
            raise BuildError(
                stage="boot_image", detail=f"copying {cached} to {config.iso_path} failed: {exc}"
            ) from exc
        return config.iso_path
