import httpx
import pytest

from fakes import make_settings
from xhyve_driver.errors import BuildError
from xhyve_driver.images import LATEST_RELEASE_API, ImageCache


def _client(routes, seen):
    def handler(request):
        seen.append(str(request.url))
        body = routes.get(str(request.url))
        if body is None:
            return httpx.Response(404, request=request)
        if isinstance(body, dict):
            return httpx.Response(200, json=body, request=request)
        return httpx.Response(200, content=body, request=request)

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_latest_release_is_downloaded_when_no_url(tmp_path):
    seen = []
    iso_url = "https://github.com/boot2docker/boot2docker/releases/download/v19.03.12/boot2docker.iso"
    client = _client({LATEST_RELEASE_API: {"tag_name": "v19.03.12"}, iso_url: b"ISO"}, seen)
    cache = ImageCache(make_settings(tmp_path, download_retry_sleep_sec=0), client=client)

    path = cache.refresh("")

    assert path.read_bytes() == b"ISO"
    assert seen == [LATEST_RELEASE_API, iso_url]


def test_cached_image_reused_without_network(tmp_path):
    seen = []
    settings = make_settings(tmp_path)
    cache = ImageCache(settings, client=_client({}, seen))
    settings.cache_dir.mkdir(parents=True)
    cache.cached_iso.write_bytes(b"CACHED")

    assert cache.refresh("").read_bytes() == b"CACHED"
    assert seen == []


def test_explicit_url_download(tmp_path):
    seen = []
    url = "https://mirror.example/b2d.iso"
    cache = ImageCache(make_settings(tmp_path), client=_client({url: b"MIRROR"}, seen))

    assert cache.refresh(url).read_bytes() == b"MIRROR"


def test_download_failure_is_build_error(tmp_path):
    seen = []
    settings = make_settings(tmp_path, download_retry_attempts=2, download_retry_sleep_sec=0)
    cache = ImageCache(settings, client=_client({}, seen))

    with pytest.raises(BuildError) as exc_info:
        cache.refresh("https://mirror.example/b2d.iso")
    assert exc_info.value.stage == "boot_image"
    assert len(seen) == 2


def test_local_image_is_copied_into_machine_dir(tmp_path):
    source = tmp_path / "custom.iso"
    source.write_bytes(b"LOCAL")
    settings = make_settings(tmp_path)
    config = settings.machine_config("dev", boot_image_url=source.as_uri())

    path = ImageCache(settings).copy_to_machine_dir(config)

    assert path == config.iso_path
    assert path.read_bytes() == b"LOCAL"


def test_latest_release_non_json_body_is_build_error(tmp_path):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, text="<html>rate limited</html>", request=request)
    )
    cache = ImageCache(make_settings(tmp_path), client=httpx.Client(transport=transport))

    with pytest.raises(BuildError) as exc_info:
        cache.refresh("")
    assert exc_info.value.stage == "boot_image"


def test_latest_release_non_object_body_is_build_error(tmp_path):
    seen = []
    cache = ImageCache(make_settings(tmp_path), client=_client({LATEST_RELEASE_API: b"[]"}, seen))

    with pytest.raises(BuildError) as exc_info:
        cache.refresh("")
    assert exc_info.value.stage == "boot_image"


def test_local_copy_failure_is_build_error(tmp_path):
    source = tmp_path / "custom.iso"
    source.write_bytes(b"LOCAL")
    settings = make_settings(tmp_path)
    (tmp_path / "storage").mkdir()
    settings.cache_dir.write_text("not a directory", encoding="utf-8")

    with pytest.raises(BuildError) as exc_info:
        ImageCache(settings).refresh(str(source))
    assert exc_info.value.stage == "boot_image"
