import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import httpx


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    sleep_sec: float


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{method} {url} gave up after {attempts} attempts ({error_type}: {detail})")


def _describe(exc: Exception) -> tuple[str, int | None]:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}", exc.response.status_code
    return str(exc) or exc.__class__.__name__, None


def _with_retry(method: str, url: str, retry: RetryPolicy, call: Callable[[], Any]) -> Any:
    error: Exception | None = None
    status_code: int | None = None
    detail = "no attempts made"
    error_type = "RuntimeError"
    for attempt in range(1, retry.attempts + 1):
        try:
            return call()
        except (httpx.HTTPError, OSError) as exc:
            error = exc
            detail, status_code = _describe(exc)
            error_type = exc.__class__.__name__
            logger.warning(
                "request attempt failed method=%s url=%s attempt=%d/%d reason=%s",
                method,
                url,
                attempt,
                retry.attempts,
                detail,
            )
        if attempt < retry.attempts:
            time.sleep(retry.sleep_sec)
    raise RequestFailure(
        method=method,
        url=url,
        attempts=retry.attempts,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
    ) from error


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    def call() -> httpx.Response:
        response = client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    return _with_retry(method, url, retry, call)


def download_with_retry(
    client: httpx.Client, url: str, destination: Path, retry: RetryPolicy
) -> int:
    """Stream ``url`` into ``destination`` through a sibling temp file."""
    tmp_path = destination.with_name(f".{destination.name}.part")

    def call() -> int:
        written = 0
        try:
            with client.stream("GET", url) as response:
                response.raise_for_status()
                with tmp_path.open("wb") as fh:
                    for chunk in response.iter_bytes(chunk_size=256 * 1024):
                        fh.write(chunk)
                        written += len(chunk)
            tmp_path.replace(destination)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return written

    destination.parent.mkdir(parents=True, exist_ok=True)
    return _with_retry("GET", url, retry, call)
