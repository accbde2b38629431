import logging
import os
import threading
import time
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from app.services.exceptions import ContentTooLargeError, DownloadError, ErrorKind

logger = logging.getLogger(__name__)

USER_AGENT = os.getenv(
    "ARCHIVER_USER_AGENT",
    "Mozilla/5.0 (compatible; Link-Archiver/1.0)",
)
FETCH_MAX_RETRIES = int(os.getenv("FETCH_MAX_RETRIES", "0"))
FETCH_BACKOFF_FACTOR = float(os.getenv("FETCH_BACKOFF_FACTOR", "0.3"))
FETCH_POOL_MAXSIZE = int(os.getenv("FETCH_POOL_MAXSIZE", "32"))
READ_CHUNK_SIZE = 64 * 1024

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}

_session_lock = threading.Lock()
_session: requests.Session | None = None


def _retry_adapter() -> HTTPAdapter:
    retry = Retry(
        total=FETCH_MAX_RETRIES,
        backoff_factor=FETCH_BACKOFF_FACTOR,
        status_forcelist=sorted(TRANSIENT_STATUS_CODES),
        allowed_methods=("GET", "HEAD", "OPTIONS"),
        raise_on_status=False,
    )
    return HTTPAdapter(
        max_retries=retry, pool_connections=16, pool_maxsize=FETCH_POOL_MAXSIZE
    )


def get_session() -> requests.Session:
    """Return the process-wide pooled session shared by probes and tools."""
    global _session
    if _session is not None:
        return _session
    with _session_lock:
        if _session is not None:
            return _session
        sess = requests.Session()
        adapter = _retry_adapter()
        sess.mount("https://", adapter)
        sess.mount("http://", adapter)
        sess.headers["User-Agent"] = USER_AGENT
        _session = sess
    return _session


def build_headers(extra: Optional[dict[str, str]] = None) -> dict[str, str]:
    headers = {"User-Agent": USER_AGENT}
    if extra:
        headers.update(extra)
    return headers


def strip_mime_parameters(content_type: Optional[str]) -> str:
    """``text/html; charset=utf-8`` -> ``text/html``."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip()


class ByteBudget:
    """Byte allowance shared by concurrent reads; ``take`` fails once it is spent."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.used = 0
        self._lock = threading.Lock()

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self.used >= self.limit

    def take(self, size: int, *, url: Optional[str] = None) -> None:
        with self._lock:
            self.used += size
            over = self.used > self.limit
        if over:
            raise ContentTooLargeError(
                f"combined size exceeds maximum of {self.limit} bytes", url=url
            )


def read_limited(
    response: requests.Response,
    max_bytes: int,
    *,
    url: Optional[str] = None,
    deadline: Optional[float] = None,
    budget: Optional[ByteBudget] = None,
) -> bytes:
    """Read a streamed body, failing once more than ``max_bytes`` arrive.

    ``deadline`` is a ``time.monotonic()`` value covering the whole body, not
    each socket read; ``budget`` is charged for every chunk.
    """
    buffer = bytearray()
    for chunk in response.iter_content(chunk_size=READ_CHUNK_SIZE):
        if deadline is not None and time.monotonic() > deadline:
            logger.warning("fetch.deadline_exceeded", extra={"url": url})
            raise DownloadError(
                "read timed out: body not received within the time limit",
                kind=ErrorKind.TIMEOUT,
                url=url,
            )
        if not chunk:
            continue
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            logger.warning(
                "fetch.body_too_large",
                extra={"url": url, "max_bytes": max_bytes},
            )
            raise ContentTooLargeError(
                f"file too large: exceeds maximum size of {max_bytes} bytes",
                url=url,
            )
        if budget is not None:
            budget.take(len(chunk), url=url)
    return bytes(buffer)


def read_prefix(response: requests.Response, limit: int) -> bytes:
    """Read at most ``limit`` bytes from a streamed body."""
    buffer = bytearray()
    for chunk in response.iter_content(chunk_size=limit):
        if not chunk:
            continue
        buffer.extend(chunk)
        if len(buffer) >= limit:
            break
    return bytes(buffer[:limit])
