from __future__ import annotations

import logging
import time
from typing import Optional
from urllib.parse import unquote

import requests

from app.config import settings
from app.models.archive import ArchivedFile
from app.services.archivers.base import (
    ArchivalTool,
    extension_for_mime_type,
    last_path_segment,
)
from app.services.exceptions import (
    ContentTooLargeError,
    DownloadError,
    kind_for_request_exception,
    kind_for_status,
)
from app.services.fetch import build_headers, get_session, read_limited, strip_mime_parameters

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "downloaded_file"


def filename_from_content_disposition(header: Optional[str]) -> str:
    """Extract ``filename=`` or RFC 5987 ``filename*=`` from a disposition header."""
    if not header:
        return ""
    for part in header.split(";"):
        part = part.strip()
        if part.startswith("filename="):
            filename = part[len("filename=") :].strip('"')
            if filename:
                return filename
        elif part.startswith("filename*="):
            encoded = part[len("filename*=") :]
            charset, sep, value = encoded.partition("''")
            if sep:
                try:
                    return unquote(value, encoding=charset or "utf-8", errors="replace")
                except LookupError:
                    return unquote(value, errors="replace")
    return ""


def filename_for_download(
    url: str, content_disposition: Optional[str], mime_type: str = ""
) -> str:
    """Disposition name, else last path segment, else ``downloaded_file`` plus an extension."""
    return (
        filename_from_content_disposition(content_disposition)
        or last_path_segment(url)
        or DEFAULT_FILENAME + extension_for_mime_type(mime_type)
    )


class DirectDownload(ArchivalTool):
    """Archive a URL by saving its response body as-is."""

    name = "direct_download"

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        max_bytes: Optional[int] = None,
    ) -> None:
        self._session = session
        self.timeout = (
            timeout if timeout is not None else settings.DOWNLOAD_TIMEOUT_SECONDS
        )
        self.max_bytes = max_bytes if max_bytes is not None else settings.DOWNLOAD_MAX_BYTES

    @property
    def session(self) -> requests.Session:
        return self._session or get_session()

    def archive(self, url: str, mime_type: str) -> ArchivedFile:
        deadline = time.monotonic() + self.timeout
        try:
            response = self.session.get(
                url,
                headers=build_headers(),
                timeout=self.timeout,
                allow_redirects=True,
                stream=True,
            )
        except requests.RequestException as exc:
            raise DownloadError(
                f"failed to download file: {exc}",
                kind=kind_for_request_exception(exc),
                url=url,
            ) from exc

        with response:
            if not 200 <= response.status_code < 300:
                raise DownloadError(
                    f"download failed with status {response.status_code}",
                    kind=kind_for_status(response.status_code),
                    url=url,
                )

            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > self.max_bytes:
                raise ContentTooLargeError(
                    f"file size {declared} exceeds maximum allowed size {self.max_bytes}",
                    url=url,
                )

            try:
                data = read_limited(
                    response, self.max_bytes, url=url, deadline=deadline
                )
            except requests.RequestException as exc:
                raise DownloadError(
                    f"failed to read file data: {exc}",
                    kind=kind_for_request_exception(exc),
                    url=url,
                ) from exc

            response_mime = strip_mime_parameters(response.headers.get("Content-Type"))
            filename = filename_for_download(
                url,
                response.headers.get("Content-Disposition"),
                response_mime or mime_type,
            )

        logger.info(
            "direct_download.completed",
            extra={"url": url, "filename": filename, "size": len(data)},
        )
        return ArchivedFile(
            filename=filename,
            data=data,
            mime_type=response_mime or mime_type,
            size=len(data),
        )
