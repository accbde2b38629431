from __future__ import annotations

import logging
from typing import Optional

import requests

from app.config import settings
from app.models.archive import URLMetadata
from app.services.exceptions import (
    ProbeError,
    UndetectedContentTypeError,
    kind_for_request_exception,
    kind_for_status,
)
from app.services.fetch import (
    build_headers,
    get_session,
    read_prefix,
    strip_mime_parameters,
)

logger = logging.getLogger(__name__)

SNIFF_LENGTH = 512

_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
    (b"\x00\x00\x01\x00", "image/x-icon"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b\x08", "application/x-gzip"),
    (b"Rar!\x1a\x07", "application/x-rar-compressed"),
    (b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed"),
    (b"OggS", "application/ogg"),
    (b"ID3", "audio/mpeg"),
    (b"fLaC", "audio/flac"),
    (b"\x1aE\xdf\xa3", "video/webm"),
    (b"wOFF", "font/woff"),
    (b"wOF2", "font/woff2"),
    (b"%!PS-Adobe-", "application/postscript"),
)

_HTML_MARKERS: tuple[bytes, ...] = (
    b"<!doctype html",
    b"<html",
    b"<head",
    b"<script",
    b"<iframe",
    b"<h1",
    b"<div",
    b"<font",
    b"<table",
    b"<a",
    b"<style",
    b"<title",
    b"<b",
    b"<body",
    b"<br",
    b"<p",
    b"<!--",
)


def sniff_mime_type(data: bytes) -> str:
    """Guess a MIME type from the leading bytes of a body."""
    for signature, mime_type in _SIGNATURES:
        if data.startswith(signature):
            return mime_type

    if data[:4] == b"RIFF" and len(data) >= 12:
        form = data[8:12]
        if form == b"WEBP":
            return "image/webp"
        if form == b"WAVE":
            return "audio/wav"
        if form == b"AVI ":
            return "video/avi"
    if len(data) >= 12 and data[4:8] == b"ftyp":
        return "video/mp4"

    head = data.lstrip(b"\t\n\x0c\r ").lower()
    if head.startswith(b"<?xml"):
        return "text/xml"
    for marker in _HTML_MARKERS:
        if head.startswith(marker) and len(head) > len(marker):
            if head[len(marker) : len(marker) + 1] in (b" ", b">"):
                return "text/html"

    if data.startswith((b"\xef\xbb\xbf", b"\xfe\xff", b"\xff\xfe")):
        return "text/plain"
    if _looks_binary(data):
        return "application/octet-stream"
    return "text/plain"


def _looks_binary(data: bytes) -> bool:
    for byte in data:
        if byte <= 0x08 or byte == 0x0B or 0x0E <= byte <= 0x1A or 0x1C <= byte <= 0x1F:
            return True
    return False


def _parse_content_length(value: Optional[str]) -> int:
    if not value:
        return -1
    try:
        return int(value)
    except ValueError:
        return -1


def _metadata_from_response(response: requests.Response) -> URLMetadata:
    return URLMetadata(
        mime_type=strip_mime_parameters(response.headers.get("Content-Type")),
        etag=(response.headers.get("ETag") or "").strip('"'),
        size=_parse_content_length(response.headers.get("Content-Length")),
    )


class ContentDetector:
    """Probes URLs for MIME type, ETag and size."""

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._session = session
        self.timeout = timeout if timeout is not None else settings.PROBE_TIMEOUT_SECONDS

    @property
    def session(self) -> requests.Session:
        return self._session or get_session()

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        return self.session.request(
            method,
            url,
            headers=build_headers(),
            timeout=self.timeout,
            allow_redirects=True,
            **kwargs,
        )

    def probe(self, url: str) -> URLMetadata:
        try:
            response = self._request("HEAD", url)
        except requests.RequestException as exc:
            logger.debug("probe.head_failed", extra={"url": url, "error": str(exc)})
            return self._probe_with_get(url)

        with response:
            if response.status_code >= 400:
                logger.debug(
                    "probe.head_status",
                    extra={"url": url, "status": response.status_code},
                )
                return self._probe_with_get(url)
            return _metadata_from_response(response)

    def _probe_with_get(self, url: str) -> URLMetadata:
        try:
            response = self._request("GET", url, stream=True)
        except requests.RequestException as exc:
            raise ProbeError(
                f"GET request failed: {exc}",
                kind=kind_for_request_exception(exc),
                url=url,
            ) from exc

        with response:
            if response.status_code >= 400:
                raise ProbeError(
                    f"GET request returned status {response.status_code}",
                    kind=kind_for_status(response.status_code),
                    url=url,
                )
            return _metadata_from_response(response)

    def detect_mime_type(self, url: str) -> str:
        """Resolve a MIME type with HEAD, then GET, then byte sniffing."""
        try:
            response = self._request("HEAD", url)
        except requests.RequestException as exc:
            logger.debug("detect.head_failed", extra={"url": url, "error": str(exc)})
        else:
            with response:
                mime_type = strip_mime_parameters(response.headers.get("Content-Type"))
                if response.status_code < 400 and mime_type:
                    return mime_type

        try:
            response = self._request("GET", url, stream=True)
        except requests.RequestException as exc:
            raise UndetectedContentTypeError(
                f"failed to detect MIME type for URL: {url}: {exc}",
                kind=kind_for_request_exception(exc),
                url=url,
            ) from exc

        with response:
            if response.status_code >= 400:
                raise UndetectedContentTypeError(
                    f"failed to detect MIME type for URL: {url}: "
                    f"GET request returned status {response.status_code}",
                    kind=kind_for_status(response.status_code),
                    url=url,
                )
            mime_type = strip_mime_parameters(response.headers.get("Content-Type"))
            if mime_type:
                return mime_type
            try:
                prefix = read_prefix(response, SNIFF_LENGTH)
            except requests.RequestException as exc:
                logger.debug("detect.sniff_failed", extra={"url": url, "error": str(exc)})
                prefix = b""

        if not prefix:
            raise UndetectedContentTypeError(
                f"failed to detect MIME type for URL: {url}: "
                "no Content-Type header and unable to detect from content",
                url=url,
            )
        return sniff_mime_type(prefix)
