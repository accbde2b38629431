from __future__ import annotations

from enum import Enum

import requests


class ErrorKind(str, Enum):
    """Failure categories attached to archival errors where they are raised."""

    TIMEOUT = "timeout"
    INVALID_URL = "invalid_url"
    DOWNLOAD_FAILED = "download_failed"
    STORAGE_FAILED = "storage_failed"
    UNDETECTED_CONTENT_TYPE = "undetected_content_type"
    TOO_LARGE = "too_large"
    HTTP_CLIENT = "http_client"
    HTTP_SERVER = "http_server"
    EMPTY_CONTENT = "empty_content"
    NO_TOOL = "no_tool"
    UNKNOWN = "unknown"


REASONS: dict[ErrorKind, str] = {
    ErrorKind.TIMEOUT: "Timeout while fetching URL",
    ErrorKind.INVALID_URL: "Invalid URL format",
    ErrorKind.DOWNLOAD_FAILED: "Failed to download file",
    ErrorKind.STORAGE_FAILED: "Failed to store file",
    ErrorKind.UNDETECTED_CONTENT_TYPE: "Could not determine content type",
    ErrorKind.TOO_LARGE: "File too large",
    ErrorKind.HTTP_CLIENT: "HTTP client error",
    ErrorKind.HTTP_SERVER: "HTTP server error",
    ErrorKind.EMPTY_CONTENT: "Archived content was empty",
    ErrorKind.NO_TOOL: "No usable archival tool configured",
    ErrorKind.UNKNOWN: "Unknown error",
}


class ArchiveError(Exception):
    """Base class for archival pipeline errors."""

    default_kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind or self.default_kind
        self.url = url


class ProbeError(ArchiveError):
    """Metadata probing failed."""

    default_kind = ErrorKind.DOWNLOAD_FAILED


class UndetectedContentTypeError(ArchiveError):
    """No MIME type could be determined for a URL."""

    default_kind = ErrorKind.UNDETECTED_CONTENT_TYPE


class DownloadError(ArchiveError):
    """An archival tool could not fetch its content."""

    default_kind = ErrorKind.DOWNLOAD_FAILED


class ContentTooLargeError(ArchiveError):
    """Fetched content exceeds a tool's size ceiling."""

    default_kind = ErrorKind.TOO_LARGE


class EmptyContentError(ArchiveError):
    """An archival tool produced no bytes."""

    default_kind = ErrorKind.EMPTY_CONTENT


class PolicyError(ArchiveError):
    """Rule configuration resolved to no tool or an unregistered one."""

    default_kind = ErrorKind.NO_TOOL


class StorageError(ArchiveError):
    """Artifact upload or archive metadata access failed."""

    default_kind = ErrorKind.STORAGE_FAILED


def kind_for_status(status_code: int) -> ErrorKind:
    if 400 <= status_code < 500:
        return ErrorKind.HTTP_CLIENT
    if status_code >= 500:
        return ErrorKind.HTTP_SERVER
    return ErrorKind.DOWNLOAD_FAILED


def kind_for_request_exception(exc: requests.RequestException) -> ErrorKind:
    """Map a transport failure raised by ``requests`` onto an error kind."""
    if isinstance(exc, requests.Timeout):
        return ErrorKind.TIMEOUT
    if isinstance(
        exc,
        (
            requests.exceptions.InvalidURL,
            requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
        ),
    ):
        return ErrorKind.INVALID_URL
    return ErrorKind.DOWNLOAD_FAILED


def reason_for(error: BaseException) -> str:
    """Human-readable reason for a failure, derived from its kind."""
    kind = getattr(error, "kind", None)
    if isinstance(kind, ErrorKind):
        return REASONS[kind]
    return REASONS[ErrorKind.UNKNOWN]


__all__ = [
    "ErrorKind",
    "REASONS",
    "ArchiveError",
    "ProbeError",
    "UndetectedContentTypeError",
    "DownloadError",
    "ContentTooLargeError",
    "EmptyContentError",
    "PolicyError",
    "StorageError",
    "kind_for_status",
    "kind_for_request_exception",
    "reason_for",
]
