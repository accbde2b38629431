from __future__ import annotations

from abc import ABC, abstractmethod

from app.models.archive import ArchivedFile

_EXTENSIONS = {
    "application/pdf": ".pdf",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "application/zip": ".zip",
    "application/x-zip-compressed": ".zip",
    "application/x-rar-compressed": ".rar",
    "application/x-7z-compressed": ".7z",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-excel": ".xls",
    "text/plain": ".txt",
    "text/html": ".html",
    "text/css": ".css",
    "application/javascript": ".js",
    "application/json": ".json",
}


def extension_for_mime_type(mime_type: str) -> str:
    """File extension (with dot) for a MIME type, or ``""`` when unknown."""
    extension = _EXTENSIONS.get(mime_type)
    if extension:
        return extension
    if mime_type.startswith("image/"):
        return ".jpg"
    return ""


def last_path_segment(url: str) -> str:
    """Last ``/``-separated segment of ``url`` with query and fragment removed."""
    segment = url.rsplit("/", 1)[-1]
    for separator in ("?", "#"):
        segment = segment.split(separator, 1)[0]
    return segment


class ArchivalTool(ABC):
    """A way of turning a URL into an archivable file."""

    name: str = ""

    @abstractmethod
    def archive(self, url: str, mime_type: str) -> ArchivedFile:
        """Fetch ``url`` and return the artifact; raise ``ArchiveError`` on failure."""
        raise NotImplementedError
