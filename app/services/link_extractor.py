"""Pull archivable URLs out of chat message text."""

from __future__ import annotations

import re
from urllib.parse import urlparse

_BARE_URL_RE = re.compile(r"(https?://[^\s<>\"{}|\\^`\[\]]+)", re.IGNORECASE)
_MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_TRIM_CHARS = ".,;:!?)"


def is_valid_url(candidate: str) -> bool:
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def extract_urls(text: str | None) -> list[str]:
    """Return bare URLs then markdown link targets, in order and without repeats."""
    if not text:
        return []

    seen: set[str] = set()
    urls: list[str] = []

    def _accept(candidate: str) -> None:
        if candidate in seen or not is_valid_url(candidate):
            return
        seen.add(candidate)
        urls.append(candidate)

    for match in _BARE_URL_RE.finditer(text):
        _accept(match.group(1).strip(_TRIM_CHARS))

    for match in _MARKDOWN_LINK_RE.finditer(text):
        _accept(match.group(2))

    return urls
