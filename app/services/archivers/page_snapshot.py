"""Single-file HTML snapshots.

The page is fetched once, then stylesheets, scripts, images, media and icons
it references are downloaded on a small worker pool and inlined as ``data:``
URIs so the resulting document renders without network access. Anything not
fetched before the wall-clock budget runs out stays as an absolute URL.
"""

from __future__ import annotations

import base64
import logging
import mimetypes
import re
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Iterable, Optional
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from app.config import settings
from app.models.archive import ArchivedFile
from app.services.archivers.base import ArchivalTool, last_path_segment
from app.services.content_detector import sniff_mime_type
from app.services.exceptions import (
    ContentTooLargeError,
    DownloadError,
    EmptyContentError,
    ErrorKind,
    kind_for_request_exception,
    kind_for_status,
)
from app.services.fetch import (
    ByteBudget,
    build_headers,
    get_session,
    read_limited,
    strip_mime_parameters,
)

logger = logging.getLogger(__name__)

SNAPSHOT_SUFFIX = ".snapshot.html"

CSS_URL_RE = re.compile(r"url\(\s*(['\"]?)([^'\")]+?)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+(?:url\(\s*)?(['\"]?)([^'\")\s;]+)\1\s*\)?", re.IGNORECASE
)
SKIPPED_SCHEMES = ("data:", "javascript:", "mailto:", "tel:", "about:", "blob:", "#")

ICON_RELS = {"icon", "shortcut", "apple-touch-icon", "apple-touch-icon-precomposed"}
MEDIA_TAGS = ("img", "picture", "video", "audio", "source", "track", "figure")
EMBED_TAGS = ("iframe", "embed", "object", "frame")


def snapshot_filename(url: str) -> str:
    """``https://x.test/docs/page.html?q=1`` -> ``page.snapshot.html``."""
    _, sep, rest = url.partition("://")
    remainder = rest if sep else url
    path = remainder.partition("/")[2] if "/" in remainder else ""
    name = last_path_segment(path) if path else ""
    if not name:
        name = "index.html"
    for extension in (".html", ".htm"):
        if name.endswith(extension):
            name = name[: -len(extension)]
            break
    return name + SNAPSHOT_SUFFIX


def _resolve(base_url: str, value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    candidate = value.strip()
    if not candidate or candidate.lower().startswith(SKIPPED_SCHEMES):
        return None
    resolved = urljoin(base_url, candidate)
    if urlparse(resolved).scheme not in ("http", "https"):
        return None
    return resolved


def _srcset_urls(srcset: str) -> list[str]:
    urls = []
    for item in srcset.split(","):
        chunk = item.strip()
        if chunk:
            urls.append(chunk.split()[0])
    return urls


def _data_uri(mime_type: str, data: bytes) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


class _Resource:
    __slots__ = ("data", "mime_type")

    def __init__(self, data: bytes, mime_type: str) -> None:
        self.data = data
        self.mime_type = mime_type

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


class PageSnapshot(ArchivalTool):
    """Archive an HTML page as one self-contained document."""

    name = "page_snapshot"

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        max_bytes: Optional[int] = None,
        max_concurrent_downloads: Optional[int] = None,
        disable_js: Optional[bool] = None,
        disable_css: Optional[bool] = None,
        disable_embeds: Optional[bool] = None,
        disable_medias: Optional[bool] = None,
    ) -> None:
        self._session = session
        self.timeout = (
            timeout if timeout is not None else settings.SNAPSHOT_TIMEOUT_SECONDS
        )
        self.max_bytes = max_bytes if max_bytes is not None else settings.SNAPSHOT_MAX_BYTES
        self.max_concurrent_downloads = max(
            1,
            max_concurrent_downloads
            if max_concurrent_downloads is not None
            else settings.SNAPSHOT_MAX_CONCURRENT_DOWNLOADS,
        )
        self.disable_js = settings.SNAPSHOT_DISABLE_JS if disable_js is None else disable_js
        self.disable_css = (
            settings.SNAPSHOT_DISABLE_CSS if disable_css is None else disable_css
        )
        self.disable_embeds = (
            settings.SNAPSHOT_DISABLE_EMBEDS if disable_embeds is None else disable_embeds
        )
        self.disable_medias = (
            settings.SNAPSHOT_DISABLE_MEDIAS if disable_medias is None else disable_medias
        )

    @property
    def session(self) -> requests.Session:
        return self._session or get_session()

    def archive(self, url: str, mime_type: str) -> ArchivedFile:
        deadline = time.monotonic() + self.timeout
        budget = ByteBudget(self.max_bytes)
        html, page_url = self._fetch_page(url, deadline, budget)

        soup = BeautifulSoup(html, "html.parser")
        base_tag = soup.find("base", href=True)
        base_url = urljoin(page_url, base_tag["href"]) if base_tag else page_url

        self._strip_disabled(soup)

        stylesheet_links = [] if self.disable_css else self._stylesheet_links(soup, base_url)
        sheets = self._fetch_all(
            [href for _, href in stylesheet_links], deadline, budget
        )
        imports = {
            imported
            for sheet_url, sheet in sheets.items()
            for imported in self._css_imports(sheet.text, sheet_url)
        }
        sheets.update(self._fetch_all(imports - sheets.keys(), deadline, budget))

        assets = self._fetch_all(
            self._asset_urls(soup, base_url, sheets), deadline, budget
        )

        for tag, href in stylesheet_links:
            sheet = sheets.get(href)
            if sheet is None:
                tag["href"] = href
                continue
            css = self._rewrite_css(sheet.text, href, sheets, assets)
            tag["href"] = _data_uri("text/css", css.encode("utf-8"))

        self._rewrite_document(soup, base_url, sheets, assets)

        data = str(soup).encode("utf-8")
        if not data:
            raise EmptyContentError("snapshot returned empty content", url=url)
        if len(data) > self.max_bytes:
            raise ContentTooLargeError(
                f"archived page size {len(data)} exceeds maximum allowed size {self.max_bytes}",
                url=url,
            )

        logger.info(
            "page_snapshot.completed",
            extra={"url": url, "size": len(data), "resources": len(assets) + len(sheets)},
        )
        return ArchivedFile(
            filename=snapshot_filename(url),
            data=data,
            mime_type="text/html",
            size=len(data),
        )

    def _remaining(self, deadline: float) -> float:
        return deadline - time.monotonic()

    def _fetch_page(
        self, url: str, deadline: float, budget: ByteBudget
    ) -> tuple[str, str]:
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
                f"failed to archive page: {exc}",
                kind=kind_for_request_exception(exc),
                url=url,
            ) from exc

        with response:
            if not 200 <= response.status_code < 300:
                raise DownloadError(
                    f"failed to archive page: status {response.status_code}",
                    kind=kind_for_status(response.status_code),
                    url=url,
                )
            try:
                body = read_limited(
                    response, self.max_bytes, url=url, deadline=deadline, budget=budget
                )
            except requests.RequestException as exc:
                raise DownloadError(
                    f"failed to archive page: {exc}",
                    kind=kind_for_request_exception(exc),
                    url=url,
                ) from exc
            encoding = response.encoding or response.apparent_encoding or "utf-8"
            final_url = response.url or url

        if self._remaining(deadline) <= 0:
            raise DownloadError(
                f"failed to archive page: exceeded {self.timeout:g}s budget",
                kind=ErrorKind.TIMEOUT,
                url=url,
            )
        if not body:
            raise EmptyContentError("snapshot returned empty content", url=url)
        try:
            return body.decode(encoding, errors="replace"), final_url
        except LookupError:
            return body.decode("utf-8", errors="replace"), final_url

    def _fetch_resource(
        self, url: str, deadline: float, budget: ByteBudget
    ) -> _Resource:
        if self._remaining(deadline) <= 0:
            raise DownloadError(
                "resource skipped: snapshot time limit reached",
                kind=ErrorKind.TIMEOUT,
                url=url,
            )
        if budget.exhausted:
            raise ContentTooLargeError(
                f"resource skipped: snapshot already holds {budget.limit} bytes",
                url=url,
            )
        timeout = max(0.1, min(self.timeout, self._remaining(deadline)))
        response = self.session.get(
            url,
            headers=build_headers(),
            timeout=timeout,
            allow_redirects=True,
            stream=True,
        )
        with response:
            response.raise_for_status()
            data = read_limited(
                response, self.max_bytes, url=url, deadline=deadline, budget=budget
            )
            mime_type = strip_mime_parameters(response.headers.get("Content-Type"))
        if not mime_type:
            mime_type = mimetypes.guess_type(urlparse(url).path)[0] or sniff_mime_type(
                data[:512]
            )
        return _Resource(data, mime_type)

    def _fetch_all(
        self, urls: Iterable[str], deadline: float, budget: ByteBudget
    ) -> dict[str, _Resource]:
        """Download ``urls`` concurrently, dropping failures and late arrivals.

        Workers still reading at the deadline stop on their next chunk, and no
        worker reads past the shared byte budget.
        """
        pending_urls = list(dict.fromkeys(urls))
        results: dict[str, _Resource] = {}
        if not pending_urls or self._remaining(deadline) <= 0:
            return results

        executor = ThreadPoolExecutor(
            max_workers=self.max_concurrent_downloads,
            thread_name_prefix="snapshot",
        )
        futures = {
            executor.submit(self._fetch_resource, resource_url, deadline, budget): resource_url
            for resource_url in pending_urls
        }
        try:
            not_done = set(futures)
            while not_done:
                remaining = self._remaining(deadline)
                if remaining <= 0:
                    logger.warning(
                        "page_snapshot.deadline_reached",
                        extra={"skipped": len(not_done)},
                    )
                    break
                done, not_done = wait(
                    not_done, timeout=remaining, return_when=FIRST_COMPLETED
                )
                for future in done:
                    resource_url = futures[future]
                    try:
                        results[resource_url] = future.result()
                    except Exception as exc:
                        logger.debug(
                            "page_snapshot.resource_skipped",
                            extra={"resource_url": resource_url, "error": str(exc)},
                        )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    def _strip_disabled(self, soup: BeautifulSoup) -> None:
        doomed: list[str] = []
        if self.disable_js:
            doomed.extend(["script", "noscript"])
        if self.disable_css:
            doomed.append("style")
            for tag in soup.find_all("link", rel=True):
                if "stylesheet" in tag.get("rel", []):
                    tag.decompose()
        if self.disable_embeds:
            doomed.extend(EMBED_TAGS)
        if self.disable_medias:
            doomed.extend(MEDIA_TAGS)
        if doomed:
            for tag in soup.find_all(doomed):
                tag.decompose()
        if self.disable_js:
            for tag in soup.find_all(True):
                for attr in [name for name in tag.attrs if name.lower().startswith("on")]:
                    del tag[attr]

    def _stylesheet_links(self, soup: BeautifulSoup, base_url: str) -> list[tuple]:
        links = []
        for tag in soup.find_all("link", href=True):
            rels = {rel.lower() for rel in tag.get("rel", [])}
            if "stylesheet" not in rels:
                continue
            href = _resolve(base_url, tag["href"])
            if href:
                links.append((tag, href))
        return links

    def _css_imports(self, css: str, css_url: str) -> list[str]:
        return [
            resolved
            for match in CSS_IMPORT_RE.finditer(css)
            if (resolved := _resolve(css_url, match.group(2)))
        ]

    def _css_urls(self, css: str, css_url: str) -> list[str]:
        return [
            resolved
            for match in CSS_URL_RE.finditer(css)
            if (resolved := _resolve(css_url, match.group(2)))
        ]

    def _asset_urls(
        self, soup: BeautifulSoup, base_url: str, sheets: dict[str, _Resource]
    ) -> list[str]:
        urls: list[str] = []
        for sheet_url, sheet in sheets.items():
            urls.extend(self._css_urls(sheet.text, sheet_url))
        for style in soup.find_all("style"):
            urls.extend(self._css_urls(style.get_text(), base_url))
        for tag in soup.find_all(style=True):
            urls.extend(self._css_urls(tag["style"], base_url))
        for tag, attr in self._embeddable_attributes(soup):
            resolved = _resolve(base_url, tag.get(attr))
            if resolved:
                urls.append(resolved)
        for tag in soup.find_all(srcset=True):
            urls.extend(
                resolved
                for candidate in _srcset_urls(tag["srcset"])
                if (resolved := _resolve(base_url, candidate))
            )
        return [url for url in urls if url not in sheets]

    def _embeddable_attributes(self, soup: BeautifulSoup) -> list[tuple]:
        pairs = []
        for tag in soup.find_all(["img", "script", "audio", "video", "source", "track", "input"]):
            if tag.name == "input" and (tag.get("type") or "").lower() != "image":
                continue
            if tag.get("src"):
                pairs.append((tag, "src"))
        for tag in soup.find_all("video", poster=True):
            pairs.append((tag, "poster"))
        for tag in soup.find_all("link", href=True):
            rels = {rel.lower() for rel in tag.get("rel", [])}
            if rels & ICON_RELS:
                pairs.append((tag, "href"))
        return pairs

    def _rewrite_css(
        self,
        css: str,
        css_url: str,
        sheets: dict[str, _Resource],
        assets: dict[str, _Resource],
        *,
        follow_imports: bool = True,
    ) -> str:
        def _replace_import(match: re.Match) -> str:
            resolved = _resolve(css_url, match.group(2))
            imported = sheets.get(resolved) if resolved else None
            if imported is None or not follow_imports:
                return match.group(0)
            nested = self._rewrite_css(
                imported.text, resolved, sheets, assets, follow_imports=False
            )
            return f'@import url("{_data_uri("text/css", nested.encode("utf-8"))}")'

        def _replace_url(match: re.Match) -> str:
            resolved = _resolve(css_url, match.group(2))
            if not resolved:
                return match.group(0)
            resource = assets.get(resolved)
            if resource is None:
                return f'url("{resolved}")'
            return f'url("{_data_uri(resource.mime_type, resource.data)}")'

        rewritten = CSS_IMPORT_RE.sub(_replace_import, css)
        return CSS_URL_RE.sub(_replace_url, rewritten)

    def _rewrite_document(
        self,
        soup: BeautifulSoup,
        base_url: str,
        sheets: dict[str, _Resource],
        assets: dict[str, _Resource],
    ) -> None:
        for style in soup.find_all("style"):
            css = style.get_text()
            if css:
                style.string = self._rewrite_css(css, base_url, sheets, assets)
        for tag in soup.find_all(style=True):
            tag["style"] = self._rewrite_css(tag["style"], base_url, sheets, assets)

        for tag, attr in self._embeddable_attributes(soup):
            resolved = _resolve(base_url, tag.get(attr))
            if not resolved:
                continue
            resource = assets.get(resolved)
            tag[attr] = (
                _data_uri(resource.mime_type, resource.data) if resource else resolved
            )

        for tag in soup.find_all(srcset=True):
            parts = []
            for item in tag["srcset"].split(","):
                chunk = item.strip()
                if not chunk:
                    continue
                candidate, _, descriptor = chunk.partition(" ")
                resolved = _resolve(base_url, candidate)
                resource = assets.get(resolved) if resolved else None
                if resource is not None:
                    candidate = _data_uri(resource.mime_type, resource.data)
                elif resolved:
                    candidate = resolved
                parts.append(f"{candidate} {descriptor}".strip())
            tag["srcset"] = ", ".join(parts)

        for tag in soup.find_all(["a", "iframe", "embed", "frame", "form"]):
            attr = {"a": "href", "form": "action"}.get(tag.name, "src")
            resolved = _resolve(base_url, tag.get(attr))
            if resolved:
                tag[attr] = resolved
        for tag in soup.find_all("object", data=True):
            resolved = _resolve(base_url, tag.get("data"))
            if resolved:
                tag["data"] = resolved

        base_tag = soup.find("base")
        if base_tag is not None:
            base_tag.decompose()
