"""Per-URL archival pipeline.

For each URL in a message: skip if this post already archived it, probe the
URL, try to reuse the newest global artifact (first by ETag, then by content
hash after downloading), otherwise store a fresh artifact. Every outcome
that matters to users ends in exactly one thread reply.
"""

from __future__ import annotations

import enum
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import structlog

from app.config import settings
from app.models.archive import DO_NOTHING_TOOL, ArchiveMetadata, ConfigSnapshot, URLMetadata
from app.services.archive_store import ArchiveStore, content_hash
from app.services.archivers.registry import ToolRegistry
from app.services.content_detector import ContentDetector
from app.services.exceptions import ArchiveError, PolicyError
from app.services.link_extractor import extract_urls
from app.services.notifier import ThreadNotifier
from app.services.rules import select_tool
from app.utils.correlation import (
    bind_archive_context,
    clear_correlation_context,
    current_correlation_id,
)

logger = structlog.get_logger(__name__)


class ProcessOutcome(str, enum.Enum):
    SKIPPED = "skipped"
    REUSED_ETAG = "reused_etag"
    IGNORED = "ignored"
    FAILED = "failed"
    REUSED_HASH = "reused_hash"
    ARCHIVED = "archived"


class ArchiveProcessor:
    def __init__(
        self,
        *,
        detector: ContentDetector,
        registry: ToolRegistry,
        store: ArchiveStore,
        notifier: ThreadNotifier,
        max_workers: Optional[int] = None,
    ) -> None:
        self.detector = detector
        self.registry = registry
        self.store = store
        self.notifier = notifier
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.ARCHIVE_CONCURRENCY,
            thread_name_prefix="archiver",
        )

    def list_available_tools(self) -> list[str]:
        return self.registry.names()

    def select_tool(self, url: str, mime_type: str, config: ConfigSnapshot) -> str:
        return select_tool(url, mime_type, config.effective_rules)

    def process_message(
        self, post_id: str, text: str, config: ConfigSnapshot
    ) -> list[Future]:
        """Queue one pipeline per extracted URL and return without waiting."""
        urls = extract_urls(text)
        if not urls:
            return []
        logger.info("archive.message_queued", post_id=post_id, url_count=len(urls))
        request_id = current_correlation_id()
        return [
            self._executor.submit(self._run_isolated, post_id, url, config, request_id)
            for url in urls
        ]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run_isolated(
        self,
        post_id: str,
        url: str,
        config: ConfigSnapshot,
        request_id: Optional[str] = None,
    ) -> ProcessOutcome:
        bind_archive_context(post_id=post_id, url=url, request_id=request_id)
        started = time.perf_counter()
        try:
            outcome = self.process_url(post_id, url, config)
        except Exception:
            logger.exception("archive.unhandled_error")
            raise
        finally:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.debug("archive.finished", elapsed_ms=elapsed_ms)
            clear_correlation_context()
        return outcome

    def process_url(
        self, post_id: str, url: str, config: ConfigSnapshot
    ) -> ProcessOutcome:
        try:
            if self.store.is_already_archived(post_id, url):
                logger.info("archive.skipped_already_archived", post_id=post_id, url=url)
                return ProcessOutcome.SKIPPED
        except Exception as exc:
            logger.error("archive.per_post_check_failed", url=url, error=str(exc))

        url_metadata: Optional[URLMetadata]
        try:
            url_metadata = self.detector.probe(url)
        except ArchiveError as exc:
            logger.warning("archive.probe_failed", url=url, error=str(exc))
            url_metadata = None

        try:
            existing = self.store.existing_global_archive(url)
        except Exception as exc:
            logger.warning("archive.global_lookup_failed", url=url, error=str(exc))
            existing = None

        observed_etag = url_metadata.etag if url_metadata else ""

        if existing is not None and url_metadata is not None:
            if existing.etag and observed_etag and existing.etag == observed_etag:
                logger.info("archive.reused_etag", url=url, file_id=existing.fileId)
                metadata = self.store.record_for_reused_artifact(post_id, url, existing)
                if not self._reply_with_artifact(post_id, url, metadata, existing.postId):
                    return ProcessOutcome.REUSED_ETAG
                self._persist_per_post(metadata)
                return ProcessOutcome.REUSED_ETAG

        if url_metadata is not None and url_metadata.mime_type:
            mime_type = url_metadata.mime_type
        else:
            try:
                mime_type = self.detector.detect_mime_type(url)
            except ArchiveError as exc:
                logger.error("archive.mime_detection_failed", url=url, error=str(exc))
                self._reply_with_error(post_id, url, exc)
                return ProcessOutcome.FAILED

        tool_name = self.select_tool(url, mime_type, config)
        if not tool_name:
            return self._fail(
                post_id,
                url,
                PolicyError(f"no archival tool found for MIME type: {mime_type}", url=url),
            )
        if tool_name == DO_NOTHING_TOOL:
            logger.info("archive.ignored", url=url, mime_type=mime_type)
            return ProcessOutcome.IGNORED

        tool = self.registry.get(tool_name)
        if tool is None:
            return self._fail(
                post_id, url, PolicyError(f"archival tool not found: {tool_name}", url=url)
            )

        try:
            archived = tool.archive(url, mime_type)
        except ArchiveError as exc:
            return self._fail(post_id, url, exc)
        except Exception as exc:
            logger.exception("archive.tool_crashed", url=url, tool=tool_name)
            return self._fail(
                post_id, url, ArchiveError(f"failed to archive URL: {exc}", url=url)
            )

        if existing is not None and existing.contentHash:
            if existing.contentHash == content_hash(archived.data):
                return self._reuse_by_hash(post_id, url, existing, observed_etag)
            logger.info(
                "archive.content_changed", url=url, previous_hash=existing.contentHash
            )

        try:
            metadata = self.store.store_new_artifact(post_id, url, archived, tool_name)
        except ArchiveError as exc:
            return self._fail(post_id, url, exc)

        if observed_etag:
            metadata.etag = observed_etag

        self._reply_with_artifact(post_id, url, metadata, None)
        self._persist_per_post(metadata)
        try:
            self.store.persist_global(metadata)
        except ArchiveError as exc:
            logger.warning("archive.global_persist_failed", url=url, error=str(exc))

        logger.info(
            "archive.archived",
            url=url,
            post_id=post_id,
            file_id=metadata.fileId,
            tool=tool_name,
            size=metadata.size,
        )
        return ProcessOutcome.ARCHIVED

    def _reuse_by_hash(
        self, post_id: str, url: str, existing: ArchiveMetadata, observed_etag: str
    ) -> ProcessOutcome:
        logger.info("archive.reused_hash", url=url, file_id=existing.fileId)
        metadata = self.store.record_for_reused_artifact(post_id, url, existing)
        if observed_etag:
            metadata.etag = observed_etag

        if not self._reply_with_artifact(post_id, url, metadata, existing.postId):
            return ProcessOutcome.REUSED_HASH
        self._persist_per_post(metadata)

        if observed_etag:
            try:
                self.store.refresh_global(url, existing, observed_etag)
            except ArchiveError as exc:
                logger.warning("archive.global_refresh_failed", url=url, error=str(exc))
        return ProcessOutcome.REUSED_HASH

    def _fail(self, post_id: str, url: str, error: ArchiveError) -> ProcessOutcome:
        logger.error(
            "archive.failed", url=url, error=str(error), kind=error.kind.value
        )
        self._reply_with_error(post_id, url, error)
        return ProcessOutcome.FAILED

    def _reply_with_artifact(
        self,
        post_id: str,
        url: str,
        metadata: ArchiveMetadata,
        original_post_id: Optional[str],
    ) -> bool:
        try:
            self.notifier.reply_with_attachment(
                post_id,
                metadata.fileId,
                url,
                metadata.filename,
                metadata.mimeType,
                metadata.size,
                original_post_id,
            )
        except Exception as exc:
            logger.error("archive.reply_failed", url=url, error=str(exc))
            return False
        return True

    def _reply_with_error(self, post_id: str, url: str, error: BaseException) -> None:
        try:
            self.notifier.reply_with_error(post_id, url, error)
        except Exception as exc:
            logger.error("archive.error_reply_failed", url=url, error=str(exc))

    def _persist_per_post(self, metadata: ArchiveMetadata) -> None:
        try:
            self.store.persist_per_post(metadata)
        except ArchiveError as exc:
            logger.error(
                "archive.per_post_persist_failed",
                url=metadata.originalUrl,
                error=str(exc),
            )
