"""Archive records and artifact persistence.

Two record families live in the KV store:

* ``archive_post_<postId>_<sha256(url)>``: JSON list of every archive made
  for that URL in that post, appended to and never rewritten.
* ``archive_url_<sha256(url)>``: JSON object describing the newest artifact
  for the URL across all posts.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from app.models.archive import ArchivedFile, ArchiveMetadata
from app.models.chat import Post
from app.services.exceptions import ArchiveError, StorageError
from app.services.kvstore import KVStore
from app.services.storage import ObjectStore

logger = structlog.get_logger(__name__)

PER_POST_PREFIX = "archive_post_"
GLOBAL_PREFIX = "archive_url_"


def url_digest(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def per_post_key(post_id: str, url: str) -> str:
    return f"{PER_POST_PREFIX}{post_id}_{url_digest(url)}"


def global_key(url: str) -> str:
    return f"{GLOBAL_PREFIX}{url_digest(url)}"


def _decode_list(raw: Optional[bytes]) -> list[ArchiveMetadata]:
    """Decode a per-post list; raises ``ValueError`` for anything malformed."""
    if raw is None:
        return []
    payload = json.loads(raw)
    if not isinstance(payload, list):
        raise ValueError("per-post archive record is not a list")
    entries = []
    for item in payload:
        if not isinstance(item, dict):
            raise ValueError("per-post archive entry is not an object")
        entries.append(ArchiveMetadata.from_dict(item))
    return entries


def _encode(payload) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class ArchiveStore:
    def __init__(
        self,
        kv_store: KVStore,
        object_store: ObjectStore,
        post_lookup: Callable[[str], Post],
    ) -> None:
        self.kv = kv_store
        self.objects = object_store
        self.post_lookup = post_lookup

    def _read(self, key: str) -> Optional[bytes]:
        try:
            return self.kv.get(key)
        except ArchiveError:
            raise
        except Exception as exc:
            raise StorageError(f"failed to read archive record {key}: {exc}") from exc

    def is_already_archived(self, post_id: str, url: str) -> bool:
        raw = self._read(per_post_key(post_id, url))
        try:
            entries = _decode_list(raw)
        except (TypeError, ValueError):
            logger.warning("archive_store.per_post_undecodable", post_id=post_id, url=url)
            return False
        return any(entry.originalUrl == url for entry in entries)

    def post_archives(self, post_id: str, url: str) -> list[ArchiveMetadata]:
        raw = self._read(per_post_key(post_id, url))
        try:
            return _decode_list(raw)
        except (TypeError, ValueError):
            logger.warning("archive_store.per_post_undecodable", post_id=post_id, url=url)
            return []

    def existing_global_archive(self, url: str) -> Optional[ArchiveMetadata]:
        raw = self._read(global_key(url))
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("global archive record is not an object")
            return ArchiveMetadata.from_dict(payload)
        except (TypeError, ValueError) as exc:
            raise StorageError(
                f"failed to decode existing archive metadata: {exc}", url=url
            ) from exc

    def store_new_artifact(
        self, post_id: str, url: str, archived: ArchivedFile, tool_name: str
    ) -> ArchiveMetadata:
        """Upload ``archived`` next to the post and describe it; nothing is persisted yet."""
        try:
            post = self.post_lookup(post_id)
        except Exception as exc:
            raise StorageError(f"failed to store file: failed to get post: {exc}", url=url) from exc

        try:
            file_id = self.objects.upload(
                archived.data, post.channel_id, archived.filename, archived.mime_type
            )
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"failed to store file: {exc}", url=url) from exc

        logger.info(
            "archive_store.artifact_stored",
            post_id=post_id,
            url=url,
            file_id=file_id,
            size=archived.size,
        )
        return ArchiveMetadata(
            postId=post_id,
            originalUrl=url,
            fileId=file_id,
            filename=archived.filename,
            mimeType=archived.mime_type,
            archivedAt=datetime.now(timezone.utc),
            toolUsed=tool_name,
            size=archived.size,
            contentHash=content_hash(archived.data),
        )

    def record_for_reused_artifact(
        self, post_id: str, url: str, prior: ArchiveMetadata
    ) -> ArchiveMetadata:
        return replace(
            prior,
            postId=post_id,
            originalUrl=url,
            archivedAt=datetime.now(timezone.utc),
        )

    def persist_per_post(self, metadata: ArchiveMetadata) -> None:
        key = per_post_key(metadata.postId, metadata.originalUrl)

        def _append(current: Optional[bytes]) -> bytes:
            try:
                entries = [entry.to_dict() for entry in _decode_list(current)]
            except (TypeError, ValueError):
                logger.warning(
                    "archive_store.per_post_reset",
                    post_id=metadata.postId,
                    url=metadata.originalUrl,
                )
                entries = []
            entries.append(metadata.to_dict())
            return _encode(entries)

        self._update(key, _append)

    def persist_global(self, metadata: ArchiveMetadata) -> None:
        payload = _encode(metadata.to_dict())
        self._update(global_key(metadata.originalUrl), lambda _current: payload)

    def refresh_global(
        self, url: str, prior: ArchiveMetadata, etag: Optional[str]
    ) -> bool:
        """Stamp a new ETag and time on the global record if it still names ``prior``."""
        refreshed = {}

        def _refresh(current: Optional[bytes]) -> Optional[bytes]:
            if current is None:
                return None
            try:
                existing = ArchiveMetadata.from_dict(json.loads(current))
            except (TypeError, ValueError, AttributeError):
                return None
            if existing.fileId != prior.fileId:
                return None
            updated = replace(
                existing,
                etag=etag or existing.etag,
                archivedAt=datetime.now(timezone.utc),
            )
            refreshed["metadata"] = updated
            return _encode(updated.to_dict())

        self._update(global_key(url), _refresh)
        if refreshed:
            logger.info("archive_store.global_refreshed", url=url, etag=etag)
            return True
        logger.info("archive_store.global_refresh_skipped", url=url)
        return False

    def _update(self, key: str, mutate) -> None:
        try:
            self.kv.update(key, mutate)
        except ArchiveError:
            raise
        except Exception as exc:
            raise StorageError(f"failed to store archive record {key}: {exc}") from exc
