"""Binary object stores for archived artifacts.

``upload`` returns an artifact id that chat replies and archive records
refer to. Objects are grouped by container (the channel a post lives in).
"""

import logging
import os
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

from google.auth import default as google_auth_default
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import storage  # type: ignore[attr-defined]
from google.cloud.exceptions import Forbidden, GoogleCloudError

from app.services.exceptions import StorageError

logger = logging.getLogger(__name__)

_TRANSIENT_STORAGE_STATUS = {429, 500, 502, 503, 504}
_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")

MAX_STORAGE_ATTEMPTS = int(os.getenv("STORAGE_UPLOAD_ATTEMPTS", "3"))
STORAGE_RETRY_INITIAL_BACKOFF = float(os.getenv("STORAGE_RETRY_INITIAL_BACKOFF", "0.5"))
STORAGE_CLIENT_TTL = float(os.getenv("STORAGE_CLIENT_TTL_SECONDS", "900"))
STORAGE_BUCKET_REFRESH_SECONDS = float(
    os.getenv("STORAGE_BUCKET_REFRESH_SECONDS", "300")
)


def _classify_storage_error(exc: GoogleCloudError) -> str:
    """Return 'transient', 'permanent', or 'unknown' for a storage error."""
    status = getattr(exc, "code", None)
    status_code = None
    if isinstance(status, int):
        status_code = status
    else:
        value = getattr(status, "value", None)
        if isinstance(value, int):
            status_code = value
    if status_code is not None:
        if status_code in _TRANSIENT_STORAGE_STATUS:
            return "transient"
        if 400 <= status_code < 500:
            return "permanent"
    message = str(exc).lower()
    if any(
        phrase in message
        for phrase in ["permission", "forbidden", "not authorized", "not found"]
    ):
        return "permanent"
    return "unknown"


def safe_object_name(filename: str) -> str:
    cleaned = _UNSAFE_NAME_RE.sub("_", filename.strip()).strip("._")
    return cleaned or "file"


def object_key(container_id: str, filename: str) -> str:
    """``<container>/<random id>/<filename>``; unique per upload."""
    return "/".join(
        [safe_object_name(container_id), uuid.uuid4().hex, safe_object_name(filename)]
    )


class ObjectStore(ABC):
    @abstractmethod
    def upload(
        self, data: bytes, container_id: str, filename: str, content_type: str
    ) -> str:
        """Persist ``data`` and return its artifact id."""
        raise NotImplementedError


class GCSObjectStore(ObjectStore):
    def __init__(
        self,
        bucket_name: Optional[str] = None,
        *,
        client: Optional[storage.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.bucket_name = bucket_name or os.getenv("GCS_BUCKET")
        self._client = client
        self._client_expiry: float | None = None
        self._bucket_checked_at: float | None = None
        self._lock = threading.Lock()
        self._sleep = sleep

    def _get_storage_client(self) -> storage.Client:
        now = time.monotonic()
        if self._client is not None and (
            self._client_expiry is None or now < self._client_expiry
        ):
            return self._client

        project_hint = os.getenv("GOOGLE_CLOUD_PROJECT") or os.getenv("GCP_PROJECT_ID")
        try:
            credentials, detected_project = google_auth_default(
                scopes=("https://www.googleapis.com/auth/devstorage.read_write",)
            )
        except DefaultCredentialsError as exc:
            raise StorageError(
                "Google Cloud credentials not found. Provide GOOGLE_APPLICATION_CREDENTIALS "
                "or run with a service account that has Storage access."
            ) from exc

        self._client = storage.Client(
            project=project_hint or detected_project, credentials=credentials
        )
        self._client_expiry = now + STORAGE_CLIENT_TTL
        return self._client

    def _ensure_bucket(self, client: storage.Client) -> storage.Bucket:
        bucket = client.bucket(self.bucket_name)
        now = time.monotonic()
        if (
            self._bucket_checked_at is not None
            and now - self._bucket_checked_at < STORAGE_BUCKET_REFRESH_SECONDS
        ):
            return bucket

        try:
            exists = bucket.exists(timeout=10)
        except Forbidden as exc:
            raise StorageError(
                f"Service account lacks permission to access bucket {self.bucket_name}: {exc}"
            ) from exc
        except GoogleCloudError as exc:
            raise StorageError(
                f"Failed to validate bucket {self.bucket_name}: {exc}"
            ) from exc

        if not exists:
            raise StorageError(
                f"GCS bucket {self.bucket_name} does not exist or is not accessible."
            )

        self._bucket_checked_at = now
        return bucket

    def upload(
        self, data: bytes, container_id: str, filename: str, content_type: str
    ) -> str:
        if not self.bucket_name:
            raise StorageError("GCS_BUCKET environment variable not set.")

        with self._lock:
            client = self._get_storage_client()
            bucket = self._ensure_bucket(client)
        blob_name = object_key(container_id, filename)
        blob = bucket.blob(blob_name)

        for attempt in range(1, MAX_STORAGE_ATTEMPTS + 1):
            try:
                blob.upload_from_string(
                    data, content_type=content_type or "application/octet-stream"
                )
                logger.info(
                    "storage.uploaded",
                    extra={"blob": blob_name, "size": len(data), "attempt": attempt},
                )
                return blob_name
            except GoogleCloudError as exc:
                classification = _classify_storage_error(exc)
                if classification == "permanent" or attempt == MAX_STORAGE_ATTEMPTS:
                    logger.error(
                        "Google Cloud Storage error on attempt %s/%s (%s): %s",
                        attempt,
                        MAX_STORAGE_ATTEMPTS,
                        classification,
                        exc,
                    )
                    raise StorageError(f"failed to upload file: {exc}") from exc
                sleep_for = STORAGE_RETRY_INITIAL_BACKOFF * (2 ** (attempt - 1))
                logger.warning(
                    "Google Cloud Storage error on attempt %s/%s (%s): %s. Retrying in %.2fs",
                    attempt,
                    MAX_STORAGE_ATTEMPTS,
                    classification,
                    exc,
                    sleep_for,
                )
                self._sleep(sleep_for)

        raise StorageError("failed to upload file")


class LocalObjectStore(ObjectStore):
    """Writes artifacts below a directory; handy for development and tests."""

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root)

    def upload(
        self, data: bytes, container_id: str, filename: str, content_type: str
    ) -> str:
        artifact_id = object_key(container_id, filename)
        target = self.root / artifact_id
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            logger.error("Failed to write artifact %s: %s", target, exc)
            raise StorageError(f"failed to upload file: {exc}") from exc
        logger.info("storage.saved", extra={"path": str(target), "size": len(data)})
        return artifact_id

    def read(self, artifact_id: str) -> bytes:
        return (self.root / artifact_id).read_bytes()
