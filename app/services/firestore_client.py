"""Lazily created Firestore client shared by the Firestore KV store."""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional

from google.cloud import firestore  # type: ignore[attr-defined]

logger = logging.getLogger(__name__)

SKIP_INIT_ENV = "LINK_ARCHIVER_SKIP_FIRESTORE_INIT"


class FirestoreError(Exception):
    """Firestore is unavailable or rejected a KV operation."""


_lock = threading.Lock()
_client: Optional[firestore.Client] = None


def _skip_init() -> bool:
    return os.getenv(SKIP_INIT_ENV, "").strip().lower() in {"1", "true", "yes", "on"}


def get_client() -> Optional[firestore.Client]:
    """Return the shared client, creating it on first use; ``None`` if it cannot be built."""
    global _client
    if _client is not None or _skip_init():
        return _client
    with _lock:
        if _client is None:
            project = os.getenv("GOOGLE_CLOUD_PROJECT") or os.getenv("GCP_PROJECT_ID")
            try:
                _client = firestore.Client(project=project)
            except Exception as exc:
                logger.critical("Failed to initialize Firestore client: %s", exc)
    return _client


def require_client() -> firestore.Client:
    client = get_client()
    if client is None:
        raise FirestoreError(
            "Firestore client is not initialized. Check GCP_PROJECT_ID and credentials."
        )
    return client
