"""Key/value blob stores backing rule configuration and archive records.

Every store offers ``update(key, mutate)``: ``mutate`` receives the current
value (``None`` when absent) and returns the value to write, or ``None`` to
leave the key untouched. Calls for the same key never interleave.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable, Optional

from google.api_core.exceptions import GoogleAPICallError
from google.cloud import firestore

from app.services.firestore_client import FirestoreError, require_client

logger = logging.getLogger(__name__)

Mutator = Callable[[Optional[bytes]], Optional[bytes]]

VALUE_FIELD = "value"


class KVStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    def update(self, key: str, mutate: Mutator) -> Optional[bytes]:
        """Atomically apply ``mutate`` to ``key`` and return what was written."""
        raise NotImplementedError


class MemoryKVStore(KVStore):
    """Process-local store; per-key locks serialize ``update``."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._guard = threading.Lock()
        self._key_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._key_locks[key]

    def get(self, key: str) -> Optional[bytes]:
        with self._guard:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock_for(key):
            with self._guard:
                self._data[key] = bytes(value)

    def update(self, key: str, mutate: Mutator) -> Optional[bytes]:
        with self._lock_for(key):
            with self._guard:
                current = self._data.get(key)
            new_value = mutate(current)
            if new_value is None:
                return current
            with self._guard:
                self._data[key] = bytes(new_value)
            return new_value

    def keys(self) -> list[str]:
        with self._guard:
            return sorted(self._data)


class FirestoreKVStore(KVStore):
    """One document per key with the raw value in a bytes field."""

    def __init__(self, collection: str, client: Optional[firestore.Client] = None) -> None:
        self.collection_name = collection
        self._client = client

    @property
    def db(self) -> firestore.Client:
        return self._client or require_client()

    def _ref(self, key: str):
        return self.db.collection(self.collection_name).document(key)

    def get(self, key: str) -> Optional[bytes]:
        try:
            snapshot = self._ref(key).get()
        except GoogleAPICallError as exc:
            logger.error("Firestore error reading key %s: %s", key, exc)
            raise FirestoreError(f"Failed to read key {key}.") from exc
        if not snapshot.exists:
            return None
        value = (snapshot.to_dict() or {}).get(VALUE_FIELD)
        return bytes(value) if value is not None else None

    def set(self, key: str, value: bytes) -> None:
        try:
            self._ref(key).set({VALUE_FIELD: bytes(value)})
        except GoogleAPICallError as exc:
            logger.error("Firestore error writing key %s: %s", key, exc)
            raise FirestoreError(f"Failed to write key {key}.") from exc

    def update(self, key: str, mutate: Mutator) -> Optional[bytes]:
        ref = self._ref(key)

        @firestore.transactional
        def _apply(transaction, doc_ref):
            snapshot = doc_ref.get(transaction=transaction)
            current = None
            if snapshot.exists:
                raw = (snapshot.to_dict() or {}).get(VALUE_FIELD)
                current = bytes(raw) if raw is not None else None
            new_value = mutate(current)
            if new_value is None:
                return current
            transaction.set(doc_ref, {VALUE_FIELD: bytes(new_value)})
            return new_value

        try:
            transaction = self.db.transaction()
            return _apply(transaction, ref)
        except GoogleAPICallError as exc:
            logger.error("Firestore error updating key %s: %s", key, exc)
            raise FirestoreError(f"Failed to update key {key}.") from exc
