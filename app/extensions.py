"""Service wiring shared by the app factory, routes and tests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from app.config import AppSettings, ChatConfig
from app.services.archive_store import ArchiveStore
from app.services.archivers.registry import ToolRegistry, default_registry
from app.services.chat_client import ChatClient
from app.services.content_detector import ContentDetector
from app.services.kvstore import FirestoreKVStore, KVStore, MemoryKVStore
from app.services.notifier import ThreadNotifier
from app.services.processor import ArchiveProcessor
from app.services.rule_config import ConfigStore
from app.services.storage import GCSObjectStore, LocalObjectStore, ObjectStore

logger = logging.getLogger(__name__)

EXTENSION_KEY = "link_archiver"


@dataclass
class ArchiverServices:
    settings: AppSettings
    kv: KVStore
    objects: ObjectStore
    chat: object
    config_store: ConfigStore
    store: ArchiveStore
    processor: ArchiveProcessor
    bot_user_id: Optional[str] = None


def build_kv_store(app_settings: AppSettings) -> KVStore:
    backend = app_settings.KV_BACKEND.strip().lower()
    if backend == "firestore":
        return FirestoreKVStore(app_settings.FIRESTORE_KV_COLLECTION)
    if backend != "memory":
        logger.error("Unsupported KV_BACKEND '%s'; falling back to memory.", backend)
    return MemoryKVStore()


def build_object_store(app_settings: AppSettings) -> ObjectStore:
    backend = app_settings.OBJECT_STORE.strip().lower()
    if backend == "gcs":
        return GCSObjectStore(app_settings.GCS_BUCKET)
    if backend != "local":
        logger.error("Unsupported OBJECT_STORE '%s'; falling back to local.", backend)
    return LocalObjectStore(app_settings.LOCAL_STORAGE_DIR)


def build_services(
    app_settings: AppSettings,
    *,
    kv: Optional[KVStore] = None,
    objects: Optional[ObjectStore] = None,
    chat=None,
    registry: Optional[ToolRegistry] = None,
    detector: Optional[ContentDetector] = None,
) -> ArchiverServices:
    chat_config = ChatConfig.from_env()
    if chat is None:
        if not chat_config.is_valid:
            raise RuntimeError(
                "CHAT_API_URL and CHAT_BOT_TOKEN must be set to reply to posts."
            )
        chat = ChatClient(chat_config)

    kv = kv or build_kv_store(app_settings)
    objects = objects or build_object_store(app_settings)
    store = ArchiveStore(kv, objects, chat.get_post)
    processor = ArchiveProcessor(
        detector=detector or ContentDetector(),
        registry=registry or default_registry(),
        store=store,
        notifier=ThreadNotifier(chat),
        max_workers=app_settings.ARCHIVE_CONCURRENCY,
    )
    return ArchiverServices(
        settings=app_settings,
        kv=kv,
        objects=objects,
        chat=chat,
        config_store=ConfigStore(kv, cache_seconds=app_settings.RULES_CACHE_SECONDS),
        store=store,
        processor=processor,
        bot_user_id=chat_config.bot_user_id or getattr(chat, "bot_user_id", None),
    )


def get_services() -> ArchiverServices:
    return current_app.extensions[EXTENSION_KEY]
