"""Readiness checks for the stores the archiver writes to."""

import logging
import time
from pathlib import Path
from typing import Callable

from google.cloud.exceptions import GoogleCloudError

from app.services.kvstore import KVStore
from app.services.storage import GCSObjectStore, LocalObjectStore, ObjectStore

logger = logging.getLogger(__name__)

PROBE_KEY = "health_check"

Check = Callable[[], str]


def check_kv(kv: KVStore) -> str:
    kv.get(PROBE_KEY)
    return "OK"


def check_object_store(objects: ObjectStore) -> str:
    if isinstance(objects, GCSObjectStore):
        if not objects.bucket_name:
            return "MissingBucket"
        client = objects._get_storage_client()
        if client.lookup_bucket(objects.bucket_name) is None:
            logger.error("GCS bucket '%s' not found or inaccessible.", objects.bucket_name)
            return "MissingBucket"
    elif isinstance(objects, LocalObjectStore):
        root = Path(objects.root)
        root.mkdir(parents=True, exist_ok=True)
    return "OK"


def _run(name: str, check: Check) -> str:
    started = time.perf_counter()
    try:
        status = check()
    except GoogleCloudError as exc:
        logger.error("health.%s_failed: %s", name, exc)
        status = "Error"
    except Exception as exc:
        logger.error("health.%s_unexpected_error: %s", name, exc)
        status = "Error"
    logger.debug(
        "health.checked",
        extra={"check": name, "status": status, "elapsed_ms": int((time.perf_counter() - started) * 1000)},
    )
    return status


def check_all_services(kv: KVStore, objects: ObjectStore) -> tuple[dict[str, str], bool]:
    """Run every check; returns ``({name: status}, all_ok)``."""
    checks: dict[str, Check] = {
        "kv_store": lambda: check_kv(kv),
        "object_store": lambda: check_object_store(objects),
    }
    results = {name: _run(name, check) for name, check in checks.items()}
    return results, all(status == "OK" for status in results.values())
