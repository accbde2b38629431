"""Rule configuration persisted in the KV store.

Readers get an immutable ``ConfigSnapshot``; writers replace the whole
snapshot. Snapshots are cached briefly so the per-message hook does not hit
the store for every URL.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Iterable, Optional

import structlog
from cachetools import TTLCache

from app.config import settings
from app.models.archive import DO_NOTHING_TOOL, ArchivalRule, ConfigSnapshot
from app.services.kvstore import KVStore
from app.services.rules import migrate_legacy_mappings, strip_catch_all, validate_rules

logger = structlog.get_logger(__name__)

ARCHIVAL_RULES_KEY = "archival_rules"
DEFAULT_ARCHIVAL_TOOL_KEY = "default_archival_tool"
LEGACY_MAPPINGS_KEY = "mime_type_mappings"

_CACHE_KEY = "snapshot"


def _rules_from_payload(payload: Any) -> tuple[ArchivalRule, ...]:
    if not isinstance(payload, list):
        raise ValueError("archival rules must be a JSON list")
    return tuple(
        ArchivalRule.from_dict(item) for item in payload if isinstance(item, dict)
    )


class ConfigStore:
    def __init__(self, kv_store: KVStore, *, cache_seconds: Optional[float] = None) -> None:
        self.kv = kv_store
        ttl = settings.RULES_CACHE_SECONDS if cache_seconds is None else cache_seconds
        self._cache: Optional[TTLCache] = (
            TTLCache(maxsize=1, ttl=ttl) if ttl and ttl > 0 else None
        )
        self._lock = threading.Lock()

    def current(self) -> ConfigSnapshot:
        if self._cache is not None:
            with self._lock:
                cached = self._cache.get(_CACHE_KEY)
            if cached is not None:
                return cached
        snapshot = self._load()
        if self._cache is not None:
            with self._lock:
                self._cache[_CACHE_KEY] = snapshot
        return snapshot

    def invalidate(self) -> None:
        if self._cache is not None:
            with self._lock:
                self._cache.clear()

    def _load(self) -> ConfigSnapshot:
        try:
            rules = self._load_rules()
        except Exception as exc:
            logger.error("rule_config.rules_load_failed", error=str(exc))
            rules = ()
        try:
            raw_default = self.kv.get(DEFAULT_ARCHIVAL_TOOL_KEY)
        except Exception as exc:
            logger.error("rule_config.default_load_failed", error=str(exc))
            raw_default = None
        default_tool = raw_default.decode("utf-8").strip() if raw_default else ""
        return ConfigSnapshot(
            rules=strip_catch_all(rules), default_tool=default_tool or DO_NOTHING_TOOL
        )

    def _load_rules(self) -> tuple[ArchivalRule, ...]:
        raw = self.kv.get(ARCHIVAL_RULES_KEY)
        if raw is not None:
            return _rules_from_payload(json.loads(raw))

        legacy = self.kv.get(LEGACY_MAPPINGS_KEY)
        if legacy is None:
            return ()
        try:
            mappings = json.loads(legacy)
        except ValueError:
            logger.warning("rule_config.legacy_undecodable")
            return ()
        if not isinstance(mappings, list):
            return ()
        rules = tuple(
            migrate_legacy_mappings(m for m in mappings if isinstance(m, dict))
        )
        try:
            self._save_rules(rules)
        except Exception as exc:
            logger.warning("rule_config.migration_save_failed", error=str(exc))
        else:
            logger.info("rule_config.legacy_migrated", count=len(rules))
        return rules

    def _save_rules(self, rules: Iterable[ArchivalRule]) -> None:
        payload = json.dumps([rule.to_dict() for rule in rules]).encode("utf-8")
        self.kv.set(ARCHIVAL_RULES_KEY, payload)

    def update(self, rules: Iterable[ArchivalRule], default_tool: str) -> ConfigSnapshot:
        """Validate and persist a complete configuration, replacing the old one."""
        rules = strip_catch_all(tuple(rules))
        validate_rules(rules)
        snapshot = ConfigSnapshot(rules=rules, default_tool=default_tool or DO_NOTHING_TOOL)
        self._save_rules(snapshot.rules)
        self.kv.set(DEFAULT_ARCHIVAL_TOOL_KEY, snapshot.default_tool.encode("utf-8"))
        if self._cache is not None:
            with self._lock:
                self._cache[_CACHE_KEY] = snapshot
        logger.info(
            "rule_config.updated",
            rule_count=len(snapshot.rules),
            default_tool=snapshot.default_tool,
        )
        return snapshot

    def apply_setting(self, raw_json: Optional[str]) -> ConfigSnapshot:
        """Apply the admin setting blob (``archivalRules`` or ``mimeTypeMappings``).

        An unparsable or empty setting leaves the stored configuration alone.
        """
        if not raw_json:
            return self.current()
        try:
            setting = json.loads(raw_json)
            if not isinstance(setting, dict):
                raise ValueError("setting must be a JSON object")
        except ValueError as exc:
            logger.warning("rule_config.setting_unparsable", error=str(exc))
            return self.current()

        rules: tuple[ArchivalRule, ...] = ()
        if setting.get("archivalRules"):
            rules = _rules_from_payload(setting["archivalRules"])
        elif setting.get("mimeTypeMappings"):
            mappings = setting["mimeTypeMappings"]
            if isinstance(mappings, list):
                rules = tuple(
                    migrate_legacy_mappings(m for m in mappings if isinstance(m, dict))
                )
                logger.info("rule_config.legacy_migrated", count=len(rules))
        default_tool = setting.get("defaultArchivalTool") or DO_NOTHING_TOOL
        rules = strip_catch_all(rules)

        snapshot = ConfigSnapshot(rules=rules, default_tool=str(default_tool))
        try:
            self._save_rules(snapshot.rules)
            self.kv.set(DEFAULT_ARCHIVAL_TOOL_KEY, snapshot.default_tool.encode("utf-8"))
        except Exception as exc:
            logger.warning("rule_config.setting_save_failed", error=str(exc))
        if self._cache is not None:
            with self._lock:
                self._cache[_CACHE_KEY] = snapshot
        logger.info(
            "rule_config.setting_applied",
            rule_count=len(snapshot.rules),
            default_tool=snapshot.default_tool,
        )
        return snapshot
