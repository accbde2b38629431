import json

import pytest

from app.models.archive import ArchivalRule
from app.services.kvstore import MemoryKVStore
from app.services.rule_config import (
    ARCHIVAL_RULES_KEY,
    DEFAULT_ARCHIVAL_TOOL_KEY,
    LEGACY_MAPPINGS_KEY,
    ConfigStore,
)
from app.services.rules import RuleValidationError

PDF_RULE = ArchivalRule(kind="mimetype", pattern="application/pdf", archivalTool="direct_download")


@pytest.fixture()
def kv():
    return MemoryKVStore()


def test_empty_store_defaults_to_do_nothing(kv):
    snapshot = ConfigStore(kv, cache_seconds=0).current()
    assert snapshot.rules == ()
    assert snapshot.default_tool == "do_nothing"


def test_update_persists_and_strips_catch_all(kv):
    store = ConfigStore(kv, cache_seconds=0)
    catch_all = ArchivalRule(kind="mimetype", pattern="", archivalTool="page_snapshot")
    snapshot = store.update([PDF_RULE, catch_all], "page_snapshot")

    assert snapshot.rules == (PDF_RULE,)
    assert json.loads(kv.get(ARCHIVAL_RULES_KEY)) == [PDF_RULE.to_dict()]
    assert kv.get(DEFAULT_ARCHIVAL_TOOL_KEY) == b"page_snapshot"
    assert store.current() == snapshot


def test_update_rejects_invalid_rules(kv):
    store = ConfigStore(kv, cache_seconds=0)
    with pytest.raises(RuleValidationError):
        store.update([ArchivalRule(kind="path", pattern="x", archivalTool="t")], "")
    assert kv.get(ARCHIVAL_RULES_KEY) is None


def test_legacy_mappings_are_migrated_on_read(kv):
    kv.set(
        LEGACY_MAPPINGS_KEY,
        json.dumps([{"mimeTypePattern": "application/pdf", "archivalTool": "direct_download"}]).encode(),
    )
    snapshot = ConfigStore(kv, cache_seconds=0).current()
    assert snapshot.rules == (PDF_RULE,)
    assert json.loads(kv.get(ARCHIVAL_RULES_KEY)) == [PDF_RULE.to_dict()]


def test_corrupt_rules_fall_back_to_defaults(kv):
    kv.set(ARCHIVAL_RULES_KEY, b"{broken")
    assert ConfigStore(kv, cache_seconds=0).current().rules == ()


def test_cached_snapshot_survives_until_invalidated(kv):
    store = ConfigStore(kv, cache_seconds=60)
    assert store.current().default_tool == "do_nothing"
    kv.set(DEFAULT_ARCHIVAL_TOOL_KEY, b"page_snapshot")
    assert store.current().default_tool == "do_nothing"
    store.invalidate()
    assert store.current().default_tool == "page_snapshot"


def test_apply_setting_with_rules(kv):
    store = ConfigStore(kv, cache_seconds=0)
    snapshot = store.apply_setting(
        json.dumps({"archivalRules": [PDF_RULE.to_dict()], "defaultArchivalTool": "page_snapshot"})
    )
    assert snapshot.rules == (PDF_RULE,)
    assert store.current().default_tool == "page_snapshot"


def test_apply_setting_with_legacy_mappings(kv):
    store = ConfigStore(kv, cache_seconds=0)
    snapshot = store.apply_setting(
        json.dumps(
            {"mimeTypeMappings": [{"mimeTypePattern": "application/pdf", "archivalTool": "direct_download"}]}
        )
    )
    assert snapshot.rules == (PDF_RULE,)
    assert snapshot.default_tool == "do_nothing"


def test_apply_setting_ignores_garbage(kv):
    store = ConfigStore(kv, cache_seconds=0)
    store.update([PDF_RULE], "page_snapshot")
    assert store.apply_setting("not json").rules == (PDF_RULE,)
    assert store.apply_setting("").default_tool == "page_snapshot"
