"""Ordered, first-match-wins selection of an archival tool for a URL."""

from __future__ import annotations

from typing import Any, Iterable, Sequence
from urllib.parse import urlsplit

import structlog

from app.models.archive import (
    DO_NOTHING_TOOL,
    RULE_KIND_HOSTNAME,
    RULE_KIND_MIMETYPE,
    RULE_KINDS,
    ArchivalRule,
)

logger = structlog.get_logger(__name__)


class RuleValidationError(ValueError):
    """A user-supplied rule is missing a field or uses an unknown kind."""

    def __init__(self, message: str, index: int) -> None:
        super().__init__(message)
        self.index = index


def hostname_of(url: str) -> str:
    """Host portion of ``url`` with case preserved; ``""`` when unparsable."""
    try:
        netloc = urlsplit(url).netloc
    except ValueError:
        return ""
    host = netloc.rpartition("@")[2]
    if host.startswith("["):
        return host[1:].partition("]")[0]
    return host.partition(":")[0]


def hostname_matches(hostname: str, pattern: str) -> bool:
    if hostname == pattern:
        return True
    if pattern.startswith("*."):
        suffix = pattern[2:]
        if not suffix:
            return False
        return hostname == suffix or hostname.endswith("." + suffix)
    return False


def mime_type_matches(mime_type: str, pattern: str) -> bool:
    if mime_type == pattern:
        return True
    if pattern.endswith("/*"):
        prefix = pattern[:-2]
        return mime_type.startswith(prefix + "/")
    return False


def rule_matches(hostname: str, mime_type: str, rule: ArchivalRule) -> bool:
    if not rule.kind:
        return False
    if rule.pattern == "":
        return True
    if rule.kind == RULE_KIND_HOSTNAME:
        return hostname_matches(hostname, rule.pattern)
    if rule.kind == RULE_KIND_MIMETYPE:
        return mime_type_matches(mime_type, rule.pattern)
    return False


def select_tool(url: str, mime_type: str, rules: Iterable[ArchivalRule]) -> str:
    """Return the tool of the first matching rule, or ``do_nothing``."""
    hostname = hostname_of(url)
    for index, rule in enumerate(rules):
        if rule_matches(hostname, mime_type, rule):
            logger.debug(
                "rules.matched",
                index=index,
                hostname=hostname,
                mime_type=mime_type,
                kind=rule.kind,
                pattern=rule.pattern,
                tool=rule.archivalTool,
            )
            return rule.archivalTool
    logger.info("rules.no_match", hostname=hostname, mime_type=mime_type)
    return DO_NOTHING_TOOL


def validate_rules(rules: Sequence[ArchivalRule]) -> None:
    for index, rule in enumerate(rules):
        if not rule.kind:
            raise RuleValidationError(
                f"Rule at index {index} must have a kind (hostname or mimetype)", index
            )
        if rule.kind not in RULE_KINDS:
            raise RuleValidationError(
                f"Rule at index {index} has invalid kind '{rule.kind}'. "
                "Must be 'hostname' or 'mimetype'",
                index,
            )
        if not rule.pattern:
            raise RuleValidationError(f"Rule at index {index} must have a pattern", index)
        if not rule.archivalTool:
            raise RuleValidationError(
                f"Rule at index {index} must have an archival tool", index
            )


def migrate_legacy_mappings(mappings: Iterable[dict[str, Any]]) -> list[ArchivalRule]:
    """Convert ``{mimeTypePattern, archivalTool}`` mappings into mimetype rules."""
    return [
        ArchivalRule(
            kind=RULE_KIND_MIMETYPE,
            pattern=str(mapping.get("mimeTypePattern") or ""),
            archivalTool=str(mapping.get("archivalTool") or ""),
        )
        for mapping in mappings
    ]


def strip_catch_all(rules: Sequence[ArchivalRule]) -> tuple[ArchivalRule, ...]:
    """Drop trailing empty-pattern rules left behind by older configurations."""
    trimmed = list(rules)
    while trimmed and trimmed[-1].is_catch_all:
        trimmed.pop()
    return tuple(trimmed)
