from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

RULE_KIND_HOSTNAME = "hostname"
RULE_KIND_MIMETYPE = "mimetype"
RULE_KINDS = (RULE_KIND_HOSTNAME, RULE_KIND_MIMETYPE)

DO_NOTHING_TOOL = "do_nothing"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept stored ISO strings (``Z`` suffix allowed) or datetimes; naive means UTC."""
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ArchivalRule:
    """Maps a hostname or MIME type pattern to an archival tool name."""

    kind: str
    pattern: str
    archivalTool: str

    @property
    def is_catch_all(self) -> bool:
        return self.pattern == ""

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchivalRule":
        return cls(
            kind=str(data.get("kind") or ""),
            pattern=str(data.get("pattern") or ""),
            archivalTool=str(data.get("archivalTool") or ""),
        )


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable rule configuration observed by one processing pass."""

    rules: tuple[ArchivalRule, ...] = ()
    default_tool: str = DO_NOTHING_TOOL

    @property
    def effective_rules(self) -> tuple[ArchivalRule, ...]:
        """User rules followed by the catch-all rule for ``default_tool``."""
        catch_all = ArchivalRule(
            kind=RULE_KIND_MIMETYPE, pattern="", archivalTool=self.default_tool
        )
        return (*self.rules, catch_all)

    def to_dict(self) -> dict[str, Any]:
        return {
            "archivalRules": [rule.to_dict() for rule in self.rules],
            "defaultArchivalTool": self.default_tool,
        }


@dataclass(frozen=True)
class URLMetadata:
    mime_type: str = ""
    etag: str = ""
    size: int = -1


@dataclass
class ArchivedFile:
    filename: str
    data: bytes
    mime_type: str
    size: int = 0

    def __post_init__(self) -> None:
        if not self.size:
            self.size = len(self.data)


@dataclass
class ArchiveMetadata:
    """A stored artifact as seen from one post, or globally for one URL."""

    postId: str
    originalUrl: str
    fileId: str
    filename: str
    mimeType: str
    archivedAt: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    toolUsed: str = ""
    size: int = 0
    etag: Optional[str] = None
    contentHash: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-ready dict, omitting empty etag/contentHash."""
        payload = asdict(self)
        payload["archivedAt"] = self.archivedAt.isoformat()
        for optional_field in ("etag", "contentHash"):
            if not payload.get(optional_field):
                payload.pop(optional_field, None)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveMetadata":
        known_fields = {f.name for f in cls.__dataclass_fields__.values()}  # type: ignore[attr-defined]
        filtered = {k: v for k, v in data.items() if k in known_fields}
        archived_at = parse_timestamp(filtered.get("archivedAt"))
        filtered["archivedAt"] = archived_at or datetime.now(timezone.utc)
        filtered["size"] = int(filtered.get("size") or 0)
        return cls(**filtered)
