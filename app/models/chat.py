from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Post:
    id: str
    channel_id: str = ""
    user_id: str = ""
    root_id: str = ""
    message: str = ""

    @property
    def thread_root_id(self) -> str:
        """The post a reply should hang off: the thread root, or the post itself."""
        return self.root_id or self.id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Post":
        return cls(
            id=str(data.get("id") or ""),
            channel_id=str(data.get("channel_id") or ""),
            user_id=str(data.get("user_id") or ""),
            root_id=str(data.get("root_id") or ""),
            message=str(data.get("message") or ""),
        )


@dataclass(frozen=True)
class Channel:
    id: str
    team_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Channel":
        return cls(id=str(data.get("id") or ""), team_id=str(data.get("team_id") or ""))


@dataclass(frozen=True)
class Team:
    id: str
    name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Team":
        return cls(id=str(data.get("id") or ""), name=str(data.get("name") or ""))


@dataclass
class NewPost:
    channel_id: str
    message: str
    root_id: str = ""
    file_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "channel_id": self.channel_id,
            "message": self.message,
        }
        if self.root_id:
            payload["root_id"] = self.root_id
        if self.file_ids:
            payload["file_ids"] = list(self.file_ids)
        return payload
