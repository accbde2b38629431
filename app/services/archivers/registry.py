from __future__ import annotations

from typing import Iterable, Optional

from app.services.archivers.base import ArchivalTool
from app.services.archivers.direct_download import DirectDownload
from app.services.archivers.page_snapshot import PageSnapshot


class ToolRegistry:
    """Archival tools addressable by name."""

    def __init__(self, tools: Iterable[ArchivalTool] = ()) -> None:
        self._tools: dict[str, ArchivalTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ArchivalTool) -> None:
        if not tool.name:
            raise ValueError("archival tool must have a name")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ArchivalTool]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)


def default_registry(session=None) -> ToolRegistry:
    return ToolRegistry([DirectDownload(session=session), PageSnapshot(session=session)])
