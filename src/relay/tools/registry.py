from __future__ import annotations

from relay.providers.base import ToolDefinition
from relay.tools.base import Tool


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> Tool | None:
        """Register ``tool`` under its definition name, returning any tool it replaced."""
        name = tool.definition().name
        previous = self._tools.get(name)
        self._tools[name] = tool
        return previous

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def contains(self, name: str) -> bool:
        return name in self._tools

    def remove(self, name: str) -> Tool | None:
        return self._tools.pop(name, None)

    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition() for _, tool in sorted(self._tools.items())]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
