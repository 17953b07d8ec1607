"""Tool-provider capability consumed by the tool orchestrator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from flowrun.errors import Result


class ProviderStatus(StrEnum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass
class MCPTool:
    """A tool as listed by a provider, before namespacing."""

    name: str
    description: str
    input_schema: dict[str, Any]
    server_name: str


class ToolProviderService(ABC):
    """
    Lifecycle and invocation of named tool providers.

    Every operation returns a Result; provider failures are values, not
    exceptions.
    """

    @abstractmethod
    async def get_status(self, provider: str) -> ProviderStatus: ...

    @abstractmethod
    async def connect(self, provider: str, env: dict[str, str] | None = None) -> Result[None]: ...

    @abstractmethod
    async def list_tools(self, provider: str) -> Result[list[MCPTool]]: ...

    @abstractmethod
    async def call_tool(
        self, provider: str, tool: str, arguments: dict[str, Any]
    ) -> Result[Any]: ...
