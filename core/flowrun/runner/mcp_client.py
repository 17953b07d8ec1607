"""MCP client and provider pool.

``MCPClient`` talks to one Model Context Protocol server over STDIO (official
MCP Python SDK) or HTTP JSON-RPC (httpx). ``MCPProviderPool`` implements the
engine's ToolProviderService over a set of configured servers, connecting
lazily and reporting every failure as an ``MCPError`` result.
"""

import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field, replace
from typing import Any, Literal

import httpx
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from flowrun.errors import MCPError, MCPErrorCode, Result
from flowrun.runner.provider_service import MCPTool, ProviderStatus, ToolProviderService

logger = logging.getLogger(__name__)


@dataclass
class MCPServerConfig:
    """Configuration for an MCP server connection."""

    name: str
    transport: Literal["stdio", "http"]

    # For STDIO transport
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    # For HTTP transport
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    description: str = ""

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "MCPServerConfig":
        return cls(
            name=name,
            transport=data.get("transport", "stdio"),
            command=data.get("command"),
            args=list(data.get("args", [])),
            env=dict(data.get("env", {})),
            cwd=data.get("cwd"),
            url=data.get("url"),
            headers=dict(data.get("headers", {})),
            description=data.get("description", ""),
        )


class MCPClient:
    """
    Async client for a single MCP server.

    The STDIO session and its transport are entered on one AsyncExitStack
    and must be closed from the task that opened them.
    """

    def __init__(self, config: MCPServerConfig):
        self.config = config
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None
        self._http_client: httpx.AsyncClient | None = None
        self._request_id = 0

    @property
    def connected(self) -> bool:
        return self._session is not None or self._http_client is not None

    async def connect(self) -> None:
        if self.connected:
            return
        if self.config.transport == "stdio":
            await self._connect_stdio()
        elif self.config.transport == "http":
            await self._connect_http()
        else:
            raise ValueError(f"Unsupported transport: {self.config.transport}")

    async def _connect_stdio(self) -> None:
        if not self.config.command:
            raise ValueError("command is required for STDIO transport")

        # Inherit the parent environment, overridden by per-server values
        server_params = StdioServerParameters(
            command=self.config.command,
            args=self.config.args,
            env={**os.environ, **self.config.env},
            cwd=self.config.cwd,
        )
        stack = AsyncExitStack()
        try:
            read_stream, write_stream = await stack.enter_async_context(stdio_client(server_params))
            session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._session = session
        logger.info(f"Connected to MCP server '{self.config.name}' via STDIO")

    async def _connect_http(self) -> None:
        if not self.config.url:
            raise ValueError("url is required for HTTP transport")

        client = httpx.AsyncClient(
            base_url=self.config.url,
            headers=self.config.headers,
            timeout=30.0,
        )
        try:
            response = await client.get("/health")
            response.raise_for_status()
        except httpx.HTTPError as e:
            # Servers are not required to expose a health endpoint
            logger.warning(f"Health check failed for MCP server '{self.config.name}': {e}")
        self._http_client = client
        logger.info(f"Connected to MCP server '{self.config.name}' via HTTP at {self.config.url}")

    async def _rpc(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if self._http_client is None:
            raise RuntimeError("HTTP client not initialized")
        self._request_id += 1
        response = await self._http_client.post(
            "/mcp/v1",
            json={"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params},
        )
        response.raise_for_status()
        data = response.json()
        if "error" in data:
            raise RuntimeError(f"MCP error: {data['error']}")
        return data.get("result", {})

    async def list_tools(self) -> list[MCPTool]:
        await self.connect()

        if self._session is not None:
            response = await self._session.list_tools()
            raw_tools = [
                {"name": t.name, "description": t.description, "inputSchema": t.inputSchema}
                for t in response.tools
            ]
        else:
            raw_tools = (await self._rpc("tools/list", {})).get("tools", [])

        tools = [
            MCPTool(
                name=t["name"],
                description=t.get("description") or "",
                input_schema=t.get("inputSchema") or {},
                server_name=self.config.name,
            )
            for t in raw_tools
        ]
        logger.debug(f"Listed {len(tools)} tools from '{self.config.name}'")
        return tools

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        await self.connect()

        if self._session is None:
            return (await self._rpc("tools/call", {"name": tool_name, "arguments": arguments})).get(
                "content", []
            )

        result = await self._session.call_tool(tool_name, arguments=arguments)
        texts = [item.text for item in result.content if hasattr(item, "text")]
        if getattr(result, "isError", False):
            raise RuntimeError(f"MCP tool '{tool_name}' failed: {' '.join(texts)}")
        structured = getattr(result, "structuredContent", None)
        if structured is not None:
            return structured
        if len(texts) == 1:
            return texts[0]
        return texts

    async def disconnect(self) -> None:
        if self._stack is not None:
            try:
                await self._stack.aclose()
            except Exception as e:
                logger.warning(f"Error closing MCP session for '{self.config.name}': {e}")
            self._stack = None
            self._session = None
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        logger.info(f"Disconnected from MCP server '{self.config.name}'")

    async def __aenter__(self) -> "MCPClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()


class MCPProviderPool(ToolProviderService):
    """ToolProviderService backed by configured MCP servers."""

    def __init__(self, configs: dict[str, MCPServerConfig] | None = None):
        self._configs: dict[str, MCPServerConfig] = dict(configs or {})
        self._clients: dict[str, MCPClient] = {}
        self._failed: set[str] = set()

    @classmethod
    def from_config(cls, servers: dict[str, dict[str, Any]]) -> "MCPProviderPool":
        return cls({name: MCPServerConfig.from_dict(name, data) for name, data in servers.items()})

    def register(self, config: MCPServerConfig) -> None:
        self._configs[config.name] = config

    async def get_status(self, provider: str) -> ProviderStatus:
        client = self._clients.get(provider)
        if client is not None and client.connected:
            return ProviderStatus.CONNECTED
        if provider in self._failed:
            return ProviderStatus.ERROR
        return ProviderStatus.DISCONNECTED

    async def connect(self, provider: str, env: dict[str, str] | None = None) -> Result[None]:
        config = self._configs.get(provider)
        if config is None:
            return Result.fail(
                MCPError(
                    MCPErrorCode.SERVER_CONNECTION_FAILED,
                    f"Unknown MCP server: {provider}",
                    server_name=provider,
                    operation="connect",
                )
            )
        if env:
            config = replace(config, env={**config.env, **env})

        client = MCPClient(config)
        try:
            await client.connect()
        except Exception as e:
            self._failed.add(provider)
            return Result.fail(
                MCPError(
                    MCPErrorCode.SERVER_CONNECTION_FAILED,
                    f"Failed to connect to MCP server: {e}",
                    server_name=provider,
                    operation="connect",
                )
            )
        self._failed.discard(provider)
        self._clients[provider] = client
        return Result.ok()

    async def list_tools(self, provider: str) -> Result[list[MCPTool]]:
        client = self._clients.get(provider)
        if client is None:
            return Result.fail(
                MCPError(
                    MCPErrorCode.LIST_TOOLS_FAILED,
                    f"MCP server '{provider}' is not connected",
                    server_name=provider,
                    operation="list_tools",
                )
            )
        try:
            return Result.ok(await client.list_tools())
        except Exception as e:
            return Result.fail(
                MCPError(
                    MCPErrorCode.LIST_TOOLS_FAILED,
                    f"Failed to list tools for server: {e}",
                    server_name=provider,
                    operation="list_tools",
                )
            )

    async def call_tool(self, provider: str, tool: str, arguments: dict[str, Any]) -> Result[Any]:
        client = self._clients.get(provider)
        if client is None:
            connected = await self.connect(provider)
            if not connected.success:
                return Result.fail(connected.error)
            client = self._clients[provider]
        try:
            return Result.ok(await client.call_tool(tool, arguments))
        except Exception as e:
            return Result.fail(
                MCPError(
                    MCPErrorCode.MCP_EXECUTION_FAILED,
                    str(e),
                    server_name=provider,
                    operation="call_tool",
                    details={"tool": tool},
                )
            )

    async def close(self) -> None:
        for client in list(self._clients.values()):
            await client.disconnect()
        self._clients.clear()
