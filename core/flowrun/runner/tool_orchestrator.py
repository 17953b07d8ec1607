"""
Tool discovery, preparation and invocation for Process nodes.

Tool names the model sees are namespaced with their provider:

    _-_-_search_-_-_lookup   ->  provider "search", tool "lookup"

Names starting with ``handoff`` are control-flow pseudo-tools. They never reach
a provider; their result tells the Process node to route along an edge.
"""

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any

from flowrun.errors import (
    FlowError,
    MCPError,
    MCPErrorCode,
    Result,
    ToolError,
    ToolErrorCode,
)
from flowrun.graph.flow import ToolProviderRef
from flowrun.llm.provider import Tool
from flowrun.runner.provider_service import ProviderStatus, ToolProviderService
from flowrun.schemas.conversation_state import ChatMessage, ToolCallRequest
from flowrun.schemas.tool import ToolDefinition

logger = logging.getLogger(__name__)

TOOL_NAMESPACE_MARKER = "_-_-_"
HANDOFF_TOOL_PREFIX = "handoff"

# String formats most providers accept natively
_KEPT_STRING_FORMATS = frozenset({"enum", "date-time"})
_COMPOSITE_KEYWORDS = ("oneOf", "anyOf", "allOf")


def namespace_tool_name(provider: str, tool: str) -> str:
    return f"{TOOL_NAMESPACE_MARKER}{provider}{TOOL_NAMESPACE_MARKER}{tool}"


def parse_tool_name(name: str) -> Result[tuple[str, str]]:
    """Split a namespaced name into (provider, tool)."""
    segments = name.split(TOOL_NAMESPACE_MARKER)
    if len(segments) != 3 or segments[0] or not segments[1] or not segments[2]:
        return Result.fail(
            ToolError(
                ToolErrorCode.TOOL_PROCESSING_FAILED,
                f"Invalid tool name format: {name}",
                tool_name=name,
            )
        )
    return Result.ok((segments[1], segments[2]))


def is_handoff_tool(name: str) -> bool:
    return name.startswith(HANDOFF_TOOL_PREFIX)


def sanitize_schema(schema: Any) -> Any:
    """
    Return a copy of a JSON schema that strict providers accept.

    String properties whose ``format`` is not ``enum``/``date-time`` have the
    format moved into the description. Applied recursively to object
    properties, array items and oneOf/anyOf/allOf branches. Idempotent.
    """
    if not isinstance(schema, dict):
        return schema

    result = copy.copy(schema)

    if result.get("type") == "string" and "format" in result:
        fmt = result["format"]
        if fmt not in _KEPT_STRING_FORMATS:
            del result["format"]
            result["description"] = f"{result.get('description', '')} (format: {fmt})".strip()

    if isinstance(result.get("properties"), dict):
        result["properties"] = {
            key: sanitize_schema(value) for key, value in result["properties"].items()
        }

    if "items" in result:
        items = result["items"]
        if isinstance(items, list):
            result["items"] = [sanitize_schema(item) for item in items]
        else:
            result["items"] = sanitize_schema(items)

    for keyword in _COMPOSITE_KEYWORDS:
        if isinstance(result.get(keyword), list):
            result[keyword] = [sanitize_schema(branch) for branch in result[keyword]]

    return result


@dataclass
class HandoffSignal:
    """Payload of an invoked handoff pseudo-tool."""

    tool_name: str
    args: dict[str, Any]


@dataclass
class ToolCallOutcome:
    """Result of invoking one tool call: the tool-result message plus routing signals."""

    message: ChatMessage
    success: bool
    error: FlowError | None = None
    handoff: HandoffSignal | None = None


def tool_result_message(call_id: str, content: str, node_id: str | None = None) -> ChatMessage:
    return ChatMessage(role="tool", tool_call_id=call_id, content=content, node_id=node_id)


class ToolOrchestrator:
    """
    Prepares tool specs for the model, discovers provider tools and executes
    tool calls through a ToolProviderService.
    """

    def __init__(self, provider_service: ToolProviderService):
        self.provider_service = provider_service

    def prepare_tools(self, tools: list[ToolDefinition]) -> Result[list[Tool]]:
        prepared: list[Tool] = []
        try:
            for tool in tools:
                if not tool.name:
                    return Result.fail(
                        ToolError(ToolErrorCode.INVALID_TOOL, "Tool is missing a name")
                    )
                if not isinstance(tool.input_schema, dict):
                    return Result.fail(
                        ToolError(
                            ToolErrorCode.INVALID_TOOL,
                            f"Tool '{tool.name}' is missing an input schema",
                            tool_name=tool.name,
                        )
                    )
                prepared.append(
                    Tool(
                        name=tool.name,
                        description=tool.description,
                        parameters=sanitize_schema(tool.input_schema),
                    )
                )
        except Exception as e:
            logger.exception("Tool preparation failed")
            return Result.fail(ToolError(ToolErrorCode.TOOL_PREPARATION_FAILED, str(e)))
        return Result.ok(prepared)

    async def discover_tools(self, refs: list[ToolProviderRef]) -> Result[list[ToolDefinition]]:
        """
        List, filter and namespace the tools of every bound provider.

        A provider that cannot be connected is skipped with a warning. A
        provider that connects but cannot list its tools fails discovery.
        """
        discovered: dict[str, ToolDefinition] = {}
        for ref in refs:
            provider = ref.bound_provider
            if not provider:
                logger.warning(f"Tool provider reference '{ref.id}' has no bound provider")
                continue

            status = await self.provider_service.get_status(provider)
            if status != ProviderStatus.CONNECTED:
                connected = await self.provider_service.connect(provider, ref.env or None)
                if not connected.success:
                    message = connected.error.message if connected.error else "unknown error"
                    logger.warning(f"Skipping tool provider '{provider}': {message}")
                    continue

            listed = await self.provider_service.list_tools(provider)
            if not listed.success:
                cause = listed.error
                return Result.fail(
                    MCPError(
                        MCPErrorCode.MCP_PROCESSING_FAILED,
                        f"Failed to discover tools for provider '{provider}': "
                        f"{cause.message if cause else 'unknown error'}",
                        server_name=provider,
                        operation="discover_tools",
                        details={"cause": cause.to_dict() if cause else None},
                    )
                )

            enabled = set(ref.enabled_tools)
            for tool in listed.value or []:
                if tool.name not in enabled:
                    continue
                name = namespace_tool_name(provider, tool.name)
                if name in discovered:
                    continue
                discovered[name] = ToolDefinition(
                    name=name,
                    original_name=tool.name,
                    provider=provider,
                    description=tool.description,
                    input_schema=tool.input_schema,
                )

        logger.debug(f"Discovered {len(discovered)} tools from {len(refs)} provider reference(s)")
        return Result.ok(list(discovered.values()))

    async def invoke_tool_call(
        self, call: ToolCallRequest, node_id: str | None = None
    ) -> ToolCallOutcome:
        if is_handoff_tool(call.name):
            payload = {"handoff": True, "args": call.arguments}
            return ToolCallOutcome(
                message=tool_result_message(call.id, json.dumps(payload), node_id),
                success=True,
                handoff=HandoffSignal(tool_name=call.name, args=call.arguments),
            )

        parsed = parse_tool_name(call.name)
        if not parsed.success:
            return self._failed(call, parsed.error, node_id)

        provider, tool = parsed.value
        logger.info(
            f"Invoking tool '{tool}' on provider '{provider}'",
            extra={"tool_name": tool, "provider": provider},
        )
        try:
            result = await self.provider_service.call_tool(provider, tool, call.arguments)
        except Exception as e:
            error = ToolError(
                ToolErrorCode.TOOL_PROCESSING_FAILED,
                str(e),
                tool_name=call.name,
                tool_args=call.arguments,
            )
            return self._failed(call, error, node_id)

        if not result.success:
            return self._failed(call, result.error, node_id)

        value = result.value
        content = value if isinstance(value, str) else json.dumps(value, default=str)
        return ToolCallOutcome(
            message=tool_result_message(call.id, content, node_id),
            success=True,
        )

    def _failed(
        self, call: ToolCallRequest, error: FlowError | None, node_id: str | None
    ) -> ToolCallOutcome:
        message = error.message if error else "unknown error"
        logger.warning(f"Tool call '{call.name}' failed: {message}")
        return ToolCallOutcome(
            message=tool_result_message(call.id, f"Error: {message}", node_id),
            success=False,
            error=error,
        )
