"""Tool providers and the tool orchestrator."""

from flowrun.runner.provider_service import MCPTool, ProviderStatus, ToolProviderService
from flowrun.runner.tool_orchestrator import (
    TOOL_NAMESPACE_MARKER,
    ToolCallOutcome,
    ToolOrchestrator,
    namespace_tool_name,
    parse_tool_name,
    sanitize_schema,
)

__all__ = [
    "MCPTool",
    "ProviderStatus",
    "ToolProviderService",
    "TOOL_NAMESPACE_MARKER",
    "ToolCallOutcome",
    "ToolOrchestrator",
    "namespace_tool_name",
    "parse_tool_name",
    "sanitize_schema",
]
