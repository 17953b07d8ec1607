"""
Error taxonomy and Result type for the flow engine.

Every fallible engine operation returns a ``Result`` instead of raising past
its caller. Errors carry a stable ``code`` (a StrEnum value), a human message
and free-form ``details``. Exceptions that escape a node are caught at the
node driver and the step executor and converted into one of these types.

Hierarchy:
    FlowError
      ├── ModelError      - completion capability failures
      ├── ToolError       - tool preparation / invocation failures
      ├── NodeError       - node configuration / kind failures
      ├── MCPError        - tool-provider (MCP) failures
      ├── GraphError      - flow conversion failures
      ├── ApprovalError   - invalid approval-gate requests
      └── ExecutionError  - generic fault wrapped at the step boundary
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ModelErrorCode(StrEnum):
    MODEL_NOT_FOUND = "model_not_found"
    API_KEY_ERROR = "api_key_error"
    API_ERROR = "api_error"
    UNKNOWN_ERROR = "unknown_error"


class ToolErrorCode(StrEnum):
    INVALID_TOOL = "invalid_tool"
    TOOL_PREPARATION_FAILED = "tool_preparation_failed"
    TOOL_PROCESSING_FAILED = "tool_processing_failed"


class NodeErrorCode(StrEnum):
    MISSING_REQUIRED_PROPERTY = "missing_required_property"
    UNKNOWN_NODE_KIND = "unknown_node_kind"
    INVALID_PROPERTY = "invalid_property"
    NODE_EXECUTION_FAILED = "node_execution_failed"


class MCPErrorCode(StrEnum):
    SERVER_CONNECTION_FAILED = "server_connection_failed"
    LIST_TOOLS_FAILED = "list_tools_failed"
    MCP_PROCESSING_FAILED = "mcp_processing_failed"
    MCP_EXECUTION_FAILED = "mcp_execution_failed"


class GraphErrorCode(StrEnum):
    NO_START_NODE = "no_start_node"
    AMBIGUOUS_START_NODE = "ambiguous_start_node"
    DANGLING_EDGE = "dangling_edge"
    DUPLICATE_ACTION = "duplicate_action"
    DUPLICATE_NODE = "duplicate_node"
    FLOW_NOT_FOUND = "flow_not_found"


class ApprovalErrorCode(StrEnum):
    NOT_AWAITING_APPROVAL = "not_awaiting_approval"
    UNKNOWN_TOOL_CALL = "unknown_tool_call"
    INVALID_DECISION = "invalid_decision"


class ExecutionErrorCode(StrEnum):
    MISSING_CONVERSATION_ID = "missing_conversation_id"
    CONVERSATION_NOT_FOUND = "conversation_not_found"
    INVALID_STATUS = "invalid_status"
    EXECUTION_FAILED = "execution_failed"


class FlowError(Exception):
    """Base class for all structured engine errors."""

    kind = "flow"

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.code = str(code)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence in conversation state."""
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ModelError(FlowError):
    """Completion capability failure (unknown model, key resolution, upstream API)."""

    kind = "model"

    def __init__(
        self,
        code: ModelErrorCode | str,
        message: str,
        model_id: str | None = None,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(code, message, details)
        self.model_id = model_id
        self.request_id = request_id

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["model_id"] = self.model_id
        d["request_id"] = self.request_id
        return d


class ToolError(FlowError):
    kind = "tool"

    def __init__(
        self,
        code: ToolErrorCode | str,
        message: str,
        tool_name: str | None = None,
        tool_args: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(code, message, details)
        self.tool_name = tool_name
        self.tool_args = tool_args

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["tool_name"] = self.tool_name
        d["tool_args"] = self.tool_args
        return d


class NodeError(FlowError):
    kind = "node"

    def __init__(
        self,
        code: NodeErrorCode | str,
        message: str,
        node_id: str | None = None,
        node_kind: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(code, message, details)
        self.node_id = node_id
        self.node_kind = node_kind

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["node_id"] = self.node_id
        d["node_kind"] = self.node_kind
        return d


class MCPError(FlowError):
    kind = "mcp"

    def __init__(
        self,
        code: MCPErrorCode | str,
        message: str,
        server_name: str | None = None,
        operation: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(code, message, details)
        self.server_name = server_name
        self.operation = operation

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["server_name"] = self.server_name
        d["operation"] = self.operation
        return d


class GraphError(FlowError):
    kind = "graph"


class ApprovalError(FlowError):
    kind = "approval"


class ExecutionError(FlowError):
    kind = "execution"


def wrap_exception(exc: BaseException) -> FlowError:
    """Return ``exc`` itself if structured, else a generic ExecutionError."""
    if isinstance(exc, FlowError):
        return exc
    return ExecutionError(
        ExecutionErrorCode.EXECUTION_FAILED,
        str(exc) or type(exc).__name__,
        details={"exception_type": type(exc).__name__},
    )


@dataclass
class Result(Generic[T]):
    """
    Discriminated success/failure value.

    Examples:
        Result.ok([tool_a, tool_b])
        Result.fail(ToolError(ToolErrorCode.INVALID_TOOL, "Tool has no name"))
    """

    success: bool
    value: T | None = None
    error: FlowError | None = None

    @classmethod
    def ok(cls, value: T | None = None) -> Result[T]:
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: FlowError) -> Result[T]:
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        """Return the value, raising the carried error on failure."""
        if not self.success:
            raise self.error or ExecutionError(
                ExecutionErrorCode.EXECUTION_FAILED, "Result failed without an error"
            )
        return self.value  # type: ignore[return-value]
