"""
Conversation State Schema - the unit of persistence and resumption.

A conversation is resumed purely from this document: the step executor reads
it, runs one node turn, and writes it back. Nothing about "where we are" lives
on a call stack.

Version History:
- v1.0: Initial schema
"""

import json
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from flowrun.schemas.tool import ToolDefinition


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class ExecutionStatus(StrEnum):
    """Status of a conversation's execution."""

    RUNNING = "running"
    AWAITING_TOOL_APPROVAL = "awaiting_tool_approval"  # Pending tool calls need sign-off
    PAUSED_DEBUG = "paused_debug"  # Stepping under the debugger
    COMPLETED = "completed"  # Reached a Finish node
    ERROR = "error"


class ProcessTurnPhase(StrEnum):
    """Where a Process node's internal tool-call loop stands."""

    AWAITING_MODEL = "awaiting_model"
    AWAITING_APPROVAL = "awaiting_approval"
    DONE = "done"


class ToolCallRequest(BaseModel):
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    def to_llm_dict(self) -> dict[str, Any]:
        """OpenAI-format tool call."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


class ChatMessage(BaseModel):
    """A single message in the conversation transcript."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    tool_call_id: str | None = None  # Links a tool result to its request
    created_at: str = Field(default_factory=utc_now)
    node_id: str | None = None  # Node that produced the message

    model_config = {"extra": "allow"}

    def to_llm_dict(self) -> dict[str, Any]:
        """Convert to OpenAI-format message dict."""
        if self.role == "tool":
            return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.content}
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.role == "assistant" and self.tool_calls:
            d["tool_calls"] = [call.to_llm_dict() for call in self.tool_calls]
        return d


class StepRecord(BaseModel):
    """One recorded step of a debug session. Append-only."""

    step_index: int
    node_id: str
    node_kind: str
    node_name: str = ""
    action: str
    timestamp: str = Field(default_factory=utc_now)
    state_before: dict[str, Any] = Field(default_factory=dict)
    state_after: dict[str, Any] = Field(default_factory=dict)
    prep_snapshot: Any = None
    exec_snapshot: Any = None

    model_config = {"frozen": True}


class HandoffRequest(BaseModel):
    """A handoff pseudo-tool call waiting to be routed."""

    edge_id: str
    action: str  # Successor label to route along
    target_node_id: str
    source_node_id: str


class LastResponse(BaseModel):
    """Outcome of the most recent step, as seen by an external caller."""

    success: bool = True
    content: str | None = None
    error: str | None = None
    error_details: dict[str, Any] | None = None


class ConversationTimestamps(BaseModel):
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}


class ConversationState(BaseModel):
    """
    Complete persisted state of one conversation.

    Invariant: ``pending_tool_calls`` is non-empty iff ``status`` is
    AWAITING_TOOL_APPROVAL. Use ``await_approval`` / ``clear_pending`` to
    change both together.
    """

    schema_version: str = "1.0"

    # Identity
    conversation_id: str
    flow_id: str
    title: str = ""

    # Execution
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_node_id: str | None = None
    process_phase: ProcessTurnPhase | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    pending_tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    handoff_requested: HandoffRequest | None = None
    last_response: LastResponse | None = None

    # Provider name -> namespaced tools
    tool_cache: dict[str, list[ToolDefinition]] = Field(default_factory=dict)

    # Control flags
    is_cancelled: bool = False
    require_approval: bool = False
    original_require_approval: bool | None = None

    # Debugging
    debug_mode: bool = False
    debug_trace: list[StepRecord] = Field(default_factory=list)
    debug_cursor: int | None = None

    timestamps: ConversationTimestamps = Field(default_factory=ConversationTimestamps)

    model_config = {"extra": "allow"}

    @model_validator(mode="after")
    def _check_pending_consistency(self) -> "ConversationState":
        awaiting = self.status == ExecutionStatus.AWAITING_TOOL_APPROVAL
        if awaiting != bool(self.pending_tool_calls):
            raise ValueError(
                f"status={self.status} is inconsistent with "
                f"{len(self.pending_tool_calls)} pending tool call(s)"
            )
        return self

    def touch(self) -> None:
        self.timestamps.updated_at = utc_now()

    def add_message(self, message: ChatMessage) -> ChatMessage:
        self.messages.append(message)
        return message

    def has_system_message(self) -> bool:
        return any(m.role == "system" for m in self.messages)

    def last_assistant_message(self) -> ChatMessage | None:
        for message in reversed(self.messages):
            if message.role == "assistant":
                return message
        return None

    def await_approval(self, calls: list[ToolCallRequest]) -> None:
        if not calls:
            raise ValueError("await_approval requires at least one tool call")
        self.pending_tool_calls = list(calls)
        self.status = ExecutionStatus.AWAITING_TOOL_APPROVAL
        self.process_phase = ProcessTurnPhase.AWAITING_APPROVAL

    def clear_pending(self, status: ExecutionStatus = ExecutionStatus.RUNNING) -> None:
        self.pending_tool_calls = []
        self.status = status
        if self.process_phase == ProcessTurnPhase.AWAITING_APPROVAL:
            self.process_phase = ProcessTurnPhase.AWAITING_MODEL

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe deep snapshot, without the debug trace itself."""
        return self.model_dump(mode="json", exclude={"debug_trace"})
