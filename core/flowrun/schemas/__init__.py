"""Persisted schemas."""

from flowrun.schemas.conversation_state import (
    ChatMessage,
    ConversationState,
    ExecutionStatus,
    HandoffRequest,
    LastResponse,
    ProcessTurnPhase,
    StepRecord,
    ToolCallRequest,
)
from flowrun.schemas.tool import ToolDefinition

__all__ = [
    "ChatMessage",
    "ConversationState",
    "ExecutionStatus",
    "HandoffRequest",
    "LastResponse",
    "ProcessTurnPhase",
    "StepRecord",
    "ToolCallRequest",
    "ToolDefinition",
]
