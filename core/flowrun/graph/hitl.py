"""
Tool-approval gate (human in the loop).

When approval is required, a Process node stops before invoking provider
tools, stores the requested calls on the conversation and reports
``awaiting_tool_approval``. An external caller then answers each call:

- approve: the tool is invoked now and its result message appended
- reject:  a synthetic "User rejected tool call" result is appended and the
           provider is never contacted

Once no calls remain pending the conversation returns to running (or to
paused_debug under the debugger) and the next Process step calls the model
with the results in context.
"""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from flowrun.errors import ApprovalError, ApprovalErrorCode, Result
from flowrun.runner.tool_orchestrator import ToolOrchestrator, tool_result_message
from flowrun.schemas.conversation_state import (
    ConversationState,
    ExecutionStatus,
    ToolCallRequest,
)

logger = logging.getLogger(__name__)


class ApprovalDecision(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass
class ToolApprovalRequest:
    """What an external caller needs to render an approval prompt."""

    conversation_id: str
    node_id: str | None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "node_id": self.node_id,
            "tool_calls": [
                {"id": call.id, "name": call.name, "arguments": call.arguments}
                for call in self.tool_calls
            ],
        }


def rejection_content(tool_name: str) -> str:
    return f"User rejected tool call: {tool_name}"


class ApprovalGate:
    """Applies approve/reject decisions to a conversation awaiting tool approval."""

    def __init__(self, orchestrator: ToolOrchestrator):
        self.orchestrator = orchestrator

    @staticmethod
    def pending_request(state: ConversationState) -> ToolApprovalRequest | None:
        if state.status != ExecutionStatus.AWAITING_TOOL_APPROVAL:
            return None
        return ToolApprovalRequest(
            conversation_id=state.conversation_id,
            node_id=state.current_node_id,
            tool_calls=list(state.pending_tool_calls),
        )

    async def respond(
        self,
        state: ConversationState,
        tool_call_id: str,
        decision: ApprovalDecision | str,
    ) -> Result[ConversationState]:
        """
        Resolve one pending tool call in place.

        Args:
            state: Conversation awaiting approval (mutated on success)
            tool_call_id: Id of the pending call being answered
            decision: approve or reject

        Returns:
            Result carrying the updated state, or an ApprovalError
        """
        if state.status != ExecutionStatus.AWAITING_TOOL_APPROVAL:
            return Result.fail(
                ApprovalError(
                    ApprovalErrorCode.NOT_AWAITING_APPROVAL,
                    f"Conversation is not awaiting tool approval (status: {state.status})",
                    details={"status": str(state.status)},
                )
            )

        call = next((c for c in state.pending_tool_calls if c.id == tool_call_id), None)
        if call is None:
            return Result.fail(
                ApprovalError(
                    ApprovalErrorCode.UNKNOWN_TOOL_CALL,
                    f"Tool call {tool_call_id} is not pending approval",
                    details={"tool_call_id": tool_call_id},
                )
            )

        try:
            decision = ApprovalDecision(decision)
        except ValueError:
            return Result.fail(
                ApprovalError(
                    ApprovalErrorCode.INVALID_DECISION,
                    f"Unknown approval decision: {decision}",
                    details={
                        "decision": str(decision),
                        "allowed": [d.value for d in ApprovalDecision],
                    },
                )
            )

        node_id = state.current_node_id
        if decision == ApprovalDecision.APPROVE:
            logger.info(f"Tool call '{call.name}' approved")
            outcome = await self.orchestrator.invoke_tool_call(call, node_id)
            state.add_message(outcome.message)
        else:
            logger.info(f"Tool call '{call.name}' rejected")
            state.add_message(tool_result_message(call.id, rejection_content(call.name), node_id))

        remaining = [c for c in state.pending_tool_calls if c.id != tool_call_id]
        if remaining:
            state.pending_tool_calls = remaining
        else:
            resume = ExecutionStatus.PAUSED_DEBUG if state.debug_mode else ExecutionStatus.RUNNING
            state.clear_pending(resume)
        state.touch()
        return Result.ok(state)
