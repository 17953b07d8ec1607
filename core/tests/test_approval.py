"""
Tests for the tool-approval gate: pause, approve, reject and resume.
"""

import pytest

from flowrun.errors import ApprovalErrorCode
from flowrun.graph.hitl import ApprovalDecision, ApprovalGate, rejection_content
from flowrun.graph.node import FINAL_RESPONSE, TOOL_CALL
from flowrun.llm.mock import MockCompletionProvider
from flowrun.llm.provider import CompletionResponse
from flowrun.runner.tool_orchestrator import ToolOrchestrator
from flowrun.schemas.conversation_state import (
    ChatMessage,
    ConversationState,
    ExecutionStatus,
    ProcessTurnPhase,
    ToolCallRequest,
)
from helpers import FakeToolProviderService, Harness, tool_flow

LOOKUP = "_-_-_search_-_-_lookup"


def gated_model(*final: str) -> MockCompletionProvider:
    model = MockCompletionProvider()
    model.add_tool_call("call-1", LOOKUP, {"query": "cats"})
    for content in final or ("done",):
        model.add_response(CompletionResponse(content=content, model="mock"))
    return model


async def paused_at_gate(h: Harness):
    state = await h.runner.start_conversation(h.flow.id, conversation_id="c1")
    state.add_message(ChatMessage(role="user", content="find cats"))
    state.current_node_id = "agent"
    return await h.executor.execute_step(state)


# ---- Pause ----
@pytest.mark.asyncio
async def test_required_approval_pauses_with_one_pending_call(search_service):
    h = Harness(tool_flow(require_approval=True), model=gated_model(), service=search_service)

    step = await paused_at_gate(h)

    assert step.action == TOOL_CALL
    assert step.state.status == ExecutionStatus.AWAITING_TOOL_APPROVAL
    assert step.state.process_phase == ProcessTurnPhase.AWAITING_APPROVAL
    assert len(step.state.pending_tool_calls) == 1
    pending = step.state.pending_tool_calls[0]
    assert (pending.id, pending.name, pending.arguments) == ("call-1", LOOKUP, {"query": "cats"})
    assert search_service.calls == []
    # The assistant message requesting the call is kept
    assert step.state.messages[-1].tool_calls[0].id == "call-1"

    request = ApprovalGate.pending_request(step.state)
    assert request.to_dict()["tool_calls"][0]["name"] == LOOKUP


@pytest.mark.asyncio
async def test_stepping_while_awaiting_does_not_call_the_model(search_service):
    h = Harness(tool_flow(require_approval=True), model=gated_model(), service=search_service)
    step = await paused_at_gate(h)

    again = await h.executor.execute_step(step.state)

    assert again.action == TOOL_CALL
    assert len(h.model.calls) == 1


# ---- Approve ----
@pytest.mark.asyncio
async def test_approve_then_step_advances_past_tool_call(search_service):
    h = Harness(
        tool_flow(require_approval=True), model=gated_model("42 cats"), service=search_service
    )
    step = await paused_at_gate(h)
    gate = ApprovalGate(h.orchestrator)

    state = (await gate.respond(step.state, "call-1", ApprovalDecision.APPROVE)).unwrap()
    assert state.status == ExecutionStatus.RUNNING
    assert state.pending_tool_calls == []
    assert state.messages[-1].role == "tool"
    assert state.messages[-1].content == "42 results"
    assert search_service.calls == [("search", "lookup", {"query": "cats"})]

    resumed = await h.executor.execute_step(state)

    assert resumed.action == FINAL_RESPONSE
    assert resumed.state.last_response.content == "42 cats"
    assert h.model.calls[1]["messages"][-1]["role"] == "tool"


@pytest.mark.asyncio
async def test_runner_resumes_turn_after_approval(search_service):
    h = Harness(
        tool_flow(require_approval=True), model=gated_model("42 cats"), service=search_service
    )
    await h.runner.start_conversation(h.flow.id, conversation_id="c1")

    turn = (await h.runner.send_message("c1", "find cats")).unwrap()
    assert turn.state.status == ExecutionStatus.AWAITING_TOOL_APPROVAL
    assert turn.actions == ["start-agent", TOOL_CALL]

    state = (await h.runner.respond_to_tool_call("c1", "call-1", "approve")).unwrap()

    assert state.status == ExecutionStatus.RUNNING
    assert state.last_response.content == "42 cats"
    stored = await h.states.get("c1")
    assert stored.last_response.content == "42 cats"


# ---- Reject ----
@pytest.mark.asyncio
async def test_reject_never_invokes_the_tool(search_service):
    h = Harness(tool_flow(require_approval=True), model=gated_model(), service=search_service)
    step = await paused_at_gate(h)

    state = (
        await ApprovalGate(h.orchestrator).respond(step.state, "call-1", ApprovalDecision.REJECT)
    ).unwrap()
    resumed = await h.executor.execute_step(state)

    assert search_service.calls == []
    tool_messages = [m for m in resumed.state.messages if m.role == "tool"]
    assert tool_messages[0].content == rejection_content(LOOKUP)
    assert tool_messages[0].content == f"User rejected tool call: {LOOKUP}"
    assert resumed.action == FINAL_RESPONSE


@pytest.mark.asyncio
async def test_partial_responses_keep_waiting():
    service = FakeToolProviderService()
    state = ConversationState(conversation_id="c1", flow_id="f")
    state.await_approval(
        [
            ToolCallRequest(id="a", name=LOOKUP),
            ToolCallRequest(id="b", name=LOOKUP),
        ]
    )
    gate = ApprovalGate(ToolOrchestrator(service))

    (await gate.respond(state, "a", "reject")).unwrap()

    assert state.status == ExecutionStatus.AWAITING_TOOL_APPROVAL
    assert [c.id for c in state.pending_tool_calls] == ["b"]

    (await gate.respond(state, "b", "reject")).unwrap()
    assert state.status == ExecutionStatus.RUNNING
    assert state.process_phase == ProcessTurnPhase.AWAITING_MODEL


# ---- Invalid requests ----
@pytest.mark.asyncio
async def test_respond_when_not_awaiting():
    gate = ApprovalGate(ToolOrchestrator(FakeToolProviderService()))
    state = ConversationState(conversation_id="c1", flow_id="f")

    result = await gate.respond(state, "x", "approve")

    assert result.success is False
    assert result.error.code == ApprovalErrorCode.NOT_AWAITING_APPROVAL


@pytest.mark.asyncio
async def test_respond_to_unknown_call():
    gate = ApprovalGate(ToolOrchestrator(FakeToolProviderService()))
    state = ConversationState(conversation_id="c1", flow_id="f")
    state.await_approval([ToolCallRequest(id="a", name=LOOKUP)])

    result = await gate.respond(state, "zzz", "approve")

    assert result.success is False
    assert result.error.code == ApprovalErrorCode.UNKNOWN_TOOL_CALL
    assert len(state.pending_tool_calls) == 1


@pytest.mark.asyncio
async def test_respond_with_unknown_decision():
    gate = ApprovalGate(ToolOrchestrator(FakeToolProviderService()))
    state = ConversationState(conversation_id="c1", flow_id="f")
    state.await_approval([ToolCallRequest(id="a", name=LOOKUP)])

    result = await gate.respond(state, "a", "yes")

    assert result.success is False
    assert result.error.code == ApprovalErrorCode.INVALID_DECISION
    assert result.error.details["allowed"] == ["approve", "reject"]
    assert [c.id for c in state.pending_tool_calls] == ["a"]
    assert state.status == ExecutionStatus.AWAITING_TOOL_APPROVAL


@pytest.mark.asyncio
async def test_runner_rejects_unknown_decision(search_service):
    h = Harness(tool_flow(require_approval=True), model=gated_model(), service=search_service)
    await paused_at_gate(h)

    result = await h.runner.respond_to_tool_call("c1", "call-1", "maybe")

    assert result.success is False
    assert result.error.code == ApprovalErrorCode.INVALID_DECISION
    assert search_service.calls == []
    stored = await h.states.get("c1")
    assert stored.status == ExecutionStatus.AWAITING_TOOL_APPROVAL


# ---- Handoffs are never gated ----
@pytest.mark.asyncio
async def test_handoff_is_not_gated(search_service):
    model = MockCompletionProvider()
    model.add_tool_call("call-1", "handoff_to_finish", {"confirm": True})
    h = Harness(tool_flow(require_approval=True), model=model, service=search_service)

    step = await paused_at_gate(h)

    assert step.action == "agent-finish"
    assert step.state.status == ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_handoff_alongside_gated_call_routes_after_approval(search_service):
    model = MockCompletionProvider(
        [
            CompletionResponse(
                content="",
                tool_calls=[
                    ToolCallRequest(id="call-1", name=LOOKUP, arguments={"query": "cats"}),
                    ToolCallRequest(id="call-2", name="handoff_to_finish", arguments={}),
                ],
            )
        ]
    )
    h = Harness(tool_flow(require_approval=True), model=model, service=search_service)
    step = await paused_at_gate(h)
    assert step.action == TOOL_CALL
    assert step.state.handoff_requested.target_node_id == "finish"

    state = (
        await ApprovalGate(h.orchestrator).respond(step.state, "call-1", ApprovalDecision.APPROVE)
    ).unwrap()
    resumed = await h.executor.execute_step(state)

    assert resumed.action == "agent-finish"
    assert resumed.next_node_id == "finish"
    assert len(model.calls) == 1
