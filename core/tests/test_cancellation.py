"""
Tests for cancelling a Process turn between tool-call iterations.
"""

import pytest

from flowrun.graph.node import STAY_ON_NODE
from flowrun.llm.mock import MockCompletionProvider
from flowrun.llm.provider import CompletionResponse
from flowrun.schemas.conversation_state import ChatMessage, ToolCallRequest
from helpers import Harness, tool_flow

LOOKUP = "_-_-_search_-_-_lookup"


def two_call_model() -> MockCompletionProvider:
    return MockCompletionProvider(
        [
            CompletionResponse(
                content="",
                tool_calls=[
                    ToolCallRequest(id="call-1", name=LOOKUP, arguments={"query": "one"}),
                    ToolCallRequest(id="call-2", name=LOOKUP, arguments={"query": "two"}),
                ],
            ),
            CompletionResponse(content="never reached"),
        ]
    )


@pytest.mark.asyncio
async def test_cancel_mid_loop_stops_further_tool_calls(search_service):
    h = Harness(tool_flow(), model=two_call_model(), service=search_service)

    async def cancel_during_first_call(provider, tool, arguments):
        await h.executor.cancel("c1")

    search_service.on_call = cancel_during_first_call

    state = await h.runner.start_conversation(h.flow.id, conversation_id="c1")
    state.add_message(ChatMessage(role="user", content="go"))
    state.current_node_id = "agent"
    step = await h.executor.execute_step(state)

    assert step.action == STAY_ON_NODE
    assert search_service.calls == [("search", "lookup", {"query": "one"})]
    assert len(h.model.calls) == 1
    # Messages appended before the cancellation are kept
    assert [m.role for m in step.state.messages] == ["user", "assistant", "tool"]
    stored = await h.states.get("c1")
    assert stored.is_cancelled is True
    assert len(stored.messages) == 3


@pytest.mark.asyncio
async def test_cancel_before_step_skips_model_call(search_service):
    h = Harness(tool_flow(), model=two_call_model(), service=search_service)
    await h.runner.start_conversation(h.flow.id, conversation_id="c1")
    assert await h.runner.cancel("c1") is True

    state = await h.states.get("c1")
    state.current_node_id = "agent"
    step = await h.executor.execute_step(state)

    assert step.action == STAY_ON_NODE
    assert h.model.calls == []


@pytest.mark.asyncio
async def test_new_message_clears_cancellation(search_service):
    model = MockCompletionProvider([CompletionResponse(content="hello")])
    h = Harness(tool_flow(), model=model, service=search_service)
    await h.runner.start_conversation(h.flow.id, conversation_id="c1")
    await h.runner.cancel("c1")

    turn = (await h.runner.send_message("c1", "hi")).unwrap()

    assert turn.state.is_cancelled is False
    assert turn.state.last_response.content == "hello"


@pytest.mark.asyncio
async def test_cancel_unknown_conversation():
    h = Harness(tool_flow())
    assert await h.runner.cancel("nope") is False
