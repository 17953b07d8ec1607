"""
Tests for StepExecutor: one resumable node turn per call.
"""

import asyncio
import gc

import pytest

from flowrun.errors import GraphErrorCode, ModelError, ModelErrorCode, NodeErrorCode
from flowrun.graph.flow import FlowEdge, FlowSpec, NodeSpec
from flowrun.graph.node import DEFAULT_ACTION, ERROR, FINAL_RESPONSE
from flowrun.llm.mock import MockCompletionProvider
from flowrun.llm.provider import CompletionResponse
from flowrun.runtime.step_executor import MISSING_CONVERSATION_ID_MESSAGE
from flowrun.schemas.conversation_state import ChatMessage, ConversationState, ExecutionStatus
from flowrun.storage.flow_store import InMemoryFlowStore
from flowrun.storage.state_store import InMemoryStateStore
from helpers import Harness, linear_flow, tool_flow


async def new_state(h: Harness, message: str = "hi") -> ConversationState:
    state = await h.runner.start_conversation(h.flow.id, conversation_id="c1")
    state.add_message(ChatMessage(role="user", content=message))
    return state


# ---- End to end: Start -> Process -> Finish ----
@pytest.mark.asyncio
async def test_start_process_finish():
    h = Harness(linear_flow(), model=MockCompletionProvider.replying("hello"))
    state = await new_state(h)

    step = await h.executor.execute_step(state)
    assert step.action == "start-agent"
    assert step.next_node_id == "agent"
    assert step.state.current_node_id == "start"
    assert step.state.messages[0].role == "system"
    assert step.state.messages[0].content == "You are helpful."

    state = step.state
    state.current_node_id = step.next_node_id
    step = await h.executor.execute_step(state)
    assert step.action == FINAL_RESPONSE
    assistant = [m for m in step.state.messages if m.role == "assistant"]
    assert len(assistant) == 1
    assert assistant[0].content == "hello"
    assert assistant[0].node_id == "agent"

    state = step.state
    state.current_node_id = "finish"
    step = await h.executor.execute_step(state)
    assert step.action == DEFAULT_ACTION
    assert step.state.last_response.content == "hello"
    assert step.state.status == ExecutionStatus.COMPLETED

    stored = await h.states.get("c1")
    assert stored.status == ExecutionStatus.COMPLETED
    assert stored.current_node_id == "finish"


@pytest.mark.asyncio
async def test_model_receives_composed_prompt_and_handoff_tools():
    h = Harness(linear_flow(), model=MockCompletionProvider.replying("hello"))
    state = await new_state(h)
    state.current_node_id = "agent"

    await h.executor.execute_step(state)

    call = h.model.calls[0]
    assert call["model_id"] == "m"
    assert call["messages"][0] == {"role": "system", "content": "You are helpful."}
    assert call["messages"][1] == {"role": "user", "content": "hi"}
    assert [t.name for t in call["tools"]] == ["handoff_to_finish"]


@pytest.mark.asyncio
async def test_input_state_is_not_mutated():
    h = Harness(linear_flow(), model=MockCompletionProvider.replying("hello"))
    state = await new_state(h)
    state.current_node_id = "agent"

    step = await h.executor.execute_step(state)

    assert len(state.messages) == 1
    assert len(step.state.messages) == 2


@pytest.mark.asyncio
async def test_unknown_current_node_falls_back_to_start():
    h = Harness(linear_flow())
    state = await new_state(h)
    state.current_node_id = "ghost"

    step = await h.executor.execute_step(state)

    assert step.node_id == "start"
    assert step.action == "start-agent"


# ---- Error boundary ----
@pytest.mark.asyncio
async def test_missing_conversation_id_is_an_error_not_an_exception():
    h = Harness(linear_flow())
    state = ConversationState(conversation_id="", flow_id="flow-1")

    step = await h.executor.execute_step(state)

    assert step.action == ERROR
    assert step.state.last_response.success is False
    assert step.state.last_response.error == MISSING_CONVERSATION_ID_MESSAGE
    assert await h.states.list_ids() == []


@pytest.mark.asyncio
async def test_unknown_flow_persists_error_state():
    h = Harness(linear_flow())
    state = ConversationState(conversation_id="c1", flow_id="missing")

    step = await h.executor.execute_step(state)

    assert step.action == ERROR
    assert step.error.code == GraphErrorCode.FLOW_NOT_FOUND
    stored = await h.states.get("c1")
    assert stored.status == ExecutionStatus.ERROR
    assert stored.last_response.error == "Flow not found: missing"


@pytest.mark.asyncio
async def test_model_failure_keeps_partial_progress(search_service):
    model = MockCompletionProvider()
    model.add_tool_call("call-1", "_-_-_search_-_-_lookup", {"query": "q"})
    model.add_response(ModelError(ModelErrorCode.API_ERROR, "upstream down", model_id="m"))
    h = Harness(tool_flow(), model=model, service=search_service)
    state = await new_state(h)
    state.current_node_id = "agent"

    step = await h.executor.execute_step(state)

    assert step.action == ERROR
    stored = await h.states.get("c1")
    assert stored.status == ExecutionStatus.ERROR
    assert stored.current_node_id == "agent"
    assert stored.last_response.error == "upstream down"
    assert stored.last_response.error_details["kind"] == "model"
    # The executed tool call and its result survived the failure
    assert [m.role for m in stored.messages] == ["user", "assistant", "tool"]
    assert stored.messages[-1].content == "42 results"


@pytest.mark.asyncio
async def test_process_without_bound_model_fails():
    h = Harness(linear_flow(process_props={"boundModel": ""}))
    state = await new_state(h)
    state.current_node_id = "agent"

    step = await h.executor.execute_step(state)

    assert step.action == ERROR
    assert step.error.code == NodeErrorCode.MISSING_REQUIRED_PROPERTY
    assert step.error.details["property"] == "bound_model"


# ---- Tool provider nodes ----
def provider_flow(bound_provider: str = "search") -> FlowSpec:
    return FlowSpec(
        id="provider-flow",
        nodes=[
            NodeSpec(id="start", kind="start"),
            NodeSpec(
                id="tools",
                kind="tool_provider",
                properties={"boundProvider": bound_provider, "enabledTools": ["lookup"]},
            ),
            NodeSpec(id="finish", kind="finish"),
        ],
        edges=[
            FlowEdge(id="start-tools", source="start", target="tools"),
            FlowEdge(id="tools-finish", source="tools", target="finish"),
        ],
    )


@pytest.mark.asyncio
async def test_tool_provider_node_caches_discovered_tools(search_service):
    h = Harness(provider_flow(), service=search_service)
    state = await new_state(h)
    state.current_node_id = "tools"

    step = await h.executor.execute_step(state)

    assert step.action == "tools-finish"
    cached = step.state.tool_cache["search"]
    assert [t.name for t in cached] == ["_-_-_search_-_-_lookup"]


@pytest.mark.asyncio
async def test_tool_provider_node_requires_bound_provider(search_service):
    h = Harness(provider_flow(bound_provider=""), service=search_service)
    state = await new_state(h)
    state.current_node_id = "tools"

    step = await h.executor.execute_step(state)

    assert step.action == ERROR
    assert step.error.code == NodeErrorCode.MISSING_REQUIRED_PROPERTY


# ---- Graph cache ----
class CountingFlowStore(InMemoryFlowStore):
    def __init__(self, flows):
        super().__init__(flows)
        self.lookups = 0

    async def get_flow(self, flow_id):
        self.lookups += 1
        return await super().get_flow(flow_id)


@pytest.mark.asyncio
async def test_graph_is_converted_once_per_flow_and_cloned_per_step():
    h = Harness(linear_flow())
    store = CountingFlowStore([h.flow])
    h.executor.flow_store = store

    first = await h.executor.get_graph("flow-1")
    second = await h.executor.get_graph("flow-1")

    assert store.lookups == 1
    assert first is not second
    assert first.get_node("agent") is not second.get_node("agent")

    h.executor.invalidate("flow-1")
    await h.executor.get_graph("flow-1")
    assert store.lookups == 2


def test_one_lock_per_conversation():
    h = Harness(linear_flow())
    a = h.executor.lock_for("a")
    b = h.executor.lock_for("b")
    assert h.executor.lock_for("a") is a
    assert a is not b


# ---- Concurrency ----
class YieldingStateStore(InMemoryStateStore):
    """Gives other tasks a chance to run on every read."""

    async def get(self, conversation_id):
        await asyncio.sleep(0.01)
        return await super().get(conversation_id)


class BlockingModel(MockCompletionProvider):
    """Holds its first generate call until ``release`` is set."""

    def __init__(self, *contents: str):
        super().__init__([CompletionResponse(content=c, model="mock") for c in contents])
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.active = 0
        self.max_active = 0

    async def generate(self, model_id, messages, tools=None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if not self.entered.is_set():
                self.entered.set()
                await self.release.wait()
            return await super().generate(model_id, messages, tools)
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_second_turn_waits_for_and_sees_the_first():
    model = BlockingModel("first", "second")
    h = Harness(linear_flow(), model=model)
    await h.runner.start_conversation(h.flow.id, conversation_id="c1")

    first = asyncio.create_task(h.runner.send_message("c1", "one"))
    await model.entered.wait()
    second = asyncio.create_task(h.runner.send_message("c1", "two"))
    await asyncio.sleep(0.01)
    assert not second.done()
    assert len(model.calls) == 1

    model.release.set()
    first_turn = (await first).unwrap()
    second_turn = (await second).unwrap()

    assert model.max_active == 1
    assert first_turn.state.last_response.content == "first"
    assert second_turn.state.last_response.content == "second"
    seen = [(m["role"], m["content"]) for m in model.calls[1]["messages"]]
    assert ("user", "one") in seen
    assert ("assistant", "first") in seen
    assert seen[-1] == ("user", "two")
    stored = await h.states.get("c1")
    assert [m.content for m in stored.messages if m.role != "system"] == [
        "one",
        "first",
        "two",
        "second",
    ]


@pytest.mark.asyncio
async def test_direct_steps_on_one_conversation_are_serialized():
    model = BlockingModel("first", "second")
    h = Harness(linear_flow(), model=model)
    state = await new_state(h)
    state.current_node_id = "agent"

    first = asyncio.create_task(h.executor.execute_step(state))
    await model.entered.wait()
    second = asyncio.create_task(h.executor.execute_step(state))
    await asyncio.sleep(0.01)
    assert len(model.calls) == 1

    model.release.set()
    await asyncio.gather(first, second)

    assert model.max_active == 1
    assert len(model.calls) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("cancel_first", [True, False])
async def test_cancel_racing_a_step_keeps_both_writes(cancel_first):
    h = Harness(linear_flow(), states=YieldingStateStore())
    state = await new_state(h)

    if cancel_first:
        cancelled, step = await asyncio.gather(
            h.executor.cancel("c1"), h.executor.execute_step(state)
        )
    else:
        step, cancelled = await asyncio.gather(
            h.executor.execute_step(state), h.executor.cancel("c1")
        )

    assert cancelled is True
    assert step.action == "start-agent"
    stored = await h.states.get("c1")
    assert stored.is_cancelled is True
    assert [m.role for m in stored.messages] == ["system", "user"]
    assert stored.current_node_id == "start"


@pytest.mark.asyncio
async def test_idle_conversation_locks_are_released():
    h = Harness(linear_flow(), model=MockCompletionProvider.replying("hello"))
    state = await new_state(h)

    await h.executor.execute_step(state)
    gc.collect()

    assert "c1" not in h.executor._locks
