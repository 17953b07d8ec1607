"""
Node Lifecycle Runtime.

Every node kind implements three phases, run in order by ``run_node``:

    prepare(node, ctx)                  -> prep      project state into inputs
    execute(node, prep, ctx)            -> result    perform the node's effect
    finalize(node, prep, result, ctx)   -> action    update state, pick a route

The returned action is either a successor label of the node, one of the
reserved actions below, or ``DEFAULT_ACTION`` when there is nowhere to go.
Handlers are stateless; all per-conversation data lives on ``ctx.state``,
which is the step executor's working copy of the conversation.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from flowrun.errors import FlowError, NodeError, NodeErrorCode
from flowrun.graph.flow import (
    FinishProperties,
    NodeKind,
    StartProperties,
    ToolProviderProperties,
    ToolProviderRef,
)
from flowrun.observability.logging import set_log_context
from flowrun.schemas.conversation_state import ChatMessage, ExecutionStatus, LastResponse

if TYPE_CHECKING:
    from flowrun.config import RuntimeConfig
    from flowrun.graph.converter import ExecutableGraph, RuntimeNode
    from flowrun.llm.provider import CompletionProvider
    from flowrun.runner.tool_orchestrator import ToolOrchestrator
    from flowrun.schemas.conversation_state import ConversationState

logger = logging.getLogger(__name__)

# Routing action vocabulary
TOOL_CALL = "TOOL_CALL"
FINAL_RESPONSE = "FINAL_RESPONSE"
ERROR = "ERROR"
STAY_ON_NODE = "STAY_ON_NODE"
DEFAULT_ACTION = "default"

RESERVED_ACTIONS = frozenset({TOOL_CALL, FINAL_RESPONSE, ERROR, STAY_ON_NODE, DEFAULT_ACTION})


@dataclass
class NodeContext:
    """Everything a node phase may read or touch during one step."""

    state: ConversationState
    graph: ExecutableGraph
    model: CompletionProvider
    tools: ToolOrchestrator
    config: RuntimeConfig
    cancel_check: Callable[[], Awaitable[bool]] | None = None

    async def is_cancelled(self) -> bool:
        """Check the working state, then the persisted flag, for a cancellation."""
        if self.state.is_cancelled:
            return True
        if self.cancel_check is not None and await self.cancel_check():
            self.state.is_cancelled = True
            return True
        return False


@dataclass
class NodeTurn:
    """Outcome of one prepare/execute/finalize cycle."""

    action: str
    prep_snapshot: Any = None
    exec_snapshot: Any = None
    error: FlowError | None = None


def snapshot(value: Any) -> Any:
    """JSON-safe deep copy of a phase result for debug records."""
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    elif dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    return json.loads(json.dumps(value, default=_json_default))


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return str(value)


class NodeHandler(ABC):
    """Behavior of one node kind."""

    kind: NodeKind

    @abstractmethod
    async def prepare(self, node: RuntimeNode, ctx: NodeContext) -> Any: ...

    @abstractmethod
    async def execute(self, node: RuntimeNode, prep: Any, ctx: NodeContext) -> Any: ...

    @abstractmethod
    async def finalize(
        self, node: RuntimeNode, prep: Any, result: Any, ctx: NodeContext
    ) -> str: ...

    def route_default(self, node: RuntimeNode, ctx: NodeContext) -> str:
        succ = ctx.graph.select_default_successor(node.id)
        return succ.label if succ else DEFAULT_ACTION


class StartNode(NodeHandler):
    """Seeds the transcript with the flow's system prompt and moves on."""

    kind = NodeKind.START

    async def prepare(self, node: RuntimeNode, ctx: NodeContext) -> StartProperties:
        return node.properties  # type: ignore[return-value]

    async def execute(
        self, node: RuntimeNode, prep: StartProperties, ctx: NodeContext
    ) -> StartProperties:
        return prep

    async def finalize(
        self, node: RuntimeNode, prep: StartProperties, result: StartProperties, ctx: NodeContext
    ) -> str:
        if result.prompt_template and not ctx.state.has_system_message():
            ctx.state.messages.insert(
                0, ChatMessage(role="system", content=result.prompt_template, node_id=node.id)
            )
        return self.route_default(node, ctx)


class ToolProviderNode(NodeHandler):
    """Connects to its bound provider and caches the provider's enabled tools."""

    kind = NodeKind.TOOL_PROVIDER

    async def prepare(self, node: RuntimeNode, ctx: NodeContext) -> ToolProviderRef:
        props: ToolProviderProperties = node.properties  # type: ignore[assignment]
        if not props.bound_provider:
            raise NodeError(
                NodeErrorCode.MISSING_REQUIRED_PROPERTY,
                f"Tool provider node '{node.id}' has no bound provider",
                node_id=node.id,
                node_kind=self.kind,
                details={"property": "bound_provider"},
            )
        return ToolProviderRef(
            id=node.id,
            bound_provider=props.bound_provider,
            enabled_tools=list(props.enabled_tools),
            env=dict(props.env),
        )

    async def execute(self, node: RuntimeNode, prep: ToolProviderRef, ctx: NodeContext) -> list:
        return (await ctx.tools.discover_tools([prep])).unwrap()

    async def finalize(
        self, node: RuntimeNode, prep: ToolProviderRef, result: list, ctx: NodeContext
    ) -> str:
        ctx.state.tool_cache[prep.bound_provider] = result
        logger.info(f"Cached {len(result)} tools for provider '{prep.bound_provider}'")
        return self.route_default(node, ctx)


class FinishNode(NodeHandler):
    """Records the final answer and ends the conversation when nothing follows."""

    kind = NodeKind.FINISH

    async def prepare(self, node: RuntimeNode, ctx: NodeContext) -> FinishProperties:
        return node.properties  # type: ignore[return-value]

    async def execute(
        self, node: RuntimeNode, prep: FinishProperties, ctx: NodeContext
    ) -> str | None:
        last = ctx.state.last_assistant_message()
        return last.content if last else None

    async def finalize(
        self, node: RuntimeNode, prep: FinishProperties, result: str | None, ctx: NodeContext
    ) -> str:
        ctx.state.last_response = LastResponse(success=True, content=result)
        action = self.route_default(node, ctx)
        if action == DEFAULT_ACTION:
            ctx.state.status = ExecutionStatus.COMPLETED
        return action


_HANDLERS: dict[NodeKind, NodeHandler] = {}


def get_handler(kind: NodeKind) -> NodeHandler:
    if not _HANDLERS:
        from flowrun.graph.process_node import ProcessNode

        for handler in (StartNode(), ProcessNode(), ToolProviderNode(), FinishNode()):
            _HANDLERS[handler.kind] = handler
    return _HANDLERS[kind]


async def run_node(node: RuntimeNode, ctx: NodeContext) -> NodeTurn:
    """
    Run one node turn.

    Faults in any phase are returned as ``NodeTurn(action=ERROR, error=...)``;
    structured errors pass through unchanged, anything else becomes a
    NodeError naming the failing phase.
    """
    set_log_context(node_id=node.id)
    handler = get_handler(node.kind)
    turn = NodeTurn(action=ERROR)
    phase = "prepare"
    try:
        prep = await handler.prepare(node, ctx)
        turn.prep_snapshot = snapshot(prep)
        phase = "execute"
        result = await handler.execute(node, prep, ctx)
        turn.exec_snapshot = snapshot(result)
        phase = "finalize"
        turn.action = await handler.finalize(node, prep, result, ctx)
    except FlowError as e:
        logger.error(f"Node '{node.id}' failed during {phase}: [{e.code}] {e.message}")
        turn.error = e
    except Exception as e:
        logger.exception(f"Node '{node.id}' raised during {phase}")
        turn.error = NodeError(
            NodeErrorCode.NODE_EXECUTION_FAILED,
            f"{phase} failed: {e}",
            node_id=node.id,
            node_kind=node.kind,
            details={"phase": phase, "exception_type": type(e).__name__},
        )
    if turn.error is not None:
        turn.action = ERROR
    logger.debug(f"Node '{node.id}' ({node.kind}) -> {turn.action}", extra={"action": turn.action})
    return turn
