"""
Step Executor - runs exactly one node turn of a conversation.

The executor:
1. Resolves the executable graph for the conversation's flow (cached per flow
   id, cloned for every step)
2. Locates the node to run from ``state.current_node_id`` (Start when unset)
3. Runs the node's prepare/execute/finalize cycle on a working copy of the state
4. Persists the resulting state and returns it with the routing action

The state store, not a call stack, carries "where we are": any later call with
the same conversation id picks up from the persisted state.
"""

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass
from typing import Any

from flowrun.config import RuntimeConfig
from flowrun.errors import (
    ExecutionError,
    ExecutionErrorCode,
    FlowError,
    GraphError,
    GraphErrorCode,
    wrap_exception,
)
from flowrun.graph.converter import ExecutableGraph, GraphConverter, RuntimeNode
from flowrun.graph.node import ERROR, NodeContext, run_node
from flowrun.llm.provider import CompletionProvider
from flowrun.observability.logging import clear_log_context, set_log_context
from flowrun.runner.tool_orchestrator import ToolOrchestrator
from flowrun.schemas.conversation_state import (
    ConversationState,
    ExecutionStatus,
    LastResponse,
)
from flowrun.storage.flow_store import FlowStore
from flowrun.storage.state_store import StateStore

logger = logging.getLogger(__name__)

MISSING_CONVERSATION_ID_MESSAGE = "Internal error: Missing conversationId."


@dataclass
class StepResult:
    """Outcome of one executed step."""

    state: ConversationState
    action: str
    node_id: str | None = None
    node_kind: str | None = None
    node_name: str | None = None
    next_node_id: str | None = None  # Target of the action's successor, if it names one
    prep_snapshot: Any = None
    exec_snapshot: Any = None
    error: FlowError | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class StepExecutor:
    """
    Executes one node turn per call, keyed by conversation id.

    Steps for the same conversation are serialized with a per-conversation
    lock; different conversations run independently. Every write of a
    conversation's state happens under its lock.
    """

    def __init__(
        self,
        flow_store: FlowStore,
        state_store: StateStore,
        model: CompletionProvider,
        orchestrator: ToolOrchestrator,
        config: RuntimeConfig | None = None,
        converter: GraphConverter | None = None,
    ):
        self.flow_store = flow_store
        self.state_store = state_store
        self.model = model
        self.orchestrator = orchestrator
        self.config = config or RuntimeConfig()
        self.converter = converter or GraphConverter()
        self._graphs: dict[str, ExecutableGraph] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._cancel_requests: set[str] = set()

    def lock_for(self, conversation_id: str) -> asyncio.Lock:
        """
        Return the lock serializing steps of one conversation.

        Entries are weak: a lock lives as long as someone holds or awaits it.
        """
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def invalidate(self, flow_id: str | None = None) -> None:
        """Drop cached graphs (one flow, or all of them)."""
        if flow_id is None:
            self._graphs.clear()
        else:
            self._graphs.pop(flow_id, None)

    async def get_graph(self, flow_id: str) -> ExecutableGraph:
        """Return a private clone of the flow's executable graph."""
        graph = self._graphs.get(flow_id)
        if graph is None:
            flow = await self.flow_store.get_flow(flow_id)
            if flow is None:
                raise GraphError(
                    GraphErrorCode.FLOW_NOT_FOUND,
                    f"Flow not found: {flow_id}",
                    details={"flow_id": flow_id},
                )
            graph = self.converter.convert(flow).unwrap()
            self._graphs[flow_id] = graph
        return graph.clone()

    async def cancel(self, conversation_id: str) -> bool:
        """
        Request cancellation of the conversation's current or next Process turn.

        While another task holds the conversation lock the request is only
        recorded in memory; a running Process loop sees it at its next check
        and the step persists the flag with its own write. Otherwise the flag
        is written under the lock on a freshly read state.
        """
        if await self.state_store.get(conversation_id) is None:
            return False

        lock = self.lock_for(conversation_id)
        if lock.locked():
            self._cancel_requests.add(conversation_id)
        else:
            async with lock:
                state = await self.state_store.get(conversation_id)
                if state is None:
                    return False
                state.is_cancelled = True
                state.touch()
                await self.state_store.put(state)
        logger.info(f"Cancellation requested for conversation {conversation_id}")
        return True

    def clear_cancellation(self, conversation_id: str) -> None:
        """Forget an in-memory cancel request. Call with the conversation lock held."""
        self._cancel_requests.discard(conversation_id)

    async def execute_step(self, state: ConversationState) -> StepResult:
        """
        Run one node turn for ``state`` and persist the result.

        Never raises: faults come back as ``StepResult(action=ERROR)`` with an
        error-flavored state that has also been persisted.
        """
        if not state.conversation_id:
            working = state.model_copy(deep=True)
            working.last_response = LastResponse(
                success=False,
                error=MISSING_CONVERSATION_ID_MESSAGE,
                error_details={"code": str(ExecutionErrorCode.MISSING_CONVERSATION_ID)},
            )
            logger.error(MISSING_CONVERSATION_ID_MESSAGE)
            return StepResult(
                state=working,
                action=ERROR,
                error=ExecutionError(
                    ExecutionErrorCode.MISSING_CONVERSATION_ID, MISSING_CONVERSATION_ID_MESSAGE
                ),
            )

        async with self.lock_for(state.conversation_id):
            return await self.run_locked(state)

    async def run_locked(self, state: ConversationState) -> StepResult:
        """Same as ``execute_step``, for callers already holding the conversation lock."""
        set_log_context(
            conversation_id=state.conversation_id,
            flow_id=state.flow_id,
            trace_id=uuid.uuid4().hex[:16],
        )
        try:
            return await self._execute_step(state)
        finally:
            clear_log_context()

    async def _execute_step(self, state: ConversationState) -> StepResult:
        previous_node_id = state.current_node_id
        working = state.model_copy(deep=True)

        try:
            graph = await self.get_graph(state.flow_id)
            node = self._locate_node(graph, state.current_node_id)
        except Exception as e:
            return await self._fail(working, previous_node_id, wrap_exception(e))

        working.current_node_id = node.id
        ctx = NodeContext(
            state=working,
            graph=graph,
            model=self.model,
            tools=self.orchestrator,
            config=self.config,
            cancel_check=lambda: self._is_cancelled(state.conversation_id),
        )

        try:
            turn = await run_node(node, ctx)
        except Exception as e:
            # run_node converts node faults itself; this covers the driver
            logger.exception(f"Step on node '{node.id}' failed outside the node lifecycle")
            return await self._fail(working, previous_node_id, wrap_exception(e), node)

        if turn.error is not None:
            result = await self._fail(working, previous_node_id, turn.error, node)
            result.prep_snapshot = turn.prep_snapshot
            result.exec_snapshot = turn.exec_snapshot
            return result

        await self._persist(working)

        succ = graph.successor(node.id, turn.action)
        logger.info(
            f"Step on '{node.id}' ({node.kind}) -> {turn.action}",
            extra={"event": "step_completed", "action": turn.action},
        )
        return StepResult(
            state=working,
            action=turn.action,
            node_id=node.id,
            node_kind=str(node.kind),
            node_name=node.name,
            next_node_id=succ.target_id if succ else None,
            prep_snapshot=turn.prep_snapshot,
            exec_snapshot=turn.exec_snapshot,
        )

    def _locate_node(self, graph: ExecutableGraph, node_id: str | None) -> RuntimeNode:
        if not node_id:
            return graph.start_node
        node = graph.find_node(node_id)
        if node is None:
            logger.warning(f"Node '{node_id}' not reachable in flow '{graph.flow_id}'; using start")
            return graph.start_node
        return node

    async def _is_cancelled(self, conversation_id: str) -> bool:
        if conversation_id in self._cancel_requests:
            return True
        stored = await self.state_store.get(conversation_id)
        return conversation_id in self._cancel_requests or bool(stored and stored.is_cancelled)

    async def _persist(self, working: ConversationState) -> None:
        """Write the step's state, folding in any cancellation requested meanwhile."""
        if await self._is_cancelled(working.conversation_id):
            working.is_cancelled = True
        self._cancel_requests.discard(working.conversation_id)
        working.touch()
        await self.state_store.put(working)

    async def _fail(
        self,
        working: ConversationState,
        previous_node_id: str | None,
        error: FlowError,
        node: RuntimeNode | None = None,
    ) -> StepResult:
        """Persist an error-flavored state; partial progress in ``working`` is kept."""
        logger.error(f"Step failed: [{error.code}] {error.message}")
        working.current_node_id = previous_node_id
        if working.pending_tool_calls:
            working.clear_pending(ExecutionStatus.ERROR)
        working.status = ExecutionStatus.ERROR
        working.last_response = LastResponse(
            success=False, error=error.message, error_details=error.to_dict()
        )
        await self._persist(working)
        return StepResult(
            state=working,
            action=ERROR,
            node_id=node.id if node else None,
            node_kind=str(node.kind) if node else None,
            node_name=node.name if node else None,
            error=error,
        )
