"""
Conversation Runner - drives multi-step turns for a conversation.

One user turn is a loop of single steps:

    step ──► FINAL_RESPONSE / ERROR / STAY_ON_NODE / default   stop
         ──► TOOL_CALL                                       continue (or stop if gated)
         ──► <edge label>                                    move to target, continue

The loop also stops whenever the conversation leaves ``running`` (approval
gate, debug pause, completion, error) and after ``max_steps_per_turn`` steps.
"""

import logging
import uuid
from dataclasses import dataclass, field

from flowrun.config import RuntimeConfig
from flowrun.errors import ExecutionError, ExecutionErrorCode, Result
from flowrun.graph.flow import NodeKind
from flowrun.graph.hitl import ApprovalDecision, ApprovalGate
from flowrun.graph.node import DEFAULT_ACTION, ERROR, FINAL_RESPONSE, STAY_ON_NODE, TOOL_CALL
from flowrun.runtime.debug_tracer import DebugTracer, conversation_not_found
from flowrun.runtime.step_executor import StepExecutor, StepResult
from flowrun.schemas.conversation_state import (
    ChatMessage,
    ConversationState,
    ExecutionStatus,
    StepRecord,
)

logger = logging.getLogger(__name__)

_STOP_ACTIONS = frozenset({FINAL_RESPONSE, ERROR, STAY_ON_NODE, DEFAULT_ACTION})


@dataclass
class TurnResult:
    """What one run of the turn loop did."""

    state: ConversationState
    actions: list[str] = field(default_factory=list)
    steps: int = 0

    @property
    def last_action(self) -> str | None:
        return self.actions[-1] if self.actions else None


class ConversationRunner:
    """
    Public entry point for running conversations over a StepExecutor.

    Example:
        runner = ConversationRunner(executor)
        state = await runner.start_conversation("support-flow")
        turn = (await runner.send_message(state.conversation_id, "hi")).unwrap()
        print(turn.state.last_response.content)
    """

    def __init__(self, executor: StepExecutor, config: RuntimeConfig | None = None):
        self.executor = executor
        self.store = executor.state_store
        self.config = config or executor.config
        self.approval_gate = ApprovalGate(executor.orchestrator)
        self.tracer = DebugTracer(executor, self.store)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_conversation(
        self,
        flow_id: str,
        conversation_id: str | None = None,
        title: str = "",
        require_approval: bool | None = None,
    ) -> ConversationState:
        state = ConversationState(
            conversation_id=conversation_id or str(uuid.uuid4()),
            flow_id=flow_id,
            title=title,
            require_approval=(
                self.config.require_approval if require_approval is None else require_approval
            ),
        )
        await self.store.put(state)
        logger.info(f"Started conversation {state.conversation_id} on flow '{flow_id}'")
        return state

    async def get_state(self, conversation_id: str) -> ConversationState | None:
        return await self.store.get(conversation_id)

    async def send_message(self, conversation_id: str, content: str) -> Result[TurnResult]:
        """Append a user message and run the turn (only append while debugging)."""
        async with self.executor.lock_for(conversation_id):
            state = await self.store.get(conversation_id)
            if state is None:
                return Result.fail(conversation_not_found(conversation_id))
            if state.status == ExecutionStatus.AWAITING_TOOL_APPROVAL:
                return Result.fail(
                    ExecutionError(
                        ExecutionErrorCode.INVALID_STATUS,
                        "Conversation is waiting for tool approval",
                        details={"pending": [c.id for c in state.pending_tool_calls]},
                    )
                )

            state.add_message(ChatMessage(role="user", content=content))
            state.is_cancelled = False
            self.executor.clear_cancellation(conversation_id)
            state.last_response = None
            if self._finished(state):
                # A new message after Finish starts over from Start
                state.current_node_id = None
            if not state.debug_mode:
                state.status = ExecutionStatus.RUNNING
            elif state.status in (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR):
                state.status = ExecutionStatus.PAUSED_DEBUG
            state.touch()
            await self.store.put(state)

        if state.debug_mode:
            return Result.ok(TurnResult(state=state))
        return Result.ok(await self.run_turn(conversation_id))

    @staticmethod
    def _finished(state: ConversationState) -> bool:
        """True when a Finish node completed the conversation."""
        if state.status != ExecutionStatus.COMPLETED:
            return False
        # Under the debugger a plain answer also reports completed
        if state.debug_mode and state.debug_trace:
            return state.debug_trace[-1].node_kind == NodeKind.FINISH
        return True

    async def run_turn(self, conversation_id: str) -> TurnResult:
        """Step the conversation until it stops, pauses or exhausts the step budget."""
        state = await self.store.get(conversation_id)
        if state is None:
            raise conversation_not_found(conversation_id)

        turn = TurnResult(state=state)
        while True:
            # Each step re-reads the store under the lock, so concurrent turns
            # on one conversation never write over each other
            async with self.executor.lock_for(conversation_id):
                state = await self.store.get(conversation_id)
                if state is None or state.status != ExecutionStatus.RUNNING:
                    break
                turn.state = state
                if turn.steps >= self.config.max_steps_per_turn:
                    logger.warning(
                        f"Conversation {conversation_id} hit the step limit "
                        f"({self.config.max_steps_per_turn}) for one turn"
                    )
                    break

                result = await self.executor.run_locked(state)
                turn.steps += 1
                turn.actions.append(result.action)
                turn.state = result.state

                if result.action in _STOP_ACTIONS:
                    break
                if result.action == TOOL_CALL:
                    continue
                if result.next_node_id is None:
                    logger.warning(f"Action '{result.action}' has no successor; ending turn")
                    break
                turn.state = await self._advance(result)

        return turn

    async def _advance(self, result: StepResult) -> ConversationState:
        # Caller holds the conversation lock
        state = result.state
        state.current_node_id = result.next_node_id
        state.touch()
        await self.store.put(state)
        logger.debug(f"Moved from '{result.node_id}' to '{result.next_node_id}'")
        return state

    async def cancel(self, conversation_id: str) -> bool:
        return await self.executor.cancel(conversation_id)

    # ------------------------------------------------------------------
    # Approval gate
    # ------------------------------------------------------------------

    async def respond_to_tool_call(
        self,
        conversation_id: str,
        tool_call_id: str,
        decision: ApprovalDecision | str,
    ) -> Result[ConversationState]:
        async with self.executor.lock_for(conversation_id):
            state = await self.store.get(conversation_id)
            if state is None:
                return Result.fail(conversation_not_found(conversation_id))
            responded = await self.approval_gate.respond(state, tool_call_id, decision)
            if not responded.success:
                return responded
            await self.store.put(state)

        if state.status == ExecutionStatus.RUNNING and not state.debug_mode:
            turn = await self.run_turn(conversation_id)
            return Result.ok(turn.state)
        return Result.ok(state)

    # ------------------------------------------------------------------
    # Debugging
    # ------------------------------------------------------------------

    async def start_debug(self, conversation_id: str) -> Result[ConversationState]:
        async with self.executor.lock_for(conversation_id):
            state = await self.store.get(conversation_id)
            if state is None:
                return Result.fail(conversation_not_found(conversation_id))
            if not state.debug_mode:
                state.original_require_approval = state.require_approval
            state.debug_mode = True
            state.require_approval = True
            # A finished conversation stays completed until the next message
            if state.status == ExecutionStatus.RUNNING:
                state.status = ExecutionStatus.PAUSED_DEBUG
            state.touch()
            await self.store.put(state)
        logger.info(f"Debugging conversation {conversation_id}")
        return Result.ok(state)

    async def debug_step(self, conversation_id: str) -> Result[StepResult]:
        return await self.tracer.step(conversation_id)

    async def debug_step_back(self, conversation_id: str) -> Result[StepRecord | None]:
        return await self.tracer.step_back(conversation_id)

    async def debug_step_forward(self, conversation_id: str) -> Result[StepRecord | None]:
        return await self.tracer.step_forward(conversation_id)

    async def debug_continue(self, conversation_id: str) -> Result[TurnResult]:
        """Leave debug mode, restore the approval policy and resume the turn."""
        async with self.executor.lock_for(conversation_id):
            state = await self.store.get(conversation_id)
            if state is None:
                return Result.fail(conversation_not_found(conversation_id))
            resume = state.status == ExecutionStatus.PAUSED_DEBUG
            # A plain answer under the debugger reads as completed; normal mode keeps running
            if resume or (
                state.status == ExecutionStatus.COMPLETED and not self._finished(state)
            ):
                state.status = ExecutionStatus.RUNNING
            state.debug_mode = False
            if state.original_require_approval is not None:
                state.require_approval = state.original_require_approval
                state.original_require_approval = None
            state.touch()
            await self.store.put(state)

        if not resume:
            return Result.ok(TurnResult(state=state))
        return Result.ok(await self.run_turn(conversation_id))
