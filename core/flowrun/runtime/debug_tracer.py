"""
Debug Tracer - step-level recording and navigation for debug sessions.

Every real step taken under the debugger appends an immutable StepRecord
(state before/after, prepare and execute snapshots, action) to the
conversation's ``debug_trace``. ``debug_cursor`` points at the record being
inspected. Moving the cursor never re-executes a node; moving it past the end
of the trace runs exactly one new real step.
"""

import logging

from flowrun.errors import ExecutionError, ExecutionErrorCode, Result
from flowrun.graph.node import ERROR, FINAL_RESPONSE
from flowrun.runtime.step_executor import StepExecutor, StepResult
from flowrun.schemas.conversation_state import ConversationState, ExecutionStatus, StepRecord
from flowrun.storage.state_store import StateStore

logger = logging.getLogger(__name__)


def conversation_not_found(conversation_id: str) -> ExecutionError:
    return ExecutionError(
        ExecutionErrorCode.CONVERSATION_NOT_FOUND,
        f"Conversation not found: {conversation_id}",
        details={"conversation_id": conversation_id},
    )


class DebugTracer:
    def __init__(self, executor: StepExecutor, store: StateStore):
        self.executor = executor
        self.store = store

    async def step(self, conversation_id: str) -> Result[StepResult]:
        """Run one real step of a paused debug session and record it."""
        async with self.executor.lock_for(conversation_id):
            state = await self.store.get(conversation_id)
            if state is None:
                return Result.fail(conversation_not_found(conversation_id))
            if state.status != ExecutionStatus.PAUSED_DEBUG:
                return Result.fail(
                    ExecutionError(
                        ExecutionErrorCode.INVALID_STATUS,
                        f"Debug step requires status paused_debug, got {state.status}",
                        details={"status": str(state.status)},
                    )
                )

            before = state.snapshot()
            result = await self.executor.run_locked(state)
            record = self._record(result, before)
            await self.store.put(result.state)

        logger.info(f"Debug step {record.step_index}: '{record.node_id}' -> {record.action}")
        return Result.ok(result)

    def _record(self, result: StepResult, before: dict) -> StepRecord:
        after_state = result.state

        # Status policy under the debugger
        if result.action == FINAL_RESPONSE:
            after_state.status = ExecutionStatus.COMPLETED
        elif result.action == ERROR:
            after_state.status = ExecutionStatus.ERROR
        elif after_state.status not in (
            ExecutionStatus.AWAITING_TOOL_APPROVAL,
            ExecutionStatus.COMPLETED,
        ):
            after_state.status = ExecutionStatus.PAUSED_DEBUG

        # Debug stepping advances along the chosen edge itself
        if result.next_node_id is not None:
            after_state.current_node_id = result.next_node_id

        record = StepRecord(
            step_index=len(after_state.debug_trace),
            node_id=result.node_id or "",
            node_kind=result.node_kind or "",
            node_name=result.node_name or "",
            action=result.action,
            state_before=before,
            state_after=after_state.snapshot(),
            prep_snapshot=result.prep_snapshot,
            exec_snapshot=result.exec_snapshot,
        )
        after_state.debug_trace.append(record)
        after_state.debug_cursor = record.step_index
        after_state.touch()
        return record

    async def step_back(self, conversation_id: str) -> Result[StepRecord | None]:
        async with self.executor.lock_for(conversation_id):
            state = await self.store.get(conversation_id)
            if state is None:
                return Result.fail(conversation_not_found(conversation_id))
            if not state.debug_trace:
                return Result.ok(None)
            state.debug_cursor = max(self._cursor(state) - 1, 0)
            await self.store.put(state)
        return Result.ok(state.debug_trace[state.debug_cursor])

    async def step_forward(self, conversation_id: str) -> Result[StepRecord | None]:
        """Move to the next recorded step, or take one real step past the end."""
        async with self.executor.lock_for(conversation_id):
            state = await self.store.get(conversation_id)
            if state is None:
                return Result.fail(conversation_not_found(conversation_id))
            cursor = self._cursor(state)
            if cursor + 1 < len(state.debug_trace):
                state.debug_cursor = cursor + 1
                await self.store.put(state)
                return Result.ok(state.debug_trace[state.debug_cursor])

        stepped = await self.step(conversation_id)
        if not stepped.success:
            return Result.fail(stepped.error)
        trace = stepped.value.state.debug_trace
        return Result.ok(trace[-1] if trace else None)

    async def current(self, conversation_id: str) -> StepRecord | None:
        state = await self.store.get(conversation_id)
        if state is None or not state.debug_trace:
            return None
        return state.debug_trace[self._cursor(state)]

    @staticmethod
    def _cursor(state: ConversationState) -> int:
        last = len(state.debug_trace) - 1
        if state.debug_cursor is None:
            return last
        return min(max(state.debug_cursor, 0), last)
