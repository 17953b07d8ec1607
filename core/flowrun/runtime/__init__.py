"""Resumable execution: single steps, multi-step turns and debug tracing."""

from flowrun.runtime.conversation_runner import ConversationRunner, TurnResult
from flowrun.runtime.debug_tracer import DebugTracer
from flowrun.runtime.step_executor import StepExecutor, StepResult

__all__ = [
    "ConversationRunner",
    "DebugTracer",
    "StepExecutor",
    "StepResult",
    "TurnResult",
]
