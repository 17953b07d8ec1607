"""Scripted completion provider for tests and offline runs."""

from collections.abc import Callable
from typing import Any

from flowrun.errors import FlowError, Result
from flowrun.llm.provider import CompletionProvider, CompletionResponse, ModelInfo, Tool
from flowrun.schemas.conversation_state import ToolCallRequest

ScriptEntry = CompletionResponse | FlowError | Callable[[list[dict[str, Any]]], CompletionResponse]


class MockCompletionProvider(CompletionProvider):
    """
    Returns queued responses in order.

    Each entry is a CompletionResponse, a FlowError (returned as a failed
    Result), or a callable receiving the messages. When the queue runs dry the
    last entry is repeated. Every call is recorded in ``calls``.
    """

    def __init__(
        self,
        responses: list[ScriptEntry] | None = None,
        models: dict[str, ModelInfo] | None = None,
    ):
        self._responses: list[ScriptEntry] = list(responses or [])
        self._models = models or {}
        self._index = 0
        self.calls: list[dict[str, Any]] = []

    @classmethod
    def replying(cls, *contents: str) -> "MockCompletionProvider":
        return cls([CompletionResponse(content=c, model="mock") for c in contents])

    def add_response(self, entry: ScriptEntry) -> None:
        self._responses.append(entry)

    def add_tool_call(
        self, call_id: str, name: str, arguments: dict[str, Any] | None = None
    ) -> None:
        self._responses.append(
            CompletionResponse(
                content="",
                tool_calls=[ToolCallRequest(id=call_id, name=name, arguments=arguments or {})],
                model="mock",
                stop_reason="tool_calls",
            )
        )

    async def generate(
        self,
        model_id: str,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None = None,
    ) -> Result[CompletionResponse]:
        self.calls.append({"model_id": model_id, "messages": messages, "tools": tools or []})
        if not self._responses:
            return Result.ok(CompletionResponse(content="", model="mock"))

        entry = self._responses[min(self._index, len(self._responses) - 1)]
        self._index += 1
        if isinstance(entry, FlowError):
            return Result.fail(entry)
        if callable(entry):
            return Result.ok(entry(messages))
        return Result.ok(entry)

    def describe_model(self, model_id: str) -> ModelInfo | None:
        return self._models.get(model_id)
