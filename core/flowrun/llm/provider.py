"""Completion capability abstraction for pluggable model backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from flowrun.errors import Result
from flowrun.schemas.conversation_state import ToolCallRequest


@dataclass
class Tool:
    """A tool in the form handed to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_llm_dict(self) -> dict[str, Any]:
        """OpenAI-format function tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class CompletionResponse:
    """Response from a completion call."""

    content: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    raw_response: Any = None


@dataclass
class ModelInfo:
    """What the engine needs to know about a bound model besides calling it."""

    id: str
    display_name: str = ""
    prompt: str = ""


class CompletionProvider(ABC):
    """
    Abstract completion capability - plug in any model backend.

    Implementations own authentication, request formatting, retries and
    timeouts. They never raise for upstream failures; they return
    ``Result.fail(ModelError(...))`` instead.
    """

    @abstractmethod
    async def generate(
        self,
        model_id: str,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None = None,
    ) -> Result[CompletionResponse]:
        """
        Generate one completion.

        Args:
            model_id: Id of the model bound on the Process node.
            messages: OpenAI-format messages, system prompt first.
            tools: Tools the model may call.

        Returns:
            Result carrying content and any tool-call requests.
        """

    def describe_model(self, model_id: str) -> ModelInfo | None:
        """Return display metadata and the model-level prompt, if known."""
        return None
