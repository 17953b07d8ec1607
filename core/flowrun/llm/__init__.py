"""Completion capability and its adapters."""

from flowrun.llm.mock import MockCompletionProvider
from flowrun.llm.provider import CompletionProvider, CompletionResponse, ModelInfo, Tool

__all__ = [
    "CompletionProvider",
    "CompletionResponse",
    "ModelInfo",
    "Tool",
    "MockCompletionProvider",
]
