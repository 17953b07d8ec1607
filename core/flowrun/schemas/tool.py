"""Tool definition schema shared by the orchestrator and the state cache."""

from typing import Any

from pydantic import BaseModel, Field


class ToolDefinition(BaseModel):
    """
    A tool discovered on a provider.

    ``name`` is the namespaced name the model sees; ``original_name`` is what
    the provider calls it. Recomputed on every discovery pass, cached in the
    conversation state only as a convenience.
    """

    name: str
    original_name: str
    provider: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}
