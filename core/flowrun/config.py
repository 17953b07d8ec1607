"""Shared flowrun configuration.

Reads ~/.flowrun/configuration.json (or the file named by FLOWRUN_CONFIG) so
the CLI, the step executor and the model adapter agree on one set of
defaults. Example file:

    {
      "runtime": {"require_approval": true, "max_tool_iterations": 30},
      "storage": {"path": "~/.flowrun/data", "flows_path": "~/.flowrun/flows"},
      "models": {
        "fast": {"model": "anthropic/claude-haiku-4-5-20251001",
                 "display_name": "Haiku", "api_key_env_var": "ANTHROPIC_API_KEY"}
      },
      "mcp_servers": {
        "search": {"transport": "stdio", "command": "uv", "args": ["run", "server.py"]}
      }
    }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MAX_TOOL_ITERATIONS = 30
DEFAULT_MAX_STEPS_PER_TURN = 15

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWRUN_HOME = Path.home() / ".flowrun"
FLOWRUN_CONFIG_FILE = FLOWRUN_HOME / "configuration.json"


def get_config_path() -> Path:
    override = os.environ.get("FLOWRUN_CONFIG")
    return Path(override).expanduser() if override else FLOWRUN_CONFIG_FILE


def get_flowrun_config() -> dict[str, Any]:
    """Load the configuration file, returning {} when absent or unreadable."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass
class ModelConfig:
    """A model a Process node can bind to, keyed by ``id``."""

    id: str
    model: str  # LiteLLM model string, e.g. "openai/gpt-4o-mini"
    display_name: str = ""
    prompt: str = ""  # Model-level system prompt
    api_base: str | None = None
    api_key_env_var: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    @classmethod
    def from_dict(cls, model_id: str, data: dict[str, Any]) -> "ModelConfig":
        return cls(
            id=model_id,
            model=data.get("model", model_id),
            display_name=data.get("display_name", ""),
            prompt=data.get("prompt", ""),
            api_base=data.get("api_base"),
            api_key_env_var=data.get("api_key_env_var"),
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens"),
        )


def get_model_configs() -> dict[str, ModelConfig]:
    models = get_flowrun_config().get("models", {})
    return {model_id: ModelConfig.from_dict(model_id, data) for model_id, data in models.items()}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _runtime_section() -> dict[str, Any]:
    return get_flowrun_config().get("runtime", {})


def _storage_section() -> dict[str, Any]:
    return get_flowrun_config().get("storage", {})


def get_require_approval() -> bool:
    return bool(_runtime_section().get("require_approval", False))


def get_max_tool_iterations() -> int:
    return int(_runtime_section().get("max_tool_iterations", DEFAULT_MAX_TOOL_ITERATIONS))


def get_max_steps_per_turn() -> int:
    return int(_runtime_section().get("max_steps_per_turn", DEFAULT_MAX_STEPS_PER_TURN))


def get_storage_path() -> Path:
    return Path(_storage_section().get("path", FLOWRUN_HOME / "data")).expanduser()


def get_flows_path() -> Path:
    return Path(_storage_section().get("flows_path", FLOWRUN_HOME / "flows")).expanduser()


def get_log_level() -> str:
    return os.environ.get("FLOWRUN_LOG_LEVEL") or _runtime_section().get("log_level", "INFO")


def get_mcp_server_configs() -> dict[str, dict[str, Any]]:
    return get_flowrun_config().get("mcp_servers", {})


# ---------------------------------------------------------------------------
# RuntimeConfig
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Engine runtime configuration loaded from the configuration file."""

    require_approval: bool = field(default_factory=get_require_approval)
    max_tool_iterations: int = field(default_factory=get_max_tool_iterations)
    max_steps_per_turn: int = field(default_factory=get_max_steps_per_turn)
    storage_path: Path = field(default_factory=get_storage_path)
    flows_path: Path = field(default_factory=get_flows_path)
    log_level: str = field(default_factory=get_log_level)
    models: dict[str, ModelConfig] = field(default_factory=get_model_configs)
