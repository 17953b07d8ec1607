"""LiteLLM-backed completion provider.

Resolves a Process node's bound model id through the configured model
registry and calls ``litellm.acompletion`` with OpenAI-format messages and
tools. Upstream failures come back as ``ModelError`` results.
"""

import json
import logging
import os
import time
from typing import Any

import litellm

from flowrun.config import ModelConfig, get_model_configs
from flowrun.errors import ModelError, ModelErrorCode, Result
from flowrun.llm.provider import CompletionProvider, CompletionResponse, ModelInfo, Tool
from flowrun.schemas.conversation_state import ToolCallRequest

logger = logging.getLogger(__name__)


class LiteLLMProvider(CompletionProvider):
    """
    Completion provider for any model LiteLLM supports.

    Models are looked up by id in ``models`` (defaults to the ``models``
    section of the configuration file). An unknown id fails with
    ``model_not_found``; the engine never guesses a model.
    """

    def __init__(self, models: dict[str, ModelConfig] | None = None):
        self.models = models if models is not None else get_model_configs()

    def describe_model(self, model_id: str) -> ModelInfo | None:
        config = self.models.get(model_id)
        if config is None:
            return None
        return ModelInfo(id=config.id, display_name=config.display_name, prompt=config.prompt)

    def _resolve_api_key(self, config: ModelConfig) -> Result[str | None]:
        if not config.api_key_env_var:
            return Result.ok(None)
        api_key = os.environ.get(config.api_key_env_var)
        if not api_key:
            return Result.fail(
                ModelError(
                    ModelErrorCode.API_KEY_ERROR,
                    f"Environment variable {config.api_key_env_var} is not set",
                    model_id=config.id,
                )
            )
        return Result.ok(api_key)

    async def generate(
        self,
        model_id: str,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None = None,
    ) -> Result[CompletionResponse]:
        config = self.models.get(model_id)
        if config is None:
            return Result.fail(
                ModelError(
                    ModelErrorCode.MODEL_NOT_FOUND,
                    f"Model not found: {model_id}",
                    model_id=model_id,
                )
            )

        key_result = self._resolve_api_key(config)
        if not key_result.success:
            return Result.fail(key_result.error)

        kwargs: dict[str, Any] = {"model": config.model, "messages": messages}
        if tools:
            kwargs["tools"] = [tool.to_llm_dict() for tool in tools]
        if key_result.value:
            kwargs["api_key"] = key_result.value
        if config.api_base:
            kwargs["api_base"] = config.api_base
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature
        if config.max_tokens is not None:
            kwargs["max_tokens"] = config.max_tokens

        started = time.monotonic()
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            return Result.fail(self._to_model_error(e, model_id))

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            f"Completion from '{config.model}' in {latency_ms}ms",
            extra={"model": config.model, "latency_ms": latency_ms},
        )
        return Result.ok(self._parse_response(response, config))

    def _parse_response(self, response: Any, config: ModelConfig) -> CompletionResponse:
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallRequest] = []
        for call in getattr(message, "tool_calls", None) or []:
            raw_args = call.function.arguments or "{}"
            try:
                arguments = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
            except (TypeError, ValueError):
                logger.warning(f"Tool call '{call.function.name}' had malformed arguments")
                arguments = {"_raw": raw_args}
            if not isinstance(arguments, dict):
                logger.warning(f"Tool call '{call.function.name}' arguments are not an object")
                arguments = {"_raw": raw_args}
            tool_calls.append(
                ToolCallRequest(id=call.id, name=call.function.name, arguments=arguments)
            )

        usage = getattr(response, "usage", None)
        return CompletionResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            model=getattr(response, "model", None) or config.model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )

    def _to_model_error(self, exc: Exception, model_id: str) -> ModelError:
        status = getattr(exc, "status_code", None)
        if status is None:
            logger.error(f"Completion for model '{model_id}' failed: {exc}")
            return ModelError(ModelErrorCode.UNKNOWN_ERROR, str(exc), model_id=model_id)

        details = {
            "status": status,
            "type": getattr(exc, "type", None),
            "code": getattr(exc, "code", None),
            "param": getattr(exc, "param", None),
        }
        logger.error(f"Upstream API error for model '{model_id}' (status {status}): {exc}")
        return ModelError(
            ModelErrorCode.API_ERROR,
            getattr(exc, "message", None) or str(exc),
            model_id=model_id,
            request_id=getattr(exc, "request_id", None),
            details=details,
        )
