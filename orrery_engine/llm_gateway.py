"""
Model backend contract and the litellm-backed implementation.

The step loop only depends on ``ModelBackend.invoke``: a message list and
tool schemas go in; final text, a structured object, or tool-call requests
come out. Provider wire formats stay inside the adapter.

Features of LiteLLMBackend:
- Direct litellm.acompletion() calls
- Tool calling (OpenAI function format)
- Structured output via pydantic response models
- Timeout enforcement
- Circuit breaker for resilience
"""
import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from litellm import acompletion
from pydantic import BaseModel, ValidationError

from orrery_engine.cancellation import CancellationSource
from orrery_engine.circuit_breaker import CircuitBreaker
from orrery_engine.config import EngineConfig
from orrery_engine.exceptions import ModelBackendError, OperationCancelled
from orrery_engine.metrics import METRICS

logger = logging.getLogger("orrery.engine.llm")


@dataclass
class ToolCallRequest:
    """One tool invocation requested by the model."""
    name: str
    arguments: dict[str, Any] | str = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")

    def to_message_dict(self) -> dict[str, Any]:
        args = self.arguments if isinstance(self.arguments, str) else json.dumps(self.arguments)
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": args},
        }


@dataclass
class ModelResponse:
    """Response from a model backend: text, a structured object, or tool calls."""
    text: str = ""
    object: Any = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    finish_reason: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class ModelBackend(ABC):
    """Pluggable language-model invocation."""

    name: str = "model"

    @abstractmethod
    async def invoke(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        cancellation: CancellationSource | None = None,
        output_schema: type[BaseModel] | None = None,
    ) -> ModelResponse:
        """Run one completion. Failures raise ModelBackendError."""


class LiteLLMBackend(ModelBackend):
    """
    ModelBackend using the litellm SDK directly.

    Usage:
        backend = LiteLLMBackend(config, model="gpt-4o-mini")
        response = await backend.invoke(messages, tools)
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        **extra: Any,
    ):
        self.config = config or EngineConfig()
        self.model = model or self.config.default_model
        self.name = self.model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._extra = extra
        self._breaker = CircuitBreaker(
            name=f"llm:{self.model}",
            threshold=self.config.circuit_threshold,
            reset_after=self.config.circuit_reset_after,
        )
        if self.config.litellm_api_key:
            self._extra.setdefault("api_key", self.config.litellm_api_key)
        if self.config.litellm_api_base:
            self._extra.setdefault("api_base", self.config.litellm_api_base)

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        output_schema: type[BaseModel] | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature if self.temperature is not None else self.config.default_temperature,
            "max_tokens": self.max_tokens or self.config.default_max_tokens,
            "drop_params": True,  # let litellm drop unsupported params per provider
        }
        kwargs.update(self._extra)
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if output_schema is not None:
            kwargs["response_format"] = output_schema
        return kwargs

    async def invoke(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        cancellation: CancellationSource | None = None,
        output_schema: type[BaseModel] | None = None,
    ) -> ModelResponse:
        if self._breaker.is_open():
            raise ModelBackendError("Circuit breaker open — too many consecutive failures")

        kwargs = self._build_kwargs(messages, tools, output_schema)
        timeout = self.config.llm_timeout_seconds
        start = time.monotonic()

        try:
            call = asyncio.wait_for(acompletion(**kwargs), timeout=timeout)
            if cancellation is not None:
                response = await cancellation.race(call)
            else:
                response = await call
        except OperationCancelled:
            raise
        except asyncio.TimeoutError as e:
            self._breaker.record_failure()
            logger.error("LLM call timed out after %.0fs (failures=%d)", timeout, self._breaker.failure_count)
            raise ModelBackendError(f"LLM completion timed out after {timeout}s") from e
        except Exception as e:
            self._breaker.record_failure()
            logger.error("LLM call failed (failures=%d): %s", self._breaker.failure_count, e)
            raise ModelBackendError(f"LLM completion failed: {e}") from e

        elapsed = time.monotonic() - start
        self._breaker.record_success()
        METRICS.model_latency.labels(model=self.model).observe(elapsed)

        return self._parse(response, output_schema, int(elapsed * 1000))

    def _parse(
        self,
        response: Any,
        output_schema: type[BaseModel] | None,
        latency_ms: int,
    ) -> ModelResponse:
        try:
            choice = response.choices[0]
        except (AttributeError, IndexError) as e:
            raise ModelBackendError("LLM returned no choices") from e

        content = choice.message.content or ""
        tool_calls = []
        for tc in getattr(choice.message, "tool_calls", None) or []:
            raw_args = tc.function.arguments or "{}"
            try:
                args: dict[str, Any] | str = json.loads(raw_args)
            except json.JSONDecodeError:
                args = raw_args  # tool registry reports the malformed payload
            tool_calls.append(ToolCallRequest(id=tc.id, name=tc.function.name, arguments=args))

        obj = None
        if output_schema is not None and not tool_calls:
            try:
                obj = output_schema.model_validate_json(content)
            except ValidationError as e:
                raise ModelBackendError(f"Structured output did not match {output_schema.__name__}: {e}") from e

        usage = getattr(response, "usage", None)
        return ModelResponse(
            text=content,
            object=obj,
            tool_calls=tool_calls,
            model=self.model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            latency_ms=latency_ms,
            finish_reason=choice.finish_reason or "",
        )
