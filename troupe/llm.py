"""
Text-generation interface consumed by the turn engine.

The engine only ever needs one operation: given a model identifier, a list of
role-tagged messages and sampling parameters, return generated text. Anything
that matches the ``TextGenerator`` protocol can be injected:

    async def __call__(self, request: GenerationRequest) -> str: ...

``MirascopeGenerator`` is the bundled implementation. It routes remote
providers (openai, anthropic, ...) through Mirascope and ``ollama`` through the
local chat transport. Generation calls are never retried here and only time out
when a timeout is configured: a raised exception propagates to the caller and
aborts the turn.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from mirascope import llm
from mirascope.core import BaseMessageParam

from .local_llm import LocalLLMError, call_ollama_chat
from .logging_utils import env_flag, log_llm
from .schemas import ReasoningEffort
from .tracing import Tracer


DEFAULT_TEMPERATURE = 0.4

# Model families that accept a reasoning-effort parameter
REASONING_MODEL_PREFIXES = ("openai/gpt-5", "openai/o", "x-ai/grok", "gpt-5", "o1", "o3", "o4")


@dataclass
class ChatMessage:
    role: str  # "system" | "user" | "assistant"
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class GenerationTrace:
    """Names a generation step for logs and spans (e.g. ``turn.director``)."""

    name: str
    input: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationRequest:
    model: str
    messages: List[ChatMessage]
    temperature: float = DEFAULT_TEMPERATURE
    reasoning_effort: ReasoningEffort = ReasoningEffort.AUTO
    trace: Optional[GenerationTrace] = None

    @property
    def step(self) -> str:
        return self.trace.name if self.trace else "generation"


class TextGenerator(Protocol):
    async def __call__(self, request: GenerationRequest) -> str: ...


class GenerationError(RuntimeError):
    """Raised when a provider call fails or times out."""


def resolve_reasoning_effort(value: ReasoningEffort | str | None) -> Optional[str]:
    """Return the effort to send, or None when unset/``auto``."""

    if value is None:
        return None
    effort = ReasoningEffort(value)
    if effort is ReasoningEffort.AUTO:
        return None
    return effort.value


def supports_reasoning_effort(model_id: str) -> bool:
    if not model_id:
        return False
    return model_id.startswith(REASONING_MODEL_PREFIXES)


def message_stats(messages: Sequence[ChatMessage]) -> dict[str, int]:
    """Character totals and a rough token estimate (4 chars per token)."""

    chars = sum(len(message.content) for message in messages)
    return {
        "message_count": len(messages),
        "message_chars": chars,
        "estimated_tokens": -(-chars // 4),
    }


class MirascopeGenerator:
    """Provider-agnostic ``TextGenerator`` backed by Mirascope (or Ollama).

    Args:
        provider: Mirascope provider name ("openai", "anthropic", ...) or "ollama"
        tracer: Optional tracer; each call opens one span named after the step
        supports_reasoning: Predicate deciding whether a model accepts
            a reasoning-effort parameter
        timeout: Optional per-call timeout in seconds. None (the default) never
            cancels an in-flight call; latency is governed by the turn deadline
        ollama_base_url: Override for the local Ollama endpoint
    """

    def __init__(
        self,
        provider: str,
        *,
        tracer: Optional[Tracer] = None,
        supports_reasoning: Callable[[str], bool] = supports_reasoning_effort,
        timeout: Optional[float] = None,
        ollama_base_url: Optional[str] = None,
    ) -> None:
        self.provider = provider.lower()
        self.tracer = tracer
        self.supports_reasoning = supports_reasoning
        self.timeout = timeout
        self.ollama_base_url = ollama_base_url

    def _call_params(self, request: GenerationRequest) -> dict[str, Any]:
        params: dict[str, Any] = {"temperature": request.temperature}
        effort = resolve_reasoning_effort(request.reasoning_effort)
        # Only OpenAI-compatible providers take reasoning_effort as a call param
        if effort and self.provider == "openai" and self.supports_reasoning(request.model):
            params["reasoning_effort"] = effort
        return params

    async def _invoke_remote(self, request: GenerationRequest) -> str:
        @llm.call(
            provider=self.provider,
            model=request.model,
            call_params=self._call_params(request),
        )
        async def _invoke() -> list[BaseMessageParam]:
            return [
                BaseMessageParam(role=message.role, content=message.content)
                for message in request.messages
            ]

        response = await _invoke()
        return response.content

    async def _invoke_local(self, request: GenerationRequest) -> str:
        try:
            return await call_ollama_chat(
                messages=[message.as_dict() for message in request.messages],
                llm_model=request.model,
                temperature=request.temperature,
                base_url=self.ollama_base_url,
                timeout=self.timeout,
            )
        except LocalLLMError as exc:
            raise GenerationError(f"Local LLM provider error (ollama): {exc}") from exc

    async def __call__(self, request: GenerationRequest) -> str:
        stats = message_stats(request.messages)
        effort = resolve_reasoning_effort(request.reasoning_effort)
        log_llm(
            f"[{request.step}] model={request.model} messages={stats['message_count']} "
            f"chars={stats['message_chars']} est_tokens={stats['estimated_tokens']} "
            f"temperature={request.temperature} reasoning={effort or 'none'}"
        )

        if env_flag("DEBUG_LLM"):
            print(f"\n{'='*80}\n[LLM REQUEST] {request.step}\n{'='*80}")
            for message in request.messages:
                print(f"\n[{message.role.upper()}]\n{'-'*80}\n{message.content}")
            print(f"{'='*80}\n")

        span = None
        if self.tracer is not None:
            span_input = request.trace.input if request.trace else None
            if span_input is None:
                span_input = {"messages": [message.as_dict() for message in request.messages]}
            span = self.tracer.start_span(
                request.step,
                input=span_input,
                metadata={
                    "model": request.model,
                    "temperature": request.temperature,
                    **({"reasoning_effort": effort} if effort else {}),
                    **(request.trace.metadata if request.trace else {}),
                },
            )

        try:
            invoke = self._invoke_local if self.provider == "ollama" else self._invoke_remote
            if self.timeout is None:
                text = await invoke(request)
            else:
                text = await asyncio.wait_for(invoke(request), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            if span is not None:
                span.update(output={"error": "timeout"})
                span.end()
            raise GenerationError(
                f"LLM call timed out after {self.timeout}s ({request.step}, {request.model})"
            ) from exc
        except Exception as exc:
            if span is not None:
                span.update(output={"error": str(exc)})
                span.end()
            raise

        if span is not None:
            span.update(output={"text": text})
            span.end()

        if env_flag("DEBUG_LLM"):
            print(f"\n[LLM RESPONSE] {request.step}\n{'-'*80}\n{text}\n{'='*80}\n")

        return text


__all__ = [
    "ChatMessage",
    "GenerationTrace",
    "GenerationRequest",
    "TextGenerator",
    "GenerationError",
    "MirascopeGenerator",
    "resolve_reasoning_effort",
    "supports_reasoning_effort",
]
