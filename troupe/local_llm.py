"""Utilities for calling locally hosted LLMs (e.g., Ollama)."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Optional, Sequence
from urllib import error, request

DEFAULT_OLLAMA_BASE_URL = "http://127.0.0.1:11434"
_CHAT_ENDPOINT = "/api/chat"


class LocalLLMError(RuntimeError):
    """Raised when a local LLM invocation fails."""


def _perform_ollama_request(
    payload: dict[str, Any],
    base_url: str,
    timeout: Optional[float],
) -> str:
    """Execute the blocking chat request against the Ollama REST API."""

    url = f"{base_url.rstrip('/')}{_CHAT_ENDPOINT}"
    req = request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )

    try:
        with request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore") if exc.fp else ""
        raise LocalLLMError(
            f"Ollama chat request failed with status {exc.code}: {body or exc.reason}"
        ) from exc
    except error.URLError as exc:
        raise LocalLLMError(f"Could not reach Ollama at {url}: {exc.reason}") from exc

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LocalLLMError("Ollama returned non-JSON response.") from exc

    # Blank content is a legitimate (if useless) generation; the caller's
    # parsers decide what to do with it.
    content = (parsed.get("message") or {}).get("content")
    if content is None:
        raise LocalLLMError("Ollama response did not include an assistant message.")
    return content


async def call_ollama_chat(
    *,
    messages: Sequence[dict[str, str]],
    llm_model: str,
    temperature: Optional[float] = None,
    base_url: str | None = None,
    timeout: Optional[float] = None,
) -> str:
    """Send a role-tagged conversation to a local Ollama model and return its text."""

    resolved_base = (
        base_url or os.getenv("OLLAMA_BASE_URL") or DEFAULT_OLLAMA_BASE_URL
    ).rstrip("/")

    chat = [
        {"role": message["role"], "content": message["content"].strip()}
        for message in messages
        if message.get("content", "").strip()
    ]
    if not chat:
        raise LocalLLMError("Cannot call Ollama with an empty conversation.")

    payload: dict[str, Any] = {"model": llm_model, "messages": chat, "stream": False}
    if temperature is not None:
        payload["options"] = {"temperature": temperature}

    return await asyncio.to_thread(_perform_ollama_request, payload, resolved_base, timeout)


__all__ = ["LocalLLMError", "call_ollama_chat", "DEFAULT_OLLAMA_BASE_URL"]
