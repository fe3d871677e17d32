"""Model gateway: the engine's only boundary to a text-completion backend.

Overview
--------
The engine talks to models through the ``ModelGateway`` protocol, which takes
a chat transcript and returns the model's raw text. ``OllamaChatGateway`` is
the HTTP implementation for an Ollama-compatible ``/api/chat`` endpoint:

- request: ``{model, stream: false, messages: [{role, content}],
  options: {temperature}}``
- response: a JSON envelope whose ``message.content`` holds the model text.

The text is *not* trusted to be JSON. ``request_json`` decodes it with the
tolerant helpers in ``gateway.json_decode`` and returns ``None`` when nothing
usable came back.

Errors
------
Transport failures, timeouts and non-2xx responses raise
``ModelGatewayError``. Every caller in the engine catches it and degrades to a
documented fallback; nothing here retries.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from ...core.monitoring import log_llm_call
from ..errors import ModelGatewayError
from .json_decode import parse_plan_json

logger = logging.getLogger(__name__)

ChatMessage = Dict[str, str]


class ModelGateway(Protocol):
    """Protocol for chat-completion backends."""

    async def complete(self, *, model: str, messages: List[ChatMessage], temperature: float = 0.2) -> str:
        """
        Run one non-streaming chat completion.

        Args:
            model: Backend model identifier.
            messages: Ordered ``{"role", "content"}`` messages.
            temperature: Sampling temperature.

        Returns:
            The model's text output (stripped).
        """
        ...


class OllamaChatGateway:
    """HTTP gateway for an Ollama-compatible ``/api/chat`` endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Create the gateway.

        Args:
            base_url: Server root, e.g. ``http://localhost:11434``.
            timeout: Per-call timeout in seconds.
            client: Optional preconfigured ``httpx.AsyncClient`` (tests inject a
                ``MockTransport`` here).
        """
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def complete(self, *, model: str, messages: List[ChatMessage], temperature: float = 0.2) -> str:
        body = {
            "model": model,
            "stream": False,
            "messages": messages,
            "options": {"temperature": temperature},
        }
        try:
            response = await self._client.post(f"{self.base_url}/api/chat", json=body, timeout=self._timeout)
        except httpx.HTTPError as e:
            raise ModelGatewayError(model, f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise ModelGatewayError(model, response.text[:200], status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            raise ModelGatewayError(model, "response envelope is not JSON") from e

        message = payload.get("message") if isinstance(payload, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        tokens = 0
        if isinstance(payload, dict):
            tokens = int(payload.get("prompt_eval_count") or 0) + int(payload.get("eval_count") or 0)
        log_llm_call(model=model, tokens_used=tokens)
        return content.strip() if isinstance(content, str) else ""

    async def aclose(self) -> None:
        await self._client.aclose()


async def request_json(
    gateway: ModelGateway,
    *,
    model: str,
    system_prompt: str,
    payload: Dict[str, Any],
    decoder: Callable[[Optional[str]], Optional[Dict[str, Any]]] = parse_plan_json,
    temperature: float = 0.2,
) -> Optional[Dict[str, Any]]:
    """Send a system prompt plus a JSON user payload and decode the reply.

    Returns ``None`` when the reply has no decodable object. Transport errors
    propagate as ``ModelGatewayError``.
    """
    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": json.dumps(payload, default=str)},
    ]
    content = await gateway.complete(model=model, messages=messages, temperature=temperature)
    parsed = decoder(content)
    if parsed is None:
        logger.debug(f"Model '{model}' returned no decodable JSON object")
    return parsed
