"""Ollama adapter - implements LLMPort."""

import json
import logging
from typing import Any

import httpx
from ollama import AsyncClient

from src.domain.ports.config import OllamaConfig
from src.domain.ports.llm import LLMMessage, LLMResponse, LLMToolCall

logger = logging.getLogger(__name__)

# Connect timeout - fail fast when the host is down
DEFAULT_CONNECT_TIMEOUT = 5.0


def _parse_arguments(raw: Any) -> dict[str, Any]:
    """Tool arguments arrive as dict or JSON string depending on the model."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class OllamaAdapter:
    """Ollama implementation of LLMPort."""

    def __init__(self, config: OllamaConfig) -> None:
        self._config = config
        # connect: fail fast; read/write: full response timeout. httpx requires all four.
        read_timeout = float(config.timeout) if config.timeout else 120.0
        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=read_timeout,
            write=read_timeout,
            pool=30.0,
        )
        self._client = AsyncClient(host=config.host, timeout=timeout)

    def _ollama_options(self, temperature: float) -> dict:
        """Build options dict: temperature + optional num_ctx, num_predict from config."""
        opts: dict = {"temperature": temperature}
        if self._config.num_ctx is not None:
            opts["num_ctx"] = self._config.num_ctx
        if self._config.num_predict is not None:
            opts["num_predict"] = self._config.num_predict
        return opts

    async def generate(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        tools: list[dict] | None = None,
    ) -> LLMResponse:
        """Generate a single response. With tools, native tool calls are parsed into the response."""
        model = model or "qwen2.5-coder:7b"
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [m.to_provider_dict() for m in messages],
            "options": self._ollama_options(temperature),
        }
        if tools:
            kwargs["tools"] = tools
        response = await self._client.chat(**kwargs)
        message = response.message
        calls = []
        for tc in (getattr(message, "tool_calls", None) or []) if message else []:
            fn = getattr(tc, "function", None)
            if fn is None:
                continue
            calls.append(LLMToolCall(name=fn.name, arguments=_parse_arguments(fn.arguments)))
        return LLMResponse(
            content=(message.content or "") if message else "",
            model=response.model or model,
            done=bool(getattr(response, "done", True)),
            done_reason=getattr(response, "done_reason", None),
            tool_calls=calls,
        )

    async def is_available(self) -> bool:
        """Check if Ollama server is available. Fail-fast, no stale cache."""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{self._config.host.rstrip('/')}/api/tags")
                return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("Ollama availability check failed: %s", e)
            return False

    async def close(self) -> None:
        """Release the underlying HTTP client."""
        client = getattr(self._client, "_client", None)
        if client is not None and hasattr(client, "aclose"):
            await client.aclose()
