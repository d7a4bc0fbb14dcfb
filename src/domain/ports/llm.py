"""LLM Port - interface for language model providers."""

from typing import Any, Protocol

from pydantic import BaseModel


class LLMMessage(BaseModel):
    """Single message in a conversation."""

    role: str  # "system" | "user" | "assistant" | "tool"
    content: str
    tool_name: str | None = None  # for role == "tool"

    def to_provider_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_name:
            data["tool_name"] = self.tool_name
        return data


class LLMToolCall(BaseModel):
    """Native tool call requested by the model."""

    name: str
    arguments: dict[str, Any] = {}


class LLMResponse(BaseModel):
    """Response from LLM (non-streaming)."""

    content: str
    model: str
    done: bool = True
    done_reason: str | None = None  # "stop" | "length" | provider-specific
    tool_calls: list[LLMToolCall] = []


class LLMPort(Protocol):
    """Interface for LLM providers (Ollama, etc.)."""

    async def generate(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        tools: list[dict] | None = None,
    ) -> LLMResponse:
        """Generate a single response (non-streaming). tools: JSON-schema function specs."""
        ...

    async def is_available(self) -> bool:
        """Check if the LLM provider is available."""
        ...
