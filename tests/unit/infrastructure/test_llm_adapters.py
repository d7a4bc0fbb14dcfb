"""Tests for the Ollama LLM adapter and the retry helper."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
import httpx

from src.domain.ports.config import OllamaConfig
from src.domain.ports.llm import LLMMessage, LLMResponse
from src.infrastructure.agents import llm_helpers
from src.infrastructure.llm.ollama import OllamaAdapter, _parse_arguments


def _response(content="Hello!", model="llama2", tool_calls=None, done_reason="stop"):
    response = MagicMock()
    response.message = MagicMock(content=content, tool_calls=tool_calls)
    response.model = model
    response.done = True
    response.done_reason = done_reason
    return response


def _tool_call(name, arguments):
    call = MagicMock()
    call.function = MagicMock(arguments=arguments)
    call.function.name = name
    return call


class TestOllamaAdapter:
    """Tests for OllamaAdapter."""

    @pytest.fixture
    def config(self):
        return OllamaConfig(host="http://localhost:11434", timeout=30, num_ctx=8192)

    @pytest.fixture
    def adapter(self, config):
        return OllamaAdapter(config)

    @pytest.mark.asyncio
    async def test_generate_calls_client(self, adapter):
        """Generate calls ollama client with correct params."""
        adapter._client.chat = AsyncMock(return_value=_response())

        messages = [LLMMessage(role="user", content="Hi")]
        result = await adapter.generate(messages, model="llama2", temperature=0.2)

        assert result.content == "Hello!"
        assert result.model == "llama2"
        assert result.done_reason == "stop"
        assert result.tool_calls == []
        kwargs = adapter._client.chat.call_args.kwargs
        assert kwargs["messages"] == [{"role": "user", "content": "Hi"}]
        assert kwargs["options"] == {"temperature": 0.2, "num_ctx": 8192}
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_generate_passes_tools_and_parses_calls(self, adapter):
        tools = [{"type": "function", "function": {"name": "read", "parameters": {}}}]
        adapter._client.chat = AsyncMock(
            return_value=_response(
                content="",
                tool_calls=[
                    _tool_call("read", {"path": "a.py"}),
                    _tool_call("grep", '{"pattern": "TODO"}'),
                ],
                done_reason=None,
            )
        )

        result = await adapter.generate([LLMMessage(role="user", content="Hi")], tools=tools)

        assert adapter._client.chat.call_args.kwargs["tools"] == tools
        assert [(c.name, c.arguments) for c in result.tool_calls] == [
            ("read", {"path": "a.py"}),
            ("grep", {"pattern": "TODO"}),
        ]

    @pytest.mark.asyncio
    async def test_tool_messages_carry_tool_name(self, adapter):
        adapter._client.chat = AsyncMock(return_value=_response())

        await adapter.generate([LLMMessage(role="tool", content="42", tool_name="calc")])

        sent = adapter._client.chat.call_args.kwargs["messages"]
        assert sent == [{"role": "tool", "content": "42", "tool_name": "calc"}]

    def test_parse_arguments(self):
        assert _parse_arguments({"a": 1}) == {"a": 1}
        assert _parse_arguments('{"a": 1}') == {"a": 1}
        assert _parse_arguments("not json") == {}
        assert _parse_arguments("[1, 2]") == {}
        assert _parse_arguments(None) == {}

    @pytest.mark.asyncio
    async def test_is_available_true(self, adapter):
        """is_available returns True when server responds."""
        mock_response = MagicMock()
        mock_response.status_code = 200

        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.get = AsyncMock(
                return_value=mock_response
            )
            result = await adapter.is_available()

        assert result is True

    @pytest.mark.asyncio
    async def test_is_available_false_on_error(self, adapter):
        """is_available returns False on connection error."""
        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.get = AsyncMock(
                side_effect=httpx.ConnectError("Connection refused")
            )
            result = await adapter.is_available()

        assert result is False


class TestGenerateWithRetry:
    """Retry wrapper around LLMPort.generate."""

    @pytest.fixture(autouse=True)
    def no_wait(self, monkeypatch):
        # tenacity sleeps between attempts; keep tests fast
        monkeypatch.setattr(llm_helpers._generate_impl.retry, "sleep", AsyncMock())

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        llm = MagicMock()
        llm.generate = AsyncMock(
            side_effect=[httpx.ConnectError("refused"), LLMResponse(content="ok", model="m")]
        )

        result = await llm_helpers.generate_with_retry(llm, [], "m")

        assert result.content == "ok"
        assert llm.generate.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self):
        llm = MagicMock()
        llm.generate = AsyncMock(side_effect=TimeoutError("slow"))

        with pytest.raises(TimeoutError):
            await llm_helpers.generate_with_retry(llm, [], "m")
        assert llm.generate.await_count == 3

    @pytest.mark.asyncio
    async def test_does_not_retry_other_errors(self):
        llm = MagicMock()
        llm.generate = AsyncMock(side_effect=ValueError("bad request"))

        with pytest.raises(ValueError):
            await llm_helpers.generate_with_retry(llm, [], "m")
        assert llm.generate.await_count == 1
