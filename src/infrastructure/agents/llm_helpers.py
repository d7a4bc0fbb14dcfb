"""LLM helpers: retry wrapper for transient provider failures."""

import logging

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.domain.ports.llm import LLMMessage, LLMPort, LLMResponse

logger = logging.getLogger(__name__)

# Connection-level failures only; provider errors (bad model, bad request) surface at once
RETRYABLE_ERRORS = (TimeoutError, ConnectionError, OSError, httpx.TransportError)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(RETRYABLE_ERRORS),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def _generate_impl(
    llm: LLMPort,
    messages: list[LLMMessage],
    model: str,
    temperature: float,
    tools: list[dict] | None,
) -> LLMResponse:
    return await llm.generate(
        messages=messages,
        model=model,
        temperature=temperature,
        tools=tools,
    )


async def generate_with_retry(
    llm: LLMPort,
    messages: list[LLMMessage],
    model: str,
    temperature: float = 0.7,
    tools: list[dict] | None = None,
) -> LLMResponse:
    """One model call, retried up to 3 attempts on timeout/connection errors.

    The last error is re-raised; the orchestrator then fails the phase.
    """
    return await _generate_impl(llm, messages, model, temperature, tools)
