"""LLM-backed Agent Runner - one model call (plus requested tool calls) per turn."""

import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from src.domain.entities.cancellation import CancellationToken
from src.domain.entities.workflow_state import Message, Phase, ToolCall, WorkflowContext
from src.domain.ports.agent_runner import AgentRunResult
from src.domain.ports.llm import LLMMessage, LLMPort
from src.infrastructure.agents.llm_helpers import generate_with_retry
from src.infrastructure.agents.prompts import phase_notice

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class AgentTool:
    """Tool implementation exposed to the model under its router name."""

    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def schema(self) -> dict[str, Any]:
        """Ollama/OpenAI function-tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def canned_output(phase: Phase) -> str:
    return f"[{phase.value}] Test mode output"


def to_llm_messages(context: WorkflowContext, system_prompt: str = "") -> list[LLMMessage]:
    """Convert the workflow conversation to provider messages."""
    out: list[LLMMessage] = []
    if system_prompt:
        out.append(LLMMessage(role="system", content=system_prompt))
    for m in context.messages:
        if m.role == "tool":
            content = m.content if m.tool_result is None else str(m.tool_result)
            name = m.tool_calls[0].tool_name if m.tool_calls else None
            out.append(LLMMessage(role="tool", content=content, tool_name=name))
        else:
            out.append(LLMMessage(role=m.role, content=m.content))
    return out


class LLMAgentRunner:
    """AgentRunnerPort over LLMPort.

    Only tools that are both allowed for the phase and registered here are
    offered to the model. Tool failures are reported to the model and counted
    in tool_errors; they never raise.
    """

    def __init__(
        self,
        llm: LLMPort,
        *,
        model: str,
        temperature: float = 0.3,
        tools: Mapping[str, AgentTool] | None = None,
        test_mode: bool = False,
    ) -> None:
        self._llm = llm
        self._model = model
        self._temperature = temperature
        self._tools = dict(tools or {})
        self._test_mode = test_mode

    async def run(
        self,
        context: WorkflowContext,
        allowed_tools: list[str],
        phase: Phase,
        *,
        cancellation: CancellationToken,
    ) -> AgentRunResult:
        cancellation.raise_if_cancelled()
        if self._test_mode or context.runtime.test_mode:
            output = canned_output(phase)
            return AgentRunResult(
                output=output,
                finish_reason="stop",
                updated_messages=[Message(role="assistant", content=output)],
            )

        available = {name: self._tools[name] for name in allowed_tools if name in self._tools}
        messages = to_llm_messages(context, phase_notice(phase, allowed_tools))
        response = await generate_with_retry(
            self._llm,
            messages,
            self._model,
            self._temperature,
            tools=[t.schema() for t in available.values()] or None,
        )
        if not response.tool_calls:
            finish = response.done_reason or "stop"
            return AgentRunResult(
                output=response.content,
                finish_reason=finish,
                updated_messages=[Message(role="assistant", content=response.content)],
            )

        calls = [
            ToolCall(tool_call_id=uuid.uuid4().hex[:12], tool_name=c.name, args=c.arguments)
            for c in response.tool_calls
        ]
        updated = [Message(role="assistant", content=response.content, tool_calls=calls)]
        errors: dict[str, int] = {}
        for call in calls:
            cancellation.raise_if_cancelled()
            result, failed = await self._execute(call, available, phase)
            if failed:
                errors[call.tool_name] = errors.get(call.tool_name, 0) + 1
            updated.append(
                Message(
                    role="tool",
                    content=str(result),
                    tool_calls=[call],
                    tool_call_id=call.tool_call_id,
                    tool_result=str(result),
                )
            )
        return AgentRunResult(
            output=response.content,
            finish_reason="tool-calls",
            updated_messages=updated,
            tool_calls=len(calls),
            tool_errors=errors,
        )

    async def _execute(
        self,
        call: ToolCall,
        available: Mapping[str, AgentTool],
        phase: Phase,
    ) -> tuple[Any, bool]:
        tool = available.get(call.tool_name)
        if tool is None:
            logger.warning("Model requested unavailable tool %s in %s", call.tool_name, phase.value)
            return f"Error: tool {call.tool_name} is not available in {phase.value}", True
        try:
            return await tool.handler(call.args), False
        except Exception as e:
            logger.warning("Tool %s failed: %s", call.tool_name, e, exc_info=True)
            return f"Error: {e}", True
