"""Agent Runner Port - one model-and-tools invocation for a phase."""

from typing import Protocol

from pydantic import BaseModel

from src.domain.entities.cancellation import CancellationToken
from src.domain.entities.workflow_state import Message, Phase, WorkflowContext


class AgentRunResult(BaseModel):
    """Outcome of a single runner turn."""

    output: str = ""
    finish_reason: str | None = None  # "stop" | "tool-calls" | provider-specific
    # Messages produced during this turn (delta, not the full history)
    updated_messages: list[Message] = []
    tool_calls: int = 0
    # Tool or category name -> errors observed during this turn
    tool_errors: dict[str, int] = {}


class AgentRunnerPort(Protocol):
    """Interface for agent runners (LLM-backed, scripted, remote)."""

    async def run(
        self,
        context: WorkflowContext,
        allowed_tools: list[str],
        phase: Phase,
        *,
        cancellation: CancellationToken,
    ) -> AgentRunResult:
        """Run one turn. May raise; must stop promptly once cancellation fires."""
        ...
