"""Workflow state for the explore → plan → build state machine."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

from src.domain.entities.cancellation import CancellationToken


class Phase(str, Enum):
    """Hierarchical states. Values are dotted paths: "<mode>.<phase>"."""

    IDLE = "idle"
    ANALYZE_CODE = "plan.analyze_code"
    RESEARCH = "plan.research"
    DESIGN = "plan.design"
    IMPLEMENT = "build.implement"
    VALIDATE = "build.validate"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_plan(self) -> bool:
        return self.value.startswith("plan.")

    @property
    def is_build(self) -> bool:
        return self.value.startswith("build.")

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.DONE, Phase.FAILED)

    @property
    def short_name(self) -> str:
        """Phase name without the mode prefix ("implement" for build.implement)."""
        return self.value.rsplit(".", 1)[-1]


# Linear order used for progress reporting. FAILED has no ordinal of its own.
PHASE_ORDER: tuple[Phase, ...] = (
    Phase.IDLE,
    Phase.ANALYZE_CODE,
    Phase.RESEARCH,
    Phase.DESIGN,
    Phase.IMPLEMENT,
    Phase.VALIDATE,
    Phase.DONE,
)


class ToolCall(BaseModel):
    """Tool invocation requested by the assistant."""

    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = {}


class Message(BaseModel):
    """Single conversation entry."""

    role: str  # "system" | "user" | "assistant" | "tool"
    content: str
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    tool_result: Any = None


class RecentStateEntry(BaseModel):
    """State entry recorded for loop detection."""

    state: str
    timestamp: float  # seconds since epoch


class WorkflowOutcome(str, Enum):
    """How a workflow invocation settled."""

    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class WorkflowResult(BaseModel):
    """Result of PhaseOrchestrator.start / resume."""

    outcome: WorkflowOutcome
    phase: Phase
    reason: str | None = None
    doom_loop: bool = False
    iteration_count: int = 0


@dataclass
class RuntimeControls:
    """Per-run controls. Never persisted; rebuilt on resume."""

    cancellation: CancellationToken = field(default_factory=CancellationToken)
    test_mode: bool = False


@dataclass
class WorkflowContext:
    """Mutable context owned by exactly one PhaseOrchestrator."""

    goal: str
    messages: list[Message] = field(default_factory=list)
    phase: Phase = Phase.IDLE
    iteration_count: int = 0
    recent_states: list[RecentStateEntry] = field(default_factory=list)
    last_state: str | None = None
    tool_execution_count: int = 0
    error_counts: dict[str, int] = field(default_factory=dict)
    explore_result: str | None = None
    failure_reason: str | None = None
    runtime: RuntimeControls = field(default_factory=RuntimeControls)

    def enter(self, phase: Phase, *, max_recent: int, now: float | None = None) -> None:
        """Record entry into a state.

        Non-terminal states are appended to recent_states (capped at max_recent)
        and become last_state. Terminal states only set phase, so last_state
        keeps pointing at the phase a failed run can be resumed from.
        """
        self.phase = phase
        if phase.is_terminal:
            return
        self.last_state = phase.value
        self.recent_states.append(
            RecentStateEntry(state=phase.value, timestamp=now if now is not None else time.time())
        )
        if len(self.recent_states) > max_recent:
            del self.recent_states[: len(self.recent_states) - max_recent]

    def add_message(self, role: str, content: str) -> None:
        self.messages.append(Message(role=role, content=content))

    def fork(self, extra: list[Message] | None = None) -> "WorkflowContext":
        """Child context for a phase or sub-agent. Messages are copied, runtime is shared."""
        return WorkflowContext(
            goal=self.goal,
            messages=[*self.messages, *(extra or [])],
            phase=self.phase,
            iteration_count=self.iteration_count,
            recent_states=list(self.recent_states),
            last_state=self.last_state,
            tool_execution_count=self.tool_execution_count,
            error_counts=dict(self.error_counts),
            runtime=self.runtime,
        )
