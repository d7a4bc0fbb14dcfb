"""Checkpoint schema for session persistence.

A checkpoint is an immutable JSON snapshot written after every phase
transition. There is no schema version field: changing this model requires
migrating existing files out of band.
"""

import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.domain.entities.workflow_state import Message, Phase, WorkflowOutcome


class AgentResult(BaseModel):
    """Result of one agent (explorer, planner or builder)."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    phase: Phase
    output: str = ""
    finish_reason: str | None = None
    turns: int = 0


class AgentState(BaseModel):
    """In-flight sub-agent state for restoration."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    type: Literal["explore", "plan", "build"]
    status: Literal["pending", "running", "completed", "failed"]
    messages: list[Message] = []
    iteration_count: int = 0


class CheckpointContext(BaseModel):
    """Persisted part of WorkflowContext. recent_states and runtime are not stored."""

    model_config = ConfigDict(frozen=True)

    messages: list[Message] = []
    iteration_count: int = 0
    tool_execution_count: int = 0
    error_counts: dict[str, int] = {}
    last_state: str | None = None
    failure_reason: str | None = None
    outcome: WorkflowOutcome | None = None


class Checkpoint(BaseModel):
    """Snapshot of a session's workflow."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    timestamp: float = Field(default_factory=time.time)
    phase: Phase
    task: str
    explore_results: list[AgentResult] = []
    plan_result: AgentResult | None = None
    build_result: AgentResult | None = None
    agent_states: list[AgentState] = []
    explore_inputs: list[str] = []
    context: CheckpointContext | None = None

    @model_validator(mode="after")
    def _build_requires_plan(self) -> "Checkpoint":
        if self.phase.is_build and self.plan_result is None:
            raise ValueError(f"checkpoint in {self.phase.value} must carry a plan result")
        return self
