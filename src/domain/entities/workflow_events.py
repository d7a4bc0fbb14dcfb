"""Workflow event types for session streaming."""

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WorkflowEventType(str, Enum):
    """Event types streamed to client as newline-delimited JSON."""

    STATUS = "status"  # continue-intent summary, first record of a resumed stream
    PHASE_START = "phase-start"
    PHASE_COMPLETE = "phase-complete"
    AGENT_TEXT = "agent-text"
    AGENT_TOOL = "agent-tool"
    WORKFLOW_COMPLETE = "workflow-complete"


class WorkflowEvent(BaseModel):
    """Single event emitted by an orchestrator or session controller."""

    type: WorkflowEventType
    session_id: str
    phase: str | None = None
    text: str | None = None
    payload: dict[str, Any] | None = None
    timestamp: float = Field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.type == WorkflowEventType.WORKFLOW_COMPLETE

    def to_ndjson(self) -> str:
        return self.model_dump_json(exclude_none=True) + "\n"
