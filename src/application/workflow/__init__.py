"""Workflow application layer: explore → plan → build state machine."""

from src.application.workflow.orchestrator import PhaseOrchestrator
from src.application.workflow.transitions import TRANSITIONS, StepOutcome, next_transition

__all__ = [
    "PhaseOrchestrator",
    "StepOutcome",
    "TRANSITIONS",
    "next_transition",
]
