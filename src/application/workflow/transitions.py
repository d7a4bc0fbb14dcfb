"""Transition table for the explore → plan → build state machine.

plan (analyze_code → research → design) is linear, build (implement ⇄ validate)
is cyclic, done/failed are terminal. Each entry maps (state, outcome) to the
next state and the actions applied to the context before entering it.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from src.domain.entities.workflow_state import Phase
from src.domain.services.doom_loop_guard import has_validation_errors


class StepOutcome(str, Enum):
    """Result of one phase invocation, as seen by the transition table."""

    SUCCESS = "success"
    CLEAN = "clean"  # validate: no validation errors
    ERRORS = "errors"  # validate: validation errors found
    DOOM_LOOP = "doom_loop"
    ERROR = "error"  # runner raised


class Action(str, Enum):
    """Context mutations applied on a transition, in table order."""

    STORE_EXPLORE_FINDINGS = "store_explore_findings"
    ADD_HANDOVER_MESSAGE = "add_handover_message"
    APPEND_PHASE_OUTPUT = "append_phase_output"
    STORE_PLAN_RESULT = "store_plan_result"
    INCREMENT_ITERATION = "increment_iteration"
    STORE_BUILD_RESULT = "store_build_result"
    COUNT_VALIDATION_ERROR = "count_validation_error"
    RECORD_FAILURE = "record_failure"


@dataclass(frozen=True)
class Transition:
    target: Phase
    actions: tuple[Action, ...] = ()


_FAIL = Transition(Phase.FAILED, (Action.RECORD_FAILURE,))

TRANSITIONS: Mapping[tuple[Phase, StepOutcome], Transition] = MappingProxyType(
    {
        (Phase.ANALYZE_CODE, StepOutcome.SUCCESS): Transition(
            Phase.RESEARCH, (Action.STORE_EXPLORE_FINDINGS,)
        ),
        (Phase.RESEARCH, StepOutcome.SUCCESS): Transition(
            Phase.DESIGN, (Action.APPEND_PHASE_OUTPUT,)
        ),
        (Phase.DESIGN, StepOutcome.SUCCESS): Transition(
            Phase.IMPLEMENT,
            (Action.ADD_HANDOVER_MESSAGE, Action.APPEND_PHASE_OUTPUT, Action.STORE_PLAN_RESULT),
        ),
        (Phase.IMPLEMENT, StepOutcome.SUCCESS): Transition(
            Phase.VALIDATE,
            (Action.APPEND_PHASE_OUTPUT, Action.INCREMENT_ITERATION, Action.STORE_BUILD_RESULT),
        ),
        (Phase.VALIDATE, StepOutcome.CLEAN): Transition(
            Phase.DONE, (Action.APPEND_PHASE_OUTPUT, Action.STORE_BUILD_RESULT)
        ),
        (Phase.VALIDATE, StepOutcome.ERRORS): Transition(
            Phase.IMPLEMENT, (Action.APPEND_PHASE_OUTPUT, Action.COUNT_VALIDATION_ERROR)
        ),
        (Phase.VALIDATE, StepOutcome.DOOM_LOOP): Transition(
            Phase.FAILED, (Action.APPEND_PHASE_OUTPUT, Action.RECORD_FAILURE)
        ),
        (Phase.ANALYZE_CODE, StepOutcome.ERROR): _FAIL,
        (Phase.RESEARCH, StepOutcome.ERROR): _FAIL,
        (Phase.DESIGN, StepOutcome.ERROR): _FAIL,
        (Phase.IMPLEMENT, StepOutcome.ERROR): _FAIL,
        (Phase.VALIDATE, StepOutcome.ERROR): _FAIL,
    }
)


def next_transition(phase: Phase, outcome: StepOutcome) -> Transition:
    """Look up the transition for (phase, outcome)."""
    try:
        return TRANSITIONS[(phase, outcome)]
    except KeyError:
        raise ValueError(f"No transition from {phase.value} on {outcome.value}") from None


def validation_outcome(output: str) -> StepOutcome:
    """Guard for build.validate: clean output finishes, errors loop back."""
    return StepOutcome.ERRORS if has_validation_errors(output) else StepOutcome.CLEAN
