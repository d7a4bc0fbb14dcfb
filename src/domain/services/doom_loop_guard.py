"""Doom loop detection guards.

Detects non-converging build loops through three independent checks:

1. Oscillation: too many implement ⇄ validate transitions in recent history
2. Time: too long since the first retained build state while still in build mode
3. Error stagnation: many iterations with an error total that is not "low"

The first check that fires determines the reported reason.
"""

import re
import time
from dataclasses import dataclass

from src.domain.entities.workflow_state import Phase, RecentStateEntry, WorkflowContext
from src.domain.ports.config import DoomLoopConfig

_BUILD_PAIRS = {
    (Phase.IMPLEMENT.value, Phase.VALIDATE.value),
    (Phase.VALIDATE.value, Phase.IMPLEMENT.value),
}

_TS_ERROR_RE = re.compile(r"error TS\d+:")
_ESLINT_ERROR_RE = re.compile(r"error\s+\w+/\w+")
_FAILURE_RE = re.compile(r"FAIL|failed|failure", re.IGNORECASE)
_NO_FAILURES_RE = re.compile(r"no failures", re.IGNORECASE)
_SUCCESS_RES = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"build successful",
        r"all tests passed",
        r"no errors found",
        r"completed successfully",
        r"\b0 errors",
    )
)


@dataclass(frozen=True)
class DoomLoopResult:
    """Doom loop detection result."""

    is_doom_loop: bool
    reason: str | None = None


NO_DOOM_LOOP = DoomLoopResult(is_doom_loop=False)


def count_build_oscillations(recent_states: list[RecentStateEntry]) -> int:
    """Count adjacent (implement, validate) or (validate, implement) pairs."""
    return sum(
        1
        for current, nxt in zip(recent_states, recent_states[1:])
        if (current.state, nxt.state) in _BUILD_PAIRS
    )


def build_started_at(recent_states: list[RecentStateEntry]) -> float | None:
    """Timestamp of the oldest retained build.* entry, or None."""
    for entry in recent_states:
        if entry.state.startswith("build."):
            return entry.timestamp
    return None


def total_errors(error_counts: dict[str, int]) -> int:
    return sum(error_counts.values())


def is_error_progress(error_counts: dict[str, int], config: DoomLoopConfig | None = None) -> bool:
    """Coarse progress check: a low error total counts as progress.

    No error history is tracked, so a constant small error count is
    indistinguishable from real progress.
    """
    cfg = config or DoomLoopConfig()
    return total_errors(error_counts) < cfg.error_progress_threshold


def evaluate(
    context: WorkflowContext,
    config: DoomLoopConfig | None = None,
    *,
    now: float | None = None,
) -> DoomLoopResult:
    """Check context for doom loop conditions."""
    cfg = config or DoomLoopConfig()
    current = time.time() if now is None else now
    recent = context.recent_states

    oscillations = count_build_oscillations(recent)
    if oscillations >= cfg.oscillation_threshold:
        return DoomLoopResult(
            is_doom_loop=True,
            reason=f"Build oscillation detected: {oscillations} implement/validate transitions",
        )

    started = build_started_at(recent)
    in_build = (context.last_state or "").startswith("build.")
    if len(recent) >= 2 and in_build and started is not None:
        elapsed = current - started
        if elapsed > cfg.time_limit_minutes * 60:
            return DoomLoopResult(
                is_doom_loop=True,
                reason=f"Time limit exceeded: spent {round(elapsed)}s in build mode",
            )

    if context.iteration_count > cfg.error_stagnation_iterations:
        errors = total_errors(context.error_counts)
        if errors > 0 and not is_error_progress(context.error_counts, cfg):
            return DoomLoopResult(
                is_doom_loop=True,
                reason=(
                    f"Error stagnation: {errors} errors not decreasing "
                    f"over {context.iteration_count} iterations"
                ),
            )

    return NO_DOOM_LOOP


def has_validation_errors(output: str) -> bool:
    """Check validation output for compiler, lint or test failures."""
    if not output or not output.strip():
        return False
    if _TS_ERROR_RE.search(output):
        return True
    if _ESLINT_ERROR_RE.search(output):
        return True
    return bool(_FAILURE_RE.search(output)) and not _NO_FAILURES_RE.search(output)


def is_build_clean(output: str) -> bool:
    """Check build output for an explicit success indicator."""
    if not output or not output.strip():
        return False
    return any(p.search(output) for p in _SUCCESS_RES)
