"""Phase notices - system prompts telling the agent where it is in the workflow."""

from dataclasses import dataclass

from src.domain.entities.workflow_state import Phase


@dataclass(frozen=True)
class PhaseNotice:
    title: str
    goal: str
    instructions: tuple[str, ...]
    next_step: str


PHASE_NOTICES: dict[Phase, PhaseNotice] = {
    Phase.ANALYZE_CODE: PhaseNotice(
        title="PLAN 1/3: ANALYZE CODE",
        goal="Explore the codebase to understand its structure and identify relevant files.",
        instructions=(
            "Explore the codebase systematically",
            "Identify key files and directories relevant to the goal",
            "Look for patterns, conventions and existing implementations",
            "Document your findings for the research phase",
        ),
        next_step="research",
    ),
    Phase.RESEARCH: PhaseNotice(
        title="PLAN 2/3: RESEARCH",
        goal="Gather the information needed to plan: best practices, APIs, similar implementations.",
        instructions=(
            "Look up documentation for the APIs and frameworks involved",
            "Find examples of similar implementations",
            "Synthesize your findings step by step",
        ),
        next_step="design",
    ),
    Phase.DESIGN: PhaseNotice(
        title="PLAN 3/3: DESIGN",
        goal="Create a detailed implementation plan based on exploration and research.",
        instructions=(
            "Synthesize findings from the analyze_code and research phases",
            "Consider trade-offs and edge cases",
            "Plan the order of implementation",
            "Do not modify files: you have no write tools in this phase",
        ),
        next_step="hand-off to the build agent",
    ),
    Phase.IMPLEMENT: PhaseNotice(
        title="BUILD: IMPLEMENT",
        goal="Write the code for the planned design.",
        instructions=(
            "Follow the plan from the handover message",
            "Read files before editing them",
            "Keep changes focused on the goal",
        ),
        next_step="validate",
    ),
    Phase.VALIDATE: PhaseNotice(
        title="BUILD: VALIDATE",
        goal="Check the implementation with tests, linters and type checks.",
        instructions=(
            "Run the project's tests, linters and type checker",
            "Report every failure verbatim",
            "Report success explicitly when everything passes",
            "Use web research only if an error cannot be understood otherwise",
        ),
        next_step="done if validation is clean, implement otherwise",
    ),
}


def phase_notice(phase: Phase, tools: list[str], limit: int | None = None) -> str:
    """Render the system prompt for phase with the tools actually allowed in it."""
    notice = PHASE_NOTICES.get(phase)
    if notice is None:
        return ""
    lines = [f"## {notice.title}", "", f"**Goal**: {notice.goal}", ""]
    lines.append("**Tools Available**:")
    lines.extend(f"- {name}" for name in tools or ["none"])
    if limit is not None:
        lines += ["", f"**Safety Limit**: {limit} iterations"]
    lines += ["", "**Instructions**:"]
    lines.extend(f"- {item}" for item in notice.instructions)
    lines += ["", f"**Next Phase**: {notice.next_step}"]
    return "\n".join(lines)
