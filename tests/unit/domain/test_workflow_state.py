"""WorkflowContext, Phase and Checkpoint model tests."""

import pytest
from pydantic import ValidationError

from src.domain.entities.checkpoint import AgentResult, Checkpoint
from src.domain.entities.workflow_state import Message, Phase, WorkflowContext


class TestPhase:
    def test_modes(self):
        assert Phase.RESEARCH.is_plan and not Phase.RESEARCH.is_build
        assert Phase.VALIDATE.is_build and not Phase.VALIDATE.is_plan
        assert Phase.DONE.is_terminal and Phase.FAILED.is_terminal
        assert not Phase.IDLE.is_terminal

    def test_short_name(self):
        assert Phase.ANALYZE_CODE.short_name == "analyze_code"
        assert Phase.DONE.short_name == "done"


class TestWorkflowContext:
    def test_enter_records_state(self):
        ctx = WorkflowContext(goal="g")
        ctx.enter(Phase.RESEARCH, max_recent=20, now=5.0)
        assert ctx.phase == Phase.RESEARCH
        assert ctx.last_state == "plan.research"
        assert [(e.state, e.timestamp) for e in ctx.recent_states] == [("plan.research", 5.0)]

    def test_recent_states_are_capped_oldest_first(self):
        ctx = WorkflowContext(goal="g")
        for i in range(10):
            ctx.enter(Phase.IMPLEMENT if i % 2 else Phase.VALIDATE, max_recent=6, now=float(i))
        assert len(ctx.recent_states) == 6
        assert [e.timestamp for e in ctx.recent_states] == [4.0, 5.0, 6.0, 7.0, 8.0, 9.0]

    def test_terminal_state_keeps_last_state(self):
        ctx = WorkflowContext(goal="g")
        ctx.enter(Phase.IMPLEMENT, max_recent=20, now=1.0)
        ctx.enter(Phase.FAILED, max_recent=20, now=2.0)
        assert ctx.phase == Phase.FAILED
        assert ctx.last_state == "build.implement"
        assert len(ctx.recent_states) == 1

    def test_fork_copies_messages_and_shares_runtime(self):
        ctx = WorkflowContext(goal="g")
        ctx.add_message("user", "g")
        child = ctx.fork([Message(role="user", content="explore")])
        child.add_message("assistant", "found")
        assert [m.content for m in ctx.messages] == ["g"]
        assert [m.content for m in child.messages] == ["g", "explore", "found"]
        assert child.runtime is ctx.runtime


class TestCheckpoint:
    def _plan(self) -> AgentResult:
        return AgentResult(agent_id="planner", phase=Phase.DESIGN, output="plan")

    def test_build_phase_requires_plan_result(self):
        with pytest.raises(ValidationError, match="plan result"):
            Checkpoint(session_id="s", phase=Phase.IMPLEMENT, task="t")

    def test_build_phase_with_plan_result(self):
        cp = Checkpoint(session_id="s", phase=Phase.VALIDATE, task="t", plan_result=self._plan())
        assert cp.plan_result.output == "plan"

    def test_plan_phase_without_plan_result(self):
        cp = Checkpoint(session_id="s", phase=Phase.RESEARCH, task="t")
        assert cp.plan_result is None

    def test_is_immutable(self):
        cp = Checkpoint(session_id="s", phase=Phase.RESEARCH, task="t")
        with pytest.raises(ValidationError):
            cp.task = "other"
