"""PhaseOrchestrator tests with a scripted agent runner."""

import asyncio
import time

import pytest

from src.application.workflow.orchestrator import (
    FINDINGS_HEADER,
    HANDOVER_MESSAGE,
    PhaseOrchestrator,
    default_explore_inputs,
)
from src.domain.entities.checkpoint import AgentResult, Checkpoint, CheckpointContext
from src.domain.entities.workflow_events import WorkflowEventType
from src.domain.entities.workflow_state import Message, Phase, WorkflowOutcome
from src.domain.ports.agent_runner import AgentRunResult
from src.domain.ports.config import WorkflowConfig

PLAN = AgentResult(agent_id="planner", phase=Phase.DESIGN, output="the plan", finish_reason="stop")


def _orchestrator(runner, **kwargs) -> PhaseOrchestrator:
    return PhaseOrchestrator("session-1", runner, **kwargs)


class TestFullRun:
    @pytest.mark.asyncio
    async def test_clean_validation_finishes_after_one_iteration(self, runner_factory):
        runner = runner_factory()
        orch = _orchestrator(runner)

        result = await orch.start("add a health endpoint")

        assert result.outcome == WorkflowOutcome.COMPLETED
        assert result.phase == Phase.DONE
        assert result.iteration_count == 1
        assert orch.context.iteration_count == 1
        assert runner.phases() == [Phase.ANALYZE_CODE] * 3 + [
            Phase.RESEARCH,
            Phase.DESIGN,
            Phase.IMPLEMENT,
            Phase.VALIDATE,
        ]

    @pytest.mark.asyncio
    async def test_repeated_validation_errors_end_in_doom_loop(self, runner_factory):
        runner = runner_factory(validate_outputs=["FAIL tests/app.test.ts"] * 6)
        orch = _orchestrator(runner)

        result = await orch.start("fix the tests")

        assert result.outcome == WorkflowOutcome.FAILED
        assert result.phase == Phase.FAILED
        assert result.doom_loop is True
        assert "oscillation" in result.reason or "stagnation" in result.reason
        assert orch.context.error_counts["validation"] >= 1
        assert orch.context.failure_reason == result.reason

    @pytest.mark.asyncio
    async def test_long_planning_does_not_count_as_build_time(self, runner_factory, monkeypatch):
        clock = [1_000_000.0]
        monkeypatch.setattr(time, "time", lambda: clock[0])
        runner = runner_factory(validate_outputs=["All tests passed"])
        run = runner.run

        async def slow_research(context, allowed_tools, phase, *, cancellation):
            if phase == Phase.RESEARCH:
                clock[0] += 11 * 60
            return await run(context, allowed_tools, phase, cancellation=cancellation)

        runner.run = slow_research

        result = await _orchestrator(runner).start("goal")

        assert result.outcome == WorkflowOutcome.COMPLETED
        assert result.doom_loop is False
        assert result.iteration_count == 1

    @pytest.mark.asyncio
    async def test_validation_errors_loop_back_to_implement(self, runner_factory):
        runner = runner_factory(validate_outputs=["2 tests failed", "All tests passed"])
        orch = _orchestrator(runner)

        result = await orch.start("fix the tests")

        assert result.outcome == WorkflowOutcome.COMPLETED
        assert result.iteration_count == 2
        build = [p for p in runner.phases() if p.is_build]
        assert build == [Phase.IMPLEMENT, Phase.VALIDATE, Phase.IMPLEMENT, Phase.VALIDATE]

    @pytest.mark.asyncio
    async def test_phases_get_router_tools(self, runner_factory):
        runner = runner_factory()
        await _orchestrator(runner).start("goal")

        tools = dict((phase, t) for phase, t in runner.calls if phase != Phase.ANALYZE_CODE)
        assert "writeFile" in tools[Phase.IMPLEMENT]
        assert "writeFile" not in tools[Phase.DESIGN]
        assert "runTests" in tools[Phase.VALIDATE]
        explore_tools = [t for phase, t in runner.calls if phase == Phase.ANALYZE_CODE]
        assert all("writeFile" not in t for t in explore_tools)

    @pytest.mark.asyncio
    async def test_handover_message_precedes_build(self, runner_factory):
        runner = runner_factory()
        orch = _orchestrator(runner)
        await orch.start("goal")

        implement_ctx = next(c for (p, _), c in zip(runner.calls, runner.contexts) if p == Phase.IMPLEMENT)
        contents = [m.content for m in implement_ctx.messages]
        assert HANDOVER_MESSAGE in contents
        assert orch.snapshot().plan_result is not None


class TestExploration:
    @pytest.mark.asyncio
    async def test_research_sees_findings_from_all_explorers(self, runner_factory):
        runner = runner_factory()
        await _orchestrator(runner).start("add caching")

        phases = runner.phases()
        assert phases.index(Phase.RESEARCH) == 3
        research_ctx = runner.contexts[3]
        findings = [m.content for m in research_ctx.messages if m.content.startswith(FINDINGS_HEADER)]
        assert len(findings) == 1
        for prompt in default_explore_inputs("add caching"):
            assert prompt in findings[0]

    @pytest.mark.asyncio
    async def test_explorers_run_in_parallel(self):
        entered = 0
        all_entered = asyncio.Event()

        class BarrierRunner:
            async def run(self, context, allowed_tools, phase, *, cancellation):
                nonlocal entered
                if phase == Phase.ANALYZE_CODE:
                    entered += 1
                    if entered == 3:
                        all_entered.set()
                    await all_entered.wait()
                return AgentRunResult(output="ok", finish_reason="stop")

        result = await asyncio.wait_for(_orchestrator(BarrierRunner()).start("goal"), timeout=2.0)
        assert result.outcome == WorkflowOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_custom_explore_inputs(self, runner_factory):
        runner = runner_factory()
        orch = _orchestrator(runner)
        await orch.start("goal", explore_inputs=["look at the router", "look at the models"])

        assert runner.phases().count(Phase.ANALYZE_CODE) == 2
        assert orch.explore_progress == (2, 2)

    @pytest.mark.asyncio
    async def test_findings_follow_input_order_past_ten_explorers(self, runner_factory):
        runner = runner_factory()
        inputs = [f"area {i}" for i in range(12)]
        await _orchestrator(runner).start("goal", explore_inputs=inputs)

        research_ctx = runner.contexts[runner.phases().index(Phase.RESEARCH)]
        findings = next(m.content for m in research_ctx.messages if m.content.startswith(FINDINGS_HEADER))
        positions = [findings.index(f"### explore-{i}\n") for i in range(12)]
        assert positions == sorted(positions)
        assert findings.index("findings for: area 2") < findings.index("findings for: area 10")


class TestTurns:
    @pytest.mark.asyncio
    async def test_phase_runs_until_stop(self, runner_factory):
        runner = runner_factory(finish_reasons={Phase.RESEARCH: ["tool-calls", "tool-calls", "stop"]})
        orch = _orchestrator(runner)
        await orch.start("goal")

        assert runner.phases().count(Phase.RESEARCH) == 3
        assert orch.context.iteration_count == 1
        # every scripted call reports one tool call
        assert orch.context.tool_execution_count == len(runner.calls)

    @pytest.mark.asyncio
    async def test_safety_limit_counts_as_completion(self, runner_factory):
        runner = runner_factory(finish_reasons={Phase.RESEARCH: ["tool-calls"] * 50})
        orch = _orchestrator(runner, workflow_config=WorkflowConfig(research_limit=3))

        result = await orch.start("goal")

        assert runner.phases().count(Phase.RESEARCH) == 3
        assert result.outcome == WorkflowOutcome.COMPLETED


class TestFailures:
    @pytest.mark.asyncio
    async def test_runner_error_fails_without_retry(self, runner_factory):
        runner = runner_factory(fail_on=Phase.DESIGN)
        orch = _orchestrator(runner)

        result = await orch.start("goal")

        assert result.outcome == WorkflowOutcome.FAILED
        assert result.doom_loop is False
        assert "runner exploded" in result.reason
        assert runner.phases().count(Phase.DESIGN) == 1
        assert Phase.IMPLEMENT not in runner.phases()
        assert orch.context.last_state == Phase.DESIGN.value

    @pytest.mark.asyncio
    async def test_abort_settles_as_stopped(self, runner_factory, waiter):
        runner = runner_factory(hang_on=Phase.RESEARCH)
        orch = _orchestrator(runner)
        task = asyncio.create_task(orch.start("goal"))
        await waiter(lambda: runner.hanging == 1)

        assert orch.cancel("user abort") is True
        result = await asyncio.wait_for(task, timeout=2.0)

        assert result.outcome == WorkflowOutcome.STOPPED
        assert result.phase == Phase.RESEARCH
        assert result.reason == "user abort"
        assert runner.hanging == 0
        assert Phase.DESIGN not in runner.phases()
        assert orch.is_running is False

    @pytest.mark.asyncio
    async def test_cancel_after_terminal_is_noop(self, runner_factory):
        orch = _orchestrator(runner_factory())
        result = await orch.start("goal")

        assert orch.cancel() is False
        assert orch.result == result
        assert orch.result.outcome == WorkflowOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_start_while_running_raises(self, runner_factory, waiter):
        runner = runner_factory(hang_on=Phase.RESEARCH)
        orch = _orchestrator(runner)
        task = asyncio.create_task(orch.start("goal"))
        await waiter(lambda: runner.hanging == 1)

        with pytest.raises(RuntimeError, match="already running"):
            await orch.start("other goal")

        orch.cancel()
        await task


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_in_build_skips_plan_phases(self, runner_factory):
        runner = runner_factory()
        checkpoint = Checkpoint(
            session_id="session-1",
            phase=Phase.IMPLEMENT,
            task="goal",
            plan_result=PLAN,
            context=CheckpointContext(
                messages=[Message(role="user", content="goal")],
                iteration_count=2,
                last_state=Phase.IMPLEMENT.value,
            ),
        )
        orch = _orchestrator(runner)

        result = await orch.resume(checkpoint)

        assert runner.phases() == [Phase.IMPLEMENT, Phase.VALIDATE]
        assert result.outcome == WorkflowOutcome.COMPLETED
        assert result.iteration_count == 3

    @pytest.mark.asyncio
    async def test_resume_failed_continues_from_last_state(self, runner_factory):
        runner = runner_factory()
        checkpoint = Checkpoint(
            session_id="session-1",
            phase=Phase.FAILED,
            task="goal",
            plan_result=PLAN,
            context=CheckpointContext(last_state=Phase.VALIDATE.value, failure_reason="boom"),
        )

        result = await _orchestrator(runner).resume(checkpoint)

        assert runner.phases() == [Phase.VALIDATE]
        assert result.outcome == WorkflowOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_done_completes_immediately(self, runner_factory):
        runner = runner_factory()
        checkpoint = Checkpoint(session_id="session-1", phase=Phase.DONE, task="goal", plan_result=PLAN)

        result = await _orchestrator(runner).resume(checkpoint)

        assert runner.calls == []
        assert result.outcome == WorkflowOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_partial_exploration_skips_finished_explorers(self, runner_factory):
        runner = runner_factory()
        inputs = default_explore_inputs("goal")
        checkpoint = Checkpoint(
            session_id="session-1",
            phase=Phase.ANALYZE_CODE,
            task="goal",
            explore_inputs=inputs,
            explore_results=[
                AgentResult(agent_id="explore-0", phase=Phase.ANALYZE_CODE, output="earlier findings")
            ],
        )
        orch = _orchestrator(runner)

        await orch.resume(checkpoint)

        explore_prompts = [
            c.messages[-1].content
            for (p, _), c in zip(runner.calls, runner.contexts)
            if p == Phase.ANALYZE_CODE
        ]
        assert sorted(explore_prompts) == sorted(inputs[1:])
        assert "earlier findings" in orch.context.explore_result


class TestCheckpointsAndEvents:
    @pytest.mark.asyncio
    async def test_final_checkpoint_is_persisted(self, runner_factory, checkpoint_store):
        orch = _orchestrator(runner_factory(), checkpoint_store=checkpoint_store)

        await orch.start("goal")

        saved = await checkpoint_store.load("session-1")
        assert saved is not None
        assert saved.phase == Phase.DONE
        assert saved.plan_result is not None
        assert saved.build_result is not None
        assert len(saved.explore_results) == 3
        assert saved.context.outcome == WorkflowOutcome.COMPLETED
        assert saved == orch.latest_checkpoint

    @pytest.mark.asyncio
    async def test_stopped_run_is_checkpointed(self, runner_factory, checkpoint_store, waiter):
        runner = runner_factory(hang_on=Phase.IMPLEMENT)
        orch = _orchestrator(runner, checkpoint_store=checkpoint_store)
        task = asyncio.create_task(orch.start("goal"))
        await waiter(lambda: runner.hanging == 1)
        orch.cancel()
        await task

        saved = await checkpoint_store.load("session-1")
        assert saved.phase == Phase.IMPLEMENT
        assert saved.context.outcome == WorkflowOutcome.STOPPED

    @pytest.mark.asyncio
    async def test_events_are_ordered(self, runner_factory):
        events = []
        orch = _orchestrator(runner_factory(), on_event=events.append)

        await orch.start("goal")

        starts = [e.phase for e in events if e.type == WorkflowEventType.PHASE_START]
        assert starts == [
            Phase.ANALYZE_CODE.value,
            Phase.RESEARCH.value,
            Phase.DESIGN.value,
            Phase.IMPLEMENT.value,
            Phase.VALIDATE.value,
        ]
        assert events[-1].type == WorkflowEventType.WORKFLOW_COMPLETE
        assert events[-1].payload["outcome"] == "completed"
        assert sum(e.is_terminal for e in events) == 1
        assert any(e.type == WorkflowEventType.AGENT_TEXT for e in events)

    @pytest.mark.asyncio
    async def test_failing_event_callback_does_not_break_run(self, runner_factory):
        def explode(event):
            raise ValueError("listener bug")

        result = await _orchestrator(runner_factory(), on_event=explode).start("goal")
        assert result.outcome == WorkflowOutcome.COMPLETED
