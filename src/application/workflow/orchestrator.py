"""Phase orchestrator - runs the explore → plan → build state machine.

One orchestrator owns one WorkflowContext. For each state it resolves the
allowed tools, drives the Agent Runner turn by turn until the runner reports
finish_reason == "stop" (or the phase's safety limit is hit), decides the
outcome, applies the transition table and schedules a checkpoint write.
"""

import asyncio
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field

import structlog

from src.application.workflow.transitions import (
    Action,
    StepOutcome,
    next_transition,
    validation_outcome,
)
from src.domain.entities.cancellation import CancellationToken, WorkflowCancelled
from src.domain.entities.checkpoint import AgentResult, AgentState, Checkpoint, CheckpointContext
from src.domain.entities.workflow_events import WorkflowEvent, WorkflowEventType
from src.domain.entities.workflow_state import (
    Message,
    Phase,
    RuntimeControls,
    WorkflowContext,
    WorkflowOutcome,
    WorkflowResult,
)
from src.domain.ports.agent_runner import AgentRunnerPort, AgentRunResult
from src.domain.ports.config import DoomLoopConfig, WorkflowConfig
from src.domain.services import doom_loop_guard
from src.domain.services.phase_tool_router import PhaseToolRouter
from src.infrastructure.persistence.checkpoint_store import CheckpointStore

log = structlog.get_logger()

EXPLORE_PROMPTS = (
    "Explore the codebase structure for: {task}",
    "Find relevant files and patterns for: {task}",
    "Analyze dependencies and architecture for: {task}",
)

FINDINGS_HEADER = "## EXPLORE SUBAGENT FINDINGS"
HANDOVER_MESSAGE = (
    "## HANDOVER: PLAN → BUILD\n\n"
    "The planning phase is complete. You are now in BUILD mode."
)

_DEFAULT_OUTPUT = {
    Phase.RESEARCH: "Research complete",
    Phase.DESIGN: "Design complete",
    Phase.IMPLEMENT: "Implementation complete",
    Phase.VALIDATE: "Validation complete",
}


def default_explore_inputs(task: str, count: int = 3) -> list[str]:
    """Exploration prompts for the analyze_code fan-out."""
    return [EXPLORE_PROMPTS[i % len(EXPLORE_PROMPTS)].format(task=task) for i in range(count)]


def explorer_id(index: int) -> str:
    return f"explore-{index}"


def safety_limits(config: WorkflowConfig) -> dict[Phase, int]:
    return {
        Phase.ANALYZE_CODE: config.analyze_code_limit,
        Phase.RESEARCH: config.research_limit,
        Phase.DESIGN: config.design_limit,
        Phase.IMPLEMENT: config.implement_limit,
        Phase.VALIDATE: config.validate_limit,
    }


def _agent_type(phase: Phase) -> str:
    if phase == Phase.ANALYZE_CODE:
        return "explore"
    return "plan" if phase.is_plan else "build"


@dataclass
class PhaseRun:
    """Aggregated result of all turns of one phase invocation."""

    phase: Phase
    output: str = ""
    finish_reason: str | None = None
    turns: int = 0
    messages: list[Message] = field(default_factory=list)
    error: str | None = None
    doom_loop_reason: str | None = None


class PhaseOrchestrator:
    """Hierarchical state machine: plan{analyze_code→research→design}, build{implement⇄validate}."""

    def __init__(
        self,
        session_id: str,
        runner: AgentRunnerPort,
        *,
        tool_router: PhaseToolRouter | None = None,
        checkpoint_store: CheckpointStore | None = None,
        workflow_config: WorkflowConfig | None = None,
        doom_loop_config: DoomLoopConfig | None = None,
        on_event: Callable[[WorkflowEvent], None] | None = None,
        test_mode: bool = False,
    ) -> None:
        self.session_id = session_id
        self._runner = runner
        self._router = tool_router or PhaseToolRouter()
        self._store = checkpoint_store
        self._workflow_config = workflow_config or WorkflowConfig()
        self._doom_config = doom_loop_config or DoomLoopConfig()
        self._limits = safety_limits(self._workflow_config)
        self._on_event = on_event
        self._test_mode = test_mode

        self._context: WorkflowContext | None = None
        self._explore_inputs: list[str] = []
        self._explore_results: list[AgentResult] = []
        self._plan_result: AgentResult | None = None
        self._build_result: AgentResult | None = None
        self._agent_states: dict[str, AgentState] = {}
        self._latest_checkpoint: Checkpoint | None = None
        self._pending_saves: set[asyncio.Task] = set()
        self._result: WorkflowResult | None = None
        self._running = False
        self._doom_loop_failure = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def context(self) -> WorkflowContext | None:
        return self._context

    @property
    def phase(self) -> Phase:
        return self._context.phase if self._context else Phase.IDLE

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def result(self) -> WorkflowResult | None:
        return self._result

    @property
    def latest_checkpoint(self) -> Checkpoint | None:
        return self._latest_checkpoint

    @property
    def explore_progress(self) -> tuple[int, int]:
        """(completed explorers, total explorers)."""
        return len(self._explore_results), len(self._explore_inputs)

    @property
    def active_agents(self) -> list[str]:
        return [a.agent_id for a in self._agent_states.values() if a.status == "running"]

    async def start(
        self,
        goal: str,
        explore_inputs: list[str] | None = None,
        *,
        cancellation: CancellationToken | None = None,
    ) -> WorkflowResult:
        """Run a fresh workflow for goal from plan.analyze_code."""
        self._ensure_idle()
        self._context = WorkflowContext(goal=goal, runtime=self._runtime(cancellation))
        self._context.add_message("user", goal)
        self._explore_inputs = list(explore_inputs or default_explore_inputs(
            goal, self._workflow_config.explorer_count
        ))
        self._explore_results = []
        self._plan_result = None
        self._build_result = None
        self._agent_states = {}
        self._result = None
        self._doom_loop_failure = False
        log.info("workflow_start", session_id=self.session_id, explorers=len(self._explore_inputs))
        return await self._run(Phase.ANALYZE_CODE)

    async def resume(
        self,
        checkpoint: Checkpoint,
        *,
        cancellation: CancellationToken | None = None,
    ) -> WorkflowResult:
        """Continue from checkpoint.phase without re-running completed phases."""
        self._ensure_idle()
        saved = checkpoint.context or CheckpointContext()
        self._context = WorkflowContext(
            goal=checkpoint.task,
            messages=list(saved.messages),
            iteration_count=saved.iteration_count,
            tool_execution_count=saved.tool_execution_count,
            error_counts=dict(saved.error_counts),
            last_state=saved.last_state,
            runtime=self._runtime(cancellation),
        )
        if not self._context.messages:
            self._context.add_message("user", checkpoint.task)
        self._explore_inputs = list(checkpoint.explore_inputs) or default_explore_inputs(
            checkpoint.task, self._workflow_config.explorer_count
        )
        self._explore_results = list(checkpoint.explore_results)
        self._plan_result = checkpoint.plan_result
        self._build_result = checkpoint.build_result
        # Running agents from the snapshot are stale; only completed ones carry over
        self._agent_states = {
            s.agent_id: s for s in checkpoint.agent_states if s.status == "completed"
        }
        self._result = None
        self._doom_loop_failure = False

        phase = self._resume_phase(checkpoint)
        log.info(
            "workflow_resume",
            session_id=self.session_id,
            checkpoint_phase=checkpoint.phase.value,
            resume_phase=phase.value,
        )
        if phase == Phase.DONE:
            self._context.phase = Phase.DONE
            self._result = WorkflowResult(
                outcome=WorkflowOutcome.COMPLETED,
                phase=Phase.DONE,
                iteration_count=self._context.iteration_count,
            )
            self._emit_complete(self._result)
            return self._result
        return await self._run(phase)

    def cancel(self, reason: str = "aborted") -> bool:
        """Signal cancellation. No-op (returns False) unless a run is in flight."""
        if not self._running or self._context is None:
            return False
        self._context.runtime.cancellation.cancel(reason)
        log.info("workflow_cancel_requested", session_id=self.session_id, reason=reason)
        return True

    def snapshot(self) -> Checkpoint:
        """Immutable checkpoint of the current context."""
        if self._context is None:
            raise RuntimeError("workflow has not started")
        ctx = self._context
        return Checkpoint(
            session_id=self.session_id,
            phase=ctx.phase,
            task=ctx.goal,
            explore_results=list(self._explore_results),
            plan_result=self._plan_result,
            build_result=self._build_result,
            agent_states=list(self._agent_states.values()),
            explore_inputs=list(self._explore_inputs),
            context=CheckpointContext(
                messages=list(ctx.messages),
                iteration_count=ctx.iteration_count,
                tool_execution_count=ctx.tool_execution_count,
                error_counts=dict(ctx.error_counts),
                last_state=ctx.last_state,
                failure_reason=ctx.failure_reason,
                outcome=self._result.outcome if self._result else None,
            ),
        )

    async def wait_for_pending_saves(self, timeout: float | None = None) -> bool:
        """Await scheduled checkpoint writes. Returns False if some did not finish in time."""
        if not self._pending_saves:
            return True
        _, pending = await asyncio.wait(set(self._pending_saves), timeout=timeout)
        if pending:
            log.warning(
                "checkpoint_drain_timeout", session_id=self.session_id, pending=len(pending)
            )
        return not pending

    # ------------------------------------------------------------------
    # Machine loop
    # ------------------------------------------------------------------

    def _runtime(self, cancellation: CancellationToken | None) -> RuntimeControls:
        return RuntimeControls(
            cancellation=cancellation or CancellationToken(),
            test_mode=self._test_mode,
        )

    def _ensure_idle(self) -> None:
        if self._running:
            raise RuntimeError(f"workflow for session {self.session_id} is already running")

    def _resume_phase(self, checkpoint: Checkpoint) -> Phase:
        phase = checkpoint.phase
        if phase == Phase.IDLE:
            return Phase.ANALYZE_CODE
        if phase != Phase.FAILED:
            return phase
        # Failed runs continue from the phase that failed
        last = self._context.last_state if self._context else None
        try:
            target = Phase(last) if last else Phase.ANALYZE_CODE
        except ValueError:
            target = Phase.ANALYZE_CODE
        if target.is_terminal or (target.is_build and self._plan_result is None):
            return Phase.ANALYZE_CODE
        return target

    async def _run(self, phase: Phase) -> WorkflowResult:
        ctx = self._context
        token = ctx.runtime.cancellation
        self._running = True
        try:
            self._enter(phase)
            while not phase.is_terminal:
                token.raise_if_cancelled()
                self._emit(WorkflowEventType.PHASE_START, phase)
                try:
                    run = await self._execute(phase)
                    outcome = self._decide(run)
                except WorkflowCancelled:
                    raise
                except asyncio.CancelledError:
                    if token.is_cancelled:
                        raise WorkflowCancelled(token.reason or "cancelled") from None
                    raise
                except Exception as e:
                    log.exception("phase_failed", session_id=self.session_id, phase=phase.value)
                    run = PhaseRun(phase=phase, error=str(e) or type(e).__name__)
                    outcome = StepOutcome.ERROR
                # A call that resolved after abort must not commit a transition
                token.raise_if_cancelled()
                transition = next_transition(phase, outcome)
                for action in transition.actions:
                    self._apply(action, run)
                self._emit(
                    WorkflowEventType.PHASE_COMPLETE,
                    phase,
                    payload={"outcome": outcome.value, "next": transition.target.value, "turns": run.turns},
                )
                phase = transition.target
                self._enter(phase)
            result = self._terminal_result()
        except WorkflowCancelled:
            result = WorkflowResult(
                outcome=WorkflowOutcome.STOPPED,
                phase=ctx.phase,
                reason=token.reason,
                iteration_count=ctx.iteration_count,
            )
            self._mark_running_agents("failed")
            log.info("workflow_stopped", session_id=self.session_id, phase=ctx.phase.value)
        finally:
            self._running = False
        self._result = result
        self._schedule_checkpoint()
        await self.wait_for_pending_saves(self._workflow_config.checkpoint_drain_seconds)
        self._emit_complete(result)
        return result

    def _terminal_result(self) -> WorkflowResult:
        ctx = self._context
        if ctx.phase == Phase.DONE:
            log.info("workflow_completed", session_id=self.session_id, iterations=ctx.iteration_count)
            return WorkflowResult(
                outcome=WorkflowOutcome.COMPLETED,
                phase=Phase.DONE,
                iteration_count=ctx.iteration_count,
            )
        log.error("workflow_failed", session_id=self.session_id, reason=ctx.failure_reason)
        return WorkflowResult(
            outcome=WorkflowOutcome.FAILED,
            phase=Phase.FAILED,
            reason=ctx.failure_reason,
            doom_loop=self._doom_loop_failure,
            iteration_count=ctx.iteration_count,
        )

    def _enter(self, phase: Phase) -> None:
        self._context.enter(phase, max_recent=self._doom_config.max_recent_states)
        log.info("phase_enter", session_id=self.session_id, phase=phase.value)
        self._schedule_checkpoint()

    def _decide(self, run: PhaseRun) -> StepOutcome:
        if run.phase != Phase.VALIDATE:
            return StepOutcome.SUCCESS
        verdict = doom_loop_guard.evaluate(self._context, self._doom_config)
        if verdict.is_doom_loop:
            log.warning("doom_loop_detected", session_id=self.session_id, reason=verdict.reason)
            run.doom_loop_reason = verdict.reason
            return StepOutcome.DOOM_LOOP
        return validation_outcome(run.output)

    # ------------------------------------------------------------------
    # Phase execution
    # ------------------------------------------------------------------

    async def _execute(self, phase: Phase) -> PhaseRun:
        if phase == Phase.ANALYZE_CODE:
            return await self._explore_all()
        agent_id = {Phase.RESEARCH: "planner", Phase.DESIGN: "planner"}.get(phase, "builder")
        return await self._run_turns(
            agent_id,
            phase,
            self._context.fork(),
            self._router.tools_for(phase),
        )

    async def _explore_all(self) -> PhaseRun:
        """Fan out exploration sub-agents in parallel and join all of them."""
        done = {r.agent_id for r in self._explore_results}
        order = {explorer_id(i): i for i in range(len(self._explore_inputs))}
        pending = [
            (explorer_id(i), text)
            for i, text in enumerate(self._explore_inputs)
            if explorer_id(i) not in done
        ]
        tasks = [asyncio.create_task(self._explore_one(agent_id, text)) for agent_id, text in pending]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        # Input order, not completion order
        results = sorted(self._explore_results, key=lambda r: order.get(r.agent_id, len(order)))
        output = "\n\n".join(f"### {r.agent_id}\n{r.output}".rstrip() for r in results)
        return PhaseRun(
            phase=Phase.ANALYZE_CODE,
            output=output,
            finish_reason="stop",
            turns=sum(r.turns for r in results),
        )

    async def _explore_one(self, agent_id: str, prompt: str) -> None:
        child = self._context.fork([Message(role="user", content=prompt)])
        run = await self._run_turns(agent_id, Phase.ANALYZE_CODE, child, self._router.explore_tools())
        self._explore_results.append(
            AgentResult(
                agent_id=agent_id,
                phase=Phase.ANALYZE_CODE,
                output=run.output,
                finish_reason=run.finish_reason,
                turns=run.turns,
            )
        )
        # Persist partial fan-out progress so a resume skips finished explorers
        self._schedule_checkpoint()

    async def _run_turns(
        self,
        agent_id: str,
        phase: Phase,
        child: WorkflowContext,
        tools: list[str],
    ) -> PhaseRun:
        """Call the runner turn by turn until it stops or the safety limit is hit."""
        limit = self._limits[phase]
        run = PhaseRun(phase=phase)
        parts: list[str] = []
        self._set_agent(agent_id, phase, "running", run)
        try:
            while run.turns < limit:
                run.turns += 1
                result = await self._invoke(child, tools, phase)
                self._record_turn(agent_id, phase, result)
                if result.output:
                    parts.append(result.output)
                child.messages.extend(result.updated_messages)
                run.messages.extend(result.updated_messages)
                run.finish_reason = result.finish_reason
                if result.finish_reason == "stop":
                    break
            else:
                log.warning(
                    "phase_safety_limit_reached",
                    session_id=self.session_id,
                    agent=agent_id,
                    phase=phase.value,
                    limit=limit,
                )
        except BaseException:
            self._set_agent(agent_id, phase, "failed", run)
            raise
        run.output = "\n".join(parts)
        self._set_agent(agent_id, phase, "completed", run)
        return run

    async def _invoke(
        self,
        child: WorkflowContext,
        tools: list[str],
        phase: Phase,
    ) -> AgentRunResult:
        """Run one turn, racing it against the cancellation token."""
        token: CancellationToken = self._context.runtime.cancellation
        token.raise_if_cancelled()
        call = asyncio.ensure_future(self._runner.run(child, tools, phase, cancellation=token))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({call, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            call.cancel()
            raise
        finally:
            cancelled.cancel()
        if call not in done:
            call.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await call
            raise WorkflowCancelled(token.reason or "cancelled")
        return call.result()

    def _record_turn(self, agent_id: str, phase: Phase, result: AgentRunResult) -> None:
        ctx = self._context
        ctx.tool_execution_count += result.tool_calls
        for name, count in result.tool_errors.items():
            ctx.error_counts[name] = ctx.error_counts.get(name, 0) + count
        if result.output:
            self._emit(WorkflowEventType.AGENT_TEXT, phase, text=result.output, payload={"agent": agent_id})
        if result.tool_calls or result.tool_errors:
            self._emit(
                WorkflowEventType.AGENT_TOOL,
                phase,
                payload={
                    "agent": agent_id,
                    "tool_calls": result.tool_calls,
                    "tool_errors": result.tool_errors,
                },
            )

    def _set_agent(self, agent_id: str, phase: Phase, status: str, run: PhaseRun) -> None:
        self._agent_states[agent_id] = AgentState(
            agent_id=agent_id,
            type=_agent_type(phase),
            status=status,
            messages=list(run.messages),
            iteration_count=run.turns,
        )

    def _mark_running_agents(self, status: str) -> None:
        for agent_id, state in list(self._agent_states.items()):
            if state.status == "running":
                self._agent_states[agent_id] = state.model_copy(update={"status": status})

    # ------------------------------------------------------------------
    # Transition actions
    # ------------------------------------------------------------------

    def _apply(self, action: Action, run: PhaseRun) -> None:
        ctx = self._context
        if action == Action.STORE_EXPLORE_FINDINGS:
            ctx.explore_result = run.output or "Explore complete"
            ctx.add_message("system", f"{FINDINGS_HEADER}\n\n{ctx.explore_result}")
        elif action == Action.ADD_HANDOVER_MESSAGE:
            ctx.add_message("system", HANDOVER_MESSAGE)
        elif action == Action.APPEND_PHASE_OUTPUT:
            if run.messages:
                ctx.messages.extend(run.messages)
            else:
                ctx.add_message("assistant", run.output or _DEFAULT_OUTPUT.get(run.phase, ""))
        elif action == Action.STORE_PLAN_RESULT:
            self._plan_result = self._agent_result("planner", run)
        elif action == Action.INCREMENT_ITERATION:
            ctx.iteration_count += 1
        elif action == Action.STORE_BUILD_RESULT:
            self._build_result = self._agent_result("builder", run)
        elif action == Action.COUNT_VALIDATION_ERROR:
            ctx.error_counts["validation"] = ctx.error_counts.get("validation", 0) + 1
        elif action == Action.RECORD_FAILURE:
            self._doom_loop_failure = run.doom_loop_reason is not None
            ctx.failure_reason = run.doom_loop_reason or run.error or "unknown failure"

    @staticmethod
    def _agent_result(agent_id: str, run: PhaseRun) -> AgentResult:
        return AgentResult(
            agent_id=agent_id,
            phase=run.phase,
            output=run.output,
            finish_reason=run.finish_reason,
            turns=run.turns,
        )

    # ------------------------------------------------------------------
    # Persistence and events
    # ------------------------------------------------------------------

    def _schedule_checkpoint(self) -> None:
        """Snapshot now, write in the background. Transitions never wait for it."""
        checkpoint = self.snapshot()
        self._latest_checkpoint = checkpoint
        if self._store is None:
            return
        task = asyncio.create_task(self._store.save(checkpoint))
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    def _emit(
        self,
        event_type: WorkflowEventType,
        phase: Phase | None = None,
        *,
        text: str | None = None,
        payload: dict | None = None,
    ) -> None:
        if self._on_event is None:
            return
        event = WorkflowEvent(
            type=event_type,
            session_id=self.session_id,
            phase=phase.value if phase else None,
            text=text,
            payload=payload,
        )
        try:
            self._on_event(event)
        except Exception:
            log.warning("event_callback_failed", session_id=self.session_id, exc_info=True)

    def _emit_complete(self, result: WorkflowResult) -> None:
        self._emit(
            WorkflowEventType.WORKFLOW_COMPLETE,
            result.phase,
            text=result.reason,
            payload=result.model_dump(mode="json"),
        )
