"""Session controller - one workflow lifecycle per session."""

import asyncio
import time

import structlog

from src.application.session.dto import SessionConfig, SessionStatus
from src.application.session.errors import NoCheckpointError, SessionBusyError
from src.application.session.events import EventChannel, EventSubscription
from src.application.workflow.orchestrator import PhaseOrchestrator
from src.domain.entities.cancellation import CancellationToken
from src.domain.entities.checkpoint import Checkpoint
from src.domain.entities.workflow_events import WorkflowEvent, WorkflowEventType
from src.domain.entities.workflow_state import PHASE_ORDER, Phase, WorkflowResult
from src.domain.ports.agent_runner import AgentRunnerPort
from src.domain.ports.config import AppConfig
from src.domain.services.intent_detector import IntentDetector
from src.infrastructure.persistence.checkpoint_store import CheckpointStore
from src.shared.logging import session_context

log = structlog.get_logger()


def phase_progress(phase: Phase, last_state: str | None = None) -> int:
    """Progress in percent, linear in the phase ordinal."""
    if phase == Phase.FAILED:
        try:
            phase = Phase(last_state) if last_state else Phase.IDLE
        except ValueError:
            phase = Phase.IDLE
        if phase.is_terminal:
            phase = Phase.IDLE
    return round(PHASE_ORDER.index(phase) / (len(PHASE_ORDER) - 1) * 100)


class SessionController:
    """Wraps a PhaseOrchestrator with start/resume/abort and an event stream.

    The workflow runs in a background task; callers observe it through
    subscriptions returned by process_user_message() or subscribe().
    """

    def __init__(
        self,
        session_id: str,
        runner: AgentRunnerPort,
        *,
        checkpoint_store: CheckpointStore,
        config: AppConfig | None = None,
        session_config: SessionConfig | None = None,
        checkpoint: Checkpoint | None = None,
        intent_detector: IntentDetector | None = None,
    ) -> None:
        self.session_id = session_id
        self.config = session_config or SessionConfig()
        app_config = config or AppConfig()
        self._store = checkpoint_store
        self._checkpoint = checkpoint
        self._intents = intent_detector or IntentDetector()
        self._channel = EventChannel(session_id, app_config.session.event_buffer_size)
        self._orchestrator = PhaseOrchestrator(
            session_id,
            runner,
            checkpoint_store=checkpoint_store,
            workflow_config=app_config.workflow,
            doom_loop_config=app_config.doom_loop,
            on_event=self._on_event,
            test_mode=app_config.llm.test_mode,
        )
        self._task: asyncio.Task[WorkflowResult] | None = None
        self._token = CancellationToken()
        self._last_activity: float | None = checkpoint.timestamp if checkpoint else None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def phase(self) -> Phase:
        if self._orchestrator.context is not None:
            return self._orchestrator.phase
        if self._checkpoint is not None:
            return self._checkpoint.phase
        return Phase.IDLE

    @property
    def result(self) -> WorkflowResult | None:
        return self._orchestrator.result

    @property
    def checkpoint(self) -> Checkpoint | None:
        """Latest known checkpoint (in-memory snapshot, else the one loaded at startup)."""
        return self._orchestrator.latest_checkpoint or self._checkpoint

    def has_incomplete_work(self) -> bool:
        return self.phase not in (Phase.DONE, Phase.IDLE)

    def get_status(self) -> SessionStatus:
        phase = self.phase
        ctx = self._orchestrator.context
        checkpoint = self.checkpoint
        if ctx is not None:
            last_state, iterations = ctx.last_state, ctx.iteration_count
        elif checkpoint is not None and checkpoint.context is not None:
            last_state, iterations = checkpoint.context.last_state, checkpoint.context.iteration_count
        else:
            last_state, iterations = None, 0
        result = self.result
        return SessionStatus(
            session_id=self.session_id,
            phase=phase.value,
            progress=phase_progress(phase, last_state),
            has_incomplete_work=self.has_incomplete_work(),
            summary=self._summary(phase),
            active_agents=self._orchestrator.active_agents,
            is_running=self.is_running,
            outcome=result.outcome.value if result else None,
            reason=result.reason if result else None,
            iteration_count=iterations,
            last_activity=self._last_activity,
        )

    def _summary(self, phase: Phase) -> str:
        if phase == Phase.ANALYZE_CODE:
            done, total = self._orchestrator.explore_progress
            if not total and self._checkpoint is not None:
                done = len(self._checkpoint.explore_results)
                total = len(self._checkpoint.explore_inputs)
            return f"Exploration: {done}/{total} agents completed"
        if phase.is_plan:
            return "Planning: Creating implementation plan"
        if phase.is_build:
            return "Building: Implementing the solution"
        if phase == Phase.DONE:
            return "All phases completed"
        if phase == Phase.FAILED:
            reason = self.result.reason if self.result else None
            return f"Failed: {reason}" if reason else "Failed"
        return "Ready to start"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def subscribe(self) -> EventSubscription:
        """Attach to the session's event stream from this point on."""
        return self._channel.subscribe()

    def start(self, task: str, explore_inputs: list[str] | None = None) -> None:
        """Begin a new workflow in the background and return immediately."""
        if self.is_running:
            raise SessionBusyError(self.session_id)
        self.config = self.config.model_copy(
            update={"task": task, "explore_inputs": explore_inputs or self.config.explore_inputs}
        )
        self._checkpoint = None
        token = self._new_token()
        self._launch(
            self._orchestrator.start(task, self.config.explore_inputs, cancellation=token)
        )
        log.info("session_start", session_id=self.session_id)

    async def resume(self) -> None:
        """Continue from the latest checkpoint in the background.

        Raises NoCheckpointError when neither memory nor disk has one.
        """
        if self.is_running:
            raise SessionBusyError(self.session_id)
        checkpoint = self.checkpoint or await self._store.load(self.session_id)
        if checkpoint is None:
            raise NoCheckpointError(self.session_id)
        self._checkpoint = checkpoint
        token = self._new_token()
        self._launch(self._orchestrator.resume(checkpoint, cancellation=token))
        log.info("session_resume", session_id=self.session_id, phase=checkpoint.phase.value)

    async def process_user_message(self, text: str) -> EventSubscription:
        """Route a message: continue intent with incomplete work resumes, anything else starts a task.

        The returned subscription is attached before the run is launched, so
        no event of the run is missed. For a continue intent its first event
        is a status summary.
        """
        sub = self._channel.subscribe()
        try:
            if self._intents.is_continue_intent(text) and self.has_incomplete_work():
                status = self.get_status()
                sub.push(
                    WorkflowEvent(
                        type=WorkflowEventType.STATUS,
                        session_id=self.session_id,
                        phase=status.phase,
                        text=f"Continuing our work! {status.summary}. Resuming now...",
                        payload=status.model_dump(mode="json"),
                    )
                )
                if not self.is_running:
                    await self.resume()
            else:
                self.start(text)
        except BaseException:
            sub.close()
            raise
        return sub

    def abort(self, reason: str = "aborted") -> bool:
        """Cancel the in-flight run. Returns False when nothing was running."""
        if not self.is_running:
            return False
        log.info("session_abort", session_id=self.session_id, reason=reason)
        self._token.cancel(reason)
        return True

    async def wait(self, timeout: float | None = None) -> WorkflowResult | None:
        """Wait for the current run to settle. Returns its result, or None on timeout."""
        task = self._task
        if task is None:
            return self.result
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            return None

    async def save_checkpoint_to_disk(self) -> bool:
        """Snapshot the current context and write it now."""
        # Older scheduled writes must land first or they would overwrite this one
        await self._orchestrator.wait_for_pending_saves()
        if self._orchestrator.context is not None:
            checkpoint = self._orchestrator.snapshot()
        elif self._checkpoint is not None:
            checkpoint = self._checkpoint
        else:
            return True  # nothing to persist
        return await self._store.save(checkpoint)

    async def close(self) -> None:
        """Abort any run, wait for it and end open subscriptions."""
        self.abort("session closed")
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        self._channel.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_token(self) -> CancellationToken:
        self._token = CancellationToken()
        return self._token

    async def _in_session_context(self, coro) -> WorkflowResult:
        with session_context(self.session_id):
            return await coro

    def _launch(self, coro) -> None:
        self._last_activity = time.time()
        self._task = asyncio.create_task(
            self._in_session_context(coro), name=f"session-{self.session_id}"
        )
        self._task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            log.warning("session_task_cancelled", session_id=self.session_id)
            return
        exc = task.exception()
        if exc is not None:
            log.error("session_task_error", session_id=self.session_id, error=str(exc), exc_info=exc)
            self._channel.publish(
                WorkflowEvent(
                    type=WorkflowEventType.WORKFLOW_COMPLETE,
                    session_id=self.session_id,
                    phase=self.phase.value,
                    text=str(exc),
                    payload={"outcome": "failed", "reason": str(exc)},
                )
            )

    def _on_event(self, event: WorkflowEvent) -> None:
        self._last_activity = event.timestamp
        self._channel.publish(event)
