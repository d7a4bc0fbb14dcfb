"""Session manager - owns controllers, rehydrates them, flushes on shutdown."""

import asyncio
import logging
import uuid

from src.application.session.controller import SessionController
from src.application.session.dto import SessionConfig
from src.domain.entities.checkpoint import Checkpoint
from src.domain.ports.agent_runner import AgentRunnerPort
from src.domain.ports.config import AppConfig
from src.domain.services.intent_detector import IntentDetector
from src.infrastructure.persistence.checkpoint_store import CheckpointStore
from src.infrastructure.persistence.session_registry import SessionRecord, SessionRegistry

logger = logging.getLogger(__name__)


class SessionManager:
    """Registry of live SessionControllers keyed by session id.

    Controllers restored from disk start paused: they hold the checkpoint but
    run nothing until resumed or sent a message.
    """

    def __init__(
        self,
        runner: AgentRunnerPort,
        *,
        checkpoint_store: CheckpointStore,
        registry: SessionRegistry,
        config: AppConfig | None = None,
        intent_detector: IntentDetector | None = None,
    ) -> None:
        self._runner = runner
        self._store = checkpoint_store
        self._registry = registry
        self._config = config or AppConfig()
        self._intents = intent_detector or IntentDetector()
        self._sessions: dict[str, SessionController] = {}
        self._initialized = False

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def initialize(self) -> None:
        """Load persisted sessions as paused controllers. Safe to call twice."""
        if self._initialized:
            return
        ids = [r.session_id for r in self._registry.list_records()]
        # Checkpoints without a registry record (e.g. registry lost) are still restored
        ids += [sid for sid in self._store.list_session_ids() if sid not in ids]
        for session_id in ids:
            if session_id not in self._sessions:
                await self._rehydrate(session_id)
        self._initialized = True
        logger.info("Session manager initialized with %d sessions", len(self._sessions))

    async def create_session(self, config: SessionConfig | None = None, session_id: str | None = None) -> str:
        """Register a new session and return its id."""
        config = config or SessionConfig()
        session_id = session_id or str(uuid.uuid4())
        await self._registry.add(session_id, resource_id=config.resource_id, workspace=config.workspace)
        self._sessions[session_id] = self._controller(session_id, config)
        logger.info("Created session %s", session_id)
        return session_id

    async def get_session(self, session_id: str) -> SessionController | None:
        """Controller from memory, else rehydrated from registry/checkpoint, else None."""
        controller = self._sessions.get(session_id)
        if controller is None:
            controller = await self._rehydrate(session_id)
        if controller is not None:
            await self._registry.touch(session_id)
        return controller

    async def get_or_create_session(
        self, session_id: str, config: SessionConfig | None = None
    ) -> SessionController:
        controller = await self.get_session(session_id)
        if controller is not None:
            return controller
        await self.create_session(config, session_id=session_id)
        return self._sessions[session_id]

    def get_active_sessions(self) -> list[SessionController]:
        """Controllers with incomplete work."""
        return [c for c in self._sessions.values() if c.has_incomplete_work()]

    def list_sessions(self) -> list[SessionController]:
        return list(self._sessions.values())

    async def delete_session(self, session_id: str) -> bool:
        """Abort, drop, delete record and checkpoint. Returns False for unknown ids."""
        controller = self._sessions.pop(session_id, None)
        if controller is not None:
            await controller.close()
        removed = await self._registry.remove(session_id)
        deleted = await self._store.delete(session_id)
        if controller is None and not removed and not deleted:
            return False
        logger.info("Deleted session %s", session_id)
        return True

    async def shutdown(self, timeout: float | None = None) -> dict[str, bool]:
        """Flush checkpoints of all active sessions under one global timeout, then abort runs.

        Returns per-session save results; sessions that did not finish in time
        map to False.
        """
        timeout = self._config.session.shutdown_timeout_seconds if timeout is None else timeout
        active = self.get_active_sessions()
        logger.info("Saving checkpoints for %d active sessions", len(active))
        tasks = {
            asyncio.create_task(c.save_checkpoint_to_disk()): c.session_id for c in active
        }
        results: dict[str, bool] = {sid: False for sid in tasks.values()}
        if tasks:
            done, pending = await asyncio.wait(set(tasks), timeout=timeout)
            for task in done:
                session_id = tasks[task]
                if task.exception() is not None:
                    logger.error(
                        "Failed to save checkpoint for session %s",
                        session_id,
                        exc_info=task.exception(),
                    )
                    continue
                results[session_id] = bool(task.result())
                if results[session_id]:
                    logger.info("Checkpoint saved for session %s", session_id)
                else:
                    logger.error("Failed to save checkpoint for session %s", session_id)
            for task in pending:
                logger.error("Checkpoint save timed out for session %s", tasks[task])
                task.cancel()
        for controller in self._sessions.values():
            if controller.abort("shutdown"):
                await self._registry.touch(controller.session_id, status="paused")
        return results

    def _controller(
        self,
        session_id: str,
        config: SessionConfig,
        checkpoint: Checkpoint | None = None,
    ) -> SessionController:
        return SessionController(
            session_id,
            self._runner,
            checkpoint_store=self._store,
            config=self._config,
            session_config=config,
            checkpoint=checkpoint,
            intent_detector=self._intents,
        )

    async def _rehydrate(self, session_id: str) -> SessionController | None:
        record: SessionRecord | None = self._registry.get(session_id)
        checkpoint = await self._store.load(session_id)
        if record is None and checkpoint is None:
            return None
        config = SessionConfig(
            resource_id=record.resource_id if record else "",
            workspace=record.workspace if record else "",
            task=checkpoint.task if checkpoint else None,
        )
        if record is None:
            await self._registry.add(session_id)
        controller = self._controller(session_id, config, checkpoint)
        self._sessions[session_id] = controller
        logger.debug("Restored session %s (checkpoint=%s)", session_id, checkpoint is not None)
        return controller
