"""Pytest configuration and shared fixtures."""

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from src.domain.entities.cancellation import CancellationToken
from src.domain.entities.workflow_state import Message, Phase, WorkflowContext
from src.domain.ports.agent_runner import AgentRunResult
from src.domain.ports.config import AppConfig, CheckpointConfig, SessionConfigSection
from src.infrastructure.persistence.checkpoint_store import CheckpointStore


class ScriptedRunner:
    """Agent runner double: canned output per phase, optional hang/failure."""

    def __init__(
        self,
        *,
        validate_outputs: list[str] | None = None,
        hang_on: Phase | None = None,
        fail_on: Phase | None = None,
        finish_reasons: dict[Phase, list[str]] | None = None,
    ) -> None:
        self.calls: list[tuple[Phase, list[str]]] = []
        self.contexts: list[WorkflowContext] = []
        self.validate_outputs = list(validate_outputs or [])
        self.hang_on = hang_on
        self.fail_on = fail_on
        self.finish_reasons = {k: list(v) for k, v in (finish_reasons or {}).items()}
        self.hanging = 0

    def phases(self) -> list[Phase]:
        return [phase for phase, _ in self.calls]

    async def run(
        self,
        context: WorkflowContext,
        allowed_tools: list[str],
        phase: Phase,
        *,
        cancellation: CancellationToken,
    ) -> AgentRunResult:
        self.calls.append((phase, list(allowed_tools)))
        self.contexts.append(context)
        if phase == self.fail_on:
            raise RuntimeError("runner exploded")
        if phase == self.hang_on:
            self.hanging += 1
            try:
                await asyncio.sleep(3600)
            finally:
                self.hanging -= 1
        if phase == Phase.VALIDATE and self.validate_outputs:
            output = self.validate_outputs.pop(0)
        elif phase == Phase.ANALYZE_CODE:
            output = f"findings for: {context.messages[-1].content}"
        else:
            output = f"{phase.value} output"
        reasons = self.finish_reasons.get(phase)
        finish = reasons.pop(0) if reasons else "stop"
        return AgentRunResult(
            output=output,
            finish_reason=finish,
            updated_messages=[Message(role="assistant", content=output)],
            tool_calls=1,
        )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate on the event loop until true or fail."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def runner_factory() -> Callable[..., ScriptedRunner]:
    return ScriptedRunner


@pytest.fixture
def waiter() -> Callable:
    return wait_until


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Config with all persistence under tmp_path."""
    return AppConfig(
        checkpoint=CheckpointConfig(dir=str(tmp_path / "checkpoints")),
        session=SessionConfigSection(
            registry_file=str(tmp_path / "sessions.json"),
            shutdown_timeout_seconds=2.0,
        ),
    )


@pytest.fixture
def checkpoint_store(app_config: AppConfig) -> CheckpointStore:
    return CheckpointStore(app_config.checkpoint.dir)


@pytest.fixture
def api_container(app_config: AppConfig, monkeypatch):
    """Global DI container swapped for one in test mode with tmp_path persistence."""
    from src.api import container as container_module
    from src.api.dependencies import limiter

    config = app_config.model_copy(
        update={"llm": app_config.llm.model_copy(update={"test_mode": True})}
    )
    container = container_module.Container(config)
    monkeypatch.setattr(container_module, "_container", container)
    limiter.reset()
    return container


@pytest.fixture
async def client(api_container):
    from httpx import ASGITransport, AsyncClient

    from src.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    manager = api_container.session_manager
    await manager.shutdown(timeout=1.0)
    for controller in manager.list_sessions():
        await controller.wait(timeout=1.0)
