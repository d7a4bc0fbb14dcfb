"""Session DTOs."""

from pydantic import BaseModel, Field


class SessionConfig(BaseModel):
    """Parameters a session is created with."""

    resource_id: str = Field("", max_length=200)
    task: str | None = Field(None, max_length=50_000)
    workspace: str = Field("", max_length=1000)
    explore_inputs: list[str] | None = None


class SessionStatus(BaseModel):
    """Snapshot returned by SessionController.get_status."""

    session_id: str
    phase: str
    progress: int  # 0..100, linear in phase ordinal
    has_incomplete_work: bool
    summary: str
    active_agents: list[str] = []
    is_running: bool = False
    outcome: str | None = None
    reason: str | None = None
    iteration_count: int = 0
    last_activity: float | None = None


class CreateSessionRequest(SessionConfig):
    """Body of POST /sessions."""

    session_id: str | None = Field(None, max_length=100)  # auto-generated if omitted


class MessageRequest(BaseModel):
    """Body of POST /sessions/{id}/messages."""

    text: str = Field(..., min_length=1, max_length=50_000)
