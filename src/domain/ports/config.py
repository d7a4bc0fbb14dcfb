"""Config Port - interface for configuration access."""

from typing import Protocol

from pydantic import BaseModel, ConfigDict, model_validator


class LLMConfig(BaseModel):
    """LLM provider selection."""

    provider: str = "ollama"
    model: str = "qwen2.5-coder:7b"
    temperature: float = 0.3
    # Canned runner output, no model calls (local development, demos)
    test_mode: bool = False


class OllamaConfig(BaseModel):
    """Ollama connection configuration."""

    host: str = "http://localhost:11434"
    timeout: int = 120
    num_ctx: int | None = None  # Context window. None = model default.
    num_predict: int | None = None  # Max tokens to generate. None = model default.


class WorkflowConfig(BaseModel):
    """Phase turn limits and exploration fan-out."""

    model_config = ConfigDict(extra="ignore")

    analyze_code_limit: int = 5
    research_limit: int = 100
    design_limit: int = 100
    implement_limit: int = 50
    validate_limit: int = 100
    explorer_count: int = 3
    # Pending checkpoint writes are awaited at most this long when a run ends
    checkpoint_drain_seconds: float = 5.0


class DoomLoopConfig(BaseModel):
    """Doom loop thresholds."""

    oscillation_threshold: int = 5  # implement ⇄ validate transitions
    time_limit_minutes: float = 10.0  # since oldest retained state, in build mode
    error_stagnation_iterations: int = 5  # iterations before stagnation is checked
    error_progress_threshold: int = 10  # total errors below this count as progress
    max_recent_states: int = 20

    @model_validator(mode="after")
    def _history_fits_threshold(self) -> "DoomLoopConfig":
        # N transitions need N + 1 retained entries
        if self.max_recent_states <= self.oscillation_threshold:
            raise ValueError("max_recent_states must exceed oscillation_threshold")
        return self


class CheckpointConfig(BaseModel):
    """Checkpoint persistence settings."""

    dir: str = "output/checkpoints"


class SessionConfigSection(BaseModel):
    """Session lifecycle settings."""

    registry_file: str = "output/sessions.json"
    shutdown_timeout_seconds: float = 10.0
    event_buffer_size: int = 1000


class SecurityConfig(BaseModel):
    """Security settings."""

    rate_limit_requests_per_minute: int = 100
    cors_origins: list[str] = ["http://localhost:5173"]


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class AppConfig(BaseModel):
    """Full application configuration."""

    server: ServerConfig = ServerConfig()
    llm: LLMConfig = LLMConfig()
    ollama: OllamaConfig = OllamaConfig()
    workflow: WorkflowConfig = WorkflowConfig()
    doom_loop: DoomLoopConfig = DoomLoopConfig()
    checkpoint: CheckpointConfig = CheckpointConfig()
    session: SessionConfigSection = SessionConfigSection()
    security: SecurityConfig = SecurityConfig()
    log_level: str = "INFO"
    # Log file: path relative to cwd or absolute. Empty = only stdout. Rotation when file exceeds max_mb.
    log_file: str = ""
    log_rotation_max_mb: int = 5
    log_rotation_backups: int = 3


class ConfigPort(Protocol):
    """Interface for configuration providers."""

    def get_config(self) -> AppConfig:
        """Get the full application configuration."""
        ...
