"""Dependency Injection Container - centralized service management."""

from functools import cached_property
from typing import TYPE_CHECKING

from src.domain.ports.config import AppConfig
from src.domain.ports.llm import LLMPort
from src.domain.services.intent_detector import IntentDetector
from src.infrastructure.config import load_config
from src.infrastructure.persistence.checkpoint_store import CheckpointStore
from src.infrastructure.persistence.session_registry import SessionRegistry

if TYPE_CHECKING:
    from src.application.session.manager import SessionManager
    from src.application.session.shutdown import ShutdownHandler
    from src.infrastructure.agents.llm_runner import LLMAgentRunner


class Container:
    """Dependency Injection Container with lazy initialization.

    All dependencies are created on first access and cached.
    This allows for better testability and cleaner dependency management.

    Usage:
        container = Container()
        manager = container.session_manager
    """

    def __init__(self, config: AppConfig | None = None):
        """Initialize container with optional config override."""
        self._config_override = config

    @cached_property
    def config(self) -> AppConfig:
        """Application configuration."""
        if self._config_override:
            return self._config_override
        return load_config()

    @cached_property
    def llm(self) -> LLMPort:
        """LLM adapter based on config provider."""
        from src.infrastructure.llm.ollama import OllamaAdapter

        return OllamaAdapter(self.config.ollama)

    @cached_property
    def agent_runner(self) -> "LLMAgentRunner":
        """Agent runner shared by all sessions (stateless per call)."""
        from src.infrastructure.agents.llm_runner import LLMAgentRunner

        return LLMAgentRunner(
            self.llm,
            model=self.config.llm.model,
            temperature=self.config.llm.temperature,
            test_mode=self.config.llm.test_mode,
        )

    @cached_property
    def checkpoint_store(self) -> CheckpointStore:
        return CheckpointStore(self.config.checkpoint.dir)

    @cached_property
    def session_registry(self) -> SessionRegistry:
        return SessionRegistry(self.config.session.registry_file)

    @cached_property
    def intent_detector(self) -> IntentDetector:
        return IntentDetector()

    @cached_property
    def session_manager(self) -> "SessionManager":
        """Session manager owning every SessionController."""
        from src.application.session.manager import SessionManager

        return SessionManager(
            self.agent_runner,
            checkpoint_store=self.checkpoint_store,
            registry=self.session_registry,
            config=self.config,
            intent_detector=self.intent_detector,
        )

    @cached_property
    def shutdown_handler(self) -> "ShutdownHandler":
        from src.application.session.shutdown import ShutdownHandler

        return ShutdownHandler(
            self.session_manager,
            timeout=self.config.session.shutdown_timeout_seconds,
        )

    def reset(self) -> None:
        """Reset all cached instances (useful for testing)."""
        # Clear cached_property values
        for attr in list(self.__dict__.keys()):
            if not attr.startswith("_"):
                delattr(self, attr)


# Global container instance
_container: Container | None = None


def get_container() -> Container:
    """Get or create global container instance."""
    global _container
    if _container is None:
        _container = Container()
    return _container


def reset_container() -> None:
    """Reset global container (for testing)."""
    global _container
    if _container:
        _container.reset()
    _container = None
