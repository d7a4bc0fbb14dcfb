"""FastAPI dependencies - DI container."""

from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

from src.api.container import get_container
from src.application.session.manager import SessionManager
from src.domain.ports.config import AppConfig
from src.infrastructure.config import load_config

limiter = Limiter(key_func=get_remote_address)


@lru_cache
def get_config() -> AppConfig:
    """Load config once at startup."""
    return load_config()


def get_session_manager() -> SessionManager:
    """SessionManager from the global container."""
    return get_container().session_manager
