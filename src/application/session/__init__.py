"""Session layer: per-session controllers and their manager."""

from src.application.session.controller import SessionController
from src.application.session.dto import SessionConfig, SessionStatus
from src.application.session.errors import (
    NoCheckpointError,
    SessionBusyError,
    SessionError,
    SessionNotFoundError,
)
from src.application.session.manager import SessionManager

__all__ = [
    "NoCheckpointError",
    "SessionBusyError",
    "SessionConfig",
    "SessionController",
    "SessionError",
    "SessionManager",
    "SessionNotFoundError",
    "SessionStatus",
]
