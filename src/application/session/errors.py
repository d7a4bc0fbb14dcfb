"""Session layer exceptions."""


class SessionError(Exception):
    """Base class for session errors."""


class NoCheckpointError(SessionError):
    """resume() was called but no checkpoint exists for the session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"No checkpoint found for session {session_id}")
        self.session_id = session_id


class SessionBusyError(SessionError):
    """A workflow is already running for the session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} already has a running workflow")
        self.session_id = session_id


class SessionNotFoundError(SessionError):
    """Unknown session id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id
