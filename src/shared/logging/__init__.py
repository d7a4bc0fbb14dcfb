"""Structured logging: structlog over stdlib, with per-session context."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

# Third-party loggers that flood INFO with per-request lines
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "sse_starlette")


def _build_formatter(use_json: bool) -> structlog.stdlib.ProcessorFormatter:
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def setup_logging(
    level: str = "INFO",
    file_path: str = "",
    rotation_max_mb: int = 5,
    rotation_backups: int = 3,
) -> None:
    """Configure structlog and stdlib logging with one formatter.

    JSON lines unless level is DEBUG (then the console renderer). Values bound
    with session_context() appear on every record emitted inside it, from
    either structlog.get_logger() or logging.getLogger(). With file_path set,
    records also go to a size-rotated file; a file that cannot be opened
    leaves stdout-only logging in place.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    formatter = _build_formatter(use_json=level.upper() != "DEBUG")

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(log_level)
    root.addHandler(stream_handler)

    if file_path and file_path.strip():
        path = Path(file_path.strip()).resolve()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                path,
                maxBytes=rotation_max_mb * 1024 * 1024,
                backupCount=rotation_backups,
                encoding="utf-8",
            )
        except OSError as e:
            sys.stderr.write(f"Log file disabled: could not open {path}: {e}\n")
        else:
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level)
            root.addHandler(file_handler)

    if log_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def session_context(session_id: str, **extra: object) -> Iterator[None]:
    """Bind session_id (and extra keys) to every log record in this context.

    Each asyncio task runs in a copy of the context it was created in, so a
    binding made inside a session's workflow task stays with that session.
    """
    with structlog.contextvars.bound_contextvars(session_id=session_id, **extra):
        yield
