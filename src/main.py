"""Application entry point."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api.container import get_container
from src.api.dependencies import limiter
from src.api.routes.sessions import router as sessions_router
from src.application.session.errors import (
    NoCheckpointError,
    SessionBusyError,
    SessionError,
    SessionNotFoundError,
)
from src.shared.logging import setup_logging

log = structlog.get_logger()


def _apply_logging_config(container):
    """Apply logging from container config (stdout + optional file)."""
    c = container.config
    setup_logging(
        level=c.log_level,
        file_path=c.log_file or "",
        rotation_max_mb=c.log_rotation_max_mb,
        rotation_backups=c.log_rotation_backups,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: setup logging, restore persisted sessions. Shutdown: flush checkpoints."""
    container = get_container()
    _apply_logging_config(container)
    log.info(
        "startup_begin",
        llm_provider=container.config.llm.provider,
        test_mode=container.config.llm.test_mode,
    )
    await container.session_manager.initialize()
    log.info("startup_complete", sessions=container.session_manager.session_count)
    yield
    log.info("shutdown_begin")
    await container.shutdown_handler.handle_shutdown("lifespan")
    if hasattr(container.llm, "close"):
        try:
            await container.llm.close()
        except Exception:  # noqa: BLE001
            log.debug("llm_close_error", exc_info=True)
    log.info("shutdown_complete")


# Create app
app = FastAPI(
    title="RLM Orchestrator",
    version="0.1.0",
    description="Explore / plan / build orchestration for autonomous coding agents",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError) -> JSONResponse:
    """Session errors that escape a route map to 404 or 409."""
    if isinstance(exc, (SessionNotFoundError, NoCheckpointError)):
        status = 404
    elif isinstance(exc, SessionBusyError):
        status = 409
    else:
        status = 400
    log.warning("session_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# CORS
container = get_container()
app.add_middleware(
    CORSMiddleware,
    allow_origins=container.config.security.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(sessions_router)


@app.get("/health")
@limiter.limit("100/minute")
async def health(request: Request) -> dict:
    """Health check with LLM availability and session count."""
    container = get_container()
    llm_available = True if container.config.llm.test_mode else await container.llm.is_available()
    return {
        "status": "ok",
        "service": "rlm-orchestrator",
        "llm_provider": container.config.llm.provider,
        "llm_available": llm_available,
        "sessions": container.session_manager.session_count,
    }
