"""Session API routes."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sse_starlette.sse import EventSourceResponse

from src.api.dependencies import get_session_manager, limiter
from src.application.session.controller import SessionController
from src.application.session.dto import CreateSessionRequest, MessageRequest, SessionConfig
from src.application.session.errors import (
    NoCheckpointError,
    SessionBusyError,
    SessionNotFoundError,
)
from src.application.session.events import EventSubscription
from src.application.session.manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


async def _get_or_404(manager: SessionManager, session_id: str) -> SessionController:
    controller = await manager.get_session(session_id)
    if controller is None:
        raise SessionNotFoundError(session_id)
    return controller


@router.post("")
@limiter.limit("30/minute")
async def create_session(
    request: Request,
    body: CreateSessionRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    """Create a session. If task is given, the workflow starts right away."""
    if body.session_id and await manager.get_session(body.session_id) is not None:
        raise HTTPException(status_code=409, detail="Session already exists")
    config = SessionConfig(**body.model_dump(exclude={"session_id"}))
    session_id = await manager.create_session(config, session_id=body.session_id)
    controller = await _get_or_404(manager, session_id)
    if body.task:
        controller.start(body.task, body.explore_inputs)
    return controller.get_status().model_dump()


@router.get("")
@limiter.limit("60/minute")
async def list_sessions(
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> list[dict]:
    """List known sessions with their status."""
    return [c.get_status().model_dump() for c in manager.list_sessions()]


@router.get("/{session_id}/status")
@limiter.limit("120/minute")
async def session_status(
    session_id: str,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    controller = await _get_or_404(manager, session_id)
    return controller.get_status().model_dump()


@router.post("/{session_id}/messages", response_model=None)
@limiter.limit("30/minute")
async def send_message(
    session_id: str,
    request: Request,
    body: MessageRequest,
    manager: SessionManager = Depends(get_session_manager),
    format: Literal["sse", "ndjson"] = "sse",
) -> EventSourceResponse | StreamingResponse:
    """Send a message: continue intent resumes, anything else starts a new task.

    Streams workflow events until workflow-complete. Unknown ids create the session.
    """
    controller = await manager.get_or_create_session(session_id)
    try:
        subscription = await controller.process_user_message(body.text)
    except SessionBusyError:
        raise HTTPException(status_code=409, detail="Session already has a running workflow")
    except NoCheckpointError:
        raise HTTPException(status_code=409, detail="No checkpoint to resume from")
    if format == "ndjson":
        return StreamingResponse(_ndjson(subscription), media_type="application/x-ndjson")
    return EventSourceResponse(_sse(subscription))


@router.post("/{session_id}/resume")
@limiter.limit("30/minute")
async def resume_session(
    session_id: str,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    """Resume from the latest checkpoint in the background."""
    controller = await _get_or_404(manager, session_id)
    # NoCheckpointError -> 404, SessionBusyError -> 409 (app-level handler)
    await controller.resume()
    return controller.get_status().model_dump()


@router.post("/{session_id}/abort")
@limiter.limit("30/minute")
async def abort_session(
    session_id: str,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    controller = await _get_or_404(manager, session_id)
    aborted = controller.abort()
    if aborted:
        await controller.wait()
    return {"aborted": aborted, **controller.get_status().model_dump()}


@router.delete("/{session_id}")
@limiter.limit("30/minute")
async def delete_session(
    session_id: str,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    """Abort the session and delete its record and checkpoint."""
    try:
        deleted = await manager.delete_session(session_id)
    except Exception:
        logger.exception("Failed to delete session %s", session_id)
        raise HTTPException(status_code=500, detail="Failed to delete session")
    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"deleted": session_id}


async def _sse(subscription: EventSubscription):
    try:
        async for event in subscription:
            yield {"event": event.type.value, "data": event.model_dump_json(exclude_none=True)}
    except Exception:
        logger.exception("Session stream failed")
        yield {"event": "error", "data": "Stream failed"}
    finally:
        subscription.close()
    yield {"event": "close", "data": ""}


async def _ndjson(subscription: EventSubscription):
    try:
        async for event in subscription:
            yield event.to_ndjson()
    finally:
        subscription.close()
