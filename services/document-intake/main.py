"""FastAPI document intake service — drives uploads through recognition, review and save.

Recognition, classification, extraction and storage are remote services;
this service owns the intake sessions, their deadlines and cancellation,
and the review/merge step in between.
File contents are never logged, only names, types and sizes.
"""

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, File, Form, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import settings
from errors import InvalidTransition, ValidationError
from expiration import find_expiration
from intake_client import IntakeClient
from intake_state import can_skip
from models import IntakeFile, IntakeSession, Primitive, ProcessingStage as Stage
from orchestrator import IntakeOrchestrator, validate_file

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_intake_client: IntakeClient | None = None
_sessions: dict[str, IntakeOrchestrator] = {}
_tasks: dict[str, asyncio.Task] = {}
# Final views of completed sessions, oldest first
_completed: OrderedDict[str, dict[str, Any]] = OrderedDict()


class FieldEdits(BaseModel):
    values: dict[str, Primitive]


class ConfirmRequest(BaseModel):
    name: str
    expiration_date: str | None = None
    domain: str | None = None


class ExpirationRequest(BaseModel):
    text: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the intake client on startup if configured."""
    global _intake_client

    if not settings.INTAKE_SERVICE_URL:
        logger.info("Intake service not configured (INTAKE_SERVICE_URL is empty) — uploads disabled")
    else:
        logger.info("Connecting to intake service at %s", settings.INTAKE_SERVICE_URL)
        _intake_client = IntakeClient()

        # Startup health check is informational only
        health = await _intake_client.health()
        if health.get("status") == "healthy":
            logger.info("Intake service is ready: %s", health)
        else:
            logger.warning("Intake service not reachable yet: %s", health)

    yield

    for task in list(_tasks.values()):
        task.cancel()
    _tasks.clear()
    _sessions.clear()
    _completed.clear()
    if _intake_client is not None:
        await _intake_client.aclose()
        _intake_client = None


app = FastAPI(title="Document Intake", version="1.0.0", lifespan=lifespan)


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _view(orchestrator: IntakeOrchestrator) -> dict[str, Any]:
    session = orchestrator.session
    view = session.snapshot()
    view["can_skip"] = can_skip(session)
    view["review"] = orchestrator.review.view() if orchestrator.review is not None else None
    return view


def _missing(session_id: str) -> JSONResponse:
    if session_id in _completed:
        return _error(409, "Session is already complete")
    return _error(404, "Unknown intake session")


def _retire_on_complete(orchestrator: IntakeOrchestrator):
    """Release a session's file once it is stored, keeping only its final view."""

    def listener(session: IntakeSession) -> None:
        if session.stage is not Stage.COMPLETE:
            return
        if _sessions.pop(session.session_id, None) is None:
            return
        _completed[session.session_id] = _view(orchestrator)
        while len(_completed) > settings.COMPLETED_SESSIONS_KEPT:
            _completed.popitem(last=False)
        logger.info("Intake session retired: session=%s", session.session_id)

    return listener


def _track(session_id: str, coro) -> None:
    task = asyncio.create_task(coro)
    _tasks[session_id] = task

    def done(finished: asyncio.Task) -> None:
        _tasks.pop(session_id, None)
        if finished.cancelled():
            return
        error = finished.exception()
        if error is not None:
            logger.error("Background intake failed: session=%s", session_id, exc_info=error)

    task.add_done_callback(done)


@app.post("/api/v1/intake")
async def start_intake(
    file: UploadFile = File(...),
    quick: bool = Form(False),
    wait: bool = Form(True),
):
    """Start an intake session for an uploaded document.

    With ``wait`` the response comes back once the session reaches review,
    confirm, complete or error; otherwise it returns right after start.
    """
    if _intake_client is None:
        return _error(503, "Document intake is not available - no intake service configured")

    intake_file = IntakeFile(
        filename=file.filename or "upload",
        content_type=file.content_type or "application/octet-stream",
        content=await file.read(),
    )
    try:
        validate_file(intake_file)
    except ValidationError as e:
        return _error(400, str(e))

    orchestrator = IntakeOrchestrator(_intake_client)
    session_id = orchestrator.session.session_id
    _sessions[session_id] = orchestrator
    orchestrator.subscribe(_retire_on_complete(orchestrator))

    if wait:
        await orchestrator.select_file(intake_file, quick=quick)
    else:
        _track(session_id, orchestrator.select_file(intake_file, quick=quick))
        await asyncio.sleep(0)
    return _view(orchestrator)


@app.get("/api/v1/intake/{session_id}")
async def get_intake(session_id: str):
    if session_id in _completed:
        return _completed[session_id]
    orchestrator = _sessions.get(session_id)
    if orchestrator is None:
        return _missing(session_id)
    return _view(orchestrator)


@app.put("/api/v1/intake/{session_id}/fields")
async def edit_fields(session_id: str, edits: FieldEdits):
    """Record corrections to extracted fields."""
    orchestrator = _sessions.get(session_id)
    if orchestrator is None:
        return _missing(session_id)
    if orchestrator.review is None:
        return _error(409, "Session is not in review")
    orchestrator.review.set_fields(edits.values)
    return _view(orchestrator)


@app.post("/api/v1/intake/{session_id}/save")
async def save_intake(session_id: str):
    orchestrator = _sessions.get(session_id)
    if orchestrator is None:
        return _missing(session_id)
    try:
        await orchestrator.save_review()
    except InvalidTransition as e:
        return _error(409, str(e))
    return _view(orchestrator)


@app.post("/api/v1/intake/{session_id}/skip")
async def skip_intake(session_id: str):
    """Stop waiting for recognition and store the raw file."""
    orchestrator = _sessions.get(session_id)
    if orchestrator is None:
        return _missing(session_id)
    try:
        await orchestrator.skip()
    except InvalidTransition as e:
        return _error(409, str(e))
    return _view(orchestrator)


@app.post("/api/v1/intake/{session_id}/confirm")
async def confirm_intake(session_id: str, request: ConfirmRequest):
    orchestrator = _sessions.get(session_id)
    if orchestrator is None:
        return _missing(session_id)
    try:
        await orchestrator.confirm_upload(request.name, request.expiration_date, request.domain)
    except ValidationError as e:
        return _error(400, str(e))
    except InvalidTransition as e:
        return _error(409, str(e))
    return _view(orchestrator)


@app.post("/api/v1/intake/{session_id}/retry")
async def retry_intake(session_id: str):
    orchestrator = _sessions.get(session_id)
    if orchestrator is None:
        return _missing(session_id)
    try:
        await orchestrator.retry()
    except InvalidTransition as e:
        return _error(409, str(e))
    return _view(orchestrator)


@app.delete("/api/v1/intake/{session_id}")
async def close_intake(session_id: str):
    """Cancel and forget a session."""
    orchestrator = _sessions.pop(session_id, None)
    if orchestrator is None:
        if _completed.pop(session_id, None) is not None:
            return {"session_id": session_id, "closed": True}
        return _error(404, "Unknown intake session")
    orchestrator.reset()
    task = _tasks.pop(session_id, None)
    if task is not None:
        task.cancel()
    return {"session_id": session_id, "closed": True}


@app.post("/api/v1/expiration")
async def expiration(request: ExpirationRequest):
    """Find an expiration date in recognized text."""
    found = find_expiration(request.text)
    if found is None:
        return {"expiration_date": None, "raw_text": None}
    return {"expiration_date": found.normalized_iso_date, "raw_text": found.raw_text}


@app.get("/health")
async def health():
    """Return service status and intake service availability."""
    base = {
        "status": "healthy",
        "intake_available": _intake_client is not None,
        "active_sessions": len(_sessions),
    }

    if _intake_client is not None:
        base["intake_health"] = await _intake_client.health()

    return base


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
