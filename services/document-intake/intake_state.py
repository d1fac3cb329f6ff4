"""Intake session state machine.

``reduce(session, event)`` is the only way a session changes. It is pure:
it returns a new ``IntakeSession`` and never touches the network, so the
stage rules can be exercised without a client or a UI.
"""

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict

from errors import InvalidTransition
from models import (
    EnhancedExtractedData,
    ErrorKind,
    IntakeFile,
    IntakePath,
    IntakeSession,
    ProcessingStage as Stage,
)

SKIP_DOCUMENT_TYPE = "Other"

TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.IDLE: frozenset({Stage.UPLOADING, Stage.SCANNING, Stage.PREVIEW_CONFIRM}),
    Stage.UPLOADING: frozenset({Stage.SCANNING, Stage.ERROR}),
    Stage.SCANNING: frozenset({Stage.CLASSIFYING, Stage.SAVING, Stage.COMPLETE, Stage.ERROR}),
    Stage.CLASSIFYING: frozenset({Stage.EXTRACTING, Stage.ERROR}),
    Stage.EXTRACTING: frozenset({Stage.REVIEW, Stage.ERROR}),
    Stage.REVIEW: frozenset({Stage.SAVING}),
    Stage.PREVIEW_CONFIRM: frozenset({Stage.SAVING}),
    Stage.SAVING: frozenset({Stage.COMPLETE, Stage.ERROR, Stage.PREVIEW_CONFIRM}),
    Stage.COMPLETE: frozenset(),
    Stage.ERROR: frozenset({Stage.SAVING}),
}


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class Reset(_Event):
    """Start over: a fresh idle session, optionally bound to a file."""

    file: IntakeFile | None = None
    path: IntakePath | None = None
    session_id: str | None = None


class StageChanged(_Event):
    stage: Stage
    progress: int
    document_type: str | None = None
    suggested_domain: str | None = None
    extracted_data: EnhancedExtractedData | None = None
    saved_record: dict[str, Any] | None = None


class ProgressUpdated(_Event):
    progress: int


class Failed(_Event):
    kind: ErrorKind
    message: str


class Skipped(_Event):
    """Abandon recognition and store the raw file with minimal metadata."""


class SaveRejected(_Event):
    """A save from a form failed; back to that form with the error shown."""

    kind: ErrorKind
    message: str


def new_session(
    file: IntakeFile | None = None,
    path: IntakePath | None = None,
    session_id: str | None = None,
) -> IntakeSession:
    return IntakeSession(session_id=session_id or uuid.uuid4().hex[:12], file=file, path=path)


def path_for(file: IntakeFile, quick: bool = False) -> IntakePath:
    if file.is_image:
        return IntakePath.QUICK if quick else IntakePath.FAST
    return IntakePath.STAGED


def can_skip(session: IntakeSession) -> bool:
    """Skip is open while recognition runs, and after recognition timed out."""
    if session.path not in (IntakePath.STAGED, IntakePath.FAST) or session.file is None:
        return False
    if session.stage is Stage.SCANNING:
        return True
    return session.stage is Stage.ERROR and session.error_kind is ErrorKind.TIMEOUT


def _check_progress(progress: int) -> None:
    if not 0 <= progress <= 100:
        raise InvalidTransition(f"progress {progress} outside 0..100")


def _enter(session: IntakeSession, stage: Stage, progress: int, **changes: Any) -> IntakeSession:
    if stage not in TRANSITIONS[session.stage]:
        raise InvalidTransition(f"{session.stage.value} -> {stage.value} is not allowed")
    _check_progress(progress)
    return session.model_copy(update={"stage": stage, "progress": progress, **changes})


def reduce(session: IntakeSession, event: _Event) -> IntakeSession:
    """Apply one event to a session and return the resulting session."""
    if isinstance(event, Reset):
        return new_session(event.file, event.path, event.session_id or session.session_id)

    if isinstance(event, ProgressUpdated):
        _check_progress(event.progress)
        if event.progress < session.progress:
            raise InvalidTransition(
                f"progress cannot go back from {session.progress} to {event.progress}"
            )
        return session.model_copy(update={"progress": event.progress})

    if isinstance(event, StageChanged):
        if event.stage is Stage.ERROR:
            raise InvalidTransition("use Failed to enter the error stage")
        changes: dict[str, Any] = {"error": None, "error_kind": None}
        for name in ("document_type", "suggested_domain", "extracted_data", "saved_record"):
            value = getattr(event, name)
            if value is not None:
                changes[name] = value
        if event.stage is Stage.SAVING and session.stage is Stage.ERROR:
            raise InvalidTransition("leaving the error stage needs Skipped or Reset")
        if event.stage is Stage.PREVIEW_CONFIRM and session.stage is Stage.SAVING:
            raise InvalidTransition("use SaveRejected to return to the confirm form")
        return _enter(session, event.stage, event.progress, **changes)

    if isinstance(event, Failed):
        if session.stage in (Stage.IDLE, Stage.COMPLETE, Stage.ERROR):
            raise InvalidTransition(f"cannot fail from {session.stage.value}")
        if event.kind is ErrorKind.VALIDATION:
            raise InvalidTransition("validation failures never enter the error stage")
        # Any partial extraction from the failed attempt is dropped
        return session.model_copy(
            update={
                "stage": Stage.ERROR,
                "progress": 0,
                "error": event.message,
                "error_kind": event.kind,
                "extracted_data": None,
            }
        )

    if isinstance(event, Skipped):
        if not can_skip(session):
            raise InvalidTransition(f"skip is not available in {session.stage.value}")
        return session.model_copy(
            update={
                "stage": Stage.SAVING,
                "progress": 10,
                "error": None,
                "error_kind": None,
                "document_type": SKIP_DOCUMENT_TYPE,
                "suggested_domain": None,
                "extracted_data": None,
            }
        )

    if isinstance(event, SaveRejected):
        if session.stage is not Stage.SAVING:
            raise InvalidTransition(f"no save to reject in {session.stage.value}")
        if session.path is IntakePath.QUICK:
            form = Stage.PREVIEW_CONFIRM
        elif session.path is IntakePath.STAGED and session.extracted_data is not None:
            form = Stage.REVIEW
        else:
            raise InvalidTransition("this save has no form to return to")
        return session.model_copy(
            update={
                "stage": form,
                "progress": 100 if form is Stage.REVIEW else 0,
                "error": event.message,
                "error_kind": event.kind,
            }
        )

    raise TypeError(f"unknown intake event: {type(event).__name__}")
