"""Intake orchestrator — drives one uploaded file through recognition, review and save.

Images take the fast path (one combined remote call, then done). PDFs take
the staged path (scan, classify, extract, human review, save). Images can
also go through a quick upload where the user confirms name and dates.

The orchestrator owns the session and its cancel token. Each unit of work
remembers the generation it started in; once a newer session, a skip or a
reset bumps the generation, whatever that work produces is discarded.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

from config import settings
from errors import (
    AbortedError,
    IntakeError,
    IntakeTimeoutError,
    InvalidTransition,
    ParseError,
    RemoteError,
    ValidationError,
)
from expiration import with_expiration_date
from field_classifier import category_for_document_type, category_label_for_domain
from intake_client import CancelToken, IntakeClient
from intake_state import (
    SKIP_DOCUMENT_TYPE,
    Failed,
    ProgressUpdated,
    Reset,
    SaveRejected,
    Skipped,
    StageChanged,
    can_skip,
    new_session,
    path_for,
    reduce,
)
from models import IntakeFile, IntakePath, IntakeSession, ProcessingStage as Stage
from review import ReviewController

logger = logging.getLogger(__name__)

Listener = Callable[[IntakeSession], None]
CompletionSink = Callable[[dict[str, Any]], Any]


class StaleSession(Exception):
    """Work that started under an older generation tried to apply its result."""


def validate_file(
    file: IntakeFile,
    max_size: int | None = None,
    allowed_types: list[str] | None = None,
) -> None:
    """Local checks run before any stage change or network call."""
    max_size = settings.MAX_FILE_SIZE_BYTES if max_size is None else max_size
    allowed = settings.ALLOWED_CONTENT_TYPES if allowed_types is None else allowed_types

    if file.size > max_size:
        raise ValidationError(f"File size must be less than {max_size // (1024 * 1024)}MB")
    if file.content_type.lower() not in allowed:
        raise ValidationError("Please upload a PDF or image file (JPG, PNG, WEBP)")
    if file.size == 0:
        raise ValidationError("Empty file uploaded")


def _normalize_date(value: date | str | None) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(value.strip()[:10]).isoformat()
    except ValueError:
        logger.warning("Ignoring unparseable expiration date: %r", value)
        return None


class IntakeOrchestrator:
    """Owns one intake session and every transition it goes through."""

    def __init__(
        self,
        client: IntakeClient,
        on_complete: CompletionSink | None = None,
        stage_delay: float | None = None,
        max_file_size: int | None = None,
        allowed_types: list[str] | None = None,
        expiration_confidence: float | None = None,
    ):
        self._client = client
        self._on_complete = on_complete
        self._stage_delay = stage_delay if stage_delay is not None else settings.STAGE_DELAY_SECONDS
        self._max_file_size = max_file_size
        self._allowed_types = allowed_types
        self._expiration_confidence = (
            expiration_confidence
            if expiration_confidence is not None
            else settings.TEXT_EXPIRATION_CONFIDENCE
        )

        self._session = new_session()
        self._token: CancelToken | None = None
        self._generation = 0
        self._listeners: list[Listener] = []
        self.review: ReviewController | None = None

    @property
    def session(self) -> IntakeSession:
        return self._session

    def subscribe(self, listener: Listener) -> None:
        """Call ``listener`` with every new session value."""
        self._listeners.append(listener)

    # -- Session bookkeeping --

    def _apply(self, event: Any, generation: int) -> IntakeSession:
        if generation != self._generation:
            raise StaleSession(type(event).__name__)
        self._session = reduce(self._session, event)
        logger.debug(
            "session=%s stage=%s progress=%d",
            self._session.session_id, self._session.stage.value, self._session.progress,
        )
        for listener in list(self._listeners):
            listener(self._session)
        return self._session

    def _begin(self, reason: str) -> tuple[int, CancelToken]:
        """Cancel in-flight work and open a new generation with its own token."""
        if self._token is not None:
            self._token.cancel(reason)
        self._generation += 1
        self._token = CancelToken()
        self.review = None
        return self._generation, self._token

    def _message_for(self, error: IntakeError, path: IntakePath | None, saving: bool = False) -> str:
        if isinstance(error, IntakeTimeoutError):
            if saving:
                return f"Saving timed out ({error.seconds:g}s). Please try again."
            if path is IntakePath.FAST:
                return (
                    f"Upload timed out ({error.seconds:g}s). The server may be slow or the image "
                    "is too large. Try a smaller image, or upload it without recognition."
                )
            return (
                f"Document processing timed out ({error.seconds:g}s). The file may be too large "
                "or complex. Try a smaller file, or skip recognition and upload it as-is."
            )
        if isinstance(error, AbortedError):
            return "Processing was cancelled."
        if isinstance(error, ParseError):
            return f"Server returned invalid data: {error}"
        if isinstance(error, RemoteError):
            if saving:
                return f"Failed to save document: {error.user_message}"
            if path is IntakePath.FAST:
                return f"Upload failed: {error.user_message}"
            return error.user_message
        return str(error) or "Failed to process document. Please try again."

    def _fail(self, error: IntakeError, generation: int, saving: bool = False) -> None:
        message = self._message_for(error, self._session.path, saving)
        self._apply(Failed(kind=error.kind, message=message), generation)
        logger.warning(
            "Intake failed: session=%s kind=%s error=%s",
            self._session.session_id, error.kind.value, error,
        )

    async def _deliver(self, record: dict[str, Any]) -> None:
        if self._on_complete is None:
            return
        result = self._on_complete(record)
        if inspect.isawaitable(result):
            await result

    # -- Entry points --

    async def select_file(self, file: IntakeFile, quick: bool = False) -> IntakeSession:
        """Validate ``file`` and run it through the matching path.

        Raises ``ValidationError`` without touching the current session when
        the file is rejected. Any earlier in-flight session is cancelled.
        """
        validate_file(file, self._max_file_size, self._allowed_types)

        path = path_for(file, quick)
        generation, token = self._begin("superseded")
        try:
            self._apply(Reset(file=file, path=path), generation)
            logger.info(
                "Intake started: session=%s path=%s name=%s type=%s size=%d bytes",
                self._session.session_id, path.value, file.filename, file.content_type, file.size,
            )
            if path is IntakePath.QUICK:
                self._apply(StageChanged(stage=Stage.PREVIEW_CONFIRM, progress=0), generation)
            elif path is IntakePath.FAST:
                await self._run_fast(file, token, generation)
            else:
                await self._run_staged(file, token, generation)
        except StaleSession as e:
            logger.info("Discarded result of superseded intake work (%s)", e)
        return self._session

    async def _run_fast(self, file: IntakeFile, token: CancelToken, generation: int) -> None:
        self._apply(StageChanged(stage=Stage.SCANNING, progress=20), generation)
        self._apply(ProgressUpdated(progress=40), generation)

        try:
            document = await self._client.recognize_and_extract(file, token=token)
        except IntakeError as e:
            self._fail(e, generation)
            return

        self._apply(ProgressUpdated(progress=80), generation)
        self._apply(StageChanged(stage=Stage.COMPLETE, progress=100, saved_record=document), generation)
        logger.info("Fast intake complete: session=%s", self._session.session_id)
        await self._deliver(document)

    async def _run_staged(self, file: IntakeFile, token: CancelToken, generation: int) -> None:
        self._apply(StageChanged(stage=Stage.UPLOADING, progress=10), generation)
        self._apply(ProgressUpdated(progress=20), generation)
        self._apply(StageChanged(stage=Stage.SCANNING, progress=30), generation)

        try:
            result = await self._client.scan(file, enhanced=True, token=token)
        except IntakeError as e:
            self._fail(e, generation)
            return

        self._apply(
            StageChanged(
                stage=Stage.CLASSIFYING,
                progress=50,
                document_type=result.document_type,
                suggested_domain=result.suggested_domain,
            ),
            generation,
        )
        await asyncio.sleep(self._stage_delay)

        data = with_expiration_date(result.extracted_data(), result.text, self._expiration_confidence)
        self._apply(StageChanged(stage=Stage.EXTRACTING, progress=70, extracted_data=data), generation)

        self.review = ReviewController(data)
        self._apply(StageChanged(stage=Stage.REVIEW, progress=100), generation)
        logger.info(
            "Extraction complete: session=%s type=%s fields=%d",
            self._session.session_id, result.document_type, len(data.fields),
        )

    async def skip(self) -> IntakeSession:
        """Abandon recognition and store the raw file as an ``Other`` document."""
        session = self._session
        if not can_skip(session):
            raise InvalidTransition(f"skip is not available in {session.stage.value}")

        file = session.file
        generation, token = self._begin("skipped")
        try:
            self._apply(Skipped(), generation)
            logger.info("Recognition skipped: session=%s", session.session_id)
            try:
                record = await self._client.upload(
                    file,
                    {"documentType": SKIP_DOCUMENT_TYPE, "uploadedWithoutOCR": True},
                    token=token,
                )
            except IntakeError as e:
                self._fail(e, generation, saving=True)
                return self._session

            saved = record.as_record()
            self._apply(StageChanged(stage=Stage.COMPLETE, progress=100, saved_record=saved), generation)
            await self._deliver(saved)
        except StaleSession as e:
            logger.info("Discarded result of superseded skip upload (%s)", e)
        return self._session

    async def save_review(self) -> IntakeSession:
        """Merge corrections and store the file with the final field values."""
        session = self._session
        review = self.review
        if session.stage is not Stage.REVIEW or review is None:
            raise InvalidTransition(f"nothing to save in {session.stage.value}")

        payload = review.build_payload()
        metadata = {
            "documentType": session.document_type,
            "category": category_for_document_type(session.document_type),
            **payload,
            "extractedFieldCount": len(payload),
        }
        generation, token = self._generation, self._token
        try:
            self._apply(StageChanged(stage=Stage.SAVING, progress=0), generation)
            self.review = None
            try:
                record = await self._client.upload(
                    session.file,
                    metadata,
                    domain=session.suggested_domain,
                    token=token,
                )
            except IntakeError as e:
                message = self._message_for(e, session.path, saving=True)
                self._apply(SaveRejected(kind=e.kind, message=message), generation)
                # Corrections survive so the user can save again
                self.review = review
                logger.warning("Save failed: session=%s error=%s", session.session_id, e)
                return self._session

            saved = {**record.as_record(), "fields": payload, "domain": session.suggested_domain}
            self._apply(StageChanged(stage=Stage.COMPLETE, progress=100, saved_record=saved), generation)
            logger.info("Reviewed document saved: session=%s id=%s", session.session_id, record.id)
            await self._deliver(saved)
        except StaleSession as e:
            logger.info("Discarded result of superseded save (%s)", e)
        return self._session

    async def confirm_upload(
        self,
        name: str,
        expiration_date: date | str | None = None,
        domain: str | None = None,
    ) -> IntakeSession:
        """Store a quick-upload image with the details the user confirmed."""
        session = self._session
        if session.stage is not Stage.PREVIEW_CONFIRM:
            raise InvalidTransition(f"nothing to confirm in {session.stage.value}")
        if not name or not name.strip():
            raise ValidationError("Please enter a document name")

        document_name = name.strip()
        expiration_iso = _normalize_date(expiration_date)
        category = category_label_for_domain(domain)
        metadata = {
            "name": document_name,
            "documentType": category,
            "category": category,
            "expirationDate": expiration_iso,
            "uploadedWithoutOCR": True,
        }

        generation, token = self._generation, self._token
        try:
            self._apply(StageChanged(stage=Stage.SAVING, progress=20), generation)
            self._apply(ProgressUpdated(progress=40), generation)
            try:
                record = await self._client.upload(session.file, metadata, token=token)
            except IntakeError as e:
                message = self._message_for(e, IntakePath.QUICK, saving=True)
                self._apply(SaveRejected(kind=e.kind, message=message), generation)
                logger.warning("Quick upload failed: session=%s error=%s", session.session_id, e)
                return self._session

            self._apply(ProgressUpdated(progress=80), generation)
            saved = {
                **record.as_record(),
                "expiration_date": expiration_iso,
                "document_name": document_name,
            }
            self._apply(StageChanged(stage=Stage.COMPLETE, progress=100, saved_record=saved), generation)
            await self._deliver(saved)
        except StaleSession as e:
            logger.info("Discarded result of superseded quick upload (%s)", e)
        return self._session

    async def retry(self) -> IntakeSession:
        """Start over with the file of a failed session."""
        session = self._session
        if session.stage is not Stage.ERROR or session.file is None:
            raise InvalidTransition(f"nothing to retry in {session.stage.value}")
        return await self.select_file(session.file, quick=session.path is IntakePath.QUICK)

    def reset(self) -> IntakeSession:
        """Cancel whatever is running and return to a fresh idle session."""
        generation, _ = self._begin("reset")
        return self._apply(Reset(), generation)

    cancel = reset
