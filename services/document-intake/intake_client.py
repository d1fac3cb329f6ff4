"""HTTP client for the recognition, scan and upload services.

Uses httpx with a local deadline and a cancel token around every call,
and tenacity for retry with exponential backoff on 503 and connection
errors. Only recognition calls are retried; uploads are sent once.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

import httpx
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import settings
from errors import AbortedError, IntakeTimeoutError, ParseError, RemoteError
from models import IntakeFile, ScanResult, UploadResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceUnavailable(RemoteError):
    """Remote service temporarily unavailable (retryable: 503, connection error)."""


class CancelToken:
    """Cancellation handle owned by one intake session.

    Passed explicitly into each client call; cancelling it makes the call
    fail fast with ``AbortedError`` and drops whatever response arrives later.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def _discard(task: asyncio.Future) -> None:
    """Cancel a superseded request and drop its outcome."""
    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Discarded late failure: %s", task.exception())


def _file_part(file: IntakeFile) -> dict[str, tuple[str, bytes, str]]:
    return {"file": (file.filename, file.content, file.content_type)}


class IntakeClient:
    """HTTP client for the intake services with deadlines, cancellation and retry."""

    def __init__(
        self,
        base_url: str | None = None,
        fast_timeout: float | None = None,
        scan_timeout: float | None = None,
        upload_timeout: float | None = None,
        connect_timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
        retry_backoff: float | None = None,
    ):
        self._base_url = (base_url or settings.INTAKE_SERVICE_URL).rstrip("/")
        self._fast_timeout = fast_timeout if fast_timeout is not None else settings.FAST_PATH_TIMEOUT_SECONDS
        self._scan_timeout = scan_timeout if scan_timeout is not None else settings.SCAN_TIMEOUT_SECONDS
        self._upload_timeout = upload_timeout if upload_timeout is not None else settings.UPLOAD_TIMEOUT_SECONDS
        self._retry_attempts = retry_attempts if retry_attempts is not None else settings.RETRY_ATTEMPTS
        self._retry_delay = retry_delay if retry_delay is not None else settings.RETRY_DELAY
        self._retry_backoff = retry_backoff if retry_backoff is not None else settings.RETRY_BACKOFF

        conn_timeout = connect_timeout if connect_timeout is not None else settings.CONNECT_TIMEOUT
        # The local deadline is authoritative; httpx only needs an outer bound.
        read_timeout = max(self._fast_timeout, self._scan_timeout, self._upload_timeout)

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(
                connect=float(conn_timeout),
                read=float(read_timeout),
                write=float(read_timeout),
                pool=float(conn_timeout),
            ),
        )

    @property
    def fast_timeout(self) -> float:
        return self._fast_timeout

    @property
    def scan_timeout(self) -> float:
        return self._scan_timeout

    async def aclose(self) -> None:
        await self._client.aclose()

    async def recognize_and_extract(
        self,
        file: IntakeFile,
        token: CancelToken | None = None,
    ) -> dict[str, Any]:
        """Recognize, classify and extract in one call; returns the stored document."""
        logger.info(
            "recognize_and_extract: name=%s type=%s size=%d bytes",
            file.filename, file.content_type, file.size,
        )
        payload = await self._guarded(
            "recognize_and_extract",
            self._post_with_retry("recognize_and_extract", "/recognize-and-extract", files=_file_part(file)),
            self._fast_timeout,
            token,
        )
        document = payload.get("document")
        if not isinstance(document, dict):
            raise ParseError("API returned success but no document data")
        return document

    async def scan(
        self,
        file: IntakeFile,
        enhanced: bool = True,
        token: CancelToken | None = None,
    ) -> ScanResult:
        """Run recognition and classification on a document."""
        logger.info(
            "scan: name=%s type=%s size=%d bytes enhanced=%s",
            file.filename, file.content_type, file.size, enhanced,
        )
        payload = await self._guarded(
            "scan",
            self._post_with_retry(
                "scan",
                "/scan",
                params={"enhanced": "true" if enhanced else "false"},
                files=_file_part(file),
            ),
            self._scan_timeout,
            token,
        )
        try:
            return ScanResult.model_validate(payload)
        except PydanticValidationError as e:
            logger.warning("scan returned an unexpected body: %s", e)
            raise ParseError(f"Scan response has an unexpected shape: {e}") from e

    async def upload(
        self,
        file: IntakeFile,
        metadata: dict[str, Any],
        domain: str | None = None,
        token: CancelToken | None = None,
    ) -> UploadResult:
        """Store the file with its metadata. Never retried."""
        data = {"metadata": json.dumps(metadata, default=str)}
        if domain:
            data["domain"] = domain

        logger.info(
            "upload: name=%s type=%s size=%d bytes metadata_keys=%d",
            file.filename, file.content_type, file.size, len(metadata),
        )
        payload = await self._guarded(
            "upload",
            self._send("upload", "/upload", data=data, files=_file_part(file), retryable=False),
            self._upload_timeout,
            token,
        )
        try:
            return UploadResult.model_validate(payload)
        except PydanticValidationError as e:
            logger.warning("upload returned an unexpected body: %s", e)
            raise ParseError(f"Upload response has an unexpected shape: {e}") from e

    async def health(self) -> dict:
        """Check remote service health. Returns health dict, never raises."""
        try:
            resp = await self._client.get("/health", timeout=10.0)
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Intake service health check failed: %s", e)
            return {"status": "unreachable", "error": str(e)}

    async def _guarded(
        self,
        operation: str,
        call: Awaitable[T],
        seconds: float,
        token: CancelToken | None,
    ) -> T:
        """Run ``call`` under a deadline, racing the cancel token."""
        if token is not None and token.cancelled:
            if asyncio.iscoroutine(call):
                call.close()
            raise AbortedError(operation, token.reason or "aborted")

        request = asyncio.ensure_future(call)
        watchers: set[asyncio.Future] = {request}
        cancel_watch = asyncio.ensure_future(token.wait()) if token is not None else None
        if cancel_watch is not None:
            watchers.add(cancel_watch)

        try:
            await asyncio.wait(watchers, timeout=seconds, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            request.cancel()
            raise
        finally:
            if cancel_watch is not None:
                cancel_watch.cancel()

        if token is not None and token.cancelled:
            await _discard(request)
            logger.info("%s aborted: %s", operation, token.reason)
            raise AbortedError(operation, token.reason or "aborted")

        if request.done():
            return request.result()

        await _discard(request)
        logger.warning("%s timed out after %.0fs", operation, seconds)
        raise IntakeTimeoutError(operation, seconds)

    async def _post_with_retry(self, operation: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Retry wrapper, configured from the client settings."""

        @retry(
            retry=retry_if_exception_type(ServiceUnavailable),
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(
                multiplier=self._retry_delay,
                exp_base=self._retry_backoff,
                max=30,
            ),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "%s: service unavailable, retrying in %.1fs (attempt %d/%d)",
                operation,
                state.next_action.sleep,  # type: ignore[union-attr]
                state.attempt_number,
                self._retry_attempts,
            ),
        )
        async def _do_send() -> dict[str, Any]:
            return await self._send(operation, url, **kwargs)

        return await _do_send()

    async def _send(
        self,
        operation: str,
        url: str,
        params: dict[str, str] | None = None,
        data: dict[str, str] | None = None,
        files: dict[str, tuple[str, bytes, str]] | None = None,
        retryable: bool = True,
    ) -> dict[str, Any]:
        """Send a single request and interpret the response."""
        try:
            resp = await self._client.post(url, params=params, data=data, files=files)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.warning("%s: connection failed: %s", operation, e)
            if retryable:
                raise ServiceUnavailable(f"Cannot connect to intake service: {e}") from e
            raise RemoteError(f"Network error: {e}. Check your internet connection.") from e
        except httpx.HTTPError as e:
            logger.error("%s: HTTP error: %s", operation, e)
            raise RemoteError(f"Network error: {e}") from e

        body = _json_object(resp)

        if not resp.is_success:
            message = _error_message(resp, body)
            suggestion = (body or {}).get("suggestion")
            if resp.status_code == 503 and retryable:
                logger.warning("%s: service returned 503: %s", operation, message)
                raise ServiceUnavailable(message, suggestion, resp.status_code)
            logger.error("%s: service error %d: %s", operation, resp.status_code, message)
            raise RemoteError(message, suggestion, resp.status_code)

        if body is None:
            logger.error("%s: response is not a JSON object: %s", operation, resp.text[:200])
            raise ParseError(f"Server returned invalid data for {operation}")

        if body.get("error"):
            logger.error("%s: service reported error: %s", operation, body["error"])
            raise RemoteError(str(body["error"]), body.get("suggestion"), resp.status_code)

        return body


def _json_object(resp: httpx.Response) -> dict[str, Any] | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _error_message(resp: httpx.Response, body: dict[str, Any] | None) -> str:
    if body:
        for key in ("error", "detail", "message"):
            if body.get(key):
                return str(body[key])
    return resp.text.strip() or f"HTTP {resp.status_code}"
