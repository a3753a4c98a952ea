"""Progress-tracked multipart uploads with retry, timeout and cancellation.

``UploadManager`` holds the shared transfer logic; ``VoiceUploadManager`` and
``ImageUploadManager`` bind it to their endpoints and response contracts.
Every in-flight transfer owns exactly one entry in the cancellation registry,
added right before the request starts and removed once it settles.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Iterable
from typing import Any, Callable, Optional, Union

import httpx

from config import DEFAULT_API_URL
from errors import MetadataError, NetworkError, UploadCancelledError, UploadError, UploadTimeoutError
from models import Blob, ImageUploadItem, UploadResult, UploadStatus, UploadTask

logger = logging.getLogger(__name__)

UPLOAD_TIMEOUT_S = 60.0
MAX_ATTEMPTS = 2
RETRY_BACKOFF_S = 1.0
CHUNK_SIZE = 64 * 1024
MAX_CONCURRENT_UPLOADS = 3

RETRYABLE_PATTERNS = ("network", "timeout", "timed out", "fetch")
RETRYABLE_CODES = frozenset({"ECONNABORTED", "ERR_NETWORK", "ECONNRESET"})

ProgressCallback = Callable[[int], None]
TaskProgressCallback = Callable[[str, UploadTask], None]
TokenSource = Union[str, Callable[[], str], None]


def is_retryable_error(exc: BaseException) -> bool:
    """True for transient network/timeout failures worth one more attempt."""
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, ConnectionResetError)):
        return True
    if getattr(exc, "code", None) in RETRYABLE_CODES:
        return True
    message = str(exc).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


class CancelToken:
    """Cooperative cancel signal bound to one transfer task."""

    def __init__(self) -> None:
        self.cancelled = False
        self._task: Optional[asyncio.Future[Any]] = None

    def bind(self, task: asyncio.Future[Any]) -> None:
        self._task = task
        if self.cancelled:
            task.cancel()

    def cancel(self) -> None:
        self.cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


class UploadManager:
    endpoint = "/api/uploads"
    file_field = "file"

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        auth_token: TokenSource = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = UPLOAD_TIMEOUT_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))
        self._owns_client = client is None
        self._timeout_s = timeout_s
        self._sleep = sleep
        self._cancel_tokens: dict[str, CancelToken] = {}

    @property
    def active_uploads(self) -> tuple[str, ...]:
        return tuple(self._cancel_tokens)

    def is_uploading(self, upload_id: str) -> bool:
        return upload_id in self._cancel_tokens

    async def upload_with_retry(
        self,
        upload_id: str,
        blob: Blob,
        file_name: str,
        on_progress: Optional[ProgressCallback] = None,
        fields: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                return await self.upload_single_file(upload_id, blob, file_name, on_progress, fields)
            except Exception as exc:
                last_error = exc
                if is_retryable_error(exc) and attempt < MAX_ATTEMPTS:
                    delay = RETRY_BACKOFF_S * attempt
                    logger.warning(
                        "Upload %s attempt %d failed (%s), retrying in %.1fs", upload_id, attempt, exc, delay
                    )
                    await self._sleep(delay)
                    continue
                raise
        assert last_error is not None
        raise last_error

    async def upload_single_file(
        self,
        upload_id: str,
        blob: Blob,
        file_name: str,
        on_progress: Optional[ProgressCallback] = None,
        fields: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        token = CancelToken()
        self._cancel_tokens[upload_id] = token
        try:
            transfer = asyncio.ensure_future(self._transfer(blob, file_name, fields or {}, on_progress))
            token.bind(transfer)
            try:
                payload = await asyncio.wait_for(transfer, timeout=self._timeout_s)
            except asyncio.TimeoutError:
                raise UploadTimeoutError("Upload timed out, please try again") from None
            except asyncio.CancelledError:
                if token.cancelled:
                    raise UploadCancelledError("Upload cancelled") from None
                raise
            return self._validate_response(payload)
        finally:
            if self._cancel_tokens.get(upload_id) is token:
                del self._cancel_tokens[upload_id]

    def cancel_upload(self, upload_id: str) -> None:
        token = self._cancel_tokens.pop(upload_id, None)
        if token is not None:
            logger.info("Cancelling upload %s", upload_id)
            token.cancel()

    def cancel_all_uploads(self) -> None:
        tokens = list(self._cancel_tokens.values())
        self._cancel_tokens.clear()
        for token in tokens:
            token.cancel()

    async def aclose(self) -> None:
        self.cancel_all_uploads()
        if self._owns_client:
            await self._client.aclose()

    def _validate_response(self, payload: Any) -> dict[str, Any]:
        message = payload.get("message") if isinstance(payload, dict) else None
        if not isinstance(message, dict):
            raise UploadError("Invalid response from server")
        return message

    def _auth_headers(self) -> dict[str, str]:
        token = self._auth_token() if callable(self._auth_token) else self._auth_token
        if token:
            return {"Authorization": f"Bearer {token}"}
        return {}

    async def _transfer(
        self,
        blob: Blob,
        file_name: str,
        fields: dict[str, str],
        on_progress: Optional[ProgressCallback],
    ) -> Any:
        url = f"{self._base_url}{self.endpoint}"
        # Encode the multipart body up front so its length is known and the
        # bytes can be streamed back out in chunks with progress reporting.
        encoded = httpx.Request(
            "POST",
            url,
            data=fields,
            files={self.file_field: (file_name, blob.data, blob.mime_type or "application/octet-stream")},
        )
        body = encoded.read()
        headers = {
            "Content-Type": encoded.headers["Content-Type"],
            "Content-Length": str(len(body)),
            **self._auth_headers(),
        }
        request = self._client.build_request(
            "POST", url, headers=headers, content=self._iter_body(body, on_progress)
        )

        try:
            response = await self._client.send(request)
        except httpx.TimeoutException as exc:
            raise UploadTimeoutError("Upload timed out, please try again") from exc
        except httpx.TransportError as exc:
            raise NetworkError("Network error, please check your connection") from exc

        if response.is_success:
            try:
                return response.json()
            except ValueError:
                raise UploadError("Invalid response from server", response.status_code) from None

        message = None
        try:
            error_body = response.json()
            if isinstance(error_body, dict) and error_body.get("error"):
                message = str(error_body["error"])
        except ValueError:
            pass
        raise UploadError(message or f"Upload failed with status {response.status_code}", response.status_code)

    @staticmethod
    async def _iter_body(body: bytes, on_progress: Optional[ProgressCallback]) -> AsyncIterator[bytes]:
        total = len(body)
        sent = 0
        last_percent = -1
        for start in range(0, total, CHUNK_SIZE):
            chunk = body[start : start + CHUNK_SIZE]
            yield chunk
            sent += len(chunk)
            percent = round(sent / total * 100)
            if on_progress and percent > last_percent:
                last_percent = percent
                on_progress(percent)


class VoiceUploadManager(UploadManager):
    endpoint = "/api/voice-messages"
    file_field = "audio"
    REQUIRED_METADATA = ("id", "sender", "created_at")

    async def upload_voice_message(
        self,
        blob: Blob,
        file_name: str,
        conversation_id: str,
        on_progress: Optional[ProgressCallback] = None,
        duration: float = 0,
        upload_id: Optional[str] = None,
    ) -> UploadResult:
        """Upload one voice message. Failures come back as a failed result."""
        upload_id = upload_id or f"{conversation_id}_{uuid.uuid4().hex}"
        fields = {"conversationId": conversation_id, "duration": str(round(duration))}
        try:
            message = await self.upload_with_retry(upload_id, blob, file_name, on_progress, fields)
        except Exception as exc:
            logger.warning("Voice upload %s failed: %s", upload_id, exc)
            return UploadResult.failed(upload_id, str(exc), cause=exc)
        return UploadResult.succeeded(upload_id, str(message["id"]), message.get("audio_path"))

    def _validate_response(self, payload: Any) -> dict[str, Any]:
        message = payload.get("message") if isinstance(payload, dict) else None
        if not isinstance(message, dict) or any(not message.get(key) for key in self.REQUIRED_METADATA):
            raise MetadataError("Server response missing required message metadata")
        return message


class ImageUploadManager(UploadManager):
    endpoint = "/api/images"
    file_field = "image"

    def __init__(self, *args: Any, max_concurrent: int = MAX_CONCURRENT_UPLOADS, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.max_concurrent = max_concurrent

    async def upload_images(
        self,
        files: Iterable[ImageUploadItem],
        on_progress: Optional[TaskProgressCallback] = None,
    ) -> list[UploadResult]:
        """Upload a batch with at most ``max_concurrent`` transfers in flight.

        Results are returned in input order; individual failures do not
        abort the batch.
        """
        semaphore = asyncio.Semaphore(self.max_concurrent)

        def report(item: ImageUploadItem, progress: int, status: UploadStatus, error: Optional[str] = None) -> None:
            if on_progress:
                on_progress(item.file_id, UploadTask(item.file_id, item.file_name, progress, status, error))

        async def process(item: ImageUploadItem) -> UploadResult:
            async with semaphore:
                report(item, 0, UploadStatus.UPLOADING)
                try:
                    message = await self.upload_with_retry(
                        item.file_id,
                        item.blob,
                        item.file_name,
                        lambda percent: report(item, percent, UploadStatus.UPLOADING),
                    )
                except Exception as exc:
                    report(item, 0, UploadStatus.ERROR, str(exc))
                    return UploadResult.failed(item.file_id, str(exc), cause=exc)
                report(item, 100, UploadStatus.COMPLETE)
                message_id = message.get("id")
                return UploadResult.succeeded(
                    item.file_id, str(message_id) if message_id is not None else None, message.get("image_path")
                )

        return list(await asyncio.gather(*(process(item) for item in files)))
