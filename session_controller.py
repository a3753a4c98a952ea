"""State-machine based voice recording orchestration."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Optional

from error_logger import ErrorLogger
from errors import (
    CompressionError,
    MicrophonePermissionError,
    UploadCancelledError,
    UploadError,
    ValidationError,
    VoiceMessageError,
    error_code_for,
    get_user_friendly_error_message,
)
from interfaces import Compressor, PreviewFactory, PreviewResource, Recorder, VoiceUploader
from models import (
    Blob,
    CompressionOptions,
    ErrorCategory,
    ErrorSeverity,
    SentVoiceMessage,
    SessionSnapshot,
    SessionState,
    UploadStatus,
)
from preview import TempFilePreview, extension_for

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
DurationCallback = Callable[[int], None]
ProgressCallback = Callable[[int], None]
ErrorCallback = Callable[[str, str], None]

MAX_DURATION_S = 300
MIN_DURATION_S = 1
DEFAULT_COMPRESSION = CompressionOptions(target_bitrate=48000, format="webm")


class RecordingSession:
    """Drives recorder -> compressor -> uploader for one voice message at a time.

    The session owns the finalized blob and its preview resource; both are
    released when superseded (re-record, cancel, successful send, close).
    ``_generation`` is bumped on every start and cancel so that coroutines
    resuming after a cancel can tell their work has been abandoned.
    """

    def __init__(
        self,
        recorder: Recorder,
        compressor: Compressor,
        uploader: VoiceUploader,
        error_logger: Optional[ErrorLogger] = None,
        preview_factory: PreviewFactory = TempFilePreview,
        max_duration_s: int = MAX_DURATION_S,
        tick_interval_s: float = 1.0,
        compression_options: CompressionOptions = DEFAULT_COMPRESSION,
        on_state_change: Optional[StateCallback] = None,
        on_duration: Optional[DurationCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._recorder = recorder
        self._compressor = compressor
        self._uploader = uploader
        self._error_logger = error_logger or ErrorLogger()
        self._preview_factory = preview_factory
        self._max_duration_s = max_duration_s
        self._tick_interval_s = tick_interval_s
        self._compression_options = compression_options
        self._on_state_change = on_state_change
        self._on_duration = on_duration
        self._on_progress = on_progress
        self._on_error = on_error

        self._state = SessionState.IDLE
        self._generation = 0
        self._duration = 0
        self._blob: Optional[Blob] = None
        self._preview: Optional[PreviewResource] = None
        self._error: Optional[str] = None
        self._upload_progress = 0
        self._stopping = False
        self._ticker: Optional[asyncio.Task[None]] = None
        self._upload_id: Optional[str] = None
        self._upload_task: Optional[asyncio.Future] = None
        self._compress_task: Optional[asyncio.Future] = None
        self._upload_status: Optional[UploadStatus] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def duration_seconds(self) -> int:
        return self._duration

    @property
    def blob(self) -> Optional[Blob]:
        return self._blob

    @property
    def preview_url(self) -> Optional[str]:
        return self._preview.url if self._preview is not None else None

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def upload_progress(self) -> int:
        return self._upload_progress

    @property
    def upload_status(self) -> Optional[UploadStatus]:
        """Pipeline stage of the current or most recent send, or None."""
        return self._upload_status

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            duration_seconds=self._duration,
            has_recording=self._blob is not None,
            preview_url=self.preview_url,
            error=self._error,
            upload_progress=self._upload_progress,
            upload_status=self._upload_status,
        )

    async def start_recording(self) -> None:
        if self._state in (SessionState.RECORDING, SessionState.UPLOADING):
            return
        self._release_preview()
        self._blob = None
        self._error = None
        self._duration = 0
        self._upload_progress = 0
        self._upload_status = None
        self._generation += 1
        generation = self._generation

        try:
            await self._recorder.start_recording()
        except Exception as exc:
            if isinstance(exc, MicrophonePermissionError):
                self._error_logger.log_permission_error(exc, action="start_recording")
            else:
                self._error_logger.log_recording_error(
                    exc, action="start_recording", max_duration=self._max_duration_s
                )
            self._safe_cleanup_recorder()
            self._fail(exc)
            return

        if generation != self._generation:
            self._safe_cancel_recorder()
            return
        self._transition(SessionState.RECORDING)
        self._ticker = asyncio.ensure_future(self._tick(generation))

    async def stop_recording(self) -> None:
        if self._state != SessionState.RECORDING or self._stopping:
            return
        self._stopping = True
        self._cancel_ticker()
        generation = self._generation
        try:
            blob = await self._recorder.stop_recording()
        except Exception as exc:
            if generation != self._generation:
                return
            self._error_logger.log_recording_error(exc, action="stop_recording", duration=self._duration)
            self._safe_cleanup_recorder()
            self._fail(exc)
            return
        finally:
            self._stopping = False

        if generation != self._generation:
            return
        self._duration = max(self._duration, self._recorder.get_recording_duration())
        self._blob = blob
        try:
            self._preview = self._preview_factory(blob)
        except Exception:
            logger.warning("Could not create recording preview", exc_info=True)
            self._preview = None
        self._transition(SessionState.PREVIEWING)
        if self._on_duration:
            self._on_duration(self._duration)

    async def re_record(self) -> None:
        if self._state != SessionState.PREVIEWING:
            return
        self._release_preview()
        self._blob = None
        await self.start_recording()

    async def send(self, conversation_id: str) -> SentVoiceMessage:
        """Compress and upload the current recording.

        Raises ``ValidationError`` without touching the network when there is
        nothing (or too little) to send. Upload failures keep the recording
        so the caller can retry; compression failures discard it.
        """
        if self._state == SessionState.UPLOADING:
            raise UploadError("Upload already in progress")
        blob = self._blob
        if blob is None or self._state not in (SessionState.PREVIEWING, SessionState.ERROR):
            raise self._reject(ValidationError("No recording to send"), conversation_id)
        if self._duration < MIN_DURATION_S:
            raise self._reject(
                ValidationError("Recording is too short. Please record for at least 1 second."), conversation_id
            )

        duration = self._duration
        generation = self._generation
        self._error = None
        self._upload_progress = 0
        self._upload_status = UploadStatus.COMPRESSING
        self._transition(SessionState.UPLOADING)

        self._compress_task = asyncio.ensure_future(
            self._compressor.compress_audio(blob, self._compression_options)
        )
        try:
            compressed = await self._compress_task
        except asyncio.CancelledError:
            if generation != self._generation:
                raise UploadCancelledError("Upload cancelled") from None
            self.cancel()
            raise
        except Exception as exc:
            if generation != self._generation:
                raise UploadCancelledError("Upload cancelled") from exc
            self._error_logger.log_compression_error(exc, blob_size=blob.size, blob_type=blob.mime_type)
            self._release_preview()
            self._blob = None
            self._duration = 0
            if isinstance(exc, CompressionError):
                raise self._fail(exc)
            raise self._fail(CompressionError(f"Audio compression failed: {exc}")) from exc
        finally:
            if generation == self._generation:
                self._compress_task = None
        if generation != self._generation:
            raise UploadCancelledError("Upload cancelled")

        file_name = f"voice_{int(time.time() * 1000)}{extension_for(compressed.mime_type)}"
        upload_id = f"{conversation_id}_{uuid.uuid4().hex}"
        self._upload_id = upload_id
        self._upload_status = UploadStatus.UPLOADING
        self._upload_task = asyncio.ensure_future(
            self._uploader.upload_voice_message(
                compressed,
                file_name,
                conversation_id,
                self._progress_handler(generation),
                duration,
                upload_id,
            )
        )
        try:
            result = await self._upload_task
        except asyncio.CancelledError:
            if generation != self._generation:
                raise UploadCancelledError("Upload cancelled") from None
            self.cancel()
            raise
        finally:
            if self._upload_id == upload_id:
                self._upload_id = None
                self._upload_task = None

        if generation != self._generation:
            raise UploadCancelledError("Upload cancelled")

        if not result.success:
            cause = result.cause
            failure = cause if isinstance(cause, VoiceMessageError) else UploadError(result.error or "Upload failed")
            self._error_logger.log_upload_error(
                cause or failure,
                file_name=file_name,
                file_size=compressed.size,
                conversation_id=conversation_id,
            )
            raise self._fail(failure)

        self._upload_progress = 100
        self._upload_status = UploadStatus.COMPLETE
        self._release_preview()
        self._blob = None
        self._duration = 0
        self._transition(SessionState.IDLE)
        logger.info("Voice message %s sent (%s)", result.message_id, result.audio_path)
        return SentVoiceMessage(message_id=str(result.message_id), audio_path=result.audio_path)

    def cancel(self) -> None:
        """Release everything the session owns and return to idle. Never raises."""
        self._generation += 1
        self._cancel_ticker()

        upload_id, task = self._upload_id, self._upload_task
        self._upload_id = None
        self._upload_task = None
        if upload_id is not None:
            try:
                self._uploader.cancel_upload(upload_id)
            except Exception as exc:
                self._error_logger.log_upload_error(exc, action="cancel", upload_id=upload_id)
        if task is not None and not task.done():
            task.cancel()
        compress_task, self._compress_task = self._compress_task, None
        if compress_task is not None and not compress_task.done():
            compress_task.cancel()

        try:
            self._recorder.cancel_recording()
        except Exception as exc:
            self._error_logger.log_recording_error(exc, action="cancel_recording")

        self._release_preview()
        self._blob = None
        self._error = None
        self._duration = 0
        self._upload_progress = 0
        self._upload_status = None
        self._stopping = False
        self._transition(SessionState.IDLE)

    def reset(self) -> None:
        self.cancel()

    def clear_error(self) -> None:
        self._error = None

    async def close(self) -> None:
        ticker = self._ticker
        self.cancel()
        self._safe_cleanup_recorder()
        if ticker is not None:
            await asyncio.gather(ticker, return_exceptions=True)

    async def _tick(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self._tick_interval_s)
            if self._state != SessionState.RECORDING or generation != self._generation:
                return
            current = self._recorder.get_recording_duration()
            if current > self._duration:
                self._duration = current
                if self._on_duration:
                    self._on_duration(current)
            if self._duration >= self._max_duration_s:
                logger.info("Maximum recording duration (%ds) reached", self._max_duration_s)
                await self.stop_recording()
                return

    def _progress_handler(self, generation: int) -> ProgressCallback:
        def handle(percent: int) -> None:
            if generation != self._generation or percent <= self._upload_progress:
                return
            self._upload_progress = min(percent, 100)
            if self._on_progress:
                self._on_progress(self._upload_progress)

        return handle

    def _reject(self, exc: ValidationError, conversation_id: str) -> ValidationError:
        self._error_logger.log(
            exc,
            ErrorCategory.RECORDING,
            ErrorSeverity.INFO,
            {"action": "send", "duration": self._duration, "conversation_id": conversation_id},
        )
        message = get_user_friendly_error_message(exc)
        self._error = message
        self._emit_error(error_code_for(exc), message)
        return exc

    def _fail(self, exc: Exception) -> Exception:
        message = get_user_friendly_error_message(exc)
        self._error = message
        if self._upload_status is not None:
            self._upload_status = UploadStatus.ERROR
        self._transition(SessionState.ERROR)
        self._emit_error(error_code_for(exc), message)
        return exc

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._on_error(code, message)

    def _cancel_ticker(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is not None and ticker is not asyncio.current_task() and not ticker.done():
            ticker.cancel()

    def _release_preview(self) -> None:
        preview, self._preview = self._preview, None
        if preview is None:
            return
        try:
            preview.revoke()
        except Exception:
            logger.warning("Failed to revoke preview", exc_info=True)

    def _safe_cancel_recorder(self) -> None:
        try:
            self._recorder.cancel_recording()
        except Exception:
            logger.warning("Error cancelling recorder", exc_info=True)

    def _safe_cleanup_recorder(self) -> None:
        try:
            self._recorder.cleanup()
        except Exception:
            logger.warning("Error cleaning up recorder", exc_info=True)

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        logger.debug("Session %s -> %s", from_state.value, to_state.value)
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
