"""Microphone recorder adapter."""

from __future__ import annotations

import asyncio
import io
import logging
import threading
import time
import wave
from typing import Any, Callable, Optional

import numpy as np
import soundfile as sf

from errors import MicrophonePermissionError, NoMicrophoneError, RecordingError, UnsupportedError
from models import AudioFrame, Blob

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - PortAudio library missing
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

OGG_MIME_TYPE = "audio/ogg;codecs=vorbis"
WAV_MIME_TYPE = "audio/wav"

_PERMISSION_HINTS = ("permission", "denied", "not allowed", "not authorized")
_NO_DEVICE_HINTS = ("no default input", "invalid device", "device unavailable", "no device")


def _pcm_to_wav(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = 2,
) -> bytes:
    """Wrap raw PCM bytes in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


def _map_stream_error(exc: Exception) -> Exception:
    low = str(exc).lower()
    if any(hint in low for hint in _PERMISSION_HINTS):
        return MicrophonePermissionError(f"Microphone access denied: {exc}")
    if any(hint in low for hint in _NO_DEVICE_HINTS):
        return NoMicrophoneError(f"No microphone found: {exc}")
    return RecordingError(f"Failed to start recording: {exc}")


class SoundDeviceRecorder:
    """Captures int16 PCM from an input device and finalizes it into a blob.

    ``container`` selects the encoding applied on stop: ``"ogg"`` (Vorbis via
    libsndfile) or ``"wav"``. The capture callback runs on PortAudio's thread,
    so the chunk list is guarded by a lock.
    """

    def __init__(
        self,
        sample_rate: int = 48000,
        channels: int = 1,
        chunk_ms: int = 100,
        device: Optional[int | str] = None,
        container: str = "ogg",
        on_chunk: Optional[Callable[[AudioFrame], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if container not in {"ogg", "wav"}:
            raise ValueError("container must be 'ogg' or 'wav'")
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self.device = device
        self.container = container
        self._on_chunk = on_chunk
        self._clock = clock
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._chunks: list[AudioFrame] = []
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None

    @property
    def chunk_count(self) -> int:
        with self._lock:
            return len(self._chunks)

    def is_recording(self) -> bool:
        return self._running

    async def start_recording(self) -> None:
        await asyncio.to_thread(self.cleanup)
        if sd is None:
            raise UnsupportedError("Audio capture is not supported: sounddevice is not installed")
        await asyncio.to_thread(self._check_input_device)

        blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
        # PortAudio calls block, so the device is opened on a worker thread.
        # A cancelled caller must not strand a stream the thread goes on to open.
        opening = asyncio.ensure_future(asyncio.to_thread(self._open_stream, blocksize))
        try:
            stream = await asyncio.shield(opening)
        except asyncio.CancelledError:
            opening.add_done_callback(self._close_abandoned)
            raise
        except Exception as exc:
            raise _map_stream_error(exc) from exc

        with self._lock:
            self._stream = stream
            self._chunks = []
            self._started_at = self._clock()
            self._stopped_at = None
            self._running = True
        logger.info("Recording started (%d Hz, %d ch, device=%s)", self.sample_rate, self.channels, self.device)

    async def stop_recording(self) -> Blob:
        with self._lock:
            if not self._running:
                raise RecordingError("No active recording to stop")
            self._running = False
            stream, self._stream = self._stream, None
            chunks, self._chunks = self._chunks, []
            self._stopped_at = self._clock()
        await asyncio.to_thread(self._close_stream, stream)

        pcm = b"".join(frame.pcm16_bytes for frame in chunks)
        try:
            blob = await asyncio.to_thread(self._encode, pcm)
        except Exception as exc:
            raise RecordingError(f"Failed to finalize recording: {exc}") from exc
        logger.info(
            "Recording stopped after %ds (%d chunks, %d bytes %s)",
            self.get_recording_duration(),
            len(chunks),
            blob.size,
            blob.mime_type,
        )
        return blob

    def cancel_recording(self) -> None:
        try:
            self.cleanup()
        except Exception:
            logger.exception("Error while cancelling recording")

    def get_recording_duration(self) -> int:
        """Whole seconds since start; frozen once stopped, 0 after cleanup."""
        started = self._started_at
        if started is None:
            return 0
        end = self._stopped_at if self._stopped_at is not None else self._clock()
        return int(max(0.0, end - started))

    def cleanup(self) -> None:
        with self._lock:
            self._running = False
            stream, self._stream = self._stream, None
            self._chunks = []
            self._started_at = None
            self._stopped_at = None
        self._close_stream(stream)

    def _check_input_device(self) -> None:
        try:
            info = sd.query_devices(self.device, kind="input")
        except Exception as exc:
            raise NoMicrophoneError(f"No microphone found: {exc}") from exc
        if int(info.get("max_input_channels", 0)) < 1:
            raise NoMicrophoneError("No microphone found: device has no input channels")

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.warning("PortAudio status: %s", status)
        if not self._running:
            return
        frame = AudioFrame(
            pcm16_bytes=np.asarray(indata, dtype=np.int16).tobytes(),
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp_ms=int(time.time() * 1000),
        )
        with self._lock:
            if not self._running:
                return
            self._chunks.append(frame)
        if self._on_chunk:
            self._on_chunk(frame)

    def _encode(self, pcm: bytes) -> Blob:
        if self.container == "wav":
            return Blob(_pcm_to_wav(pcm, self.sample_rate, self.channels), WAV_MIME_TYPE)
        if not pcm:
            return Blob(b"", OGG_MIME_TYPE)
        samples = np.frombuffer(pcm, dtype=np.int16).reshape(-1, self.channels)
        buf = io.BytesIO()
        sf.write(buf, samples, self.sample_rate, format="OGG", subtype="VORBIS")
        return Blob(buf.getvalue(), OGG_MIME_TYPE)

    def _close_stream(self, stream: Any) -> None:
        if stream is None:
            return
        try:
            stream.stop()
        except Exception:
            logger.warning("Error stopping input stream", exc_info=True)
        try:
            stream.close()
        except Exception:
            logger.warning("Error closing input stream", exc_info=True)

    def _open_stream(self, blocksize: int) -> Any:
        stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=self.channels,
            dtype="int16",
            blocksize=blocksize,
            device=self.device,
            callback=self._on_audio,
        )
        try:
            stream.start()
        except Exception:
            self._close_stream(stream)
            raise
        return stream

    def _close_abandoned(self, opening: asyncio.Future[Any]) -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        self._close_stream(opening.result())
