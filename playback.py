"""Voice message playback: signed URL lookup, download, decode and output.

``VoiceMessageAPI`` speaks the server's voice message endpoints;
``VoicePlayer`` turns one message into audio on the default output device,
with a bounded number of user-triggered reload attempts when loading fails.
"""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Any, Callable, Optional

import httpx
import numpy as np
import soundfile as sf

from compressor import run_ffmpeg
from config import DEFAULT_API_URL
from error_logger import ErrorLogger
from errors import PlaybackError, UnsupportedError, get_user_friendly_error_message
from models import PlaybackSource, PlayerState
from upload_manager import TokenSource

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - PortAudio library missing
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

MAX_RETRIES = 2
MAX_RETRIES_MESSAGE = "Maximum retry attempts reached. Please refresh the page."


class VoiceMessageAPI:
    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        auth_token: TokenSource = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None

    async def get_url(self, message_id: str) -> PlaybackSource:
        """Fetch a time-limited signed URL for ``message_id``."""
        data = await self._request("GET", f"/api/voice-messages/{message_id}")
        url = data.get("url") if isinstance(data, dict) else None
        if not isinstance(url, str) or not url:
            raise PlaybackError("Failed to load audio: response has no url")
        duration = data.get("duration")
        return PlaybackSource(url=url, duration=int(duration) if isinstance(duration, (int, float)) else None)

    async def delete_voice_message(self, message_id: str) -> dict[str, Any]:
        data = await self._request("DELETE", f"/api/voice-messages/{message_id}")
        return data if isinstance(data, dict) else {}

    async def download(self, url: str) -> bytes:
        # Signed URLs carry their own authorization.
        try:
            response = await self._client.get(url)
        except httpx.TransportError as exc:
            raise PlaybackError("Network error while loading audio") from exc
        if response.status_code == 404:
            raise PlaybackError("Audio file not found")
        if not response.is_success:
            raise PlaybackError(f"Failed to load audio (status {response.status_code})")
        return response.content

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str) -> Any:
        token = self._auth_token() if callable(self._auth_token) else self._auth_token
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = await self._client.request(method, f"{self._base_url}{path}", headers=headers)
        except httpx.TransportError as exc:
            raise PlaybackError("Network error while loading audio") from exc

        if response.status_code == 404:
            raise PlaybackError("Audio file not found")
        if not response.is_success:
            message = None
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("error"):
                    message = str(body["error"])
            except ValueError:
                pass
            raise PlaybackError(message or f"Failed to load audio (status {response.status_code})")
        try:
            return response.json()
        except ValueError:
            raise PlaybackError("Failed to load audio: invalid response from server") from None


async def decode_audio(data: bytes) -> tuple[np.ndarray, int]:
    """Decode an encoded clip to float32 samples.

    libsndfile handles WAV/OGG/FLAC/MP3 directly; other containers (webm,
    mp4) are transcoded to WAV through ffmpeg first.
    """
    try:
        return await asyncio.to_thread(_read_samples, data)
    except (sf.LibsndfileError, RuntimeError, TypeError) as exc:
        logger.debug("libsndfile could not decode clip (%s), trying ffmpeg", exc)
    wav = await run_ffmpeg(["-vn", "-f", "wav"], data)
    return await asyncio.to_thread(_read_samples, wav)


def _read_samples(data: bytes) -> tuple[np.ndarray, int]:
    samples, samplerate = sf.read(io.BytesIO(data), dtype="float32")
    return samples, int(samplerate)


def _describe_load_error(exc: Exception) -> str:
    if isinstance(exc, PlaybackError):
        return str(exc)
    if isinstance(exc, httpx.TransportError):
        return "Network error while loading audio"
    if isinstance(exc, (sf.LibsndfileError, RuntimeError)):
        return "Audio file is corrupted or unsupported"
    if isinstance(exc, (TypeError, ValueError)):
        return "Unsupported audio format"
    return "Failed to load audio"


class VoicePlayer:
    def __init__(
        self,
        message_id: str,
        api: VoiceMessageAPI,
        error_logger: Optional[ErrorLogger] = None,
        on_state_change: Optional[Callable[[PlayerState, PlayerState], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_ended: Optional[Callable[[], None]] = None,
    ) -> None:
        self.message_id = message_id
        self._api = api
        self._error_logger = error_logger or ErrorLogger()
        self._on_state_change = on_state_change
        self._on_error = on_error
        self._on_ended = on_ended

        self._state = PlayerState.IDLE
        self.error: Optional[str] = None
        self.retry_count = 0
        self.duration: float = 0.0
        self._samples: Optional[np.ndarray] = None
        self._samplerate = 0
        self._position = 0.0
        self._started_at: Optional[float] = None
        self._end_handle: Optional[asyncio.TimerHandle] = None

    @property
    def state(self) -> PlayerState:
        return self._state

    @property
    def current_time(self) -> float:
        if self._state == PlayerState.PLAYING and self._started_at is not None:
            elapsed = asyncio.get_running_loop().time() - self._started_at
            return min(self.duration, self._position + elapsed)
        return self._position

    async def load(self) -> None:
        self.error = None
        self._transition(PlayerState.LOADING)
        try:
            source = await self._api.get_url(self.message_id)
            data = await self._api.download(source.url)
            samples, samplerate = await decode_audio(data)
        except Exception as exc:
            message = _describe_load_error(exc)
            self._error_logger.log_playback_error(
                exc, message_id=self.message_id, retry_count=self.retry_count, action="load"
            )
            self._fail(get_user_friendly_error_message(PlaybackError(message)))
            return

        self._samples = samples
        self._samplerate = samplerate
        self.duration = float(source.duration) if source.duration else len(samples) / samplerate
        self._position = 0.0
        self._transition(PlayerState.READY)

    async def retry(self) -> None:
        if self.retry_count >= MAX_RETRIES:
            self._fail(MAX_RETRIES_MESSAGE)
            return
        self.retry_count += 1
        await self.load()

    async def play(self) -> None:
        if self._state not in (PlayerState.READY, PlayerState.PAUSED) or self._samples is None:
            return
        try:
            if sd is None:
                raise UnsupportedError("Audio output is not supported: sounddevice is not installed")
            offset = int(self._position * self._samplerate)
            sd.play(self._samples[offset:], self._samplerate)
        except Exception as exc:
            self._error_logger.log_playback_error(exc, message_id=self.message_id, action="play")
            self._fail(get_user_friendly_error_message(exc))
            return

        loop = asyncio.get_running_loop()
        self._started_at = loop.time()
        self._end_handle = loop.call_later(max(0.0, self.duration - self._position), self._handle_ended)
        self._transition(PlayerState.PLAYING)

    def pause(self) -> None:
        if self._state != PlayerState.PLAYING:
            return
        self._position = self.current_time
        self._halt_output()
        self._transition(PlayerState.PAUSED)

    def stop(self) -> None:
        if self._state not in (PlayerState.PLAYING, PlayerState.PAUSED):
            return
        self._halt_output()
        self._position = 0.0
        self._transition(PlayerState.READY)

    def close(self) -> None:
        if self._state == PlayerState.PLAYING:
            self._halt_output()
        self._samples = None
        self._transition(PlayerState.IDLE)

    def _handle_ended(self) -> None:
        self._end_handle = None
        self._started_at = None
        self._position = 0.0
        self._transition(PlayerState.READY)
        if self._on_ended:
            self._on_ended()

    def _halt_output(self) -> None:
        if self._end_handle is not None:
            self._end_handle.cancel()
            self._end_handle = None
        self._started_at = None
        if sd is None:
            return
        try:
            sd.stop()
        except Exception:
            logger.warning("Error stopping audio output", exc_info=True)

    def _fail(self, message: str) -> None:
        self.error = message
        self._transition(PlayerState.ERROR)
        if self._on_error:
            self._on_error(message)

    def _transition(self, to_state: PlayerState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
