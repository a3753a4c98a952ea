"""Protocol interfaces used by RecordingSession."""

from __future__ import annotations

from typing import Callable, Optional, Protocol

from models import Blob, CompressionOptions, UploadResult


class Recorder(Protocol):
    async def start_recording(self) -> None: ...

    async def stop_recording(self) -> Blob: ...

    def cancel_recording(self) -> None: ...

    def get_recording_duration(self) -> int: ...

    def cleanup(self) -> None: ...


class Compressor(Protocol):
    async def compress_audio(self, blob: Blob, options: Optional[CompressionOptions] = None) -> Blob: ...


class VoiceUploader(Protocol):
    async def upload_voice_message(
        self,
        blob: Blob,
        file_name: str,
        conversation_id: str,
        on_progress: Optional[Callable[[int], None]] = None,
        duration: float = 0,
        upload_id: Optional[str] = None,
    ) -> UploadResult: ...

    def cancel_upload(self, upload_id: str) -> None: ...


class PreviewResource(Protocol):
    @property
    def url(self) -> str: ...

    def revoke(self) -> None: ...


class PreviewFactory(Protocol):
    def __call__(self, blob: Blob) -> PreviewResource: ...


class ConfigStore(Protocol):
    def get_api_url(self) -> str: ...

    def set_api_url(self, url: str) -> None: ...

    def get_auth_token(self) -> str: ...

    def set_auth_token(self, token: str) -> None: ...

    def get_max_duration_s(self) -> int: ...

    def get_input_device(self) -> Optional[int | str]: ...

    def get_log_level(self) -> str: ...
