"""Core data models for the voice message pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class SessionState(str, Enum):
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    PREVIEWING = "PREVIEWING"
    UPLOADING = "UPLOADING"
    ERROR = "ERROR"


class PlayerState(str, Enum):
    IDLE = "IDLE"
    LOADING = "LOADING"
    READY = "READY"
    PLAYING = "PLAYING"
    PAUSED = "PAUSED"
    ERROR = "ERROR"


class UploadStatus(str, Enum):
    COMPRESSING = "compressing"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    ERROR = "error"


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    PERMISSION = "permission"
    RECORDING = "recording"
    COMPRESSION = "compression"
    UPLOAD = "upload"
    PLAYBACK = "playback"
    NETWORK = "network"
    STORAGE = "storage"
    UNKNOWN = "unknown"


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass(frozen=True, eq=False)
class Blob:
    """Encoded media bytes plus their declared MIME type.

    Equality is identity: the compressor fast path hands back the very same
    instance, and callers rely on ``is`` to tell whether re-encoding happened.
    """

    data: bytes
    mime_type: str = ""

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class CompressionOptions:
    target_bitrate: Optional[float] = None
    format: str = "webm"


@dataclass(frozen=True)
class CompressionStats:
    original_size: int
    compressed_size: int
    compression_ratio: str
    saved_bytes: int
    saved_percentage: str


@dataclass
class UploadTask:
    id: str
    file_name: str = ""
    progress_percent: int = 0
    status: UploadStatus = UploadStatus.UPLOADING
    error_message: Optional[str] = None


@dataclass(frozen=True)
class UploadResult:
    """Outcome of one upload; either fully successful or fully failed."""

    success: bool
    upload_id: str = ""
    message_id: Optional[str] = None
    path: Optional[str] = None
    error: Optional[str] = None
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)

    @classmethod
    def succeeded(cls, upload_id: str, message_id: Optional[str], path: Optional[str]) -> UploadResult:
        return cls(success=True, upload_id=upload_id, message_id=message_id, path=path)

    @classmethod
    def failed(cls, upload_id: str, error: str, cause: Optional[BaseException] = None) -> UploadResult:
        return cls(success=False, upload_id=upload_id, error=error, cause=cause)

    @property
    def audio_path(self) -> Optional[str]:
        return self.path

    @property
    def image_path(self) -> Optional[str]:
        return self.path


@dataclass(frozen=True)
class ImageUploadItem:
    file_id: str
    blob: Blob
    file_name: str


@dataclass(frozen=True)
class ErrorLogEntry:
    timestamp: str
    message: str
    name: str
    category: ErrorCategory
    severity: ErrorSeverity
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "message": self.message,
            "name": self.name,
            "category": self.category.value,
            "severity": self.severity.value,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class SentVoiceMessage:
    message_id: str
    audio_path: Optional[str]


@dataclass(frozen=True)
class SessionSnapshot:
    state: SessionState
    duration_seconds: int
    has_recording: bool
    preview_url: Optional[str]
    error: Optional[str]
    upload_progress: int
    upload_status: Optional[UploadStatus] = None


@dataclass(frozen=True)
class PlaybackSource:
    url: str
    duration: Optional[int] = None
