"""Shared error codes, exception types and user-facing messages."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
NO_MICROPHONE = "NO_MICROPHONE"
RECORDING_NOT_SUPPORTED = "RECORDING_NOT_SUPPORTED"
RECORDING_FAILED = "RECORDING_FAILED"
COMPRESSION_FAILED = "COMPRESSION_FAILED"
INVALID_FORMAT = "INVALID_FORMAT"
UPLOAD_FAILED = "UPLOAD_FAILED"
UPLOAD_TIMEOUT = "UPLOAD_TIMEOUT"
UPLOAD_NETWORK_ERROR = "UPLOAD_NETWORK_ERROR"
UPLOAD_CANCELLED = "UPLOAD_CANCELLED"
UPLOAD_SIZE_EXCEEDED = "UPLOAD_SIZE_EXCEEDED"
UPLOAD_QUOTA_EXCEEDED = "UPLOAD_QUOTA_EXCEEDED"
METADATA_INVALID = "METADATA_INVALID"
RECORDING_TOO_SHORT = "RECORDING_TOO_SHORT"
NO_RECORDING = "NO_RECORDING"
PLAYBACK_FAILED = "PLAYBACK_FAILED"
AUDIO_LOAD_FAILED = "AUDIO_LOAD_FAILED"
AUDIO_NOT_FOUND = "AUDIO_NOT_FOUND"
NETWORK_ERROR = "NETWORK_ERROR"
SERVER_ERROR = "SERVER_ERROR"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

ERROR_MESSAGES = {
    PERMISSION_DENIED: (
        "Microphone access is required to record voice messages. "
        "Please allow microphone access in your system settings."
    ),
    NO_MICROPHONE: "No microphone found. Please connect a microphone and try again.",
    RECORDING_NOT_SUPPORTED: "Voice messages are not supported on this device.",
    RECORDING_FAILED: "Recording failed. Please try again.",
    COMPRESSION_FAILED: "Failed to process audio. Please try again.",
    INVALID_FORMAT: "Unsupported audio format. Please try recording again.",
    UPLOAD_FAILED: "Upload failed. Please try again.",
    UPLOAD_TIMEOUT: "Upload timed out. Please check your connection and try again.",
    UPLOAD_NETWORK_ERROR: "Network error. Please check your connection and try again.",
    UPLOAD_CANCELLED: "Upload cancelled.",
    UPLOAD_SIZE_EXCEEDED: "Audio file is too large. Please record a shorter message.",
    UPLOAD_QUOTA_EXCEEDED: "Storage limit reached. Please delete old messages and try again.",
    METADATA_INVALID: "Server returned an invalid response. Please try again.",
    RECORDING_TOO_SHORT: "Recording is too short. Please record for at least 1 second.",
    NO_RECORDING: "There is no recording to send. Please record a message first.",
    PLAYBACK_FAILED: "Playback failed. The audio file may be corrupted.",
    AUDIO_LOAD_FAILED: "Failed to load audio. Please try again.",
    AUDIO_NOT_FOUND: "Audio file not found.",
    NETWORK_ERROR: "Network error. Please check your connection.",
    SERVER_ERROR: "Server error. Please try again later.",
    UNKNOWN_ERROR: "An unexpected error occurred. Please try again.",
}


class VoiceMessageError(Exception):
    """Base class for every failure raised by the voice message pipeline."""

    code = UNKNOWN_ERROR


class MicrophonePermissionError(VoiceMessageError, PermissionError):
    code = PERMISSION_DENIED


class NoMicrophoneError(MicrophonePermissionError):
    code = NO_MICROPHONE


class UnsupportedError(VoiceMessageError):
    code = RECORDING_NOT_SUPPORTED


class RecordingError(VoiceMessageError):
    code = RECORDING_FAILED


class CompressionError(VoiceMessageError):
    code = COMPRESSION_FAILED


class ValidationError(VoiceMessageError, ValueError):
    code = RECORDING_TOO_SHORT


class UploadError(VoiceMessageError):
    code = UPLOAD_FAILED

    def __init__(self, message: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UploadTimeoutError(UploadError, TimeoutError):
    code = UPLOAD_TIMEOUT


class NetworkError(UploadError, ConnectionError):
    code = UPLOAD_NETWORK_ERROR


class UploadCancelledError(UploadError):
    code = UPLOAD_CANCELLED


class MetadataError(UploadError):
    """A 2xx upload response that breaks the message contract."""

    code = METADATA_INVALID


class PlaybackError(VoiceMessageError):
    code = PLAYBACK_FAILED


# Ordered: the first matching row wins. Each row is
# (exception class names, message substrings, lowercase match, message code).
_MESSAGE_RULES: tuple[tuple[tuple[str, ...], tuple[str, ...], bool, str], ...] = (
    (("MicrophonePermissionError", "NotAllowedError", "PermissionDeniedError"), (), False, PERMISSION_DENIED),
    (("NoMicrophoneError", "NotFoundError"), ("microphone",), False, NO_MICROPHONE),
    (("UnsupportedError",), ("not supported", "sounddevice"), False, RECORDING_NOT_SUPPORTED),
    ((), ("too short",), False, RECORDING_TOO_SHORT),
    ((), ("No recording",), False, NO_RECORDING),
    (("UploadCancelledError",), ("cancelled",), False, UPLOAD_CANCELLED),
    (("RecordingError",), ("recording",), False, RECORDING_FAILED),
    (("CompressionError",), ("compression", "compress", "Failed to process"), False, COMPRESSION_FAILED),
    ((), ("format",), False, INVALID_FORMAT),
    (("UploadTimeoutError",), ("timeout", "timed out"), False, UPLOAD_TIMEOUT),
    (("NetworkError",), ("network",), True, UPLOAD_NETWORK_ERROR),
    ((), ("size", "too large"), False, UPLOAD_SIZE_EXCEEDED),
    ((), ("quota", "storage"), True, UPLOAD_QUOTA_EXCEEDED),
    (("MetadataError",), ("metadata",), False, METADATA_INVALID),
    (("UploadError",), ("upload",), True, UPLOAD_FAILED),
    ((), ("load", "loading"), False, AUDIO_LOAD_FAILED),
    ((), ("not found",), False, AUDIO_NOT_FOUND),
    (("PlaybackError",), ("playback",), True, PLAYBACK_FAILED),
    ((), ("server", "500"), False, SERVER_ERROR),
)


def error_code_for(error: BaseException | str | None) -> str:
    """Return the message code the mapping table assigns to ``error``."""
    if error is None:
        return UNKNOWN_ERROR
    if isinstance(error, BaseException):
        name = type(error).__name__
        message = str(error)
    else:
        name = ""
        message = str(error)
    lowered = message.lower()

    for names, needles, case_insensitive, code in _MESSAGE_RULES:
        if name and name in names:
            return code
        haystack = lowered if case_insensitive else message
        if any(needle in haystack for needle in needles):
            return code
    return UNKNOWN_ERROR


def get_user_friendly_error_message(error: BaseException | str | None) -> str:
    """Map a raw error (or its message) to text that is safe to show a user."""
    return ERROR_MESSAGES[error_code_for(error)]
