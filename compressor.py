"""
Audio compression and format validation for voice messages.

This module provides:
- ffmpeg detection and an async pipe-based ffmpeg runner.
- AudioCompressor, which makes sure a recording is in a web-compatible
  container before upload, re-encoding it only when it is not.

Compression is never a hard failure: whatever goes wrong, the caller gets a
usable blob back (the original one in the worst case).
"""

from __future__ import annotations

import asyncio
import logging
import math
import shutil
from typing import Any, Optional

from models import Blob, CompressionOptions, CompressionStats

__all__ = [
    "AudioCompressor",
    "detect_ffmpeg",
    "run_ffmpeg",
]

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("audio/webm", "audio/mp4", "audio/ogg", "audio/mpeg")
MP3_ALIAS = "audio/mp3"

# format -> preferred mime type, in fallback order
_FORMAT_MIME_TYPES = {
    "webm": "audio/webm;codecs=opus",
    "ogg": "audio/ogg;codecs=opus",
    "mp4": "audio/mp4",
    "mpeg": "audio/mpeg",
}
# mime type -> (ffmpeg muxer, ffmpeg audio codec, extra muxer args)
_ENCODERS: dict[str, tuple[str, str, tuple[str, ...]]] = {
    "audio/webm;codecs=opus": ("webm", "libopus", ()),
    "audio/ogg;codecs=opus": ("ogg", "libopus", ()),
    "audio/mp4": ("mp4", "aac", ("-movflags", "frag_keyframe+empty_moov")),
    "audio/mpeg": ("mp3", "libmp3lame", ()),
}
FFMPEG_TIMEOUT_S = 60.0


def detect_ffmpeg() -> str | None:
    """
    Return the ffmpeg executable path if available on PATH, otherwise None.
    """
    return shutil.which("ffmpeg")


async def run_ffmpeg(args: list[str], data: bytes, timeout_s: float = FFMPEG_TIMEOUT_S) -> bytes:
    """
    Feed ``data`` to ffmpeg on stdin and return what it writes to stdout.

    Args:
        args: ffmpeg arguments placed between the input and output pipes
              (codec, bitrate and ``-f`` muxer options).
        data: Encoded input audio.
        timeout_s: Upper bound for the whole conversion.

    Raises:
        RuntimeError: If ffmpeg is not available, exits non-zero, times out,
                      or produces no output. The child is killed and
                      reaped whenever the conversion does not complete,
                      including when the awaiting task is cancelled.
    """
    ffmpeg_bin = detect_ffmpeg()
    if not ffmpeg_bin:
        raise RuntimeError("ffmpeg not found")

    cmd = [ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-y", "-i", "pipe:0", *args, "pipe:1"]
    logger.debug("Running ffmpeg: %s", " ".join(cmd))
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(data), timeout=timeout_s)
    except asyncio.TimeoutError:
        await _reap(proc)
        raise RuntimeError(f"ffmpeg timed out after {timeout_s:g}s") from None
    except BaseException:
        await _reap(proc)
        raise
    if proc.returncode != 0:
        logger.error("ffmpeg failed: %s", stderr.decode("utf-8", errors="replace").strip())
        raise RuntimeError(f"ffmpeg conversion failed with code {proc.returncode}")
    if not stdout:
        raise RuntimeError("ffmpeg produced no output")
    return stdout


async def _reap(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    await asyncio.shield(proc.wait())


class AudioCompressor:
    MIN_BITRATE = 32000
    MAX_BITRATE = 64000
    DEFAULT_BITRATE = 48000
    SUPPORTED_FORMATS = SUPPORTED_FORMATS

    async def compress_audio(self, blob: Any, options: Optional[CompressionOptions] = None) -> Any:
        """
        Return ``blob`` in a web-compatible container.

        Already compatible blobs are returned as the very same instance.
        Anything else is re-encoded at the clamped target bitrate; when that
        is impossible the original blob comes back unchanged.
        """
        try:
            if not isinstance(blob, Blob):
                raise TypeError("Invalid audio blob")

            opts = options or CompressionOptions()
            target_bitrate = self._validate_bitrate(
                opts.target_bitrate if opts.target_bitrate is not None else self.DEFAULT_BITRATE
            )
            preferred_format = opts.format or "webm"

            if not self._is_web_compatible_format(blob.mime_type):
                logger.warning("Unsupported audio format: %r. Attempting conversion.", blob.mime_type)
                return await self._convert_format(blob, preferred_format, target_bitrate)

            logger.debug("Audio format validated: %s, size: %d bytes", blob.mime_type, blob.size)
            return blob
        except Exception:
            logger.exception("Audio compression failed, falling back to original blob")
            return blob

    def _validate_bitrate(self, bitrate: Any) -> float:
        if isinstance(bitrate, bool) or not isinstance(bitrate, (int, float)) or math.isnan(bitrate):
            logger.warning("Bitrate %r is not a number, using %d", bitrate, self.MIN_BITRATE)
            return self.MIN_BITRATE
        if bitrate < self.MIN_BITRATE:
            logger.warning("Bitrate %r below minimum, using %d", bitrate, self.MIN_BITRATE)
            return self.MIN_BITRATE
        if bitrate > self.MAX_BITRATE:
            logger.warning("Bitrate %r above maximum, using %d", bitrate, self.MAX_BITRATE)
            return self.MAX_BITRATE
        return bitrate

    def _is_web_compatible_format(self, mime_type: Optional[str]) -> bool:
        if not mime_type or not isinstance(mime_type, str):
            return False
        normalized = mime_type.strip().lower()
        return normalized.startswith(self.SUPPORTED_FORMATS) or normalized.startswith(MP3_ALIAS)

    def _get_best_mime_type(self, target_format: str) -> str:
        if target_format in _FORMAT_MIME_TYPES:
            return _FORMAT_MIME_TYPES[target_format]
        return next(iter(_FORMAT_MIME_TYPES.values()))

    async def _convert_format(self, blob: Blob, target_format: str, target_bitrate: float) -> Blob:
        try:
            mime_type = self._get_best_mime_type(target_format)
            muxer, codec, extra = _ENCODERS[mime_type]
            args = ["-vn", "-c:a", codec, "-b:a", str(int(target_bitrate)), *extra, "-f", muxer]
            data = await run_ffmpeg(args, blob.data)
        except Exception as exc:
            logger.error("Format conversion failed: %s", exc)
            return blob
        converted = Blob(data, mime_type)
        logger.info(
            "Converted %s (%d bytes) -> %s (%d bytes)", blob.mime_type, blob.size, converted.mime_type, converted.size
        )
        return converted

    def get_compression_stats(self, original: Blob, compressed: Blob) -> CompressionStats:
        original_size = original.size
        compressed_size = compressed.size
        ratio = compressed_size / original_size if original_size > 0 else 1.0
        saved_bytes = original_size - compressed_size
        saved_percentage = (saved_bytes / original_size) * 100 if original_size > 0 else 0.0
        return CompressionStats(
            original_size=original_size,
            compressed_size=compressed_size,
            compression_ratio=f"{ratio:.2f}",
            saved_bytes=saved_bytes,
            saved_percentage=f"{saved_percentage:.2f}%",
        )
