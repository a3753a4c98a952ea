"""Revocable local previews of finalized recordings."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from models import Blob

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "audio/webm": ".webm",
    "audio/ogg": ".ogg",
    "audio/mp4": ".m4a",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
}


def extension_for(mime_type: str) -> str:
    base = mime_type.split(";", 1)[0].strip().lower()
    return _EXTENSIONS.get(base, ".bin")


class TempFilePreview:
    """A blob written to a temporary file, addressable by a ``file://`` URL.

    The file lives until ``revoke()``; revoking twice is harmless.
    """

    def __init__(self, blob: Blob, directory: Optional[Path] = None) -> None:
        fd, name = tempfile.mkstemp(prefix="voice_preview_", suffix=extension_for(blob.mime_type), dir=directory)
        with os.fdopen(fd, "wb") as fh:
            fh.write(blob.data)
        self.path: Optional[Path] = Path(name)
        self._url = self.path.as_uri()

    @property
    def url(self) -> str:
        return self._url

    @property
    def revoked(self) -> bool:
        return self.path is None

    def revoke(self) -> None:
        path, self.path = self.path, None
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Failed to remove preview file %s", path, exc_info=True)
