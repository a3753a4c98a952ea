from __future__ import annotations

from pathlib import Path

import pytest

from models import Blob
from preview import TempFilePreview, extension_for


@pytest.mark.parametrize(
    "mime_type, ext",
    [
        ("audio/webm;codecs=opus", ".webm"),
        ("audio/ogg; codecs=vorbis", ".ogg"),
        ("audio/mp4", ".m4a"),
        ("audio/mpeg", ".mp3"),
        ("AUDIO/WAV", ".wav"),
        ("", ".bin"),
        ("application/x-unknown", ".bin"),
    ],
)
def test_extension_for(mime_type: str, ext: str) -> None:
    assert extension_for(mime_type) == ext


def test_preview_writes_blob_and_revokes(tmp_path: Path) -> None:
    preview = TempFilePreview(Blob(b"OggS-data", "audio/ogg;codecs=vorbis"), directory=tmp_path)

    assert preview.path is not None
    path = preview.path
    assert path.read_bytes() == b"OggS-data"
    assert path.suffix == ".ogg"
    assert preview.url == path.as_uri()
    assert preview.url.startswith("file://")
    assert preview.revoked is False

    preview.revoke()
    assert preview.revoked is True
    assert not path.exists()

    preview.revoke()  # second revoke is harmless


def test_revoke_tolerates_missing_file(tmp_path: Path) -> None:
    preview = TempFilePreview(Blob(b"x", "audio/wav"), directory=tmp_path)
    assert preview.path is not None
    preview.path.unlink()

    preview.revoke()
    assert preview.revoked is True
