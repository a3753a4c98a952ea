"""Simple JSON-based config store."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

DEFAULT_API_URL = "http://localhost:3000"
DEFAULT_MAX_DURATION_S = 300
DEFAULT_LOG_LEVEL = "INFO"


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "voice_pipeline" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_url(self) -> str:
        env = os.getenv("VOICE_API_URL", "")
        if env:
            return env.rstrip("/")
        data = self._read_all()
        return str(data.get("api_url", DEFAULT_API_URL)).rstrip("/")

    def set_api_url(self, url: str) -> None:
        data = self._read_all()
        data["api_url"] = url
        self._write_all(data)

    def get_auth_token(self) -> str:
        env = os.getenv("VOICE_AUTH_TOKEN", "")
        if env:
            return env
        data = self._read_all()
        return str(data.get("auth_token", ""))

    def set_auth_token(self, token: str) -> None:
        data = self._read_all()
        data["auth_token"] = token
        self._write_all(data)

    def get_max_duration_s(self) -> int:
        data = self._read_all()
        try:
            value = int(data.get("max_duration_s", DEFAULT_MAX_DURATION_S))
        except (TypeError, ValueError):
            return DEFAULT_MAX_DURATION_S
        return value if value > 0 else DEFAULT_MAX_DURATION_S

    def set_max_duration_s(self, seconds: int) -> None:
        data = self._read_all()
        data["max_duration_s"] = int(seconds)
        self._write_all(data)

    def get_input_device(self) -> Optional[int | str]:
        data = self._read_all()
        device = data.get("input_device")
        if isinstance(device, (int, str)) and device != "":
            return device
        return None

    def set_input_device(self, device: Optional[int | str]) -> None:
        data = self._read_all()
        data["input_device"] = device
        self._write_all(data)

    def get_log_level(self) -> str:
        data = self._read_all()
        return str(data.get("log_level", DEFAULT_LOG_LEVEL)).upper()

    def set_log_level(self, level: str) -> None:
        data = self._read_all()
        data["log_level"] = level.upper()
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
