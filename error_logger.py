"""Centralized error log for monitoring and debugging.

Entries are kept in a bounded in-memory buffer (oldest evicted first) and
mirrored to the standard ``logging`` hierarchy so they show up wherever the
application routes its log records.
"""

from __future__ import annotations

import json
import logging
import platform
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

from models import ErrorCategory, ErrorLogEntry, ErrorSeverity

DEFAULT_MAX_LOGS = 100

_LEVELS = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


class ErrorLogger:
    def __init__(self, max_logs: int = DEFAULT_MAX_LOGS, logger: Optional[logging.Logger] = None) -> None:
        self.max_logs = max_logs
        self._logs: deque[ErrorLogEntry] = deque(maxlen=max_logs)
        self._logger = logger or logging.getLogger(__name__)

    def log(
        self,
        error: BaseException | str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ErrorLogEntry:
        if isinstance(error, BaseException):
            message = str(error)
            name = type(error).__name__
        else:
            message = str(error)
            name = "Error"

        entry = ErrorLogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            message=message,
            name=name,
            category=category,
            severity=severity,
            metadata={
                **(metadata or {}),
                "platform": platform.platform(),
                "timestamp_ms": int(time.time() * 1000),
            },
        )
        self._logs.append(entry)

        self._logger.log(
            _LEVELS[severity],
            "[%s] %s: %s %s",
            category.value,
            name,
            message,
            metadata or {},
        )
        return entry

    def log_permission_error(self, error: BaseException | str, **metadata: Any) -> ErrorLogEntry:
        return self.log(error, ErrorCategory.PERMISSION, ErrorSeverity.WARNING, metadata)

    def log_recording_error(self, error: BaseException | str, **metadata: Any) -> ErrorLogEntry:
        return self.log(error, ErrorCategory.RECORDING, ErrorSeverity.ERROR, metadata)

    def log_compression_error(self, error: BaseException | str, **metadata: Any) -> ErrorLogEntry:
        return self.log(error, ErrorCategory.COMPRESSION, ErrorSeverity.ERROR, metadata)

    def log_upload_error(self, error: BaseException | str, **metadata: Any) -> ErrorLogEntry:
        return self.log(error, ErrorCategory.UPLOAD, ErrorSeverity.ERROR, metadata)

    def log_playback_error(self, error: BaseException | str, **metadata: Any) -> ErrorLogEntry:
        return self.log(error, ErrorCategory.PLAYBACK, ErrorSeverity.ERROR, metadata)

    def log_network_error(self, error: BaseException | str, **metadata: Any) -> ErrorLogEntry:
        return self.log(error, ErrorCategory.NETWORK, ErrorSeverity.WARNING, metadata)

    def get_recent_logs(self, count: int = 10) -> list[ErrorLogEntry]:
        if count <= 0:
            return []
        return list(self._logs)[-count:]

    def get_logs_by_category(self, category: ErrorCategory) -> list[ErrorLogEntry]:
        return [entry for entry in self._logs if entry.category == category]

    def clear_logs(self) -> None:
        self._logs.clear()

    def export_logs(self) -> str:
        return json.dumps([entry.to_dict() for entry in self._logs], indent=2)

    def __len__(self) -> int:
        return len(self._logs)
