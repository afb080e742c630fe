"""Recent activity for operators.

:class:`ActivityLog` is a logging handler that keeps the last N records in
memory so the UI can show what the node has been doing (probes, discovery,
gossip) without shell access.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any


class ActivityLog(logging.Handler):
    """Ring buffer of formatted log records, newest first on read."""

    def __init__(self, capacity: int = 200, level: int = logging.INFO) -> None:
        super().__init__(level)
        self._entries: deque[dict[str, Any]] = deque(maxlen=max(1, capacity))
        self._entries_lock = threading.Lock()
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "text": self.format(record),
            }
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    def entries(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._entries_lock:
            items = list(reversed(self._entries))
        return items[:limit] if limit else items

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._entries_lock:
            return len(self._entries)

    def attach(self, logger_name: str = "nsm") -> ActivityLog:
        logging.getLogger(logger_name).addHandler(self)
        return self

    def detach(self, logger_name: str = "nsm") -> None:
        logging.getLogger(logger_name).removeHandler(self)
