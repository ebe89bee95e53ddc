"""In-memory rolling log served to operators by ``GET /logs``."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
import logging
import threading
from typing import Deque, List

from .config import LOG_BUFFER_SIZE


class RingBufferHandler(logging.Handler):
    """Keep the last ``capacity`` records as ``[time] [LEVEL] message`` lines."""

    def __init__(self, capacity: int = LOG_BUFFER_SIZE, level: int = logging.INFO):
        super().__init__(level)
        self._lines: Deque[str] = deque(maxlen=max(1, capacity))
        self._guard = threading.Lock()

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return f"[{stamp:%Y-%m-%d %H:%M:%S}] [{record.levelname}] {record.getMessage()}"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:  # pragma: no cover - mirrors logging.Handler policy
            self.handleError(record)
            return
        with self._guard:
            self._lines.append(line)

    def lines(self) -> List[str]:
        """Return buffered lines, newest first."""

        with self._guard:
            return list(reversed(self._lines))

    def clear(self) -> None:
        with self._guard:
            self._lines.clear()


_BUFFER: RingBufferHandler | None = None


def install(capacity: int = LOG_BUFFER_SIZE) -> RingBufferHandler:
    """Attach a single process-wide buffer to the root logger."""

    global _BUFFER
    if _BUFFER is None:
        _BUFFER = RingBufferHandler(capacity)
        logging.getLogger().addHandler(_BUFFER)
    return _BUFFER
