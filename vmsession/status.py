"""Operational log shared between the core and its callers."""

from __future__ import annotations

import threading
import time
from collections import deque
from pathlib import Path
from typing import Deque, List, NamedTuple, Optional

from vmsession.constants import OPERATION_LOG_FILE, OPERATION_LOG_SIZE


class LogEntry(NamedTuple):
    timestamp: float
    level: str
    message: str

    def format(self) -> str:
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self.timestamp))
        return f"{stamp} [{self.level}] {self.message}"


class OperationLog:
    """Bounded, thread-safe record of everything the core reported."""

    def __init__(self, maxlen: int = OPERATION_LOG_SIZE, path: Optional[Path] = None) -> None:
        self._entries: Deque[LogEntry] = deque(maxlen=maxlen)
        self._lock = threading.Lock()
        self.path = path

    def record(self, level: str, message: str) -> LogEntry:
        entry = LogEntry(time.time(), level, message)
        with self._lock:
            self._entries.append(entry)
        if self.path is not None:
            try:
                with open(self.path, "a") as f:
                    f.write(entry.format() + "\n")
            except OSError:
                pass
        return entry

    def entries(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def tail(self, count: int) -> List[LogEntry]:
        if count <= 0:
            return []
        return self.entries()[-count:]

    def errors(self) -> List[LogEntry]:
        return [e for e in self.entries() if e.level == "ERROR"]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


OPERATION_LOG = OperationLog(path=Path(OPERATION_LOG_FILE) if OPERATION_LOG_FILE else None)
