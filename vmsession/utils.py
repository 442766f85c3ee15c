"""Utility functions for vm-session-core."""

from __future__ import annotations

import shutil
import socket
import tempfile
import time
from http.client import HTTPException
from pathlib import Path
from typing import BinaryIO, Callable

from vmsession.constants import _LOG_VERBOSE
from vmsession.exceptions import ManagerError
from vmsession.status import OPERATION_LOG


def log(level: str, message: str) -> None:
    """Lightweight structured logging; every line also lands in the operational log."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    OPERATION_LOG.record(level, message)
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def port_open(host: str, port: int, timeout: float = 0.2) -> bool:
    """Return True if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def copy_uri(opener: Callable[[str], BinaryIO], uri: str, destination: Path) -> None:
    """Stream a URI into destination atomically (temp file + rename)."""
    log("INFO", f"Copying {uri} -> {destination}")
    try:
        source = opener(uri)
    except (OSError, ValueError, HTTPException) as exc:
        raise ManagerError(f"Failed to open {uri}: {exc}")

    start_time = time.time()
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            with source:
                shutil.copyfileobj(source, tmp, 1024 * 256)
            tmp.flush()
            tmp_path.replace(destination)
        except (OSError, HTTPException) as exc:
            tmp_path.unlink(missing_ok=True)
            raise ManagerError(f"Failed to copy {uri}: {exc!r}")
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    size_mb = destination.stat().st_size / (1024 * 1024)
    log("SUCCESS", f"Copied {size_mb:.1f} MiB in {time.time() - start_time:.1f}s")
