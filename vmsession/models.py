"""Data models for vm-session-core."""

from __future__ import annotations

import subprocess
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Generic, Optional, TypeVar

from vmsession.constants import BOOT_ORDERS, OS_PROFILES, SUPPORTED_ARCHES, VNC_BASE_PORT
from vmsession.exceptions import ManagerError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success value or error message returned across every I/O boundary."""

    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "Result[T]":
        return cls(error=error or "unknown error")

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise ManagerError(self.error)
        return self.value  # type: ignore[return-value]


class MachineState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


def new_machine_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class MachineConfig:
    name: str
    id: str = field(default_factory=new_machine_id)
    arch: str = "x86_64"
    os_family: str = "other"
    memory_mb: int = 512
    cpus: int = 2
    disk_size_mb: int = 4096
    disk_image: Optional[str] = None
    cdrom: Optional[str] = None
    vnc_port: int = VNC_BASE_PORT
    enable_kvm: bool = False
    boot_order: str = "disk-then-cd"
    enable_acpi: bool = True
    vga_type: str = "std"
    sound_enabled: bool = False

    def __post_init__(self):
        if not self.id:
            raise ManagerError("Machine id must not be empty")
        for name in ("memory_mb", "cpus", "disk_size_mb"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ManagerError(f"{name} must be a positive integer (got {value!r})")
        if self.arch not in SUPPORTED_ARCHES:
            supported = ", ".join(sorted(SUPPORTED_ARCHES))
            raise ManagerError(f"Unsupported arch '{self.arch}'. Supported: {supported}")
        if self.os_family not in OS_PROFILES:
            supported = ", ".join(sorted(OS_PROFILES))
            raise ManagerError(f"Unknown OS family '{self.os_family}'. Supported: {supported}")
        if self.boot_order not in BOOT_ORDERS:
            supported = ", ".join(sorted(BOOT_ORDERS))
            raise ManagerError(f"Unknown boot order '{self.boot_order}'. Supported: {supported}")
        if not VNC_BASE_PORT <= self.vnc_port <= 65535:
            raise ManagerError(f"vnc_port must be between {VNC_BASE_PORT} and 65535 (got {self.vnc_port})")

    @property
    def display_index(self) -> int:
        return self.vnc_port - VNC_BASE_PORT


@dataclass
class ProcessRecord:
    machine_id: str
    process: subprocess.Popen
    vnc_port: int
    log_path: Optional[Path] = None

    def alive(self) -> bool:
        return self.process.poll() is None
