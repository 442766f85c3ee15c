"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from vmsession.disk import DiskProvisioner
from vmsession.installer import QemuInstallation
from vmsession.manager import MachineManager
from vmsession.models import MachineConfig
from vmsession.status import OPERATION_LOG
from vmsession.storage import ConfigStore


def _make_executable(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)


@pytest.fixture(autouse=True)
def _reset_operation_log():
    OPERATION_LOG.clear()
    yield
    OPERATION_LOG.clear()


@pytest.fixture
def default_machine_config() -> MachineConfig:
    """Return a minimal MachineConfig with sensible defaults."""
    return MachineConfig(
        name="test-vm",
        id="vm-0001",
        arch="x86_64",
        os_family="other",
        memory_mb=512,
        cpus=2,
        disk_size_mb=64,
        vnc_port=5901,
    )


@pytest.fixture
def fake_installation(tmp_path) -> QemuInstallation:
    """Installer prefix with executable emulator stand-ins and no loader prefix."""
    prefix = tmp_path / "usr"
    _make_executable(prefix / "bin" / "qemu-system-x86_64")
    _make_executable(prefix / "bin" / "qemu-system-aarch64")
    (prefix / "lib").mkdir(parents=True, exist_ok=True)
    (prefix / "share" / "qemu").mkdir(parents=True, exist_ok=True)
    return QemuInstallation(prefix=prefix, loader="")


@pytest.fixture
def data_dirs(tmp_path) -> SimpleNamespace:
    vms = tmp_path / "vms"
    return SimpleNamespace(
        vms=vms,
        images=vms / "images",
        configs=vms / "configs",
        logs=vms / "logs",
    )


@pytest.fixture
def manager(fake_installation, data_dirs) -> MachineManager:
    return MachineManager(
        installation=fake_installation,
        store=ConfigStore(data_dirs.configs),
        provisioner=DiskProvisioner(fake_installation, data_dirs.images),
        vms_dir=data_dirs.vms,
        images_dir=data_dirs.images,
        logs_dir=data_dirs.logs,
        launch_timeout=0.5,
    )


# Environment variables read at import time or by the installer boundary.
_ENV_VARS = [
    "DATA_DIR",
    "QEMU_PREFIX",
    "QEMU_LOADER",
    "LOG_VERBOSE",
    "OPERATION_LOG_FILE",
    "LAUNCH_TIMEOUT",
    "TMPDIR",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every environment variable the package reads."""
    for key in _ENV_VARS:
        monkeypatch.delenv(key, raising=False)
