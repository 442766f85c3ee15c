"""Boundary to the package installer that provisions QEMU and its libraries."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

from vmsession.constants import DATA_DIR, LOADER_CANDIDATES, QEMU_IMG, QEMU_LOADER, QEMU_PREFIX
from vmsession.utils import log


class QemuInstallation:
    """Answers where QEMU lives and how it must be launched.

    Unpacking the binaries is someone else's job; this only inspects the
    prefix the installer populated (``bin/``, ``lib/``, ``share/qemu``).
    """

    def __init__(self, prefix: Path = QEMU_PREFIX, loader: Optional[str] = QEMU_LOADER) -> None:
        self.prefix = prefix
        self.bin_dir = prefix / "bin"
        self.lib_dir = prefix / "lib"
        self.share_dir = prefix / "share" / "qemu"
        self._loader = loader

    def binary(self, name: str) -> Path:
        return self.bin_dir / name

    @property
    def qemu_img(self) -> Path:
        return self.binary(QEMU_IMG)

    @property
    def is_installed(self) -> bool:
        """True when the x86_64 emulator is present and executable."""
        qemu = self.binary("qemu-system-x86_64")
        return qemu.is_file() and os.access(qemu, os.X_OK)

    def loader_prefix(self) -> List[str]:
        """Dynamic linker to exec through where the data partition is mounted noexec."""
        if self._loader is not None:
            return [self._loader] if self._loader else []
        for candidate in LOADER_CANDIDATES:
            if candidate.exists():
                return [str(candidate)]
        return []

    def environment(self) -> Dict[str, str]:
        lib = str(self.lib_dir)
        env = {
            "QEMU_AUDIO_DRV": "none",
            "HOME": str(DATA_DIR),
            "LD_LIBRARY_PATH": f"{lib}:{lib}/pulseaudio",
            "PATH": f"{self.bin_dir}:{os.environ.get('PATH', '/usr/bin:/bin')}",
        }
        system_lib64 = Path("/system/lib64")
        if system_lib64.is_dir():
            env["LD_LIBRARY_PATH"] += f":{system_lib64}"
        tmpdir = os.environ.get("TMPDIR")
        if tmpdir:
            env["TMPDIR"] = tmpdir
        return env

    def describe(self) -> None:
        state = "installed" if self.is_installed else "missing"
        log("INFO", f"QEMU prefix: {self.prefix} ({state})")
        loader = self.loader_prefix()
        if loader:
            log("INFO", f"Launching through loader {loader[0]}")
