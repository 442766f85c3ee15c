"""Disk image provisioning for vm-session-core."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from vmsession.constants import IMAGES_DIR, QCOW2_SUFFIX, RAW_SUFFIX
from vmsession.installer import QemuInstallation
from vmsession.models import Result
from vmsession.utils import ensure_directory, log


class DiskProvisioner:
    def __init__(self, installation: QemuInstallation, images_dir: Path = IMAGES_DIR) -> None:
        self.installation = installation
        self.images_dir = images_dir

    def qcow2_path(self, machine_id: str) -> Path:
        return self.images_dir / f"{machine_id}{QCOW2_SUFFIX}"

    def raw_path(self, machine_id: str) -> Path:
        return self.images_dir / f"{machine_id}{RAW_SUFFIX}"

    def existing(self, machine_id: str) -> Optional[Path]:
        for candidate in (self.qcow2_path(machine_id), self.raw_path(machine_id)):
            if candidate.exists():
                return candidate
        return None

    def ensure_disk(self, machine_id: str, size_mb: int) -> Result[Path]:
        """Return the disk for machine_id, creating it on first use.

        A qcow2 image is created with qemu-img; if that fails for any reason a
        sparse raw file of exactly ``size_mb`` MiB is allocated instead.
        """
        try:
            ensure_directory(self.images_dir)
            found = self.existing(machine_id)
            if found is not None:
                log("DEBUG", f"Disk image already exists: {found}")
                return Result.success(found)
            if size_mb < 1:
                return Result.failure(f"Disk size must be positive (got {size_mb})")
            image = self._create_qcow2(machine_id, size_mb)
            if image is None:
                image = self._create_raw(machine_id, size_mb)
            return Result.success(image)
        except OSError as exc:
            log("ERROR", f"Failed to create disk image for {machine_id}: {exc}")
            return Result.failure(f"Failed to create disk image: {exc}")

    def _create_qcow2(self, machine_id: str, size_mb: int) -> Optional[Path]:
        image = self.qcow2_path(machine_id)
        qemu_img = self.installation.qemu_img
        if not qemu_img.exists():
            log("WARN", f"{qemu_img} not found; falling back to raw image")
            return None
        cmd = self.installation.loader_prefix() + [
            str(qemu_img),
            "create",
            "-f",
            "qcow2",
            str(image),
            f"{size_mb}M",
        ]
        log("INFO", f"Creating disk image: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                cwd=self.images_dir,
                env=self.installation.environment(),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                check=False,
            )
        except OSError as exc:
            log("WARN", f"qemu-img could not be launched ({exc}); falling back to raw image")
            return None
        if result.returncode != 0 or not image.exists():
            log("WARN", f"qemu-img failed (exit {result.returncode}): {result.stdout.strip()}")
            image.unlink(missing_ok=True)
            return None
        log("SUCCESS", f"Created qcow2 image {image} ({size_mb} MiB)")
        return image

    def _create_raw(self, machine_id: str, size_mb: int) -> Path:
        image = self.raw_path(machine_id)
        log("INFO", f"Creating raw image: {image}")
        with open(image, "wb") as f:
            f.truncate(size_mb * 1024 * 1024)
        log("SUCCESS", f"Created sparse raw image {image} ({size_mb} MiB)")
        return image
