"""Machine process lifecycle management for vm-session-core."""

from __future__ import annotations

import hashlib
import os
import re
import subprocess
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional
from urllib.parse import unquote, urlparse
from urllib.request import urlopen

from vmsession.command import build_command
from vmsession.constants import (
    IMAGES_DIR,
    LAUNCH_POLL_INITIAL,
    LAUNCH_POLL_MAX,
    LAUNCH_TIMEOUT,
    LOGS_DIR,
    LOOPBACK,
    VMS_DIR,
)
from vmsession.disk import DiskProvisioner
from vmsession.exceptions import ManagerError
from vmsession.installer import QemuInstallation
from vmsession.models import MachineConfig, MachineState, ProcessRecord, Result
from vmsession.storage import ConfigStore
from vmsession.utils import copy_uri, ensure_directory, log, port_open

MediaOpener = Callable[[str], BinaryIO]


def _default_opener(uri: str) -> BinaryIO:
    return urlopen(uri, timeout=60)


class MachineManager:
    """Owns every emulator process this program launched.

    The process table is private: callers only ever see machine ids, states
    and ports. Mutations go through ``_lock``; a per-id start lock keeps two
    concurrent ``start`` calls for the same machine from both spawning.
    """

    def __init__(
        self,
        installation: Optional[QemuInstallation] = None,
        store: Optional[ConfigStore] = None,
        provisioner: Optional[DiskProvisioner] = None,
        vms_dir: Path = VMS_DIR,
        images_dir: Path = IMAGES_DIR,
        logs_dir: Path = LOGS_DIR,
        media_opener: MediaOpener = _default_opener,
        launch_timeout: float = LAUNCH_TIMEOUT,
    ) -> None:
        self.installation = installation or QemuInstallation()
        self.store = store or ConfigStore()
        self.images_dir = images_dir
        self.provisioner = provisioner or DiskProvisioner(self.installation, images_dir)
        self.vms_dir = vms_dir
        self.logs_dir = logs_dir
        self.media_opener = media_opener
        self.launch_timeout = launch_timeout
        self._processes: Dict[str, ProcessRecord] = {}
        self._transient: Dict[str, MachineState] = {}
        self._start_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    # -- persisted configuration -------------------------------------------------

    def list_machines(self) -> List[MachineConfig]:
        return self.store.load()

    def get_machine(self, machine_id: str) -> Optional[MachineConfig]:
        return self.store.get(machine_id)

    def save(self, cfg: MachineConfig) -> Result[Path]:
        return self.store.save(cfg)

    def delete(self, machine_id: str, remove_disk: bool = False) -> Result[bool]:
        self.stop(machine_id)
        if remove_disk:
            for image in (self.provisioner.qcow2_path(machine_id), self.provisioner.raw_path(machine_id)):
                try:
                    image.unlink(missing_ok=True)
                except OSError as exc:
                    log("WARN", f"Could not remove {image}: {exc}")
        result = self.store.delete(machine_id)
        if result.ok:
            log("INFO", f"Deleted machine {machine_id}")
        return result

    # -- state -------------------------------------------------------------------

    def state(self, machine_id: str) -> MachineState:
        with self._lock:
            transient = self._transient.get(machine_id)
            if transient in (MachineState.STARTING, MachineState.STOPPING):
                return transient
            record = self._processes.get(machine_id)
            if record is not None:
                if record.alive():
                    return MachineState.RUNNING
                del self._processes[machine_id]
                log("INFO", f"Machine {machine_id} exited (code {record.process.returncode})")
                return MachineState.STOPPED
            return transient or MachineState.STOPPED

    def running(self) -> List[str]:
        with self._lock:
            ids = list(self._processes)
        return [machine_id for machine_id in ids if self.state(machine_id) is MachineState.RUNNING]

    def port_of(self, machine_id: str) -> Optional[int]:
        with self._lock:
            record = self._processes.get(machine_id)
            return record.vnc_port if record is not None else None

    def _set_transient(self, machine_id: str, state: Optional[MachineState]) -> None:
        with self._lock:
            if state is None:
                self._transient.pop(machine_id, None)
            else:
                self._transient[machine_id] = state

    def _start_lock(self, machine_id: str) -> threading.Lock:
        with self._lock:
            return self._start_locks.setdefault(machine_id, threading.Lock())

    # -- start / stop ------------------------------------------------------------

    def start(self, cfg: MachineConfig) -> Result[int]:
        with self._start_lock(cfg.id):
            if self.state(cfg.id) is MachineState.RUNNING:
                port = self.port_of(cfg.id)
                log("INFO", f"Machine {cfg.name} already running on port {port}")
                return Result.success(port if port is not None else cfg.vnc_port)

            self._set_transient(cfg.id, MachineState.STARTING)
            outcome: Optional[MachineState] = MachineState.ERROR
            try:
                port = self._launch(cfg)
                outcome = None
            except ManagerError as exc:
                log("ERROR", f"Failed to start {cfg.name}: {exc}")
                return Result.failure(str(exc))
            except Exception as exc:
                log("ERROR", f"Failed to start {cfg.name}: {exc!r}")
                return Result.failure(f"Failed to start VM: {exc!r}")
            finally:
                self._set_transient(cfg.id, outcome)
            return Result.success(port)

    def _launch(self, cfg: MachineConfig) -> int:
        if not self.installation.is_installed:
            raise ManagerError(f"QEMU not installed (expected binaries under {self.installation.bin_dir})")

        with self._lock:
            clash = [
                r.machine_id for r in self._processes.values() if r.vnc_port == cfg.vnc_port and r.alive()
            ]
        if clash:
            raise ManagerError(f"Display port {cfg.vnc_port} is already used by machine {clash[0]}")
        if port_open(LOOPBACK, cfg.vnc_port):
            raise ManagerError(f"Display port {cfg.vnc_port} is already in use on {LOOPBACK}")

        disk = self._resolve_disk(cfg)
        log("INFO", f"Using disk image: {disk}")
        cdrom = self.resolve_media(cfg.cdrom) if cfg.cdrom else None
        resolved = replace(cfg, disk_image=str(disk), cdrom=cdrom)

        cmd = self.installation.loader_prefix() + build_command(resolved, disk, self.installation)
        log("INFO", f"Starting VM {cfg.name}: {' '.join(cmd)}")

        env = dict(os.environ)
        env.update(self.installation.environment())
        env["QEMU_AUDIO_DRV"] = "none"

        ensure_directory(self.vms_dir)
        ensure_directory(self.logs_dir)
        log_path = self.logs_dir / f"{cfg.id}.log"
        with open(log_path, "wb") as output:
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=self.vms_dir,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=output,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise ManagerError(f"Emulator could not be executed: {exc}")

        record = ProcessRecord(machine_id=cfg.id, process=proc, vnc_port=cfg.vnc_port, log_path=log_path)
        with self._lock:
            self._processes[cfg.id] = record

        if not self._await_settle(record):
            with self._lock:
                self._processes.pop(cfg.id, None)
            output_text = self._read_output(log_path)
            raise ManagerError(f"QEMU failed to start: {output_text}")

        log("SUCCESS", f"VM {cfg.name} running (pid {proc.pid}, VNC {LOOPBACK}:{cfg.vnc_port})")
        return cfg.vnc_port

    def _await_settle(self, record: ProcessRecord) -> bool:
        """Poll with backoff until QEMU listens on its VNC port, dies, or time runs out."""
        deadline = time.monotonic() + self.launch_timeout
        delay = LAUNCH_POLL_INITIAL
        while True:
            if not record.alive():
                return False
            if port_open(LOOPBACK, record.vnc_port):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                alive = record.alive()
                if alive:
                    log("WARN", f"VNC port {record.vnc_port} not listening yet; assuming QEMU is still booting")
                return alive
            time.sleep(min(delay, remaining))
            delay = min(delay * 2, LAUNCH_POLL_MAX)

    @staticmethod
    def _read_output(log_path: Path, limit: int = 4000) -> str:
        try:
            text = log_path.read_text(errors="replace").strip()
        except OSError:
            return "(no output captured)"
        if not text:
            return "(no output captured)"
        return text[-limit:]

    def _resolve_disk(self, cfg: MachineConfig) -> Path:
        if cfg.disk_image:
            image = Path(cfg.disk_image)
            if image.exists():
                return image
            log("WARN", f"Configured disk image {image} not found; using managed disk")
        found = self.provisioner.existing(cfg.id)
        if found is not None:
            return found
        log("INFO", f"Creating disk image for VM: {cfg.id}")
        return self.provisioner.ensure_disk(cfg.id, cfg.disk_size_mb).unwrap()

    def resolve_media(self, reference: str) -> Optional[str]:
        """Turn a boot media reference into a local path QEMU can open.

        Plain paths pass through. ``file://`` URIs map to their path; any other
        URI is copied once into the images directory, keyed by a hash of the
        reference, and reused on later starts.
        """
        parsed = urlparse(reference)
        if len(parsed.scheme) <= 1:
            return reference
        if parsed.scheme == "file":
            return unquote(parsed.path)

        digest = hashlib.sha256(reference.encode("utf-8")).hexdigest()[:12]
        filename = Path(unquote(parsed.path or "")).name or "boot.iso"
        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", filename)
        destination = self.images_dir / f"iso_{digest}-{safe_name}"
        if destination.exists() and destination.stat().st_size > 0:
            log("INFO", f"Using cached boot media: {destination}")
            return str(destination)
        try:
            ensure_directory(self.images_dir)
            copy_uri(self.media_opener, reference, destination)
        except (ManagerError, OSError) as exc:
            log("ERROR", f"Failed to resolve boot media {reference}: {exc}")
            return None
        return str(destination)

    def stop(self, machine_id: str) -> Result[bool]:
        """Ask QEMU to terminate and forget it; does not wait for the exit."""
        with self._lock:
            record = self._processes.pop(machine_id, None)
            if record is None:
                self._transient.pop(machine_id, None)
                return Result.success(False)
            self._transient[machine_id] = MachineState.STOPPING
        try:
            log("INFO", f"Stopping VM {machine_id} (pid {record.process.pid})")
            try:
                record.process.terminate()
            except ProcessLookupError:
                pass
            except OSError as exc:
                log("WARN", f"Could not signal VM {machine_id}: {exc}")
            # reap in the background so the exited child does not linger as a zombie
            threading.Thread(target=record.process.wait, name=f"reap-{machine_id}", daemon=True).start()
        finally:
            self._set_transient(machine_id, None)
        return Result.success(True)

    def stop_all(self) -> None:
        with self._lock:
            ids = list(self._processes)
        for machine_id in ids:
            self.stop(machine_id)

    def wait_until_stopped(self, machine_id: str, interval: float = 1.0) -> None:
        while self.state(machine_id) is MachineState.RUNNING:
            time.sleep(interval)
