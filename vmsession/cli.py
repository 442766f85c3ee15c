"""CLI entry points for vm-session-core."""

from __future__ import annotations

import argparse
import shlex
import signal
from pathlib import Path
from typing import List, Optional, Tuple

from vmsession.command import build_command
from vmsession.config import dump_machine, load_machine_file
from vmsession.constants import LOOPBACK, OPERATION_LOG_FILE, OS_PROFILES, SUPPORTED_ARCHES
from vmsession.exceptions import ManagerError
from vmsession.keysyms import parse_combo
from vmsession.manager import MachineManager
from vmsession.models import MachineConfig
from vmsession.rfb import RfbSession
from vmsession.utils import log


def build_manager() -> MachineManager:
    return MachineManager()


def parse_target(target: str) -> Tuple[str, int]:
    """``HOST:PORT`` or ``:PORT`` -> (host, port); host defaults to loopback."""
    host, sep, port = target.rpartition(":")
    if not sep:
        host, port = "", target
    try:
        value = int(port)
    except ValueError:
        raise ManagerError(f"Invalid VNC target '{target}' (expected HOST:PORT)")
    if not 0 < value <= 65535:
        raise ManagerError(f"Invalid VNC port {value}")
    return host or LOOPBACK, value


def _require_machine(manager: MachineManager, machine_id: str) -> MachineConfig:
    cfg = manager.get_machine(machine_id)
    if cfg is None:
        raise ManagerError(f"No machine with id {machine_id}")
    return cfg


def list_machines(manager: MachineManager) -> None:
    machines = manager.list_machines()
    if not machines:
        log("WARN", "No machines configured")
        return
    max_name = max(len(m.name) for m in machines)
    for cfg in machines:
        arch = SUPPORTED_ARCHES[cfg.arch]["display_name"]
        family = OS_PROFILES[cfg.os_family]["display_name"]
        print(f"  {cfg.id}  {cfg.name:<{max_name}}  ({arch}, {family}, {cfg.memory_mb} MiB, VNC :{cfg.vnc_port})")


def show_command(manager: MachineManager, cfg: MachineConfig) -> str:
    """Command line the machine would start with; disk creation is not performed."""
    if cfg.disk_image:
        disk = Path(cfg.disk_image)
    else:
        disk = manager.provisioner.existing(cfg.id) or manager.provisioner.qcow2_path(cfg.id)
    cmd = manager.installation.loader_prefix() + build_command(cfg, disk, manager.installation)
    return shlex.join(cmd)


def print_startup_banner(cfg: MachineConfig, port: int) -> None:
    """Print a visually distinct access-info banner after the VM starts."""
    lines: List[str] = []
    lines.append(f"  VM: {cfg.name} ({cfg.id})")
    info = f"  Arch: {SUPPORTED_ARCHES[cfg.arch]['display_name']} | Memory: {cfg.memory_mb} MiB"
    info += f" | OS: {OS_PROFILES[cfg.os_family]['display_name']}"
    if cfg.enable_kvm:
        info += " | KVM"
    lines.append(info)
    lines.append(f"  VNC:  {LOOPBACK}:{port}")
    if cfg.cdrom:
        lines.append(f"  CD:   {cfg.cdrom}")

    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def run_machine(manager: MachineManager, cfg: MachineConfig) -> int:
    result = manager.start(cfg)
    if not result.ok:
        log("ERROR", result.error or "start failed")
        return 1
    print_startup_banner(cfg, result.value)

    # SIGTERM behaves like Ctrl+C so both paths stop the emulator
    prev_sigterm = signal.signal(signal.SIGTERM, signal.default_int_handler)
    try:
        manager.wait_until_stopped(cfg.id)
        log("INFO", f"VM {cfg.name} exited")
    except KeyboardInterrupt:
        log("INFO", "Interrupted; stopping VM")
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        manager.stop(cfg.id)
    return 0


def snapshot(target: str, output: Path, timeout: float) -> int:
    host, port = parse_target(target)
    session = RfbSession()
    result = session.connect(host, port)
    if not result.ok:
        log("ERROR", f"VNC connection failed: {result.error}")
        return 1
    try:
        session.start()
        frame = session.frames.take(timeout=timeout)
    finally:
        session.disconnect()
    if frame is None:
        log("ERROR", f"No frame received from {host}:{port} within {timeout:.0f}s")
        return 1
    output.write_bytes(frame.to_ppm())
    log("SUCCESS", f"Wrote {frame.width}x{frame.height} frame to {output}")
    return 0


def send_keys(target: str, text: Optional[str], combos: List[str]) -> int:
    host, port = parse_target(target)
    keysyms = [parse_combo(combo) for combo in combos]
    session = RfbSession()
    result = session.connect(host, port)
    if not result.ok:
        log("ERROR", f"VNC connection failed: {result.error}")
        return 1
    try:
        ok = True
        for combo in keysyms:
            ok = session.send_key_combo(combo) and ok
        if text:
            ok = session.type_text(text) and ok
    finally:
        session.disconnect()
    return 0 if ok else 1


def print_log(machine_id: Optional[str], manager: MachineManager, lines: int) -> int:
    if machine_id:
        path = manager.logs_dir / f"{machine_id}.log"
    elif OPERATION_LOG_FILE:
        path = Path(OPERATION_LOG_FILE)
    else:
        log("WARN", "OPERATION_LOG_FILE is not set; pass --machine ID for emulator output")
        return 1
    if not path.exists():
        log("WARN", f"No log at {path}")
        return 1
    for line in path.read_text(errors="replace").splitlines()[-lines:]:
        print(line)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run and control QEMU machines over VNC")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List configured machines")

    p_create = sub.add_parser("create", help="Create a machine from a YAML description")
    p_create.add_argument("file", type=Path)

    p_show = sub.add_parser("show", help="Print a machine configuration as YAML")
    p_show.add_argument("id")

    p_cmd = sub.add_parser("command", help="Print the emulator command line for a machine")
    p_cmd.add_argument("id")

    p_run = sub.add_parser("run", help="Start a machine and wait until it stops")
    p_run.add_argument("id")

    p_delete = sub.add_parser("delete", help="Stop and delete a machine")
    p_delete.add_argument("id")
    p_delete.add_argument("--remove-disk", action="store_true", help="Also delete the machine's disk image")

    p_snap = sub.add_parser("snapshot", help="Capture one frame from a VNC server as PPM")
    p_snap.add_argument("target", metavar="HOST:PORT")
    p_snap.add_argument("-o", "--output", type=Path, default=Path("frame.ppm"))
    p_snap.add_argument("--timeout", type=float, default=10.0)

    p_keys = sub.add_parser("keys", help="Send key combos and/or text to a VNC server")
    p_keys.add_argument("target", metavar="HOST:PORT")
    p_keys.add_argument("--combo", action="append", default=[], help="e.g. ctrl+alt+delete (repeatable)")
    p_keys.add_argument("--text", help="Text to type")

    p_log = sub.add_parser("log", help="Print the operational log or a machine's emulator output")
    p_log.add_argument("--machine", metavar="ID")
    p_log.add_argument("-n", "--lines", type=int, default=50)

    args = parser.parse_args(argv)

    try:
        if args.command == "snapshot":
            return snapshot(args.target, args.output, args.timeout)
        if args.command == "keys":
            return send_keys(args.target, args.text, args.combo)

        manager = build_manager()
        if args.command == "list":
            list_machines(manager)
            return 0
        if args.command == "create":
            cfg = load_machine_file(args.file)
            manager.save(cfg).unwrap()
            log("SUCCESS", f"Created machine {cfg.name} ({cfg.id})")
            print(cfg.id)
            return 0
        if args.command == "show":
            print(dump_machine(_require_machine(manager, args.id)), end="")
            return 0
        if args.command == "command":
            print(show_command(manager, _require_machine(manager, args.id)))
            return 0
        if args.command == "run":
            manager.installation.describe()
            return run_machine(manager, _require_machine(manager, args.id))
        if args.command == "delete":
            result = manager.delete(args.id, remove_disk=args.remove_disk)
            if not result.ok:
                log("ERROR", result.error or "delete failed")
                return 1
            if not result.value:
                log("WARN", f"No machine with id {args.id}")
            return 0
        if args.command == "log":
            return print_log(args.machine, manager, args.lines)
    except KeyError as exc:
        log("ERROR", f"Unknown key {exc}")
        return 1
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    return 1
