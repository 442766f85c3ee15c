"""QEMU command line construction."""

from __future__ import annotations

from pathlib import Path
from typing import List, Union

from vmsession.constants import BOOT_ORDER_CD_FIRST, BOOT_ORDERS, OS_PROFILES, QCOW2_SUFFIX, SUPPORTED_ARCHES
from vmsession.installer import QemuInstallation
from vmsession.models import MachineConfig
from vmsession.utils import log


def os_profile(os_family: str) -> dict:
    return OS_PROFILES.get(os_family, OS_PROFILES["other"])


def disk_format(disk_path: Union[str, Path]) -> str:
    return "qcow2" if str(disk_path).endswith(QCOW2_SUFFIX) else "raw"


def emulator_binary(cfg: MachineConfig) -> str:
    profile = SUPPORTED_ARCHES.get(cfg.arch, SUPPORTED_ARCHES["x86_64"])
    return profile["binary"]


def build_command(cfg: MachineConfig, disk_path: Union[str, Path], installation: QemuInstallation) -> List[str]:
    """Map a machine configuration onto qemu-system arguments.

    Everything is tuned for TCG: one vCPU, cheap CPU models, and devices the
    guest OS has in-box drivers for. Output goes to VNC only.
    """
    arch = SUPPORTED_ARCHES.get(cfg.arch, SUPPORTED_ARCHES["x86_64"])
    profile = os_profile(cfg.os_family)

    cmd: List[str] = [str(installation.binary(emulator_binary(cfg)))]
    cmd.extend(["-L", str(installation.share_dir)])

    cmd.extend(["-machine", arch["machine"]])
    cmd.extend(["-cpu", arch["cpu"]])

    # A single vCPU outruns SMP under TCG
    cmd.extend(["-m", f"{cfg.memory_mb}M"])
    cmd.extend(["-smp", "1"])

    if not cfg.enable_acpi:
        cmd.append("-no-acpi")

    cmd.extend(["-vga", profile["vga"]])
    cmd.extend(["-display", "none"])

    fmt = disk_format(disk_path)
    if profile["disk_bus"] == "virtio":
        cmd.extend(["-drive", f"file={disk_path},format={fmt},if=virtio"])
    else:
        cmd.extend(["-drive", f"file={disk_path},format={fmt},if=ide,index=0,media=disk"])

    boot_order = cfg.boot_order
    if cfg.cdrom:
        if Path(cfg.cdrom).exists():
            cmd.extend(["-cdrom", cfg.cdrom])
            boot_order = BOOT_ORDER_CD_FIRST
            log("DEBUG", f"CD-ROM: {cfg.cdrom}")
        else:
            log("ERROR", f"ISO not found, booting without CD-ROM: {cfg.cdrom}")
    letters = BOOT_ORDERS.get(boot_order, BOOT_ORDERS["disk-then-cd"])
    cmd.extend(["-boot", f"order={letters},menu=on"])

    cmd.extend(["-vnc", f":{cfg.display_index}"])

    cmd.extend(["-netdev", "user,id=net0"])
    cmd.extend(["-device", f"{profile['nic']},netdev=net0"])

    # usb-tablet reports absolute coordinates, which is what VNC pointer events are
    cmd.append("-usb")
    cmd.extend(["-device", "usb-tablet"])
    cmd.extend(["-rtc", "base=localtime,clock=host"])

    if cfg.enable_kvm:
        cmd.append("-enable-kvm")

    return cmd
