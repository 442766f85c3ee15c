"""Global constants and path configuration for vm-session-core."""

from __future__ import annotations

import os
from pathlib import Path

# DATA_DIR provides a single root for all persistent data: machine configs,
# disk images, cached boot media and per-machine emulator logs.
_DATA_DIR = os.environ.get("DATA_DIR")
if _DATA_DIR:
    DATA_DIR = Path(_DATA_DIR)
else:
    DATA_DIR = Path.home() / ".local" / "share" / "vmsession"
VMS_DIR = DATA_DIR / "vms"
IMAGES_DIR = VMS_DIR / "images"
CONFIGS_DIR = VMS_DIR / "configs"
LOGS_DIR = VMS_DIR / "logs"

# Prefix the package installer unpacks QEMU into (bin/, lib/, share/qemu).
QEMU_PREFIX = Path(os.environ.get("QEMU_PREFIX", str(DATA_DIR / "usr")))
# Explicit dynamic loader; empty string disables the prefix entirely.
QEMU_LOADER = os.environ.get("QEMU_LOADER")
LOADER_CANDIDATES = (Path("/system/bin/linker64"), Path("/system/bin/linker"))

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
OPERATION_LOG_FILE = os.environ.get("OPERATION_LOG_FILE")
OPERATION_LOG_SIZE = 500

LOOPBACK = "127.0.0.1"
VNC_BASE_PORT = 5900

# Seconds to wait for a freshly spawned emulator to settle.
LAUNCH_TIMEOUT = float(os.environ.get("LAUNCH_TIMEOUT", "5"))
LAUNCH_POLL_INITIAL = 0.1
LAUNCH_POLL_MAX = 1.0

QEMU_IMG = "qemu-img"
QCOW2_SUFFIX = ".qcow2"
RAW_SUFFIX = ".img"
CONFIG_SUFFIX = ".conf"

SUPPORTED_ARCHES = {
    "x86_64": {
        "display_name": "x86 64-bit",
        "binary": "qemu-system-x86_64",
        "machine": "pc,accel=tcg",
        "cpu": "qemu64",
    },
    "i386": {
        "display_name": "x86 32-bit",
        # qemu-system-x86_64 runs 32-bit guests; only the 64-bit build is installed
        "binary": "qemu-system-x86_64",
        "machine": "pc,accel=tcg",
        "cpu": "qemu64",
    },
    "aarch64": {
        "display_name": "ARM 64-bit",
        "binary": "qemu-system-aarch64",
        "machine": "virt,accel=tcg",
        "cpu": "cortex-a53",
    },
    "arm": {
        "display_name": "ARM 32-bit",
        "binary": "qemu-system-aarch64",
        "machine": "virt,accel=tcg",
        "cpu": "cortex-a53",
    },
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "x86": "i386",
    "i686": "i386",
    "arm64": "aarch64",
    "armv7": "arm",
    "armhf": "arm",
}

OS_PROFILES = {
    "windows-legacy": {
        "display_name": "Windows XP",
        "min_memory_mb": 256,
        "recommended_memory_mb": 512,
        "min_disk_mb": 4096,
        "vga": "cirrus",
        "disk_bus": "ide",
        "nic": "rtl8139",
    },
    "windows-modern": {
        "display_name": "Windows 7/10/11",
        "min_memory_mb": 1024,
        "recommended_memory_mb": 2048,
        "min_disk_mb": 20480,
        "vga": "std",
        "disk_bus": "ide",
        "nic": "e1000",
    },
    "linux": {
        "display_name": "Linux",
        "min_memory_mb": 256,
        "recommended_memory_mb": 1024,
        "min_disk_mb": 8192,
        "vga": "virtio",
        "disk_bus": "virtio",
        "nic": "virtio-net-pci",
    },
    "other": {
        "display_name": "Other OS",
        "min_memory_mb": 256,
        "recommended_memory_mb": 512,
        "min_disk_mb": 4096,
        "vga": "std",
        "disk_bus": "ide",
        "nic": "e1000",
    },
}

OS_ALIASES = {
    "windows-xp": "windows-legacy",
    "winxp": "windows-legacy",
    "windows-7": "windows-modern",
    "windows-10": "windows-modern",
    "windows-11": "windows-modern",
    "windows": "windows-modern",
}

# QEMU -boot letters: c = first hard disk, d = CD-ROM.
BOOT_ORDERS = {
    "cd-then-disk": "dc",
    "disk-then-cd": "cd",
    "cd-only": "d",
}
BOOT_ORDER_CD_FIRST = "cd-then-disk"

VGA_TYPES = {"std", "cirrus", "vmware", "qxl", "virtio"}

# RFB protocol
RFB_CLIENT_VERSION = b"RFB 003.008\n"
RFB_VERSION_LEN = 12
SECURITY_NONE = 1

MSG_SET_PIXEL_FORMAT = 0
MSG_SET_ENCODINGS = 2
MSG_FB_UPDATE_REQUEST = 3
MSG_KEY_EVENT = 4
MSG_POINTER_EVENT = 5

MSG_FB_UPDATE = 0
MSG_SET_COLOUR_MAP = 1
MSG_BELL = 2
MSG_SERVER_CUT_TEXT = 3

ENC_RAW = 0
ENC_COPYRECT = 1
ENC_DESKTOP_SIZE = -223
ENC_CURSOR = -239
ENC_X_CURSOR = -240
CLIENT_ENCODINGS = (ENC_RAW, ENC_DESKTOP_SIZE, ENC_CURSOR, ENC_X_CURSOR)

RFB_CONNECT_TIMEOUT = 5.0

BUTTON_LEFT = 1
BUTTON_MIDDLE = 2
BUTTON_RIGHT = 4
BUTTON_WHEEL_UP = 8
BUTTON_WHEEL_DOWN = 16
