"""Persisted machine configurations: one key=value file per machine id."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar

from vmsession.config import normalize_arch, normalize_boot_order, normalize_os_family, parse_bool, parse_int
from vmsession.constants import CONFIG_SUFFIX, CONFIGS_DIR, VNC_BASE_PORT
from vmsession.exceptions import ManagerError
from vmsession.models import MachineConfig, Result
from vmsession.utils import ensure_directory, log

T = TypeVar("T")

FIELD_ORDER = (
    "id",
    "name",
    "arch",
    "os_family",
    "memory_mb",
    "cpus",
    "disk_size_mb",
    "disk_image",
    "cdrom",
    "vnc_port",
    "enable_kvm",
    "boot_order",
    "enable_acpi",
    "vga_type",
    "sound_enabled",
)


def _or_default(parser: Callable[[str], T], raw: Optional[str], default: T) -> T:
    if raw is None or raw == "":
        return default
    try:
        return parser(raw)
    except ManagerError:
        return default


def serialize(cfg: MachineConfig) -> str:
    lines = []
    for key in FIELD_ORDER:
        value = getattr(cfg, key)
        if value is None:
            text = ""
        elif isinstance(value, bool):
            text = "true" if value else "false"
        else:
            text = str(value)
        lines.append(f"{key}={text}")
    return "\n".join(lines) + "\n"


def parse_record(text: str) -> MachineConfig:
    props: Dict[str, str] = {}
    for line in text.splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        props[key.strip()] = value.strip()

    machine_id = props.get("id")
    if not machine_id:
        raise ManagerError("record has no id")
    return MachineConfig(
        id=machine_id,
        name=props.get("name") or "Unknown",
        arch=_or_default(normalize_arch, props.get("arch"), "x86_64"),
        os_family=_or_default(normalize_os_family, props.get("os_family"), "other"),
        memory_mb=_or_default(lambda v: parse_int(v, "memory_mb"), props.get("memory_mb"), 512),
        cpus=_or_default(lambda v: parse_int(v, "cpus"), props.get("cpus"), 2),
        disk_size_mb=_or_default(lambda v: parse_int(v, "disk_size_mb"), props.get("disk_size_mb"), 4096),
        disk_image=props.get("disk_image") or None,
        cdrom=props.get("cdrom") or None,
        vnc_port=_or_default(
            lambda v: parse_int(v, "vnc_port", min_val=VNC_BASE_PORT, max_val=65535),
            props.get("vnc_port"),
            VNC_BASE_PORT,
        ),
        enable_kvm=_or_default(lambda v: parse_bool(v, "enable_kvm"), props.get("enable_kvm"), False),
        boot_order=_or_default(normalize_boot_order, props.get("boot_order"), "disk-then-cd"),
        enable_acpi=_or_default(lambda v: parse_bool(v, "enable_acpi"), props.get("enable_acpi"), True),
        vga_type=props.get("vga_type") or "std",
        sound_enabled=_or_default(lambda v: parse_bool(v, "sound_enabled"), props.get("sound_enabled"), False),
    )


class ConfigStore:
    def __init__(self, configs_dir: Path = CONFIGS_DIR) -> None:
        self.configs_dir = configs_dir

    def path_for(self, machine_id: str) -> Path:
        return self.configs_dir / f"{machine_id}{CONFIG_SUFFIX}"

    def save(self, cfg: MachineConfig) -> Result[Path]:
        try:
            ensure_directory(self.configs_dir)
            path = self.path_for(cfg.id)
            tmp = path.with_suffix(CONFIG_SUFFIX + ".tmp")
            tmp.write_text(serialize(cfg))
            tmp.replace(path)
        except OSError as exc:
            log("ERROR", f"Failed to save config {cfg.id}: {exc}")
            return Result.failure(f"Failed to save config: {exc}")
        return Result.success(path)

    def load(self) -> List[MachineConfig]:
        if not self.configs_dir.is_dir():
            return []
        configs = []
        for path in sorted(self.configs_dir.glob(f"*{CONFIG_SUFFIX}")):
            try:
                configs.append(parse_record(path.read_text()))
            except (OSError, UnicodeDecodeError, ManagerError) as exc:
                log("ERROR", f"Failed to load config {path.name}: {exc}")
        return configs

    def get(self, machine_id: str) -> Optional[MachineConfig]:
        path = self.path_for(machine_id)
        if not path.exists():
            return None
        try:
            return parse_record(path.read_text())
        except (OSError, UnicodeDecodeError, ManagerError) as exc:
            log("ERROR", f"Failed to load config {path.name}: {exc}")
            return None

    def delete(self, machine_id: str) -> Result[bool]:
        try:
            path = self.path_for(machine_id)
            existed = path.exists()
            path.unlink(missing_ok=True)
        except OSError as exc:
            log("ERROR", f"Failed to delete config {machine_id}: {exc}")
            return Result.failure(f"Failed to delete config: {exc}")
        return Result.success(existed)
