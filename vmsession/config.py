"""Machine description loading and value normalisation for vm-session-core."""

from __future__ import annotations

from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmsession.constants import (
    ARCH_ALIASES,
    BOOT_ORDERS,
    OS_ALIASES,
    OS_PROFILES,
    SUPPORTED_ARCHES,
    TRUTHY,
    VGA_TYPES,
)
from vmsession.exceptions import ManagerError
from vmsession.models import MachineConfig
from vmsession.utils import log

# Legacy QEMU-style boot tokens accepted on input.
_BOOT_ORDER_ALIASES = {
    "dc": "cd-then-disk",
    "cd": "disk-then-cd",
    "c": "disk-then-cd",
    "d": "cd-only",
}


def normalize_arch(raw: str) -> str:
    key = raw.strip().lower()
    key = ARCH_ALIASES.get(key, key)
    if key not in SUPPORTED_ARCHES:
        supported = ", ".join(sorted(SUPPORTED_ARCHES))
        raise ManagerError(f"Unsupported arch '{raw}'. Supported: {supported}")
    return key


def normalize_os_family(raw: str) -> str:
    key = raw.strip().lower().replace("_", "-")
    key = OS_ALIASES.get(key, key)
    if key not in OS_PROFILES:
        supported = ", ".join(sorted(OS_PROFILES))
        raise ManagerError(f"Unknown OS family '{raw}'. Supported: {supported}")
    return key


def normalize_boot_order(raw: str) -> str:
    key = raw.strip().lower()
    key = _BOOT_ORDER_ALIASES.get(key, key)
    if key not in BOOT_ORDERS:
        supported = ", ".join(sorted(BOOT_ORDERS))
        raise ManagerError(f"Unknown boot order '{raw}'. Supported: {supported}")
    return key


def parse_bool(raw: Any, name: str) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in TRUTHY:
        return True
    if text in {"0", "false", "no", "off", ""}:
        return False
    raise ManagerError(f"{name} must be a boolean (got '{raw}')")


def parse_int(raw: Any, name: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    if isinstance(raw, bool):
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def _optional_str(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def machine_from_mapping(data: Mapping[str, Any]) -> MachineConfig:
    """Build a MachineConfig from a user supplied mapping, filling OS defaults."""
    known = {f.name for f in fields(MachineConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ManagerError(f"Unknown machine fields: {', '.join(unknown)}")
    name = _optional_str(data.get("name"))
    if not name:
        raise ManagerError("Machine description needs a 'name'")

    os_family = normalize_os_family(str(data.get("os_family", "other")))
    profile = OS_PROFILES[os_family]

    kwargs: Dict[str, Any] = {"name": name, "os_family": os_family}
    machine_id = _optional_str(data.get("id"))
    if machine_id:
        kwargs["id"] = machine_id
    if "arch" in data:
        kwargs["arch"] = normalize_arch(str(data["arch"]))
    kwargs["memory_mb"] = parse_int(data.get("memory_mb", profile["recommended_memory_mb"]), "memory_mb")
    kwargs["disk_size_mb"] = parse_int(data.get("disk_size_mb", profile["min_disk_mb"]), "disk_size_mb")
    if "cpus" in data:
        kwargs["cpus"] = parse_int(data["cpus"], "cpus")
    if "vnc_port" in data:
        kwargs["vnc_port"] = parse_int(data["vnc_port"], "vnc_port", min_val=5900, max_val=65535)
    for key in ("disk_image", "cdrom"):
        if key in data:
            kwargs[key] = _optional_str(data[key])
    for key in ("enable_kvm", "enable_acpi", "sound_enabled"):
        if key in data:
            kwargs[key] = parse_bool(data[key], key)
    if "boot_order" in data:
        kwargs["boot_order"] = normalize_boot_order(str(data["boot_order"]))
    if "vga_type" in data:
        vga = str(data["vga_type"]).strip().lower()
        if vga not in VGA_TYPES:
            raise ManagerError(f"Unknown vga_type '{vga}'. Supported: {', '.join(sorted(VGA_TYPES))}")
        kwargs["vga_type"] = vga

    cfg = MachineConfig(**kwargs)
    warn_below_minimum(cfg)
    return cfg


def warn_below_minimum(cfg: MachineConfig) -> None:
    profile = OS_PROFILES[cfg.os_family]
    if cfg.memory_mb < profile["min_memory_mb"]:
        log(
            "WARN",
            f"{cfg.name}: {cfg.memory_mb} MiB is below the {profile['min_memory_mb']} MiB "
            f"{profile['display_name']} needs",
        )
    if cfg.disk_size_mb < profile["min_disk_mb"]:
        log(
            "WARN",
            f"{cfg.name}: {cfg.disk_size_mb} MiB disk is below the {profile['min_disk_mb']} MiB "
            f"{profile['display_name']} needs",
        )


def load_machine_file(path: Path) -> MachineConfig:
    if not path.exists():
        raise ManagerError(f"Machine description missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"{path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise ManagerError(f"{path} must contain a YAML mapping, got {type(data).__name__}")
    machine = data.get("machine", data)
    if not isinstance(machine, dict):
        raise ManagerError(f"{path}: 'machine' must be a mapping")
    return machine_from_mapping(machine)


def dump_machine(cfg: MachineConfig) -> str:
    return yaml.safe_dump({"machine": asdict(cfg)}, sort_keys=False)
