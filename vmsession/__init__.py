"""vm-session-core package."""

__all__ = [
    "cli",
    "command",
    "config",
    "constants",
    "disk",
    "exceptions",
    "framebuffer",
    "installer",
    "keysyms",
    "manager",
    "models",
    "rfb",
    "status",
    "storage",
    "utils",
]
