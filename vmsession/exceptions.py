"""Custom exceptions for vm-session-core."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class RfbError(ManagerError):
    """Raised when the remote framebuffer handshake or stream is malformed."""
