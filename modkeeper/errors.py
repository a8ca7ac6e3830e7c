from __future__ import annotations

from typing import Optional


class ModkeeperError(RuntimeError):
    """Base class for every error raised by modkeeper."""


class NotFound(ModkeeperError):
    """The registry has no matching project, version or file."""


class TransientError(ModkeeperError):
    """Network failure or timeout; the operation may be retried later."""

    def __init__(self, message: str, *, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.http_status = http_status


class IntegrityMismatch(ModkeeperError):
    """Downloaded or stored bytes do not match the expected checksum."""

    def __init__(self, message: str, *, expected: str, actual: str, algorithm: str) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual
        self.algorithm = algorithm


class FilesystemError(ModkeeperError):
    """Permission, disk space or other local I/O failure."""


class ValidationError(ModkeeperError):
    """Caller input was rejected before any I/O took place."""


class ManifestError(ModkeeperError):
    """Raised when the mods manifest cannot be loaded or used."""
