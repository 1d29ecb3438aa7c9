"""Error taxonomy shared by the volume core and the admin CLI."""

from __future__ import annotations


class VolumeError(Exception):
    """Base class for volume assignment and onboarding failures."""


class NoVolumesConfigured(VolumeError):
    """Raised when no volume is configured; fatal to a whole pass."""


class InsufficientVolumes(NoVolumesConfigured):
    """Raised when fewer volumes are configured than a pass requires."""

    def __init__(self, configured: int, required: int):
        super().__init__(
            f"not enough volumes configured: {configured} configured, {required} required"
        )
        self.configured = configured
        self.required = required


class UnrecognizedPathFormat(VolumeError, ValueError):
    """Raised when a directory record is neither legacy absolute nor relative."""

    def __init__(self, value: str, reason: str = ""):
        message = f"unrecognized directory format: {value!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.value = value


class DuplicateVolume(VolumeError):
    """Raised when onboarding names a volume root that is already configured."""

    def __init__(self, root: str):
        super().__init__(f"volume already configured: {root}")
        self.root = root


class InvalidVolume(VolumeError, ValueError):
    """Raised for a volume root with an unsupported shape or scheme."""


class TransientWriteError(VolumeError):
    """Raised when a metadata write failed in a way that may succeed on retry."""


class ConcurrentModification(VolumeError):
    """Raised when a conditional metadata write lost against another writer."""


class ScanInterrupted(VolumeError):
    """Raised when a pass is cancelled cooperatively between tablets."""


class TableNotFound(VolumeError):
    """Raised when a target table name or id is unknown."""

    def __init__(self, table: str):
        super().__init__(f"table not found: {table}")
        self.table = table
