"""Shared exports for the volume core and the admin CLI."""

from .constants import (  # noqa: F401
    DIRECTORY_COLUMN,
    TABLES_DIR,
    VOLUME_COLUMN,
)
from .errors import (  # noqa: F401
    ConcurrentModification,
    DuplicateVolume,
    InsufficientVolumes,
    InvalidVolume,
    NoVolumesConfigured,
    ScanInterrupted,
    TableNotFound,
    TransientWriteError,
    UnrecognizedPathFormat,
    VolumeError,
)
from .paths import DirectoryRecord, LegacyAbsolute, Relative  # noqa: F401

__all__ = [
    "DIRECTORY_COLUMN",
    "TABLES_DIR",
    "VOLUME_COLUMN",
    "ConcurrentModification",
    "DuplicateVolume",
    "InsufficientVolumes",
    "InvalidVolume",
    "NoVolumesConfigured",
    "ScanInterrupted",
    "TableNotFound",
    "TransientWriteError",
    "UnrecognizedPathFormat",
    "VolumeError",
    "DirectoryRecord",
    "LegacyAbsolute",
    "Relative",
]
