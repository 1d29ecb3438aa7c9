"""Directory record codec for tablet storage locations.

A tablet directory is stored in the metadata table in one of two shapes:

* legacy absolute: ``<volume-root>/tables/<tableId>/<dirName>``
* relative: ``/<dirName>``

A relative record carries no volume, so it resolves against any configured
volume combined with the owning table id. All shape detection happens in
:func:`parse`; callers work on the tagged records only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

from .constants import SCHEME_FILE, TABLES_DIR
from .errors import UnrecognizedPathFormat

SEPARATOR = "/"


@dataclass(frozen=True)
class LegacyAbsolute:
    """Directory recorded as a full path on a specific volume."""

    path: str
    volume_root: str
    table_id: str
    dir_name: str


@dataclass(frozen=True)
class Relative:
    """Volume-agnostic directory recorded by name only."""

    dir_name: str


DirectoryRecord = Union[LegacyAbsolute, Relative]


def normalize_root(root: str) -> str:
    """Return a volume root without trailing separators.

    Args:
        root: Volume root URI or path.

    Returns:
        str: Root suitable for prefix matching and joining.
    """
    stripped = root.strip()
    trimmed = stripped.rstrip(SEPARATOR)
    if not trimmed or trimmed.endswith(":"):
        # "/" or "file:///" style roots keep their separator-only tail.
        return stripped
    return trimmed


def table_dir(volume_root: str, table_id: str) -> str:
    """Return ``<volume-root>/tables/<tableId>``."""
    return f"{normalize_root(volume_root)}/{TABLES_DIR}/{table_id}"


def parse(value: str, volume_roots: Iterable[str], table_id: str | None = None) -> DirectoryRecord:
    """Classify a stored directory value.

    Args:
        value: Raw metadata cell value.
        volume_roots: Known volume roots; only these prefixes count as legacy.
        table_id: Owning table id. A legacy path naming another table is
            rejected rather than silently rewritten.

    Returns:
        DirectoryRecord: ``LegacyAbsolute`` or ``Relative``.

    Raises:
        UnrecognizedPathFormat: If ``value`` matches neither shape.
    """
    if not isinstance(value, str) or not value:
        raise UnrecognizedPathFormat(str(value), "empty value")

    legacy = _parse_legacy(value, volume_roots, table_id)
    if legacy is not None:
        return legacy

    if value.startswith(SEPARATOR) and "://" not in value:
        name = value[1:]
        if SEPARATOR in name:
            raise UnrecognizedPathFormat(value, "relative record must be a single segment")
        _check_dir_name(value, name)
        return Relative(name)

    raise UnrecognizedPathFormat(value, "no configured volume root matches")


def _parse_legacy(value: str, volume_roots: Iterable[str], table_id: str | None) -> LegacyAbsolute | None:
    """Return the legacy record for ``value`` if it starts with a known root."""
    # Longest root first so nested roots (``/a`` and ``/a/b``) match precisely.
    candidates = sorted((normalize_root(r) for r in volume_roots), key=len, reverse=True)
    for root in candidates:
        for alias in _root_aliases(root):
            if not value.startswith(alias + SEPARATOR):
                continue
            parts = value[len(alias) + 1 :].split(SEPARATOR)
            if len(parts) != 3 or parts[0] != TABLES_DIR:
                raise UnrecognizedPathFormat(value, f"expected {alias}/{TABLES_DIR}/<tableId>/<dir>")
            owner, name = parts[1], parts[2]
            if table_id is not None and owner != table_id:
                raise UnrecognizedPathFormat(value, f"directory belongs to table {owner}, not {table_id}")
            _check_dir_name(value, name)
            return LegacyAbsolute(path=value, volume_root=root, table_id=owner, dir_name=name)
    return None


def _root_aliases(root: str) -> tuple[str, ...]:
    """Return spellings under which a root may appear in stored paths."""
    prefix = f"{SCHEME_FILE}://"
    if root.startswith(prefix):
        return (root, root[len(prefix) :])
    return (root,)


def _check_dir_name(value: str, name: str) -> None:
    if not name or name in (".", ".."):
        raise UnrecognizedPathFormat(value, "missing directory name")


def is_legacy_absolute(record: DirectoryRecord) -> bool:
    return isinstance(record, LegacyAbsolute)


def to_relative(record: DirectoryRecord) -> Relative:
    """Strip the ``<volume-root>/tables/<tableId>`` prefix of a legacy record.

    Relative records are returned unchanged.
    """
    if isinstance(record, Relative):
        return record
    return Relative(record.dir_name)


def resolve(record: DirectoryRecord, volume_root: str, table_id: str) -> str:
    """Resolve a record to the absolute directory path.

    Args:
        record: Parsed directory record.
        volume_root: Volume the relative record is anchored to.
        table_id: Owning table id.

    Returns:
        str: Absolute path; legacy records resolve to their stored path.
    """
    if isinstance(record, LegacyAbsolute):
        return record.path
    return f"{table_dir(volume_root, table_id)}/{record.dir_name}"


def encode(record: DirectoryRecord) -> str:
    """Return the metadata cell value for ``record``."""
    if isinstance(record, LegacyAbsolute):
        return record.path
    return f"{SEPARATOR}{record.dir_name}"


__all__ = [
    "DirectoryRecord",
    "LegacyAbsolute",
    "Relative",
    "encode",
    "is_legacy_absolute",
    "normalize_root",
    "parse",
    "resolve",
    "table_dir",
    "to_relative",
]
