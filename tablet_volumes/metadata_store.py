"""Access to the per-tablet directory column of the metadata table.

Rows are keyed ``<tableId>;<endRow>`` with the last tablet of a table keyed
``<tableId><``, so the rows of one table sort contiguously and the default
tablet sorts after every split. Each tablet row carries its directory under
``srv:dir`` and, once assigned, the chosen volume under ``srv:vol``.
"""

from __future__ import annotations

import asyncio
import bisect
import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

from tablet_shared import paths
from tablet_shared.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_TABLET_MARKER,
    DIRECTORY_COLUMN,
    END_ROW_SEPARATOR,
    VOLUME_COLUMN,
)
from tablet_shared.errors import TableNotFound, TransientWriteError

from .logging_config import log
from .volumes import VolumeSet

METADATA_FILE = "metadata.json"


def column_name(column: Tuple[str, str]) -> str:
    """Return the ``family:qualifier`` spelling of a column."""
    family, qualifier = column
    return f"{family}:{qualifier}"


DIR_COL = column_name(DIRECTORY_COLUMN)
VOL_COL = column_name(VOLUME_COLUMN)


@dataclass(frozen=True, order=True)
class TabletKey:
    """Identifies a tablet by table id and end row (None for the last tablet)."""

    table_id: str
    end_row: Optional[str] = None

    @property
    def row(self) -> str:
        if self.end_row is None:
            return f"{self.table_id}{DEFAULT_TABLET_MARKER}"
        return f"{self.table_id}{END_ROW_SEPARATOR}{self.end_row}"

    @classmethod
    def from_row(cls, row: str) -> "TabletKey":
        """Decode a metadata row key.

        Raises:
            ValueError: If the row carries neither separator.
        """
        sep = row.find(END_ROW_SEPARATOR)
        if sep == -1:
            if len(row) > 1 and row.endswith(DEFAULT_TABLET_MARKER):
                return cls(row[:-1], None)
            raise ValueError(f"malformed metadata row: {row!r}")
        if sep == 0:
            raise ValueError(f"malformed metadata row: {row!r}")
        return cls(row[:sep], row[sep + 1 :])

    def __str__(self) -> str:
        return self.row


def table_range(table_id: str) -> Tuple[str, str]:
    """Return the inclusive row range holding every tablet of ``table_id``."""
    return f"{table_id}{END_ROW_SEPARATOR}", f"{table_id}{DEFAULT_TABLET_MARKER}"


class LocalMetadataTable:
    """Sorted, lock-protected metadata rows with optional JSON persistence.

    Every mutation touches exactly one row and is applied under the table lock,
    so readers never observe a partially written row. When a path is given the
    whole table is rewritten atomically after each mutation.
    """

    def __init__(self, path: Path | None = None):
        self._lock = threading.Lock()
        self._rows: Dict[str, Dict[str, str]] = {}
        self._sorted: List[str] = []
        self._tables: Dict[str, str] = {}
        self.path = Path(path) if path else None
        if self.path and self.path.exists():
            self._load()

    @classmethod
    def open(cls, coordinator: str, instance: str) -> "LocalMetadataTable":
        """Open the metadata table of ``instance`` below a coordinator directory.

        Args:
            coordinator: Local directory or ``file://`` URI holding instance state.
            instance: Instance name.

        Returns:
            LocalMetadataTable: Table backed by ``<coordinator>/<instance>/metadata.json``.
        """
        parsed = urlparse(coordinator)
        base = Path(parsed.path if parsed.scheme == "file" else coordinator)
        return cls(base / instance / METADATA_FILE)

    def _load(self) -> None:
        with self.path.open("r", encoding="utf-8") as fh:
            data = json.load(fh) or {}
        self._tables = dict(data.get("tables") or {})
        self._rows = {row: dict(cells) for row, cells in (data.get("rows") or {}).items()}
        self._sorted = sorted(self._rows)
        log.debug("Loaded %d metadata rows from %s", len(self._rows), self.path)

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"tables": self._tables, "rows": {row: self._rows[row] for row in self._sorted}}
        fd, tmp_name = tempfile.mkstemp(prefix=".metadata-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=1, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def create_table(self, name: str, table_id: str) -> None:
        """Register a table name to id mapping."""
        with self._lock:
            if name in self._tables:
                raise ValueError(f"table already exists: {name}")
            self._tables[name] = table_id
            self._save()

    def tables(self) -> Dict[str, str]:
        """Return a copy of the table name to id mapping."""
        with self._lock:
            return dict(self._tables)

    def read_row(self, row: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._rows.get(row, {}))

    def scan(
        self,
        start_row: str | None = None,
        stop_row: str | None = None,
        columns: Iterable[str] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> Iterator[List[Tuple[str, Dict[str, str]]]]:
        """Yield batches of ``(row, cells)`` between two inclusive row bounds.

        Each batch is read under the lock from current state, so later batches
        observe writes made after the scan started.
        """
        wanted = set(columns) if columns else None
        cursor = start_row
        inclusive = True
        while True:
            with self._lock:
                if cursor is None:
                    idx = 0
                elif inclusive:
                    idx = bisect.bisect_left(self._sorted, cursor)
                else:
                    idx = bisect.bisect_right(self._sorted, cursor)
                batch: List[Tuple[str, Dict[str, str]]] = []
                last = None
                exhausted = True
                while idx < len(self._sorted):
                    row = self._sorted[idx]
                    if stop_row is not None and row > stop_row:
                        break
                    if len(batch) >= batch_size:
                        exhausted = False
                        break
                    cells = self._rows[row]
                    if wanted is not None:
                        cells = {c: v for c, v in cells.items() if c in wanted}
                    if cells:
                        batch.append((row, dict(cells)))
                    last = row
                    idx += 1
            if batch:
                yield batch
            if exhausted:
                return
            cursor, inclusive = last, False

    def mutate(
        self,
        row: str,
        updates: Dict[str, str | None],
        expected: Dict[str, str | None] | None = None,
    ) -> bool:
        """Apply a single-row mutation, optionally conditional on current values.

        Args:
            row: Row key to mutate.
            updates: Column values to set; ``None`` deletes the column.
            expected: Column values that must hold before the update
                (``None`` meaning absent).

        Returns:
            bool: False if a condition did not hold; nothing is written then.
        """
        with self._lock:
            current = self._rows.get(row, {})
            for col, value in (expected or {}).items():
                if current.get(col) != value:
                    return False
            new_cells = dict(current)
            for col, value in updates.items():
                if value is None:
                    new_cells.pop(col, None)
                else:
                    new_cells[col] = value
            if row not in self._rows:
                bisect.insort(self._sorted, row)
            self._rows[row] = new_cells
            self._save()
            return True


@dataclass(frozen=True)
class DirectoryEntry:
    """One tablet's directory cell as read by a scan.

    The row key is decoded on access so that a row with a malformed key
    still reaches the caller and fails on its own.
    """

    row: str
    value: str
    volume: Optional[str] = None

    @property
    def key(self) -> TabletKey:
        """Decoded row key; raises ``ValueError`` for malformed rows."""
        return TabletKey.from_row(self.row)

    def record(self, volume_roots: Iterable[str]) -> paths.DirectoryRecord:
        """Parse the stored value; raises ``UnrecognizedPathFormat``."""
        return paths.parse(self.value, volume_roots, self.key.table_id)


class MetadataDirectoryStore:
    """Async access to tablet directory records.

    Blocking backend calls run in worker threads so many tablets can be
    rewritten concurrently from one event loop.
    """

    def __init__(self, table: LocalMetadataTable, batch_size: int = DEFAULT_BATCH_SIZE):
        self.table = table
        self.batch_size = batch_size

    async def table_id(self, table: str) -> str:
        """Resolve a table name (or id) to its id.

        Raises:
            TableNotFound: If neither a name nor an id matches.
        """
        mapping = await asyncio.to_thread(self.table.tables)
        if table in mapping:
            return mapping[table]
        if table in mapping.values():
            return table
        raise TableNotFound(table)

    async def scan_directories(self, table_id: str | None = None) -> AsyncIterator[DirectoryEntry]:
        """Yield the directory entry of every tablet of a table, or of all tables.

        Every call starts a fresh read of the metadata table.
        """
        start, stop = table_range(table_id) if table_id is not None else (None, None)
        batches = self.table.scan(start, stop, columns=(DIR_COL, VOL_COL), batch_size=self.batch_size)
        while True:
            batch = await asyncio.to_thread(next, batches, None)
            if batch is None:
                return
            for row, cells in batch:
                if DIR_COL not in cells:
                    continue
                yield DirectoryEntry(row, cells[DIR_COL], cells.get(VOL_COL))

    async def read_directory(self, key: TabletKey) -> DirectoryEntry | None:
        """Return the current directory entry of one tablet."""
        cells = await asyncio.to_thread(self.table.read_row, key.row)
        if DIR_COL not in cells:
            return None
        return DirectoryEntry(key.row, cells[DIR_COL], cells.get(VOL_COL))

    async def write_directory(
        self,
        key: TabletKey,
        record: paths.DirectoryRecord,
        volume: str | None = None,
        expected: str | None = None,
    ) -> bool:
        """Write a tablet's directory and chosen volume as one row mutation.

        Args:
            key: Tablet to update.
            record: New directory record.
            volume: Root of the volume the record is anchored to.
            expected: Directory value the row must still hold; skips the
                check when None.

        Returns:
            bool: False if the row changed since it was read.

        Raises:
            TransientWriteError: On backend timeouts or connection failures.
        """
        updates = {DIR_COL: paths.encode(record), VOL_COL: volume}
        conditions = {DIR_COL: expected} if expected is not None else None
        try:
            return await asyncio.to_thread(self.table.mutate, key.row, updates, conditions)
        except (TimeoutError, ConnectionError) as exc:
            raise TransientWriteError(f"write of {key} failed: {exc}") from exc

    async def count_for_table(self, table_id: str | None = None) -> int:
        """Return the number of tablet rows carrying a directory."""
        count = 0
        async for _entry in self.scan_directories(table_id):
            count += 1
        return count

    async def locate(self, key: TabletKey, volume_set: VolumeSet) -> str:
        """Return the absolute directory a tablet currently resolves to.

        Relative records resolve against their chosen volume, or the first
        configured volume when none is recorded or it is no longer configured.
        """
        entry = await self.read_directory(key)
        if entry is None:
            raise KeyError(f"no directory recorded for tablet {key}")
        record = entry.record(volume_set.roots)
        volume = volume_set.get(entry.volume) if entry.volume else None
        root = volume.root if volume else volume_set.default().root
        return paths.resolve(record, root, key.table_id)


__all__ = [
    "DirectoryEntry",
    "LocalMetadataTable",
    "MetadataDirectoryStore",
    "TabletKey",
    "column_name",
    "table_range",
]
