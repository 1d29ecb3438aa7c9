"""Online re-randomization of tablet directories across configured volumes.

One pass scans the directory column of a table (or of every table), draws a
volume for each tablet and writes the relative directory plus the drawn volume
back as a single-row mutation. Files already written stay where they are; only
future lookups follow the new volume.

Tablets are processed by a bounded pool of asyncio workers fed from the scan
through a queue sized to the scan batch. Per-tablet failures are recorded and
the pass continues; only a missing volume configuration aborts it.
"""

from __future__ import annotations

import asyncio
import enum
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tablet_shared import paths
from tablet_shared.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_RETRY_DELAY,
    DEFAULT_WORKERS,
    DEFAULT_WRITE_RETRIES,
)
from tablet_shared.errors import (
    ConcurrentModification,
    InsufficientVolumes,
    NoVolumesConfigured,
    ScanInterrupted,
    TransientWriteError,
)

from . import assigner
from .logging_config import log
from .metadata_store import DirectoryEntry, MetadataDirectoryStore, TabletKey
from .volumes import VolumeSet


class PassState(enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    ASSIGNING = "assigning"
    WRITING = "writing"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


_ORDER = [
    PassState.IDLE,
    PassState.SCANNING,
    PassState.ASSIGNING,
    PassState.WRITING,
    PassState.REPORTING,
    PassState.DONE,
]
_TERMINAL = (PassState.DONE, PassState.FAILED)


@dataclass
class TabletFailure:
    tablet: str
    error: str
    message: str


@dataclass
class RebalanceSummary:
    """Counts reported at the end of a pass, complete or not."""

    target: str
    examined: int = 0
    rewritten: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    failures: List[TabletFailure] = field(default_factory=list)
    per_volume: Dict[str, int] = field(default_factory=dict)

    @property
    def exit_status(self) -> int:
        """Return 0 only for a complete pass without tablet failures."""
        return 0 if self.failed == 0 and not self.cancelled else 1

    def as_dict(self) -> Dict:
        return {
            "target": self.target,
            "examined": self.examined,
            "rewritten": self.rewritten,
            "skipped": self.skipped,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "perVolume": dict(self.per_volume),
            "failures": [
                {"tablet": f.tablet, "error": f.error, "message": f.message} for f in self.failures
            ],
            "exitStatus": self.exit_status,
        }


class RandomizeVolumesOperation:
    """Runs one rebalance pass over a table or over all tables.

    Args:
        store: Metadata directory store.
        volume_set: Volumes to spread tablets over; read-only for the pass.
        table: Table name or id; None targets every table.
        rng: Random source providing ``choice``; seeded sources make a pass
            reproducible.
        workers: Number of concurrent tablet workers.
        batch_size: Bound on tablets queued ahead of the workers.
        write_retries: Retries of a transiently failing write per tablet.
        retry_delay: Base delay in seconds between retries, grown linearly.
        min_volumes: Fewest volumes a pass accepts.
        create_directories: Create each new directory on its chosen volume
            before updating metadata.
        cancel_event: Set to stop the pass between tablets.
    """

    def __init__(
        self,
        store: MetadataDirectoryStore,
        volume_set: VolumeSet,
        table: str | None = None,
        rng: random.Random | assigner.VolumeDeck | None = None,
        workers: int = DEFAULT_WORKERS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        write_retries: int = DEFAULT_WRITE_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        min_volumes: int = 1,
        create_directories: bool = False,
        cancel_event: asyncio.Event | None = None,
    ):
        self.store = store
        self.volume_set = volume_set
        self.table = table
        self.rng = rng if rng is not None else assigner.VolumeDeck()
        self.workers = max(1, int(workers))
        self.batch_size = max(1, int(batch_size))
        self.write_retries = max(0, int(write_retries))
        self.retry_delay = retry_delay
        self.min_volumes = max(1, int(min_volumes))
        self.create_directories = create_directories
        self.cancel_event = cancel_event or asyncio.Event()
        self.state = PassState.IDLE
        self.summary = RebalanceSummary(target=table or "*")
        self._fatal: Optional[BaseException] = None

    def _transition(self, new_state: PassState) -> None:
        if self.state in _TERMINAL:
            raise RuntimeError(f"pass already finished in state {self.state.value}")
        if new_state is not PassState.FAILED and _ORDER.index(new_state) <= _ORDER.index(self.state):
            raise RuntimeError(f"illegal transition {self.state.value} -> {new_state.value}")
        log.debug("Rebalance %s: %s -> %s", self.summary.target, self.state.value, new_state.value)
        self.state = new_state

    def _advance(self, new_state: PassState) -> None:
        """Move forward to ``new_state`` unless the pass is already there."""
        if self.state not in _TERMINAL and _ORDER.index(self.state) < _ORDER.index(new_state):
            self._transition(new_state)

    def _check_volumes(self) -> None:
        if not len(self.volume_set):
            raise NoVolumesConfigured("no volumes configured")
        if len(self.volume_set) < self.min_volumes:
            raise InsufficientVolumes(len(self.volume_set), self.min_volumes)

    async def run(self) -> RebalanceSummary:
        """Execute the pass.

        Returns:
            RebalanceSummary: Final counts, including after cancellation.

        Raises:
            NoVolumesConfigured: Before any write when volumes are missing.
            TableNotFound: When the target table does not exist.
        """
        if self.state is not PassState.IDLE:
            raise RuntimeError("a pass can only be run once")
        try:
            self._check_volumes()
            table_id = await self.store.table_id(self.table) if self.table else None
        except Exception as exc:
            log.error("Rebalance of %s aborted: %s", self.summary.target, exc)
            self._transition(PassState.FAILED)
            raise

        self._transition(PassState.SCANNING)
        log.info(
            "Rebalancing tablets of %s across %d volumes: %s",
            self.summary.target,
            len(self.volume_set),
            ", ".join(self.volume_set.roots),
        )

        queue: asyncio.Queue = asyncio.Queue(maxsize=self.batch_size)
        tasks = [asyncio.create_task(self._worker(queue)) for _ in range(self.workers)]
        try:
            try:
                async for entry in self.store.scan_directories(table_id):
                    if self._fatal is not None:
                        break
                    if self.cancel_event.is_set():
                        raise ScanInterrupted(f"rebalance of {self.summary.target} cancelled")
                    await queue.put(entry)
            except ScanInterrupted as exc:
                log.warning("%s; reporting partial results", exc)
                self.summary.cancelled = True
            for _ in tasks:
                await queue.put(None)
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._transition(PassState.FAILED)
            raise

        if self._fatal is not None:
            log.error("Rebalance of %s aborted: %s", self.summary.target, self._fatal)
            self._transition(PassState.FAILED)
            raise self._fatal

        if self.cancel_event.is_set():
            self.summary.cancelled = True
        self._advance(PassState.REPORTING)
        self._report()
        self._transition(PassState.DONE)
        return self.summary

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            entry = await queue.get()
            if entry is None:
                return
            # Keep draining after an abort so the producer never blocks.
            if self._fatal is not None or self.cancel_event.is_set():
                continue
            try:
                await self._process(entry)
            except NoVolumesConfigured as exc:
                self._fatal = exc

    async def _process(self, entry: DirectoryEntry) -> None:
        self.summary.examined += 1
        try:
            record = entry.record(self.volume_set.roots)
            self._advance(PassState.ASSIGNING)
            assignment = assigner.assign(record, self.volume_set, self.rng, entry.volume)
            volume_root = assignment.volume.root
            if not assignment.changed:
                log.debug("Tablet %s already on %s", entry.key, volume_root)
                self.summary.skipped += 1
                self._count_volume(volume_root)
                return
            if self.create_directories:
                await self._create_directory(entry.key, assignment)
            self._advance(PassState.WRITING)
            await self._write(entry, assignment)
        except NoVolumesConfigured:
            raise
        except Exception as exc:  # noqa: BLE001
            self._record_failure(entry.row, exc)
            return
        log.debug(
            "Tablet %s: %s -> %s on %s",
            entry.key,
            entry.value,
            paths.encode(assignment.record),
            volume_root,
        )
        self.summary.rewritten += 1
        self._count_volume(volume_root)

    async def _create_directory(self, key: TabletKey, assignment: assigner.Assignment) -> None:
        target = paths.resolve(assignment.record, assignment.volume.root, key.table_id)
        await asyncio.to_thread(assignment.volume.filesystem().mkdirs, target)

    async def _write(self, entry: DirectoryEntry, assignment: assigner.Assignment) -> None:
        """Write with bounded retries of transient failures.

        A conditional write that loses after a transient error is checked
        against the row: the earlier attempt may have been applied.
        """
        volume_root = assignment.volume.root
        attempt = 0
        while True:
            attempt += 1
            try:
                written = await self.store.write_directory(
                    entry.key, assignment.record, volume_root, expected=entry.value
                )
            except TransientWriteError as exc:
                if attempt > self.write_retries:
                    raise
                log.warning(
                    "Transient failure writing tablet %s (attempt %d/%d): %s",
                    entry.key,
                    attempt,
                    self.write_retries + 1,
                    exc,
                )
                await asyncio.sleep(self.retry_delay * attempt)
                continue
            if written:
                return
            if attempt > 1 and await self._already_written(entry.key, assignment):
                return
            raise ConcurrentModification(f"tablet {entry.key} changed during rebalance")

    async def _already_written(self, key: TabletKey, assignment: assigner.Assignment) -> bool:
        current = await self.store.read_directory(key)
        return (
            current is not None
            and current.value == paths.encode(assignment.record)
            and current.volume == assignment.volume.root
        )

    def _count_volume(self, root: str) -> None:
        self.summary.per_volume[root] = self.summary.per_volume.get(root, 0) + 1

    def _record_failure(self, row: str, exc: Exception) -> None:
        log.warning("Failed to rewrite directory of tablet %s: %s", row, exc)
        self.summary.failed += 1
        self.summary.failures.append(TabletFailure(row, type(exc).__name__, str(exc)))

    def _report(self) -> None:
        s = self.summary
        log.info(
            "Rebalance of %s %s: examined=%d rewritten=%d skipped=%d failed=%d",
            s.target,
            "cancelled" if s.cancelled else "finished",
            s.examined,
            s.rewritten,
            s.skipped,
            s.failed,
        )
        for root, count in sorted(s.per_volume.items()):
            log.info("  %s: %d tablets", root, count)


async def randomize_volumes(
    store: MetadataDirectoryStore,
    volume_set: VolumeSet,
    table: str | None = None,
    **kwargs,
) -> RebalanceSummary:
    """Run one rebalance pass; see :class:`RandomizeVolumesOperation`."""
    return await RandomizeVolumesOperation(store, volume_set, table=table, **kwargs).run()


__all__ = [
    "PassState",
    "RandomizeVolumesOperation",
    "RebalanceSummary",
    "TabletFailure",
    "randomize_volumes",
]
