"""Volume assignment for tablet directories."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

from tablet_shared import paths
from tablet_shared.constants import STRATEGY_BALANCED, STRATEGY_UNIFORM
from tablet_shared.errors import NoVolumesConfigured

from .volumes import Volume, VolumeSet


@dataclass(frozen=True)
class Assignment:
    """Outcome of assigning one tablet directory to a volume."""

    previous: paths.DirectoryRecord
    record: paths.Relative
    volume: Volume
    changed: bool


class VolumeDeck:
    """Random source that deals volumes from a shuffled deck.

    Each draw is uniform over the volumes, and over any run of draws the
    per-volume counts differ by at most one. Not safe for use from several
    threads at once.
    """

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()
        self._source: Optional[tuple] = None
        self._deck: List = []

    def choice(self, seq: Sequence):
        if not seq:
            raise IndexError("cannot choose from an empty sequence")
        source = tuple(seq)
        if source != self._source:
            self._source = source
            self._deck = []
        if not self._deck:
            self._deck = list(source)
            self.rng.shuffle(self._deck)
        return self._deck.pop()


def assign(
    current: paths.DirectoryRecord,
    volume_set: VolumeSet,
    rng: random.Random | VolumeDeck,
    current_volume: str | None = None,
) -> Assignment:
    """Pick a volume for a tablet and derive its new directory record.

    The directory name is always kept; a legacy absolute record is normalized
    to relative form. No data is copied or moved.

    Args:
        current: Record currently stored for the tablet.
        volume_set: Volumes to draw from.
        rng: Random source providing ``choice``.
        current_volume: Volume root the current record is anchored to, if any.

    Returns:
        Assignment: New relative record and the drawn volume.

    Raises:
        NoVolumesConfigured: If ``volume_set`` is empty.
    """
    if not len(volume_set):
        raise NoVolumesConfigured("cannot assign a directory without configured volumes")
    volume = rng.choice(volume_set.volumes)
    record = paths.to_relative(current)
    changed = paths.is_legacy_absolute(current) or current_volume != volume.root
    return Assignment(previous=current, record=record, volume=volume, changed=changed)


def make_random_source(strategy: str, seed: int | None = None) -> random.Random | VolumeDeck:
    """Return the random source for a rebalance strategy (``balanced`` or ``uniform``)."""
    rng = random.Random(seed)
    if strategy == STRATEGY_UNIFORM:
        return rng
    if strategy == STRATEGY_BALANCED:
        return VolumeDeck(rng)
    raise ValueError(f"unknown rebalance strategy: {strategy}")


__all__ = ["Assignment", "VolumeDeck", "assign", "make_random_source"]
