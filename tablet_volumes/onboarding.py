"""Adding volumes to an existing cluster.

Onboarding must run while the cluster is offline or in a maintenance window;
the cluster lifecycle tooling guarantees that no other process changes the
volume configuration meanwhile. Nothing here takes cluster-wide locks.

Relative directory records name no volume, so every record written before
onboarding resolves against the new volumes without being rewritten.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Iterable, List

from tablet_shared.constants import DATA_VERSION, INSTANCE_ID_DIR, SCHEME_S3, TABLES_DIR, VERSION_DIR
from tablet_shared.errors import DuplicateVolume, VolumeError

from . import config
from .logging_config import log
from .volumes import Volume, VolumeSet, ensure_volume_available


def add_volumes(existing: VolumeSet, new_roots: Iterable[str]) -> VolumeSet:
    """Return a new set with ``new_roots`` appended to ``existing``.

    Args:
        existing: Currently configured volumes; left untouched.
        new_roots: Roots to add, in order.

    Returns:
        VolumeSet: Existing volumes followed by the new ones.

    Raises:
        DuplicateVolume: If a root is already configured or named twice.
    """
    added: List[Volume] = []
    for root in new_roots:
        volume = Volume(root)
        if volume in existing or volume in added:
            raise DuplicateVolume(volume.root)
        added.append(volume)
    return existing.with_volumes(added)


def read_instance_id(volume: Volume) -> str | None:
    """Return the instance id recorded on a volume, if any."""
    names = volume.filesystem().list_dir(f"{volume.root}/{INSTANCE_ID_DIR}")
    return names[0] if names else None


def initialize_volumes(volumes: Iterable[Volume], instance_id: str) -> None:
    """Prepare volumes for an instance: table directory plus id and version markers.

    Raises:
        VolumeError: If a volume already belongs to another instance.
    """
    for volume in volumes:
        recorded = read_instance_id(volume)
        if recorded is not None and recorded != instance_id:
            raise VolumeError(f"volume {volume.root} belongs to instance {recorded}")
        fs = volume.filesystem()
        fs.mkdirs(f"{volume.root}/{TABLES_DIR}")
        fs.write_bytes(f"{volume.root}/{INSTANCE_ID_DIR}/{instance_id}", b"")
        fs.write_bytes(f"{volume.root}/{VERSION_DIR}/{DATA_VERSION}", b"")
        log.info("Initialized volume %s for instance %s", volume.root, instance_id)


async def onboard(
    config_path: str | Path,
    new_roots: Iterable[str],
    instance_id: str | None = None,
    cfg: dict | None = None,
) -> VolumeSet:
    """Add volumes to the configured set, initialize them and persist the property.

    Args:
        config_path: Config file whose ``instance.volumes`` property is rewritten.
        new_roots: Volume roots to add.
        instance_id: Instance id to stamp on new volumes; read from the
            existing volumes when omitted.
        cfg: Already loaded configuration; loaded from ``config_path`` when None.

    Returns:
        VolumeSet: The updated volume set. The cluster must be restarted
        before new writes use it.

    Raises:
        DuplicateVolume: Before any change when a root is already configured.
        VolumeError: When a new volume is unusable or the instance id is unknown.
    """
    # Fail before touching any volume if the property cannot be persisted.
    config.read_config_file(config_path)
    cfg = cfg if cfg is not None else config.set_config(config_path)
    existing = config.instance_volumes(cfg)
    updated = add_volumes(existing, new_roots)
    fresh = [v for v in updated if v not in existing]
    if not fresh:
        log.info("No new volumes to add")
        return existing

    if instance_id is None:
        for volume in existing:
            instance_id = await asyncio.to_thread(read_instance_id, volume)
            if instance_id:
                break
    if not instance_id:
        raise VolumeError("cannot determine instance id from existing volumes")

    for volume in fresh:
        if volume.scheme == SCHEME_S3 and not await ensure_volume_available(volume):
            raise VolumeError(f"volume {volume.root} is not reachable")

    await asyncio.to_thread(initialize_volumes, fresh, instance_id)
    config.write_config_volumes(config_path, updated)
    log.info(
        "Added %d volume(s): %s; restart the cluster before using them",
        len(fresh),
        ", ".join(v.root for v in fresh),
    )
    return updated


__all__ = ["add_volumes", "initialize_volumes", "onboard", "read_instance_id"]
