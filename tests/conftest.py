"""Test configuration that ensures project modules are importable and async tests run."""

import sys
from pathlib import Path

import pytest

pytest_plugins = ("pytest_asyncio",)

# Add project root to sys.path so `tablet_volumes` and `tablet_shared` can be imported in tests.
ROOT = Path(__file__).resolve().parent.parent
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from tablet_volumes.metadata_store import (  # noqa: E402
    DIR_COL,
    LocalMetadataTable,
    MetadataDirectoryStore,
    TabletKey,
)

SPLIT_POINTS = "a,b,c,d,e,f,g,h,i,j,k,l,m,n,o,p,q,r,s,t,u,v,w,x,y,z".split(",")


def _seed_table(table, name, table_id, splits, volume_root):
    """Register a table and write one legacy directory row per tablet.

    Args:
        table: LocalMetadataTable to populate.
        name: Table name.
        table_id: Table id.
        splits: Split points; the table gets ``len(splits) + 1`` tablets.
        volume_root: Volume the legacy directories live on.

    Returns:
        list[TabletKey]: Keys of the created tablets in row order.
    """
    table.create_table(name, table_id)
    keys = [TabletKey(table_id, split) for split in splits] + [TabletKey(table_id, None)]
    for i, key in enumerate(keys):
        directory = "default_tablet" if key.end_row is None else f"t-{i:07d}"
        table.mutate(key.row, {DIR_COL: f"{volume_root}/tables/{table_id}/{directory}"})
    return keys


@pytest.fixture
def volume_roots(tmp_path):
    """Two local volume roots as file:// URIs."""
    roots = []
    for name in ("v1", "v2"):
        path = tmp_path / "volumes" / name
        path.mkdir(parents=True)
        roots.append(f"file://{path}")
    return roots


@pytest.fixture
def metadata_table():
    return LocalMetadataTable()


@pytest.fixture
def store(metadata_table):
    return MetadataDirectoryStore(metadata_table, batch_size=4)


@pytest.fixture
def splits():
    """The 26 single-letter split points used by the end-to-end scenario."""
    return list(SPLIT_POINTS)


@pytest.fixture
def seed_table():
    return _seed_table
