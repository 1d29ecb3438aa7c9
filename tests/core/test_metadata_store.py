import json

import pytest

from tablet_shared import paths
from tablet_shared.errors import TableNotFound, TransientWriteError, UnrecognizedPathFormat
from tablet_volumes.metadata_store import (
    DIR_COL,
    VOL_COL,
    LocalMetadataTable,
    MetadataDirectoryStore,
    TabletKey,
    table_range,
)
from tablet_volumes.volumes import VolumeSet


def test_tablet_key_row_encoding():
    assert TabletKey("2", "m").row == "2;m"
    assert TabletKey("2").row == "2<"
    assert TabletKey.from_row("2;m") == TabletKey("2", "m")
    assert TabletKey.from_row("2<") == TabletKey("2", None)
    assert TabletKey.from_row("2;a<") == TabletKey("2", "a<")
    with pytest.raises(ValueError):
        TabletKey.from_row("garbage")


def test_table_range_keeps_default_tablet_last_and_excludes_similar_ids():
    start, stop = table_range("1")
    rows = sorted(["1;a", "1;z", "1<", "10;a", "10<", "2;a"])
    inside = [r for r in rows if start <= r <= stop]
    assert inside == ["1;a", "1;z", "1<"]


def test_local_table_scans_in_batches_and_filters_columns():
    table = LocalMetadataTable()
    for i in range(7):
        table.mutate(f"1;{i}", {DIR_COL: f"/t-{i}", "file:x": "1"})
    table.mutate("2;a", {DIR_COL: "/t-other"})

    batches = list(table.scan("1;", "1<", columns=[DIR_COL], batch_size=3))

    assert [len(b) for b in batches] == [3, 3, 1]
    rows = [row for batch in batches for row, _cells in batch]
    assert rows == [f"1;{i}" for i in range(7)]
    assert all(set(cells) == {DIR_COL} for batch in batches for _row, cells in batch)


def test_local_table_scan_observes_writes_between_batches():
    table = LocalMetadataTable()
    table.mutate("1;a", {DIR_COL: "/t-a"})
    table.mutate("1;c", {DIR_COL: "/t-c"})
    scan = table.scan("1;", "1<", batch_size=1)

    first = next(scan)
    table.mutate("1;b", {DIR_COL: "/t-b"})
    rest = [row for batch in scan for row, _cells in batch]

    assert first[0][0] == "1;a"
    assert rest == ["1;b", "1;c"]


def test_conditional_mutation_rejects_stale_expectation():
    table = LocalMetadataTable()
    table.mutate("1<", {DIR_COL: "/t-1"})

    assert not table.mutate("1<", {DIR_COL: "/t-2"}, expected={DIR_COL: "/t-0"})
    assert table.read_row("1<") == {DIR_COL: "/t-1"}
    assert table.mutate("1<", {DIR_COL: "/t-2", VOL_COL: "file:///v"}, expected={DIR_COL: "/t-1"})
    assert table.read_row("1<") == {DIR_COL: "/t-2", VOL_COL: "file:///v"}
    assert table.mutate("1<", {VOL_COL: None})
    assert table.read_row("1<") == {DIR_COL: "/t-2"}


def test_local_table_persists_atomically(tmp_path):
    table = LocalMetadataTable.open(f"file://{tmp_path}", "inst")
    table.create_table("t1", "1")
    table.mutate("1<", {DIR_COL: "/t-1"})

    path = tmp_path / "inst" / "metadata.json"
    data = json.loads(path.read_text())
    assert data["tables"] == {"t1": "1"}
    assert data["rows"] == {"1<": {DIR_COL: "/t-1"}}
    assert not [p for p in path.parent.iterdir() if p.name.startswith(".metadata-")]

    reopened = LocalMetadataTable.open(str(tmp_path), "inst")
    assert reopened.tables() == {"t1": "1"}
    assert reopened.read_row("1<") == {DIR_COL: "/t-1"}


def test_create_table_rejects_existing_name():
    table = LocalMetadataTable()
    table.create_table("t1", "1")
    with pytest.raises(ValueError):
        table.create_table("t1", "2")


@pytest.mark.asyncio
async def test_scan_directories_yields_one_entry_per_tablet(metadata_table, store, volume_roots, seed_table, splits):
    seed_table(metadata_table, "t1", "1", splits, volume_roots[0])
    seed_table(metadata_table, "t2", "2", ["m"], volume_roots[0])

    entries = [e async for e in store.scan_directories("1")]

    assert len(entries) == len(splits) + 1
    assert entries[-1].key == TabletKey("1", None)
    assert all(volume_roots[0] in e.value for e in entries)
    assert await store.count_for_table("1") == len(splits) + 1
    assert await store.count_for_table("2") == 2
    assert await store.count_for_table() == len(splits) + 3


@pytest.mark.asyncio
async def test_scan_directories_rereads_current_state(metadata_table, store, volume_roots, seed_table):
    seed_table(metadata_table, "t1", "1", ["m"], volume_roots[0])
    first = [e.value async for e in store.scan_directories("1")]

    await store.write_directory(TabletKey("1", "m"), paths.Relative("t-0000000"), volume_roots[1])
    second = [e async for e in store.scan_directories("1")]

    assert first[0].startswith(volume_roots[0])
    assert second[0].value == "/t-0000000"
    assert second[0].volume == volume_roots[1]


@pytest.mark.asyncio
async def test_entry_record_parses_lazily(metadata_table, store):
    metadata_table.mutate("1;a", {DIR_COL: "not-a-path"})
    entries = [e async for e in store.scan_directories("1")]

    assert len(entries) == 1
    with pytest.raises(UnrecognizedPathFormat):
        entries[0].record(["file:///v1"])


@pytest.mark.asyncio
async def test_write_directory_is_conditional(metadata_table, store):
    metadata_table.mutate("1<", {DIR_COL: "/t-1"})
    key = TabletKey("1")

    assert not await store.write_directory(key, paths.Relative("t-1"), "file:///v2", expected="/t-9")
    assert await store.write_directory(key, paths.Relative("t-1"), "file:///v2", expected="/t-1")
    entry = await store.read_directory(key)
    assert (entry.value, entry.volume) == ("/t-1", "file:///v2")


@pytest.mark.asyncio
async def test_write_directory_wraps_timeouts_as_transient(store, monkeypatch):
    def timeout(*_args, **_kwargs):
        raise TimeoutError("metadata server busy")

    monkeypatch.setattr(store.table, "mutate", timeout)

    with pytest.raises(TransientWriteError):
        await store.write_directory(TabletKey("1"), paths.Relative("t-1"), "file:///v1")


@pytest.mark.asyncio
async def test_table_id_resolves_names_and_ids(metadata_table, store):
    metadata_table.create_table("t1", "1")

    assert await store.table_id("t1") == "1"
    assert await store.table_id("1") == "1"
    with pytest.raises(TableNotFound):
        await store.table_id("missing")


@pytest.mark.asyncio
async def test_locate_resolves_against_recorded_volume(metadata_table, store, volume_roots):
    vs = VolumeSet.parse(volume_roots)
    metadata_table.mutate("1;a", {DIR_COL: f"{volume_roots[0]}/tables/1/t-a"})
    metadata_table.mutate("1;b", {DIR_COL: "/t-b"})
    metadata_table.mutate("1<", {DIR_COL: "/t-c", VOL_COL: volume_roots[1]})

    assert await store.locate(TabletKey("1", "a"), vs) == f"{volume_roots[0]}/tables/1/t-a"
    assert await store.locate(TabletKey("1", "b"), vs) == f"{volume_roots[0]}/tables/1/t-b"
    assert await store.locate(TabletKey("1"), vs) == f"{volume_roots[1]}/tables/1/t-c"
    with pytest.raises(KeyError):
        await store.locate(TabletKey("9"), vs)


@pytest.mark.asyncio
async def test_scan_yields_rows_with_undecodable_keys(metadata_table, store):
    metadata_table.mutate("1;a", {DIR_COL: "/t-a"})
    metadata_table.mutate("junkrow", {DIR_COL: "/t-x"})

    entries = [e async for e in store.scan_directories()]

    assert [e.row for e in entries] == ["1;a", "junkrow"]
    assert entries[0].key == TabletKey("1", "a")
    with pytest.raises(ValueError):
        entries[1].key
