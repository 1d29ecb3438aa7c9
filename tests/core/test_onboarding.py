import pytest
import yaml

from tablet_shared import paths
from tablet_shared.errors import DuplicateVolume, VolumeError
from tablet_volumes import onboarding
from tablet_volumes.metadata_store import DIR_COL, TabletKey
from tablet_volumes.volumes import Volume, VolumeSet


def test_add_volumes_appends_in_order_without_mutating_existing():
    existing = VolumeSet.parse("file:///v1")

    updated = onboarding.add_volumes(existing, ["file:///v2", "/v3"])

    assert existing.roots == ["file:///v1"]
    assert updated.roots == ["file:///v1", "file:///v2", "file:///v3"]


@pytest.mark.parametrize("new_roots", [["file:///v1/"], ["file:///v2", "/v2"]])
def test_add_volumes_rejects_duplicates(new_roots):
    with pytest.raises(DuplicateVolume):
        onboarding.add_volumes(VolumeSet.parse("file:///v1"), new_roots)


@pytest.mark.asyncio
async def test_relative_records_resolve_against_onboarded_volumes(metadata_table, store, volume_roots):
    before = VolumeSet.parse(volume_roots[:1])
    metadata_table.mutate("1;a", {DIR_COL: "/t-a"})

    after = onboarding.add_volumes(before, volume_roots[1:])

    entry = await store.read_directory(TabletKey("1", "a"))
    record = entry.record(after.roots)
    for volume in after:
        resolved = paths.resolve(record, volume.root, "1")
        assert resolved == f"{volume.root}/tables/1/t-a"
    assert metadata_table.read_row("1;a") == {DIR_COL: "/t-a"}


def test_initialize_volumes_writes_markers(tmp_path):
    volume = Volume(f"file://{tmp_path}/v2")

    onboarding.initialize_volumes([volume], "inst-1")

    assert (tmp_path / "v2" / "tables").is_dir()
    assert (tmp_path / "v2" / "instance_id" / "inst-1").exists()
    assert (tmp_path / "v2" / "version" / "6").exists()
    assert onboarding.read_instance_id(volume) == "inst-1"


def test_initialize_volumes_rejects_foreign_instance(tmp_path):
    volume = Volume(f"file://{tmp_path}/v2")
    onboarding.initialize_volumes([volume], "inst-1")

    with pytest.raises(VolumeError):
        onboarding.initialize_volumes([volume], "inst-2")


@pytest.mark.asyncio
async def test_onboard_persists_property_and_initializes_volume(tmp_path, volume_roots):
    v1 = Volume(volume_roots[0])
    onboarding.initialize_volumes([v1], "inst-1")
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump({"instance": {"name": "prod", "volumes": v1.root}, "rebalance": {"workers": 2}})
    )

    updated = await onboarding.onboard(config_path, [volume_roots[1]])

    assert updated.roots == volume_roots
    data = yaml.safe_load(config_path.read_text())
    assert data["instance"]["volumes"] == ",".join(volume_roots)
    assert data["instance"]["name"] == "prod"
    assert data["rebalance"] == {"workers": 2}
    assert onboarding.read_instance_id(Volume(volume_roots[1])) == "inst-1"


@pytest.mark.asyncio
async def test_onboard_duplicate_leaves_configuration_untouched(tmp_path, volume_roots):
    config_path = tmp_path / "config.yaml"
    original = yaml.safe_dump({"instance": {"volumes": ",".join(volume_roots)}})
    config_path.write_text(original)

    with pytest.raises(DuplicateVolume):
        await onboarding.onboard(config_path, [volume_roots[1]], instance_id="inst-1")

    assert config_path.read_text() == original


@pytest.mark.asyncio
async def test_onboard_requires_an_instance_id(tmp_path, volume_roots):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({"instance": {"volumes": volume_roots[0]}}))

    with pytest.raises(VolumeError):
        await onboarding.onboard(config_path, [volume_roots[1]])

    assert yaml.safe_load(config_path.read_text())["instance"]["volumes"] == volume_roots[0]


@pytest.mark.asyncio
async def test_onboard_refuses_unreadable_config_before_touching_volumes(tmp_path, volume_roots):
    content = f"instance:\n  volumes: {volume_roots[0]}\ns3: {{url: [unclosed\n"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(content)

    with pytest.raises(VolumeError):
        await onboarding.onboard(config_path, [volume_roots[1]], instance_id="inst-1")

    assert config_path.read_text() == content
    assert onboarding.read_instance_id(Volume(volume_roots[1])) is None
