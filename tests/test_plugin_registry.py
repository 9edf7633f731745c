import pytest
from hypothesis import given, strategies as st

from cfops.plugin import BackupRestorePlugin, PluginRegistry
from cfops.plugin.proxy import RemoteBackupRestorer
from cfops.plugins.noop import NoopTile


def test_register_and_lookup():
    registry = PluginRegistry()
    tile = NoopTile()
    entry = registry.register("noop-tile", tile)

    assert isinstance(entry, BackupRestorePlugin)
    assert "noop-tile" in registry
    assert registry.get("noop-tile").server() is tile
    assert registry.names() == ["noop-tile"]


def test_last_registration_wins(caplog):
    registry = PluginRegistry()
    first, second = NoopTile(), NoopTile()
    registry.register("noop-tile", first)
    with caplog.at_level("WARNING"):
        registry.register("noop-tile", second)

    assert len(registry) == 1
    assert registry.get("noop-tile").server() is second
    assert "registered twice" in caplog.text


def test_placeholder_overwrite_is_silent(caplog):
    registry = PluginRegistry()
    registry.register("noop-tile", None)
    with caplog.at_level("WARNING"):
        registry.register("noop-tile", None)
    assert "registered twice" not in caplog.text


def test_placeholder_cannot_serve():
    registry = PluginRegistry()
    entry = registry.register("noop-tile", None)
    with pytest.raises(LookupError):
        entry.server()


def test_all_entries_is_a_copy():
    registry = PluginRegistry()
    registry.register("a", NoopTile(name="a"))
    entries = registry.all_entries()
    entries["b"] = BackupRestorePlugin()
    assert "b" not in registry


def test_rejects_blank_names():
    with pytest.raises(ValueError):
        PluginRegistry().register("  ", NoopTile())


def test_registries_are_isolated():
    one, two = PluginRegistry(), PluginRegistry()
    one.register("noop-tile", NoopTile())
    assert "noop-tile" not in two


def test_client_builds_remote_proxy():
    entry = BackupRestorePlugin()
    proxy = entry.client(connection=object(), name="noop-tile")
    assert isinstance(proxy, RemoteBackupRestorer)
    assert proxy.name == "noop-tile"


names = st.text(alphabet="abcdefghijklmnopqrstuvwxyz-", min_size=1, max_size=12).filter(
    lambda s: s.strip("-")
)


@given(st.lists(st.tuples(names, st.integers(min_value=0, max_value=4)), max_size=30))
def test_registry_maps_each_name_to_its_last_capability(registrations):
    tiles = [NoopTile(name=f"tile-{i}") for i in range(5)]
    registry = PluginRegistry()
    expected = {}
    for name, index in registrations:
        registry.register(name, tiles[index])
        expected[name] = tiles[index]

    entries = registry.all_entries()
    assert set(entries) == set(expected)
    for name, tile in expected.items():
        assert entries[name].server() is tile
