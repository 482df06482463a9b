from __future__ import annotations

import importlib

import pytest
from sqlalchemy import inspect as sa_inspect

from plugindb.core.errors import ConfigurationError, EntityScanError
from plugindb.db.base import is_entity_class
from plugindb.db.connection import ConnectionSource, scan_entities


def _names(entities):
    return [f"{entity.__module__}.{entity.__qualname__}" for entity in entities]


def test_scan_by_package_name_finds_concrete_entities():
    entities = scan_entities("scan_fixtures")
    assert _names(entities) == [
        "scan_fixtures.nested.items.Item",
        "scan_fixtures.world.Region",
    ]


def test_scan_skips_abstract_unmapped_and_foreign_classes():
    names = _names(scan_entities("scan_fixtures"))
    assert not any(name.endswith(".Tracked") for name in names)
    assert not any(name.endswith(".RegionView") for name in names)
    assert not any(name.endswith(".Player") for name in names)


def test_scan_accepts_module_object():
    package = importlib.import_module("scan_fixtures.nested")
    assert _names(scan_entities(package)) == ["scan_fixtures.nested.items.Item"]


def test_scan_anchored_at_class_uses_its_package():
    from scan_fixtures.nested.items import Item

    assert _names(scan_entities(Item)) == ["scan_fixtures.nested.items.Item"]


def test_scan_of_single_module():
    assert _names(scan_entities("scan_fixtures.world")) == ["scan_fixtures.world.Region"]


def test_scan_import_failure_raises_entity_scan_error():
    with pytest.raises(EntityScanError) as exc_info:
        scan_entities("broken_scan")
    assert exc_info.value.detail["module"] == "broken_scan.bad"
    assert isinstance(exc_info.value, ConfigurationError)


def test_scan_rejects_empty_namespace():
    with pytest.raises(ConfigurationError):
        scan_entities("  ")


def test_is_entity_class():
    from game_models import GameBase, PlainRecord, Player
    from scan_fixtures.base import Tracked

    assert is_entity_class(Player)
    assert not is_entity_class(GameBase)
    assert not is_entity_class(Tracked)
    assert not is_entity_class(PlainRecord)
    assert not is_entity_class(Player(id=1, name="x"))


def test_connection_source_scans_namespace(memory_config):
    source = ConnectionSource(memory_config, namespace="scan_fixtures")
    assert [entity.__name__ for entity in source.entities] == ["Item", "Region"]
    with source.create_session_factory() as session_factory:
        tables = set(sa_inspect(session_factory.engine).get_table_names())
        assert tables == {"items", "regions"}
