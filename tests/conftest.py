from __future__ import annotations

import pytest

from game_models import Guild, Player, Warp
from game_repositories import GuildRepository, PlayerRepository
from plugindb.core.config import DatabaseConfig
from plugindb.core.metrics import metrics_registry
from plugindb.db.connection import build_session_factory

ENTITIES = [Player, Guild, Warp]


@pytest.fixture()
def memory_config() -> DatabaseConfig:
    return DatabaseConfig(url="sqlite:///:memory:", username="sa", password="")


@pytest.fixture()
def factory(memory_config):
    session_factory = build_session_factory(memory_config, ENTITIES)
    yield session_factory
    session_factory.close()


@pytest.fixture()
def file_factory(tmp_path):
    """File-backed SQLite so separate sessions get separate pooled connections."""

    config = DatabaseConfig(url=f"sqlite:///{tmp_path / 'plugin.db'}")
    session_factory = build_session_factory(
        config,
        ENTITIES,
        pool={"minSize": 2, "maxSize": 4, "acquireIncrement": 2, "timeoutSeconds": 5},
    )
    yield session_factory
    session_factory.close()


@pytest.fixture()
def players(factory) -> PlayerRepository:
    return PlayerRepository(factory)


@pytest.fixture()
def guilds(factory) -> GuildRepository:
    return GuildRepository(factory)


@pytest.fixture()
def clean_metrics():
    metrics_registry.reset()
    yield metrics_registry
    metrics_registry.reset()
