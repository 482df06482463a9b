from __future__ import annotations

import pytest
from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from game_models import Guild, Player
from plugindb.core.config import DatabaseConfig
from plugindb.core.errors import ConfigurationError, PoolTimeoutError, StorageError
from plugindb.core.metrics import get_counters, get_metrics
from plugindb.db.connection import build_session_factory
from plugindb.db.transaction import Borrowed, Owned, TransactionRunner, scope_for


def _count_players(factory) -> int:
    with factory.session() as session:
        return session.scalar(select(func.count()).select_from(Player))


def test_scope_for_maps_targets(factory):
    session = factory.open_session()
    try:
        assert scope_for(factory) == Owned(factory)
        assert scope_for(session) == Borrowed(session)
        explicit = Borrowed(session)
        assert scope_for(explicit) is explicit
    finally:
        session.close()


@pytest.mark.parametrize("target", [None, "sqlite://", object()])
def test_unusable_target_raises_configuration_error(target):
    with pytest.raises(ConfigurationError):
        TransactionRunner.for_target(target)


def test_runner_rejects_bare_values():
    with pytest.raises(ConfigurationError):
        TransactionRunner(None)  # type: ignore[arg-type]
    with pytest.raises(ConfigurationError):
        TransactionRunner(Owned(None))  # type: ignore[arg-type]


def test_owned_read_returns_work_result(factory):
    runner = TransactionRunner.owned(factory)
    assert runner.mode == "owned"
    assert runner.run_read(lambda session: session.execute(text("SELECT 42")).scalar()) == 42


def test_owned_write_commits_and_counts(factory, clean_metrics):
    runner = TransactionRunner.owned(factory)

    def _insert(session: Session) -> int:
        session.add_all([Player(id=1, name="Alice"), Player(id=2, name="Bob")])
        return 2

    assert runner.run_write(_insert) == 2
    assert _count_players(factory) == 2

    counters = get_counters()
    assert counters["db.transaction.commits"] == 1
    assert counters["db.transaction.closes"] == 1
    assert "db.transaction.rollbacks" not in counters
    assert get_metrics()["db.runner.write.owned"]["count"] == 1.0


def test_write_without_count_reports_zero(factory):
    runner = TransactionRunner.owned(factory)
    assert runner.run_write(lambda session: None) == 0


def test_bulk_update_returns_rowcount(factory):
    runner = TransactionRunner.owned(factory)
    runner.run_write(lambda s: len([s.add(Player(id=i, name=f"p{i}", level=1)) for i in range(1, 6)]))

    changed = runner.run_write(
        lambda session: session.execute(update(Player).where(Player.id > 2).values(level=10)).rowcount
    )
    assert changed == 3


def test_owned_failure_rolls_back_every_write_and_reraises_unchanged(factory, clean_metrics):
    runner = TransactionRunner.owned(factory)
    failure = RuntimeError("halfway")

    def _partial(session: Session) -> int:
        session.add(Player(id=1, name="Alice"))
        session.flush()
        session.add(Player(id=2, name="Bob"))
        session.flush()
        raise failure

    with pytest.raises(RuntimeError) as exc_info:
        runner.run_write(_partial)

    assert exc_info.value is failure
    assert _count_players(factory) == 0
    counters = get_counters()
    assert counters["db.transaction.rollbacks"] == 1
    assert counters["db.transaction.closes"] == 1
    assert "db.transaction.commits" not in counters


def test_store_failure_is_wrapped_with_cause(factory):
    runner = TransactionRunner.owned(factory)
    runner.run_write(lambda session: session.add(Guild(id=1, tag="RED")) or 1)

    with pytest.raises(StorageError) as exc_info:
        runner.run_write(lambda session: session.add(Guild(id=2, tag="RED")) or 1)

    assert isinstance(exc_info.value.cause, IntegrityError)
    assert exc_info.value.__cause__ is exc_info.value.cause
    assert runner.run_read(lambda session: session.scalars(select(Guild.tag)).all()) == ["RED"]


def test_owned_sessions_are_closed_on_every_exit_path(file_factory):
    runner = TransactionRunner.owned(file_factory)
    runner.run_read(lambda session: session.execute(text("SELECT 1")).scalar())
    with pytest.raises(ValueError):
        runner.run_read(lambda session: (session.execute(text("SELECT 1")), int("x")))
    with pytest.raises(StorageError):
        runner.run_read(lambda session: session.execute(text("SELECT * FROM no_such_table")))

    assert file_factory.pool_status()["checkedout"] == 0


def test_pool_exhaustion_raises_pool_timeout(tmp_path):
    config = DatabaseConfig(url=f"sqlite:///{tmp_path / 'tiny.db'}")
    pool = {"minSize": 1, "maxSize": 1, "acquireIncrement": 1, "timeoutSeconds": 0.2}
    with build_session_factory(config, [Player], pool=pool) as session_factory:
        holder = session_factory.open_session()
        holder.connection()
        try:
            runner = TransactionRunner.owned(session_factory)
            with pytest.raises(PoolTimeoutError) as exc_info:
                runner.run_read(lambda session: session.execute(text("SELECT 1")).scalar())
            assert isinstance(exc_info.value, StorageError)
            assert exc_info.value.cause is not None
        finally:
            holder.close()
        assert session_factory.pool_status()["checkedout"] == 0


def test_borrowed_runner_leaves_transaction_to_caller(factory):
    session = factory.open_session()
    try:
        runner = TransactionRunner.borrowed(session)
        assert runner.mode == "borrowed"
        runner.run_write(lambda s: s.add(Player(id=7, name="Ghost")) or 1)
        assert runner.run_read(lambda s: s.get(Player, 7)).name == "Ghost"
        assert session.in_transaction()
        session.rollback()
        assert runner.run_read(lambda s: s.get(Player, 7)) is None
    finally:
        session.close()


def test_borrowed_runner_propagates_errors_and_keeps_outer_work(factory):
    session = factory.open_session()
    try:
        session.add(Player(id=3, name="Kept"))
        session.flush()
        runner = TransactionRunner.borrowed(session)

        def _fail(s: Session) -> None:
            raise LookupError("nope")

        with pytest.raises(LookupError):
            runner.run_read(_fail)
        assert session.in_transaction()
        assert session.get(Player, 3) is not None
    finally:
        session.rollback()
        session.close()
