from __future__ import annotations

import importlib
import pkgutil
import sys
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from time import perf_counter
from types import ModuleType
from typing import Any, Iterable, Iterator, Mapping, Sequence

from sqlalchemy import Engine, MetaData, Table, create_engine, event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.engine import URL
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from plugindb.core.config import DatabaseConfig, PoolSettings, SchemaAction, Settings
from plugindb.core.errors import ConfigurationError, EntityScanError, StorageError
from plugindb.core.logging import get_logger
from plugindb.core.metrics import inc_counter, record_duration
from plugindb.db.base import is_entity_class

logger = get_logger("plugindb.db.connection", component="connection")

SESSION_DURATION_BUCKETS: tuple[float, ...] = (2.0, 5.0, 10.0, 25.0, 50.0, 100.0)
TRANSACTION_DURATION_BUCKETS: tuple[float, ...] = (
    5.0,
    10.0,
    25.0,
    50.0,
    100.0,
    250.0,
    500.0,
)

_MEMORY_DATABASES = ("", ":memory:", "file::memory:")


@dataclass(slots=True)
class SessionFactory:
    """Process-wide pool plus session maker shared by repositories.

    Built once by :func:`build_session_factory` and torn down with
    :meth:`close`; it is never recreated per operation.
    """

    engine: Engine
    session_maker: sessionmaker[Session]
    entities: tuple[type[Any], ...]
    pool_settings: PoolSettings
    snapshot: dict[str, object] = field(default_factory=dict)
    _closed: bool = field(default=False, init=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def open_session(self) -> Session:
        if self._closed:
            raise ConfigurationError("Session factory has been closed")
        inc_counter("db.session.opens")
        return self.session_maker()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Plain session scope; the caller manages the transaction."""

        session = self.open_session()
        started = perf_counter()
        try:
            yield session
        finally:
            elapsed_ms = (perf_counter() - started) * 1000.0
            record_duration("db.session.duration", elapsed_ms, buckets=SESSION_DURATION_BUCKETS)
            inc_counter("db.session.closes")
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Owned transaction: commit on success, roll back on any error, always close."""

        session = self.open_session()
        started = perf_counter()
        committed = False
        rolled_back = False
        inc_counter("db.transaction.opens")
        try:
            session.begin()
            yield session
            session.commit()
            committed = True
            inc_counter("db.transaction.commits")
        except Exception as exc:
            session.rollback()
            rolled_back = True
            inc_counter("db.transaction.rollbacks")
            logger.warning(
                "transaction_rollback",
                extra={"structured_data": {"error": str(exc), "error_type": type(exc).__name__}},
            )
            raise
        finally:
            elapsed_ms = (perf_counter() - started) * 1000.0
            record_duration(
                "db.transaction.duration",
                elapsed_ms,
                buckets=TRANSACTION_DURATION_BUCKETS,
                metadata={"committed": committed, "rolled_back": rolled_back},
            )
            inc_counter("db.transaction.closes")
            session.close()

    def pool_status(self) -> dict[str, object]:
        pool = self.engine.pool
        status: dict[str, object] = {
            "poolclass": type(pool).__name__,
            "status": pool.status(),
        }
        for name in ("size", "checkedin", "checkedout", "overflow"):
            probe = getattr(pool, name, None)
            if callable(probe):
                status[name] = probe()
        return status

    def config_snapshot(self) -> dict[str, object]:
        return dict(self.snapshot)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.engine.dispose()
        logger.info("session_factory_closed", extra={"structured_data": {"url": self.snapshot.get("url")}})

    def __enter__(self) -> "SessionFactory":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _resolve_namespace(namespace_root: str | ModuleType | type) -> str:
    if isinstance(namespace_root, ModuleType):
        return namespace_root.__name__
    if isinstance(namespace_root, type):
        module_name = namespace_root.__module__
        module = sys.modules.get(module_name)
        if module is not None and hasattr(module, "__path__"):
            return module_name
        return module_name.rpartition(".")[0] or module_name
    if isinstance(namespace_root, str) and namespace_root.strip():
        return namespace_root.strip()
    raise ConfigurationError("Entity scan needs a package name, module or anchor class")


def _import(module_name: str) -> ModuleType:
    try:
        return importlib.import_module(module_name)
    except Exception as exc:
        raise EntityScanError(
            f"Could not import {module_name!r} while scanning for entities",
            detail={"module": module_name, "error": str(exc)},
        ) from exc


def scan_entities(namespace_root: str | ModuleType | type) -> list[type[Any]]:
    """Import every module below ``namespace_root`` and collect its mapped classes.

    A class passed as ``namespace_root`` anchors the scan at the package that
    contains it. Abstract and unmapped classes are skipped, as are classes
    merely imported into the namespace from elsewhere.
    """
    root_name = _resolve_namespace(namespace_root)
    root = _import(root_name)
    modules: list[ModuleType] = [root]
    if hasattr(root, "__path__"):
        for info in pkgutil.walk_packages(root.__path__, prefix=f"{root_name}."):
            modules.append(_import(info.name))

    prefix = f"{root_name}."
    found: dict[tuple[str, str], type[Any]] = {}
    for module in modules:
        for candidate in vars(module).values():
            if not is_entity_class(candidate):
                continue
            owner = candidate.__module__
            if owner != root_name and not owner.startswith(prefix):
                continue
            found.setdefault((owner, candidate.__qualname__), candidate)

    entities = [found[key] for key in sorted(found)]
    logger.info(
        "entity_scan_complete",
        extra={
            "structured_data": {
                "namespace": root_name,
                "modules": len(modules),
                "entities": [entity.__name__ for entity in entities],
            }
        },
    )
    return entities


def _engine_kwargs(url: URL, pool: PoolSettings, echo: bool) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"echo": echo}
    queue_pool = {
        "poolclass": QueuePool,
        "pool_size": pool.core_size,
        "max_overflow": pool.max_overflow,
        "pool_timeout": pool.timeout_seconds,
        "pool_recycle": pool.recycle_seconds,
        "pool_pre_ping": pool.pre_ping,
    }
    if url.get_backend_name() == "sqlite":
        connect_args: dict[str, object] = {"check_same_thread": False}
        database = url.database or ""
        if database.startswith("file:"):
            connect_args["uri"] = True
        kwargs["connect_args"] = connect_args
        # every connection to an in-memory database is a new empty database
        if database in _MEMORY_DATABASES or "mode=memory" in database:
            kwargs["poolclass"] = StaticPool
            return kwargs
    kwargs.update(queue_pool)
    return kwargs


def _use_explicit_sqlite_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first DML, so a leading SAVEPOINT would
    # open the transaction itself and RELEASE would commit it
    @event.listens_for(engine, "connect")
    def _driver_autocommit(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN")


def _snapshot(engine: Engine, kwargs: Mapping[str, Any], pool: PoolSettings, entities: Sequence[type[Any]]) -> dict[str, object]:
    return {
        "url": engine.url.render_as_string(hide_password=True),
        "poolclass": getattr(kwargs.get("poolclass"), "__name__", type(engine.pool).__name__),
        "connect_args": dict(kwargs.get("connect_args", {})),
        "pool_size": kwargs.get("pool_size"),
        "max_overflow": kwargs.get("max_overflow"),
        "pool_timeout": kwargs.get("pool_timeout"),
        "pool_recycle": kwargs.get("pool_recycle"),
        "pool_pre_ping": kwargs.get("pool_pre_ping"),
        "acquire_increment": pool.acquire_increment,
        "entities": [entity.__name__ for entity in entities],
    }


def _warm_pool(engine: Engine, kwargs: Mapping[str, Any], pool: PoolSettings) -> int:
    if kwargs.get("poolclass") is StaticPool:
        batch = 1
    else:
        batch = max(1, min(pool.acquire_increment, pool.max_size))
    with ExitStack() as stack:
        for _ in range(batch):
            stack.enter_context(engine.connect())
    return batch


def _create_tables(engine: Engine, entities: Sequence[type[Any]]) -> None:
    grouped: dict[int, tuple[MetaData, dict[str, Table]]] = {}
    for entity in entities:
        table = sa_inspect(entity).local_table
        if not isinstance(table, Table):
            continue
        _, tables = grouped.setdefault(id(table.metadata), (table.metadata, {}))
        tables.setdefault(table.key, table)
    for metadata, tables in grouped.values():
        metadata.create_all(bind=engine, tables=list(tables.values()), checkfirst=True)


def build_session_factory(
    config: DatabaseConfig | None,
    entities: Iterable[type[Any]],
    *,
    pool: PoolSettings | Mapping[str, Any] | None = None,
    schema_action: SchemaAction = "update",
    echo: bool = False,
) -> SessionFactory:
    """Open the connection pool and return the session factory over it.

    Slow and fallible: call it once at startup. Incomplete configuration
    raises :class:`ConfigurationError`; an unreachable store raises
    :class:`StorageError`.
    """
    if config is None:
        raise ConfigurationError("No database configuration supplied")
    url = config.to_url()
    pool_settings = PoolSettings.coerce(pool)

    registered = tuple(dict.fromkeys(entities))
    unmapped = [getattr(entity, "__name__", repr(entity)) for entity in registered if not is_entity_class(entity)]
    if unmapped:
        raise ConfigurationError(
            "Entities must be concrete mapped classes",
            detail={"unmapped": unmapped},
        )
    if schema_action not in ("update", "none"):
        raise ConfigurationError(f"Unknown schema action {schema_action!r}")

    kwargs = _engine_kwargs(url, pool_settings, echo)
    try:
        engine = create_engine(url, **kwargs)
    except ArgumentError as exc:
        raise ConfigurationError(
            f"Unsupported database dialect {url.drivername!r}",
            detail={"dialect": url.drivername},
        ) from exc
    except ImportError as exc:
        raise ConfigurationError(
            f"Database driver for {url.drivername!r} is not installed",
            detail={"dialect": url.drivername, "error": str(exc)},
        ) from exc
    if engine.dialect.driver == "pysqlite":
        _use_explicit_sqlite_transactions(engine)

    try:
        warmed = _warm_pool(engine, kwargs, pool_settings)
        if schema_action == "update":
            _create_tables(engine, registered)
    except SQLAlchemyError as exc:
        engine.dispose()
        raise StorageError(
            "Could not open the connection pool",
            cause=exc,
            detail={"url": url.render_as_string(hide_password=True)},
        ) from exc

    session_maker: sessionmaker[Session] = sessionmaker(
        bind=engine,
        autoflush=True,
        expire_on_commit=False,
    )
    snapshot = _snapshot(engine, kwargs, pool_settings, registered)
    logger.info(
        "session_factory_built",
        extra={"structured_data": {**snapshot, "warmed_connections": warmed, "schema_action": schema_action}},
    )
    return SessionFactory(
        engine=engine,
        session_maker=session_maker,
        entities=registered,
        pool_settings=pool_settings,
        snapshot=snapshot,
    )


class ConnectionSource:
    """Configuration plus entity set, ready to produce a :class:`SessionFactory`.

    Entities are given explicitly or discovered below ``namespace``.
    """

    def __init__(
        self,
        config: DatabaseConfig | None,
        entities: Iterable[type[Any]] | None = None,
        *,
        namespace: str | ModuleType | type | None = None,
        pool: PoolSettings | Mapping[str, Any] | None = None,
        schema_action: SchemaAction = "update",
        echo: bool = False,
    ) -> None:
        if entities is None and namespace is None:
            raise ConfigurationError("Either entities or a namespace to scan is required")
        self.config = config
        self.entities: tuple[type[Any], ...] = (
            tuple(entities) if entities is not None else tuple(scan_entities(namespace))  # type: ignore[arg-type]
        )
        self.pool = PoolSettings.coerce(pool)
        self.schema_action = schema_action
        self.echo = echo

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        entities: Iterable[type[Any]] | None = None,
        *,
        namespace: str | ModuleType | type | None = None,
    ) -> "ConnectionSource":
        return cls(
            settings.database_config(),
            entities,
            namespace=namespace,
            pool=settings.pool_settings(),
            schema_action=settings.db_schema_action,
            echo=settings.db_echo,
        )

    def create_session_factory(self) -> SessionFactory:
        return build_session_factory(
            self.config,
            self.entities,
            pool=self.pool,
            schema_action=self.schema_action,
            echo=self.echo,
        )


__all__ = [
    "SessionFactory",
    "ConnectionSource",
    "build_session_factory",
    "scan_entities",
]
