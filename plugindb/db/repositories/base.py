from __future__ import annotations

from types import ModuleType
from typing import (
    Any,
    ClassVar,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    TypeVar,
    get_args,
    get_origin,
)

from sqlalchemy.orm import Session

from plugindb.core.config import DatabaseConfig, PoolSettings, SchemaAction
from plugindb.core.errors import ConfigurationError
from plugindb.core.logging import get_logger
from plugindb.db.base import identity_of, is_entity_class
from plugindb.db.connection import ConnectionSource, SessionFactory
from plugindb.db.query import PredicateProvider, build_query
from plugindb.db.transaction import (
    Borrowed,
    Owned,
    ReadWork,
    ScopeTarget,
    TransactionRunner,
    WriteWork,
    scope_for,
)

T = TypeVar("T")
R = TypeVar("R")

logger = get_logger("plugindb.db.repositories", component="repository")


def _entity_from_bases(cls: type) -> Optional[type]:
    for base in getattr(cls, "__orig_bases__", ()):
        origin = get_origin(base)
        if isinstance(origin, type) and issubclass(origin, GenericRepository):
            for arg in get_args(base):
                if isinstance(arg, type):
                    return arg
    return None


class GenericRepository(Generic[T]):
    """Find, persist and delete operations for a single entity type.

    The entity type comes from the type parameter
    (``class PlayerRepository(GenericRepository[Player])``), an
    ``entity_class`` class attribute, or the ``entity_class`` argument.

    Built over a :class:`SessionFactory` every call runs in its own
    transaction. Built over an open :class:`~sqlalchemy.orm.Session` every
    call joins the caller's transaction and leaves commit, rollback and close
    to the caller.
    """

    entity_class: ClassVar[Optional[type]] = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if cls.__dict__.get("entity_class") is None:
            resolved = _entity_from_bases(cls)
            if resolved is not None:
                cls.entity_class = resolved

    def __init__(self, target: ScopeTarget | None, *, entity_class: Optional[type[T]] = None) -> None:
        resolved = entity_class or type(self).entity_class
        if resolved is None:
            raise ConfigurationError(
                f"{type(self).__name__} does not declare an entity type",
            )
        if not is_entity_class(resolved):
            raise ConfigurationError(
                f"{getattr(resolved, '__name__', resolved)!s} is not a mapped entity class",
            )
        self._entity_class: type[T] = resolved
        self._runner = TransactionRunner(scope_for(target))
        self._owns_factory = False

    @classmethod
    def from_config(
        cls,
        config: DatabaseConfig | None,
        entities: Iterable[type[Any]] | None = None,
        *,
        namespace: str | ModuleType | type | None = None,
        pool: PoolSettings | Mapping[str, Any] | None = None,
        schema_action: SchemaAction = "update",
        entity_class: Optional[type[T]] = None,
    ) -> "GenericRepository[T]":
        """Build a repository that opens and owns its own session factory.

        Without ``entities`` or ``namespace`` only the repository's entity is
        registered. :meth:`close` disposes the factory again.
        """
        resolved = entity_class or cls.entity_class
        if entities is None and namespace is None and resolved is not None:
            entities = [resolved]
        source = ConnectionSource(
            config,
            entities,
            namespace=namespace,
            pool=pool,
            schema_action=schema_action,
        )
        factory = source.create_session_factory()
        try:
            repository = cls(factory, entity_class=entity_class)
        except ConfigurationError:
            factory.close()
            raise
        repository._owns_factory = True
        return repository

    @property
    def entity_type(self) -> type[T]:
        return self._entity_class

    @property
    def runner(self) -> TransactionRunner:
        return self._runner

    @property
    def mode(self) -> str:
        return self._runner.mode

    @property
    def session_factory(self) -> Optional[SessionFactory]:
        scope = self._runner.scope
        return scope.factory if isinstance(scope, Owned) else None

    def bound_to(self, session: Session) -> "GenericRepository[T]":
        """Same repository, borrowing ``session`` so calls join its transaction."""

        return type(self)(Borrowed(session), entity_class=self._entity_class)

    def run_read(self, work: ReadWork[R]) -> R:
        """Run a custom read inside this repository's transaction scope."""

        return self._runner.run_read(work)

    def run_write(self, work: WriteWork) -> int:
        """Run a custom mutation (bulk update, raw statement) and return its row count."""

        return self._runner.run_write(work)

    def find_all(self) -> List[T]:
        return self.find_all_by_predicate(None)

    def find_all_by_predicate(
        self,
        predicate: Optional[PredicateProvider[T]] = None,
        offset: Optional[int] = -1,
        limit: Optional[int] = -1,
    ) -> List[T]:
        """Entities matching ``predicate`` in store order unless the provider orders them."""

        entity_class = self._entity_class

        def _query(session: Session) -> List[T]:
            statement = build_query(entity_class, predicate, offset, limit)
            return list(session.scalars(statement).all())

        return self._runner.run_read(_query)

    def find_by_predicate(
        self,
        predicate: Optional[PredicateProvider[T]] = None,
        offset: Optional[int] = -1,
        limit: Optional[int] = -1,
    ) -> Optional[T]:
        """The single matching entity; ``None`` when nothing or more than one row matches."""

        results = self.find_all_by_predicate(predicate, offset, limit)
        if len(results) == 1:
            return results[0]
        return None

    def _check_entity(self, entity: Any) -> None:
        if not isinstance(entity, self._entity_class):
            raise TypeError(
                f"{type(self).__name__} handles {self._entity_class.__name__}, "
                f"got {type(entity).__name__}"
            )

    def persist(self, entity: T) -> int:
        """Insert ``entity``, or update the stored row carrying the same identity."""

        self._check_entity(entity)

        def _persist(session: Session) -> int:
            if identity_of(entity) is None:
                session.add(entity)
            else:
                session.merge(entity)
            session.flush()
            return 1

        return self._runner.run_write(_persist)

    def delete(self, entity: T) -> int:
        """Remove the row identified by ``entity``; returns 0 when there is none."""

        self._check_entity(entity)
        entity_class = self._entity_class

        def _delete(session: Session) -> int:
            identity = identity_of(entity)
            if identity is None:
                return 0
            stored = session.get(entity_class, identity)
            if stored is None:
                return 0
            session.delete(stored)
            session.flush()
            return 1

        changed = self._runner.run_write(_delete)
        if not changed:
            logger.debug(
                "delete_no_match",
                extra={"structured_data": {"entity": self._entity_class.__name__}},
            )
        return changed

    def close(self) -> None:
        """Dispose the session factory if this repository created it."""

        factory = self.session_factory
        if self._owns_factory and factory is not None:
            factory.close()


__all__ = ["GenericRepository"]
