from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Literal, Optional, TypeVar, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolCheckoutTimeout
from sqlalchemy.orm import Session

from plugindb.core.errors import ConfigurationError, PoolTimeoutError, StorageError
from plugindb.core.logging import get_logger
from plugindb.core.metrics import timer
from plugindb.db.connection import SessionFactory

R = TypeVar("R")

logger = get_logger("plugindb.db.transaction", component="transaction")

RUNNER_DURATION_BUCKETS: tuple[float, ...] = (1.0, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0)


@dataclass(frozen=True, slots=True)
class Owned:
    """The runner opens, commits or rolls back, and closes its own sessions."""

    factory: SessionFactory


@dataclass(frozen=True, slots=True)
class Borrowed:
    """The runner executes work on a caller-held session and never ends it."""

    session: Session


SessionScope = Union[Owned, Borrowed]
ScopeTarget = Union[SessionFactory, Session, Owned, Borrowed]
ReadWork = Callable[[Session], R]
WriteWork = Callable[[Session], Optional[int]]


def scope_for(target: ScopeTarget | None) -> SessionScope:
    """Map a factory, a session or an explicit scope onto a :data:`SessionScope`."""

    if isinstance(target, (Owned, Borrowed)):
        return target
    if isinstance(target, SessionFactory):
        return Owned(target)
    if isinstance(target, Session):
        return Borrowed(target)
    raise ConfigurationError(
        "A session factory or an open session is required",
        detail={"received": type(target).__name__},
    )


class TransactionRunner:
    """Runs units of work against exactly one session.

    In owned mode every call gets a fresh pooled session wrapped in a
    transaction that commits only when the work returns normally. In borrowed
    mode the work runs on the bound session and transaction control stays with
    whoever handed the session over.

    Store failures (:class:`sqlalchemy.exc.SQLAlchemyError`) leave the runner
    as :class:`StorageError` with the original attached; anything else the
    work raises propagates unchanged. Rollback happens before either leaves.
    """

    __slots__ = ("_scope",)

    def __init__(self, scope: SessionScope) -> None:
        if not isinstance(scope, (Owned, Borrowed)):
            raise ConfigurationError("TransactionRunner needs an Owned or Borrowed scope")
        if isinstance(scope, Owned) and scope.factory is None:
            raise ConfigurationError("Owned scope without a session factory")
        if isinstance(scope, Borrowed) and scope.session is None:
            raise ConfigurationError("Borrowed scope without a session")
        self._scope = scope

    @classmethod
    def owned(cls, factory: SessionFactory) -> "TransactionRunner":
        return cls(Owned(factory))

    @classmethod
    def borrowed(cls, session: Session) -> "TransactionRunner":
        return cls(Borrowed(session))

    @classmethod
    def for_target(cls, target: ScopeTarget | None) -> "TransactionRunner":
        return cls(scope_for(target))

    @property
    def scope(self) -> SessionScope:
        return self._scope

    @property
    def mode(self) -> Literal["owned", "borrowed"]:
        return "owned" if isinstance(self._scope, Owned) else "borrowed"

    @contextmanager
    def _unit_of_work(self) -> Iterator[Session]:
        scope = self._scope
        if isinstance(scope, Owned):
            with scope.factory.transaction() as session:
                yield session
        elif isinstance(scope, Borrowed):
            # a failed call rolls back to its savepoint; the outer transaction stays usable
            with scope.session.begin_nested():
                yield scope.session
        else:  # pragma: no cover - rejected in __init__
            raise ConfigurationError(f"Unknown session scope {scope!r}")

    def _run(self, label: str, work: Callable[[Session], R]) -> R:
        try:
            with timer(f"{label}.{self.mode}", buckets=RUNNER_DURATION_BUCKETS):
                with self._unit_of_work() as session:
                    return work(session)
        except PoolCheckoutTimeout as exc:
            logger.error("pool_checkout_timeout", extra={"structured_data": {"error": str(exc)}})
            raise PoolTimeoutError(cause=exc) from exc
        except SQLAlchemyError as exc:
            logger.error(
                "storage_failure",
                extra={"structured_data": {"mode": self.mode, "error_type": type(exc).__name__}},
            )
            raise StorageError(str(exc), cause=exc) from exc

    def run_read(self, work: ReadWork[R]) -> R:
        """Run ``work`` and hand back whatever it returns."""

        return self._run("db.runner.read", work)

    def run_write(self, work: WriteWork) -> int:
        """Run ``work`` and return the affected-row count it reports (``None`` counts as 0)."""

        changed = self._run("db.runner.write", work)
        return int(changed or 0)


__all__ = [
    "Owned",
    "Borrowed",
    "SessionScope",
    "TransactionRunner",
    "scope_for",
]
