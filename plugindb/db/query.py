from __future__ import annotations

from typing import Any, Generic, List, Optional, Protocol, TypeVar

from sqlalchemy import (
    Select,
    and_,
    asc,
    between,
    desc,
    func,
    not_,
    or_,
    select,
)
from sqlalchemy.sql.elements import ColumnElement

T = TypeVar("T")
T_contra = TypeVar("T_contra", contravariant=True)

Predicates = List[ColumnElement[bool]]


class CriteriaBuilder:
    """Stateless helpers handed to predicate providers.

    Column expressions work directly as well (``Player.name == "Alice"``);
    the builder just keeps provider code uniform.
    """

    func = func

    @staticmethod
    def and_(*clauses: Any) -> ColumnElement[bool]:
        return and_(*clauses)

    @staticmethod
    def or_(*clauses: Any) -> ColumnElement[bool]:
        return or_(*clauses)

    @staticmethod
    def not_(clause: Any) -> ColumnElement[bool]:
        return not_(clause)

    @staticmethod
    def equal(column: Any, value: Any) -> ColumnElement[bool]:
        return column == value

    @staticmethod
    def not_equal(column: Any, value: Any) -> ColumnElement[bool]:
        return column != value

    @staticmethod
    def like(column: Any, pattern: str) -> ColumnElement[bool]:
        return column.like(pattern)

    @staticmethod
    def ilike(column: Any, pattern: str) -> ColumnElement[bool]:
        return column.ilike(pattern)

    @staticmethod
    def greater_than(column: Any, value: Any) -> ColumnElement[bool]:
        return column > value

    @staticmethod
    def greater_or_equal(column: Any, value: Any) -> ColumnElement[bool]:
        return column >= value

    @staticmethod
    def less_than(column: Any, value: Any) -> ColumnElement[bool]:
        return column < value

    @staticmethod
    def less_or_equal(column: Any, value: Any) -> ColumnElement[bool]:
        return column <= value

    @staticmethod
    def between(column: Any, lower: Any, upper: Any) -> ColumnElement[bool]:
        return between(column, lower, upper)

    @staticmethod
    def is_in(column: Any, values: Any) -> ColumnElement[bool]:
        return column.in_(values)

    @staticmethod
    def is_null(column: Any) -> ColumnElement[bool]:
        return column.is_(None)

    @staticmethod
    def is_not_null(column: Any) -> ColumnElement[bool]:
        return column.is_not(None)

    @staticmethod
    def lower(column: Any) -> ColumnElement[Any]:
        return func.lower(column)

    @staticmethod
    def asc(column: Any) -> Any:
        return asc(column)

    @staticmethod
    def desc(column: Any) -> Any:
        return desc(column)


criteria_builder = CriteriaBuilder()


class CriteriaQuery(Generic[T]):
    """Select under construction for one entity type.

    Providers may add ordering, joins, distinct and loader options while they
    run. Once the provider returns the draft is sealed and further calls raise
    ``RuntimeError``.
    """

    __slots__ = ("entity", "_statement", "_sealed")

    def __init__(self, entity: type[T]) -> None:
        self.entity = entity
        self._statement: Select[Any] = select(entity)
        self._sealed = False

    def _check_open(self) -> None:
        if self._sealed:
            raise RuntimeError("CriteriaQuery is sealed; keep changes inside the predicate provider")

    def order_by(self, *clauses: Any) -> "CriteriaQuery[T]":
        self._check_open()
        self._statement = self._statement.order_by(*clauses)
        return self

    def join(self, target: Any, onclause: Any = None, *, outer: bool = False) -> "CriteriaQuery[T]":
        self._check_open()
        self._statement = self._statement.join(target, onclause, isouter=outer)
        return self

    def distinct(self) -> "CriteriaQuery[T]":
        self._check_open()
        self._statement = self._statement.distinct()
        return self

    def options(self, *loader_options: Any) -> "CriteriaQuery[T]":
        self._check_open()
        self._statement = self._statement.options(*loader_options)
        return self

    def seal(self) -> Select[Any]:
        self._sealed = True
        return self._statement

    @property
    def sealed(self) -> bool:
        return self._sealed


class PredicateProvider(Protocol[T_contra]):
    """Caller hook that appends conjunctive predicates to ``predicates``."""

    def __call__(
        self,
        builder: CriteriaBuilder,
        criteria: CriteriaQuery[Any],
        root: type[T_contra],
        predicates: Predicates,
    ) -> None:
        ...


def _bounded(value: Optional[int]) -> bool:
    return value is not None and value > 0


def build_query(
    entity_class: type[T],
    predicate: Optional[PredicateProvider[T]] = None,
    offset: Optional[int] = -1,
    limit: Optional[int] = -1,
) -> Select[Any]:
    """Build, without executing, the select for ``entity_class``.

    ``predicate`` is called exactly once; the predicates it appends are
    AND-combined and no predicates selects every row. ``offset`` and ``limit``
    only apply when positive.
    """
    criteria: CriteriaQuery[T] = CriteriaQuery(entity_class)
    predicates: Predicates = []
    if predicate is not None:
        predicate(criteria_builder, criteria, entity_class, predicates)
    statement = criteria.seal()
    if predicates:
        statement = statement.where(and_(*predicates))
    if _bounded(offset):
        statement = statement.offset(offset)
    if _bounded(limit):
        statement = statement.limit(limit)
    return statement


__all__ = [
    "CriteriaBuilder",
    "CriteriaQuery",
    "PredicateProvider",
    "Predicates",
    "build_query",
    "criteria_builder",
]
