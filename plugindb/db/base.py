from __future__ import annotations

import inspect as pyinspect
from typing import Any

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import DeclarativeBase, Mapper


class EntityBase(DeclarativeBase):
    """Declarative base plugins may use for their entities.

    Any SQLAlchemy mapped class works with the repositories; this base only
    saves plugins from declaring their own.
    """


def is_entity_class(candidate: Any) -> bool:
    """True for concrete classes that SQLAlchemy maps to a table."""

    if not isinstance(candidate, type):
        return False
    if candidate.__dict__.get("__abstract__", False) or pyinspect.isabstract(candidate):
        return False
    return isinstance(sa_inspect(candidate, raiseerr=False), Mapper)


def identity_of(entity: Any) -> tuple[Any, ...] | None:
    """Primary key values of ``entity``, or ``None`` while any of them is unset."""

    mapper = sa_inspect(type(entity))
    values = tuple(mapper.primary_key_from_instance(entity))
    if any(value is None for value in values):
        return None
    return values


__all__ = ["EntityBase", "is_entity_class", "identity_of"]
