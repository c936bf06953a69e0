"""Filter expressions for document-store queries.

Filters are plain immutable values. ``DocumentStore.query()`` compiles them
to SQL against the JSON document bodies; nothing here touches SQLite.

``HasChild`` and ``HasParent`` express the parent/child join: a parent
document matches ``HasChild(c, f)`` when at least one of its children in
collection ``c`` matches ``f``; a child matches ``HasParent(p, f)`` when its
parent in collection ``p`` matches ``f``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class MatchAll:
    pass


@dataclass(frozen=True)
class MatchNone:
    pass


@dataclass(frozen=True)
class Term:
    field: str
    value: Any


@dataclass(frozen=True)
class Terms:
    """Field equals any of *values*. An empty tuple matches nothing."""

    field: str
    values: tuple[Any, ...]


@dataclass(frozen=True)
class Range:
    field: str
    gt: Any = None
    gte: Any = None
    lt: Any = None
    lte: Any = None


@dataclass(frozen=True)
class Exists:
    field: str


@dataclass(frozen=True)
class Bool:
    """Boolean composition.

    All of ``must`` and none of ``must_not`` have to match. When ``should``
    is non-empty at least one of its clauses has to match as well.
    """

    must: tuple[Filter, ...] = ()
    should: tuple[Filter, ...] = ()
    must_not: tuple[Filter, ...] = ()


@dataclass(frozen=True)
class HasChild:
    collection: str
    filter: Filter = field(default_factory=MatchAll)


@dataclass(frozen=True)
class HasParent:
    collection: str
    filter: Filter = field(default_factory=MatchAll)


Filter = Union[MatchAll, MatchNone, Term, Terms, Range, Exists, Bool, HasChild, HasParent]


def and_(*filters: Filter) -> Filter:
    """Conjunction that drops ``MatchAll`` operands and short-circuits on ``MatchNone``."""
    operands = [f for f in filters if not isinstance(f, MatchAll)]
    if any(isinstance(f, MatchNone) for f in operands):
        return MatchNone()
    if not operands:
        return MatchAll()
    if len(operands) == 1:
        return operands[0]
    return Bool(must=tuple(operands))


def or_(filters: Sequence[Filter]) -> Filter:
    """Disjunction; an empty sequence matches nothing."""
    operands = [f for f in filters if not isinstance(f, MatchNone)]
    if not operands:
        return MatchNone()
    if len(operands) == 1:
        return operands[0]
    return Bool(should=tuple(operands))


def terms_filter(**criteria: Any) -> Filter:
    """Build an AND of equality terms, skipping criteria whose value is None."""
    return and_(*(Term(name, value) for name, value in sorted(criteria.items()) if value is not None))
