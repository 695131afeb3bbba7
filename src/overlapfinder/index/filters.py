"""Structured payload filters understood by every vector index backend.

A filter is a small tree of frozen nodes (``Eq``, ``Ne``, ``In``, ``And``,
``MatchNone``). Caller metadata constraints are converted into a tree once
with :func:`filter_from_mapping`; Stage 0 then rewrites that tree with
:func:`exclude_document` so the source document can never match itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Tuple, Union

from overlapfinder.errors import InvalidFilterError

DOCUMENT_ID_FIELD = "document_id"

_SCALARS = (str, int, float, bool)


@dataclass(frozen=True, slots=True)
class Eq:
    field: str
    value: Any

    def matches(self, payload: Mapping[str, Any]) -> bool:
        return payload.get(self.field) == self.value


@dataclass(frozen=True, slots=True)
class Ne:
    field: str
    value: Any

    def matches(self, payload: Mapping[str, Any]) -> bool:
        return payload.get(self.field) != self.value


@dataclass(frozen=True, slots=True)
class In:
    field: str
    values: Tuple[Any, ...]

    def matches(self, payload: Mapping[str, Any]) -> bool:
        return payload.get(self.field) in self.values


@dataclass(frozen=True, slots=True)
class MatchNone:
    """Matches no payload at all."""

    def matches(self, payload: Mapping[str, Any]) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class And:
    clauses: Tuple["FilterNode", ...] = ()

    def matches(self, payload: Mapping[str, Any]) -> bool:
        return all(clause.matches(payload) for clause in self.clauses)


FilterNode = Union[Eq, Ne, In, And, MatchNone]


def flatten(node: FilterNode | None) -> List[FilterNode]:
    """Return the leaf clauses of ``node`` with nested conjunctions expanded."""
    if node is None:
        return []
    if isinstance(node, And):
        leaves: List[FilterNode] = []
        for clause in node.clauses:
            leaves.extend(flatten(clause))
        return leaves
    return [node]


def conjunction(clauses: Iterable[FilterNode]) -> FilterNode:
    leaves: List[FilterNode] = []
    for clause in clauses:
        leaves.extend(flatten(clause))
    if any(isinstance(leaf, MatchNone) for leaf in leaves):
        return MatchNone()
    return And(tuple(leaves))


def _condition_clauses(field: str, condition: Any) -> List[FilterNode]:
    if condition is None:
        return []
    if isinstance(condition, _SCALARS):
        return [Eq(field, condition)]
    if isinstance(condition, (list, tuple, set, frozenset)):
        values = tuple(condition)
        if not values:
            return []
        if len(values) == 1:
            return [Eq(field, values[0])]
        return [In(field, values)]
    if isinstance(condition, Mapping):
        clauses: List[FilterNode] = []
        for operator, operand in condition.items():
            if operator == "$eq":
                clauses.append(Eq(field, operand))
            elif operator == "$ne":
                clauses.append(Ne(field, operand))
            elif operator == "$in":
                if not isinstance(operand, (list, tuple, set, frozenset)):
                    raise InvalidFilterError(f"$in on {field!r} expects a list")
                clauses.append(In(field, tuple(operand)))
            else:
                raise InvalidFilterError(f"Unsupported operator {operator!r} on {field!r}")
        return clauses
    raise InvalidFilterError(f"Unsupported filter value for {field!r}: {condition!r}")


def filter_from_mapping(mapping: Mapping[str, Any] | None) -> FilterNode:
    """Convert ``{"field": value | [values] | {"$eq"|"$ne"|"$in": ...}}`` into a tree."""
    clauses: List[FilterNode] = []
    for field, condition in (mapping or {}).items():
        clauses.extend(_condition_clauses(field, condition))
    return conjunction(clauses)


def exclude_document(
    node: FilterNode | None, source_id: str, *, field: str = DOCUMENT_ID_FIELD
) -> FilterNode:
    """Rewrite ``node`` so that ``source_id`` can never match on ``field``.

    Existing constraints on ``field`` are merged, not overwritten: an id set
    loses just the source id, and a constraint that only admitted the source
    becomes :class:`MatchNone`.
    """
    others: List[FilterNode] = []
    on_field: List[FilterNode] = []
    restricted = False
    for clause in flatten(node):
        if isinstance(clause, MatchNone):
            return MatchNone()
        if getattr(clause, "field", None) != field:
            others.append(clause)
            continue
        if isinstance(clause, Eq):
            if clause.value == source_id:
                return MatchNone()
            restricted = True
            on_field.append(clause)
        elif isinstance(clause, In):
            allowed = tuple(value for value in clause.values if value != source_id)
            if not allowed:
                return MatchNone()
            restricted = True
            on_field.append(In(field, allowed))
        else:
            on_field.append(clause)

    if not restricted and Ne(field, source_id) not in on_field:
        on_field.append(Ne(field, source_id))
    return conjunction(others + on_field)


def has_field(node: FilterNode | None, field: str) -> bool:
    return any(getattr(clause, "field", None) == field for clause in flatten(node))


def without_field(node: FilterNode | None, field: str) -> FilterNode:
    return conjunction(
        clause for clause in flatten(node) if getattr(clause, "field", None) != field
    )


def describe(node: FilterNode | None) -> Any:
    """JSON-friendly rendering of a filter, for logs and API responses."""
    if node is None:
        return None
    if isinstance(node, And):
        return {"and": [describe(clause) for clause in node.clauses]}
    if isinstance(node, MatchNone):
        return {"match_none": True}
    if isinstance(node, Eq):
        return {node.field: {"$eq": node.value}}
    if isinstance(node, Ne):
        return {node.field: {"$ne": node.value}}
    return {node.field: {"$in": list(node.values)}}
