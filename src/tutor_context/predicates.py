"""Row predicates for filtered search and deletion.

A ``Predicate`` is a conjunction of simple comparisons over payload fields.
It renders to the native filter language of each backend (LanceDB SQL,
Pinecone metadata filters) and can also be evaluated client-side, which is
how results are re-checked after a store-level filter: some stores treat
column names case-sensitively or coerce numeric payloads, so a store filter
alone is not trusted.
"""

from __future__ import annotations

import operator
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

Scalar = bool | int | float | str


class Op(str, Enum):
    """Supported comparison operators."""

    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"


_SQL_OPS: dict[Op, str] = {
    Op.EQ: "=",
    Op.NE: "!=",
    Op.LT: "<",
    Op.LE: "<=",
    Op.GT: ">",
    Op.GE: ">=",
}

_PINECONE_OPS: dict[Op, str] = {
    Op.EQ: "$eq",
    Op.NE: "$ne",
    Op.LT: "$lt",
    Op.LE: "$lte",
    Op.GT: "$gt",
    Op.GE: "$gte",
}

_PY_OPS: dict[Op, Callable[[Any, Any], bool]] = {
    Op.EQ: operator.eq,
    Op.NE: operator.ne,
    Op.LT: operator.lt,
    Op.LE: operator.le,
    Op.GT: operator.gt,
    Op.GE: operator.ge,
}


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1"}:
            return True
        if lowered in {"false", "0"}:
            return False
    return None


def _coerce_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class Condition:
    """A single ``field <op> value`` comparison.

    Attributes:
        field: Payload field name
        op: Comparison operator
        value: Right-hand side literal
    """

    field: str
    op: Op
    value: Scalar

    def matches(self, row: dict[str, Any]) -> bool:
        """Evaluate the comparison against a payload row.

        Missing fields never match. Stored values are coerced to the type of
        the literal, so ``7.0`` matches ``7`` and ``"true"`` matches ``True``.
        """
        if self.field not in row or row[self.field] is None:
            return False

        stored = row[self.field]
        compare = _PY_OPS[self.op]

        if isinstance(self.value, bool):
            coerced_bool = _coerce_bool(stored)
            if coerced_bool is None:
                return False
            return compare(coerced_bool, self.value)

        if isinstance(self.value, int | float):
            coerced_num = _coerce_number(stored)
            if coerced_num is None:
                return False
            return compare(coerced_num, float(self.value))

        return compare(str(stored), self.value)

    def to_sql(self) -> str:
        if isinstance(self.value, bool):
            literal = "true" if self.value else "false"
        elif isinstance(self.value, int | float):
            literal = repr(self.value)
        else:
            escaped = self.value.replace("'", "''")
            literal = f"'{escaped}'"
        return f"{self.field} {_SQL_OPS[self.op]} {literal}"

    def to_pinecone(self) -> dict[str, Any]:
        return {self.field: {_PINECONE_OPS[self.op]: self.value}}


@dataclass(frozen=True)
class Predicate:
    """Conjunction of conditions. An empty predicate matches every row.

    Example:
        >>> p = Predicate.where(document_id=7, is_temporary=False)
        >>> p.to_sql()
        'document_id = 7 AND is_temporary = false'
        >>> p.matches({"document_id": 7.0, "is_temporary": False})
        True
    """

    conditions: tuple[Condition, ...] = ()

    @classmethod
    def where(cls, **equals: Scalar) -> Predicate:
        """Build an equality predicate from keyword arguments."""
        return cls(tuple(Condition(name, Op.EQ, value) for name, value in equals.items()))

    def and_(self, field: str, op: Op | str, value: Scalar) -> Predicate:
        """Return a new predicate with one more condition."""
        return Predicate((*self.conditions, Condition(field, Op(op), value)))

    def __and__(self, other: Predicate) -> Predicate:
        return Predicate((*self.conditions, *other.conditions))

    @property
    def is_empty(self) -> bool:
        return not self.conditions

    def matches(self, row: dict[str, Any]) -> bool:
        return all(condition.matches(row) for condition in self.conditions)

    def to_sql(self) -> str | None:
        """Render as a SQL ``WHERE`` body, or None when empty."""
        if self.is_empty:
            return None
        return " AND ".join(condition.to_sql() for condition in self.conditions)

    def to_pinecone(self) -> dict[str, Any] | None:
        """Render as a Pinecone metadata filter, or None when empty."""
        if self.is_empty:
            return None
        if len(self.conditions) == 1:
            return self.conditions[0].to_pinecone()
        return {"$and": [condition.to_pinecone() for condition in self.conditions]}

    def __str__(self) -> str:
        return self.to_sql() or "<all rows>"


MATCH_ALL = Predicate()
