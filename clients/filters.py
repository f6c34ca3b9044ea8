"""Column filters for the table gateway.

A filter is a (column, operator, value) triple. Callers build them with the
helper functions rather than spelling operators by hand:

    rows = db.fetch_rows("payments", [eq("customer_id", cid), gt("unallocated_amount", 0)])
"""

from dataclasses import dataclass
from typing import Any, Iterable

# Operator name -> SQL operator
OPERATORS = {
    "eq": "=",
    "neq": "<>",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
    "in": "IN",
}


@dataclass(frozen=True)
class Filter:
    """A single WHERE condition on one column."""

    column: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f"Unknown filter operator '{self.op}'")
        if self.op == "in" and isinstance(self.value, (str, bytes)):
            raise ValueError("'in' filter requires a collection of values")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))
