"""
releasedb/filters.py -- Optional issue-list filters expressed as data.

Each filter is a Predicate (column, op, value). Empty values are dropped, so
callers can pass raw query parameters straight through. The store turns the
list into SQLAlchemy clauses that are AND-combined; values are always bound
parameters, never concatenated into SQL.

  eq        column = value
  contains  column LIKE %value% (LIKE wildcards in value are escaped)
"""

from dataclasses import dataclass

from sqlalchemy import Table
from sqlalchemy.sql.elements import ColumnElement

OP_EQ = "eq"
OP_CONTAINS = "contains"


@dataclass(frozen=True)
class Predicate:
    column: str
    op: str
    value: str


def issue_predicates(fix_version: str, issue_type: str = "", status: str = "", label: str = "") -> list[Predicate]:
    """Build the predicate list for listing one release's issues."""
    preds = [Predicate("fix_version", OP_EQ, fix_version)]
    if issue_type:
        preds.append(Predicate("issue_type", OP_EQ, issue_type))
    if status:
        preds.append(Predicate("status", OP_EQ, status))
    if label:
        preds.append(Predicate("labels", OP_CONTAINS, label))
    return preds


def to_clauses(table: Table, predicates: list[Predicate]) -> list[ColumnElement]:
    """Translate predicates into clauses against table.

    Raises ValueError for an unknown column or operator.
    """
    clauses: list[ColumnElement] = []
    for p in predicates:
        if p.column not in table.c:
            raise ValueError(f"unknown column {p.column!r} for table {table.name}")
        col = table.c[p.column]
        if p.op == OP_EQ:
            clauses.append(col == p.value)
        elif p.op == OP_CONTAINS:
            clauses.append(col.contains(p.value, autoescape=True))
        else:
            raise ValueError(f"unknown operator {p.op!r}")
    return clauses
