"""
"JSON integer array intersects a set of ids" as a SQL predicate.

Business tables may store multi-unit membership as a JSON array column
(e.g. `unit_ids = [3, 7]`). There is no portable SQL for array overlap, so the
predicate compiles per dialect:

- sqlite (default):  EXISTS (SELECT 1 FROM json_each(col) WHERE value IN (...))
- postgresql:        EXISTS over jsonb_array_elements_text(col::jsonb)
- mysql:             JSON_OVERLAPS(col, '[...]')

Ids are coerced to int and inlined, the same way the tenant/unit ids are
trusted values from the security context, never user input.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sqlalchemy import false
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import ColumnElement
from sqlalchemy.sql.visitors import InternalTraversal
from sqlalchemy.types import Boolean


class JsonArrayIntersects(ColumnElement[bool]):
    __visit_name__ = "json_array_intersects"

    type = Boolean()
    inherit_cache = False

    # Lets with_loader_criteria(include_aliases=True) adapt the column.
    _traverse_internals = [
        ("column", InternalTraversal.dp_clauseelement),
        ("values", InternalTraversal.dp_plain_obj),
    ]

    def __init__(self, column: Any, values: Iterable[int]) -> None:
        if hasattr(column, "__clause_element__"):
            column = column.__clause_element__()
        self.column = column
        self.values = tuple(sorted({int(v) for v in values}))


def json_array_intersects(column: Any, values: Iterable[int]) -> ColumnElement[bool]:
    ids = {int(v) for v in values}
    if not ids:
        return false()
    return JsonArrayIntersects(column, ids)


def _id_list(element: JsonArrayIntersects) -> str:
    return ", ".join(str(v) for v in element.values)


@compiles(JsonArrayIntersects)
def _compile_default(element: JsonArrayIntersects, compiler, **kw) -> str:
    column = compiler.process(element.column, **kw)
    return f"EXISTS (SELECT 1 FROM json_each({column}) WHERE json_each.value IN ({_id_list(element)}))"


@compiles(JsonArrayIntersects, "postgresql")
def _compile_postgresql(element: JsonArrayIntersects, compiler, **kw) -> str:
    column = compiler.process(element.column, **kw)
    quoted = ", ".join(f"'{v}'" for v in element.values)
    return (
        f"EXISTS (SELECT 1 FROM jsonb_array_elements_text(CAST({column} AS JSONB)) AS unit_member(value) "
        f"WHERE unit_member.value IN ({quoted}))"
    )


@compiles(JsonArrayIntersects, "mysql")
def _compile_mysql(element: JsonArrayIntersects, compiler, **kw) -> str:
    column = compiler.process(element.column, **kw)
    return f"JSON_OVERLAPS({column}, '[{_id_list(element)}]')"
