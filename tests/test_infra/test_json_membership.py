"""Tests for the JSON array membership predicate."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.dialects import mysql, postgresql, sqlite

from orgscope.db.json_membership import JsonArrayIntersects, json_array_intersects
from scoped_entities import Script


def _sql(expr, dialect) -> str:
    return str(expr.compile(dialect=dialect))


def test_empty_id_set_is_constant_false():
    assert not isinstance(json_array_intersects(Script.unit_ids, []), JsonArrayIntersects)


def test_compiles_per_dialect():
    expr = json_array_intersects(Script.unit_ids, [3, 1, 3])

    assert "json_each(scripts.unit_ids)" in _sql(expr, sqlite.dialect())
    assert "IN (1, 3)" in _sql(expr, sqlite.dialect())
    assert "jsonb_array_elements_text" in _sql(expr, postgresql.dialect())
    assert "IN ('1', '3')" in _sql(expr, postgresql.dialect())
    assert _sql(expr, mysql.dialect()) == "JSON_OVERLAPS(scripts.unit_ids, '[1, 3]')"


def test_matches_rows_on_sqlite(db_session):
    db_session.add_all(
        [
            Script(id=1, tenant_id=1, unit_ids=[2, 5]),
            Script(id=2, tenant_id=1, unit_ids=[7]),
            Script(id=3, tenant_id=1, unit_ids=[]),
        ]
    )
    db_session.commit()

    ids = db_session.scalars(
        select(Script.id).where(json_array_intersects(Script.unit_ids, {5, 9})).order_by(Script.id)
    ).all()

    assert ids == [1]
