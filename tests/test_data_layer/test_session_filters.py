"""
Session-level scoping: every ORM statement of a session with an attached
SecurityContext is filtered, and new rows are stamped from the context.
"""
from __future__ import annotations

from dataclasses import replace

import pytest
from sqlalchemy import delete, func, select, update

from orgscope.db.filters import SCOPE_CONTEXT_KEY, attach_scope
from orgscope.errors import TenantImmutableError
from orgscope.security.context import SecurityContext
from orgscope.security.descriptors import EntityRegistry, GrantParticipation
from orgscope.security.levels import GrantScope, VisibilityTier
from scoped_entities import NOTES, ORDERS, SCRIPT_RESOURCE_TYPE, SCRIPTS, Order, Script, add_tenants


@pytest.fixture
def registry():
    return EntityRegistry([ORDERS, SCRIPTS, NOTES])


@pytest.fixture
def seeded(db_session, hierarchy):
    add_tenants(db_session, 1, 2)
    hierarchy.create_unit(1, "HQ")
    hierarchy.create_unit(1, "Sales", parent_id=1)
    db_session.add_all(
        [
            Order(id=1, tenant_id=1, owner_id=42, unit_id=0),
            Order(id=2, tenant_id=1, owner_id=7, unit_id=2),
            Order(id=3, tenant_id=1, owner_id=7, unit_id=0),
            Order(id=4, tenant_id=2, owner_id=42, unit_id=0),
        ]
    )
    db_session.commit()
    return db_session


@pytest.fixture
def scoped_factory(session_factory, resolver, registry):
    def make(context):
        return attach_scope(session_factory(), context, resolver, registry)

    return make


def subtree_context():
    return SecurityContext.begin(tenant_id=1, actor_id=42, unit_id=1, tier=VisibilityTier.UNIT_SUBTREE)


def test_select_is_scoped(seeded, scoped_factory):
    with scoped_factory(subtree_context()) as session:
        ids = session.scalars(select(Order).order_by(Order.id)).all()
        assert [order.id for order in ids] == [1, 2]
        assert session.get(Order, 3) is None


def test_unscoped_session_sees_everything(seeded, session_factory):
    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(Order)) == 4
        assert SCOPE_CONTEXT_KEY not in session.info


def test_suppressed_scope_inside_session(seeded, scoped_factory):
    context = subtree_context()
    with scoped_factory(context) as session:
        with context.suppressed_scope():
            assert len(session.scalars(select(Order)).all()) == 4
        assert len(session.scalars(select(Order)).all()) == 2


def test_with_scope_disabled_restores_flag_after_error(seeded, scoped_factory):
    context = subtree_context()

    def boom():
        raise RuntimeError("job failed")

    with scoped_factory(context) as session:
        with pytest.raises(RuntimeError):
            context.with_scope_disabled(boom)
        assert context.scope_disabled is False
        assert len(session.scalars(select(Order)).all()) == 2


def test_new_rows_are_stamped_from_context(seeded, scoped_factory, session_factory):
    with scoped_factory(subtree_context()) as session:
        session.add(Order(id=10, title="stamped"))
        session.add(Order(id=11, title="explicit", owner_id=7, unit_id=2))
        session.commit()

    with session_factory() as plain:
        stamped = plain.get(Order, 10)
        explicit = plain.get(Order, 11)

    assert (stamped.tenant_id, stamped.owner_id, stamped.unit_id) == (1, 42, 1)
    assert (explicit.tenant_id, explicit.owner_id, explicit.unit_id) == (1, 7, 2)


def test_tenant_of_existing_row_cannot_change(seeded, scoped_factory):
    with scoped_factory(subtree_context()) as session:
        order = session.get(Order, 1)
        order.tenant_id = 2
        with pytest.raises(TenantImmutableError):
            session.flush()


def test_scoped_update_and_delete(seeded, scoped_factory, session_factory):
    with scoped_factory(subtree_context()) as session:
        session.execute(update(Order).values(title="touched").execution_options(synchronize_session=False))
        session.execute(delete(Order).where(Order.owner_id == 7).execution_options(synchronize_session=False))
        session.commit()

    with session_factory() as plain:
        rows = {order.id: order.title for order in plain.scalars(select(Order)).all()}

    # 2 was visible and deleted; 3 and 4 were out of scope for both statements.
    assert rows == {1: "touched", 3: "", 4: ""}


def test_unauthenticated_session_sees_nothing(seeded, scoped_factory):
    with scoped_factory(SecurityContext(tenant_id=0, actor_id=0)) as session:
        assert session.scalars(select(Order)).all() == []


def test_system_session_is_unfiltered(seeded, scoped_factory):
    with scoped_factory(SecurityContext.system()) as session:
        assert len(session.scalars(select(Order)).all()) == 4


def test_new_row_for_another_tenant_is_rejected(seeded, scoped_factory, session_factory):
    with scoped_factory(subtree_context()) as session:
        session.add(Order(id=9, tenant_id=2, owner_id=7))
        with pytest.raises(TenantImmutableError):
            session.commit()

    with session_factory() as plain:
        assert plain.get(Order, 9) is None


def test_system_job_may_write_any_tenant_with_scope_suppressed(seeded, scoped_factory, session_factory):
    context = subtree_context()
    with scoped_factory(context) as session, context.suppressed_scope():
        session.add(Order(id=9, tenant_id=2, owner_id=7))
        session.commit()

    with session_factory() as plain:
        assert plain.get(Order, 9).tenant_id == 2


def test_creator_is_granted_owner_on_new_grant_rows(seeded, scoped_factory, grant_store):
    with scoped_factory(subtree_context()) as session:
        session.add(Script(id=20, title="nightly"))
        session.add(Order(id=21, title="not grant participating"))
        session.commit()

    assert grant_store.has_grant(42, 20, SCRIPT_RESOURCE_TYPE, GrantScope.OWNER)
    assert grant_store.list_resource_ids_for_actor(42, SCRIPT_RESOURCE_TYPE) == {20}


def test_rolled_back_rows_grant_nothing(seeded, scoped_factory, grant_store):
    with scoped_factory(subtree_context()) as session:
        session.add(Script(id=20, title="abandoned"))
        session.flush()
        session.rollback()

    assert grant_store.list_actors_for_resource(20, SCRIPT_RESOURCE_TYPE) == frozenset()


def test_creator_grant_can_be_turned_off(seeded, session_factory, resolver, grant_store):
    quiet_scripts = replace(SCRIPTS, grant=GrantParticipation(SCRIPT_RESOURCE_TYPE, grant_creator=False))
    registry = EntityRegistry([ORDERS, quiet_scripts])

    with attach_scope(session_factory(), subtree_context(), resolver, registry) as session:
        session.add(Script(id=20, title="nightly"))
        session.commit()

    assert grant_store.list_actors_for_resource(20, SCRIPT_RESOURCE_TYPE) == frozenset()
