"""Tests for VisibilityTierResolver."""
from __future__ import annotations

from orgscope.models.org import Role
from orgscope.security.levels import VisibilityTier
from orgscope.security.tiers import VisibilityTierResolver
from scoped_entities import add_actor, add_tenants


def test_highest_enabled_tier_wins(db_session, session_factory):
    add_tenants(db_session, 1)
    add_actor(db_session, 42, tiers=(VisibilityTier.SELF, VisibilityTier.UNIT_SUBTREE, VisibilityTier.UNIT))

    assert VisibilityTierResolver(session_factory).resolve(42) is VisibilityTier.UNIT_SUBTREE


def test_disabled_roles_are_ignored(db_session, session_factory):
    add_tenants(db_session, 1)
    add_actor(db_session, 42, tiers=(VisibilityTier.UNIT,), disabled_tiers=(VisibilityTier.ALL,))

    assert VisibilityTierResolver(session_factory).resolve(42) is VisibilityTier.UNIT


def test_no_enabled_roles_means_self(db_session, session_factory):
    add_tenants(db_session, 1)
    add_actor(db_session, 42, disabled_tiers=(VisibilityTier.ALL,))
    add_actor(db_session, 43)

    resolver = VisibilityTierResolver(session_factory)
    assert resolver.resolve(42) is VisibilityTier.SELF
    assert resolver.resolve(43) is VisibilityTier.SELF
    assert resolver.resolve(999) is VisibilityTier.SELF


def test_roles_of_another_tenant_are_ignored(db_session, session_factory):
    add_tenants(db_session, 1, 2)
    actor = add_actor(db_session, 42, tiers=(VisibilityTier.UNIT,))
    actor.roles.append(Role(tenant_id=2, name="foreign", tier=VisibilityTier.ALL, enabled=True))
    db_session.commit()

    assert VisibilityTierResolver(session_factory).resolve(42) is VisibilityTier.UNIT
