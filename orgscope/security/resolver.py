"""
Row-visibility predicate for one entity and one request.

Decision tree (no internal state; only the hierarchy and grant caches are read):

    scope disabled                      -> no filter
    no tenant/actor                     -> no filter for system contexts, else fail closed
    entity has a tenant column          -> tenant = T            (always, admins included)
    admin                               -> stop (tenant filter only)
    tier SELF                           -> owner = A
    tier UNIT / UNIT_SUBTREE            -> owner = A OR unit IN U OR unit_ids ∩ U
    tier ALL                            -> true                  (grants not consulted)
    entity takes part in grants         -> ... OR resource_id IN G

A column the descriptor names but the entity lacks turns its leg into a
constant false clause and logs a warning. That keeps queries running, but it
can hide a misconfigured descriptor; register descriptors through
`EntityRegistry` to catch that at startup.
"""

from __future__ import annotations

import logging
from typing import Any, TypeVar

from sqlalchemy import and_, false, or_, true
from sqlalchemy.sql.expression import ColumnElement

from orgscope.db.json_membership import json_array_intersects
from orgscope.grants.store import GrantStore
from orgscope.org.hierarchy import OrgUnitHierarchy
from orgscope.security.context import SecurityContext
from orgscope.security.descriptors import ScopableEntityDescriptor
from orgscope.security.levels import VisibilityTier

logger = logging.getLogger(__name__)

Q = TypeVar("Q")


class ScopeResolver:
    def __init__(
        self,
        hierarchy: OrgUnitHierarchy,
        grants: GrantStore,
        *,
        allow_unauthenticated_passthrough: bool = False,
    ) -> None:
        self.hierarchy = hierarchy
        self.grants = grants
        self.allow_unauthenticated_passthrough = allow_unauthenticated_passthrough

    def apply(self, query: Q, descriptor: ScopableEntityDescriptor, context: SecurityContext) -> Q:
        """AND the visibility predicate onto a `select()` (or legacy `Query`)."""
        predicate = self.predicate(descriptor, context)
        if predicate is None:
            return query
        return query.where(predicate)

    def predicate(self, descriptor: ScopableEntityDescriptor, context: SecurityContext) -> ColumnElement[bool] | None:
        """The full predicate for `descriptor`, or None when no filter applies."""

        if context.scope_disabled:
            return None

        if not context.is_authenticated:
            if context.is_system or self.allow_unauthenticated_passthrough:
                return None
            logger.warning("Unauthenticated context without system marker on %s; denying all rows", descriptor.name)
            return false()

        clauses: list[ColumnElement[bool]] = []

        if descriptor.has_tenant_column:
            tenant_col = self._column(descriptor, descriptor.tenant_column, "tenant")
            clauses.append(tenant_col == context.tenant_id if tenant_col is not None else false())

        if context.is_admin:
            return and_(*clauses) if clauses else None

        tier = context.effective_tier
        if tier is VisibilityTier.ALL:
            # ALL dominates: grants never narrow it and are not looked up.
            return and_(*clauses) if clauses else None

        legs = [self._tier_predicate(descriptor, context, tier)]
        if descriptor.participates_in_grants:
            legs.append(self._grant_predicate(descriptor, context))

        clauses.append(or_(*legs) if len(legs) > 1 else legs[0])
        return and_(*clauses)

    # ---- legs -----------------------------------------------------------------------

    def _tier_predicate(
        self,
        descriptor: ScopableEntityDescriptor,
        context: SecurityContext,
        tier: VisibilityTier,
    ) -> ColumnElement[bool]:
        owner = self._owner_clause(descriptor, context)

        if tier is VisibilityTier.SELF:
            return owner if owner is not None else false()

        units = self.hierarchy.resolve_accessible_units(
            context.tenant_id,
            context.unit_id,
            tier is VisibilityTier.UNIT_SUBTREE,
            memo=context,
        )
        if not units:
            return owner if owner is not None else false()

        disjuncts: list[ColumnElement[bool]] = []
        if owner is not None:
            disjuncts.append(owner)

        unit_col = self._column(descriptor, descriptor.unit_column, "unit")
        if unit_col is not None:
            disjuncts.append(unit_col.in_(sorted(units)))

        multi_col = self._column(descriptor, descriptor.multi_unit_column, "multi-unit")
        if multi_col is not None:
            disjuncts.append(json_array_intersects(multi_col, units))

        if not disjuncts:
            return false()
        return or_(*disjuncts) if len(disjuncts) > 1 else disjuncts[0]

    def _grant_predicate(self, descriptor: ScopableEntityDescriptor, context: SecurityContext) -> ColumnElement[bool]:
        grant = descriptor.grant
        resource_col = self._column(descriptor, grant.resource_id_column, "grant resource id")
        if resource_col is None:
            return false()

        resource_ids = self.grants.list_resource_ids_for_actor(context.actor_id, grant.resource_type)
        if not resource_ids:
            return false()
        return resource_col.in_(sorted(resource_ids))

    def _owner_clause(self, descriptor: ScopableEntityDescriptor, context: SecurityContext) -> ColumnElement[bool] | None:
        owner_col = self._column(descriptor, descriptor.owner_column, "owner")
        if owner_col is None:
            return None
        return owner_col == context.actor_id

    @staticmethod
    def _column(descriptor: ScopableEntityDescriptor, name: str | None, role: str) -> Any | None:
        if name is None:
            return None
        column = descriptor.column(name)
        if column is None:
            logger.warning(
                "Entity %s declares %s column %r but has no such column; treating that leg as false",
                descriptor.name,
                role,
                name,
            )
        return column
