"""
Org-unit subtree resolution on top of a materialized path.

Every unit stores its self-inclusive ancestor chain (`/1/2/5/`), so "unit 2 and
everything below it" is a single prefix match on `path`, always scoped to the
tenant. Subtree lookups are cached in three tiers:

1. the request's SecurityContext memo (lives for one request),
2. a process-local cache keyed by (tenant, unit),
3. redis, with a TTL (default 300s).

Unit creation and moves invalidate tiers 2 and 3 for every unit whose subtree
changed; other processes may see the old subtree until their TTL expires.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from orgscope.cache import TieredCache
from orgscope.db.json_membership import json_array_intersects
from orgscope.errors import StoreFailure, UnitMoveError
from orgscope.models.org import ACTOR_STATUS_ACTIVE, Actor, OrgUnit
from orgscope.security.context import SecurityContext

logger = logging.getLogger(__name__)


class OrgUnitHierarchy:
    def __init__(self, session_factory: sessionmaker[Session], cache: TieredCache | None = None) -> None:
        self._session_factory = session_factory
        self.cache = cache if cache is not None else TieredCache("unit-tree:")

    @staticmethod
    def _cache_key(tenant_id: int, unit_id: int) -> str:
        return f"{tenant_id}:{unit_id}"

    # ---- read path ------------------------------------------------------------------

    def resolve_accessible_units(
        self,
        tenant_id: int,
        unit_id: int,
        include_subtree: bool,
        *,
        memo: SecurityContext | None = None,
        bypass_cache: bool = False,
    ) -> frozenset[int]:
        """
        Units visible from `unit_id`.

        Without `include_subtree` this is just `{unit_id}` (existence is not
        checked). With it, the unit plus every unit of the same tenant whose
        path starts with its path; an unknown unit yields an empty set.
        """

        if unit_id <= 0:
            return frozenset()

        if memo is not None and not bypass_cache:
            memoized = memo.memoized_units(unit_id, include_subtree)
            if memoized is not None:
                return memoized

        if include_subtree:
            units = self._subtree(tenant_id, unit_id, bypass_cache=bypass_cache)
        else:
            units = frozenset({unit_id})

        if memo is not None:
            memo.memoize_units(unit_id, include_subtree, units)
        return units

    def _subtree(self, tenant_id: int, unit_id: int, *, bypass_cache: bool) -> frozenset[int]:
        key = self._cache_key(tenant_id, unit_id)

        if not bypass_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return frozenset(cached)

        units = self._load_subtree(tenant_id, unit_id)
        self.cache.set(key, sorted(units))
        return units

    def _load_subtree(self, tenant_id: int, unit_id: int) -> frozenset[int]:
        try:
            with self._session_factory() as session:
                path = session.scalar(
                    select(OrgUnit.path).where(OrgUnit.id == unit_id, OrgUnit.tenant_id == tenant_id)
                )
                if path is None:
                    return frozenset()

                ids = session.scalars(
                    select(OrgUnit.id).where(
                        OrgUnit.tenant_id == tenant_id,
                        OrgUnit.path.startswith(path, autoescape=True),
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"subtree lookup failed tenant={tenant_id} unit={unit_id}") from exc

        return frozenset({unit_id, *ids})

    def ancestor_ids(self, tenant_id: int, unit_id: int) -> list[int]:
        """Ancestors from the root down, excluding the unit itself."""
        try:
            with self._session_factory() as session:
                unit = session.scalars(
                    select(OrgUnit).where(OrgUnit.id == unit_id, OrgUnit.tenant_id == tenant_id)
                ).first()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"unit lookup failed tenant={tenant_id} unit={unit_id}") from exc
        return unit.ancestor_ids() if unit is not None else []

    def invalidate(self, tenant_id: int, unit_id: int) -> None:
        self.cache.delete(self._cache_key(tenant_id, unit_id))

    # ---- write path -----------------------------------------------------------------

    def create_unit(self, tenant_id: int, name: str, parent_id: int = 0, display_order: int = 0) -> OrgUnit:
        try:
            with self._session_factory.begin() as session:
                if parent_id > 0:
                    parent = session.get(OrgUnit, parent_id)
                    if parent is None or parent.tenant_id != tenant_id:
                        raise UnitMoveError(f"unknown parent unit {parent_id} in tenant {tenant_id}")
                    base_path, depth = parent.path, parent.depth + 1
                else:
                    base_path, depth = "/", 1

                unit = OrgUnit(
                    tenant_id=tenant_id,
                    name=name,
                    parent_id=parent_id,
                    path=base_path,
                    depth=depth,
                    display_order=display_order,
                )
                session.add(unit)
                session.flush()
                unit.path = f"{base_path}{unit.id}/"
                ancestors = unit.ancestor_ids()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"creating unit {name!r} failed") from exc

        for ancestor_id in ancestors:
            self.invalidate(tenant_id, ancestor_id)
        return unit

    def move_unit(self, unit_id: int, new_parent_id: int) -> OrgUnit:
        """
        Re-parent a unit and rewrite the path/depth of its whole subtree.

        Runs in one transaction; cache entries of the unit and of every old and
        new ancestor are dropped after commit.
        """

        try:
            with self._session_factory.begin() as session:
                unit = session.get(OrgUnit, unit_id)
                if unit is None:
                    raise UnitMoveError(f"unknown unit {unit_id}")

                old_path = unit.path
                old_ancestors = unit.ancestor_ids()

                if new_parent_id > 0:
                    parent = session.get(OrgUnit, new_parent_id)
                    if parent is None or parent.tenant_id != unit.tenant_id:
                        raise UnitMoveError(f"unknown parent unit {new_parent_id} in tenant {unit.tenant_id}")
                    if parent.path.startswith(old_path):
                        raise UnitMoveError(f"cannot move unit {unit_id} under itself or a descendant")
                    new_path = f"{parent.path}{unit.id}/"
                    new_depth = parent.depth + 1
                else:
                    new_path = f"/{unit.id}/"
                    new_depth = 1

                descendants = session.scalars(
                    select(OrgUnit).where(
                        OrgUnit.tenant_id == unit.tenant_id,
                        OrgUnit.path.startswith(old_path, autoescape=True),
                        OrgUnit.id != unit.id,
                    )
                ).all()

                depth_delta = new_depth - unit.depth
                unit.parent_id = new_parent_id
                unit.path = new_path
                unit.depth = new_depth
                for child in descendants:
                    child.path = new_path + child.path[len(old_path) :]
                    child.depth += depth_delta

                tenant_id = unit.tenant_id
                new_ancestors = unit.ancestor_ids()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"moving unit {unit_id} failed") from exc

        affected = {unit_id, *old_ancestors, *new_ancestors}
        for affected_id in affected:
            self.invalidate(tenant_id, affected_id)

        logger.info(
            "Moved unit=%s tenant=%s subtree_size=%s invalidated=%s",
            unit_id,
            tenant_id,
            len(descendants) + 1,
            len(affected),
        )
        return unit

    def refresh_member_count(self, unit_id: int) -> int:
        """Recount active actors in the unit, counting multi-membership too."""
        try:
            with self._session_factory.begin() as session:
                unit = session.get(OrgUnit, unit_id)
                if unit is None:
                    return 0
                count = session.scalar(
                    select(func.count(Actor.id)).where(
                        Actor.tenant_id == unit.tenant_id,
                        Actor.status == ACTOR_STATUS_ACTIVE,
                        (Actor.unit_id == unit_id) | json_array_intersects(Actor.unit_ids, [unit_id]),
                    )
                )
                unit.member_count = int(count or 0)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"refreshing member count of unit {unit_id} failed") from exc
        return unit.member_count

    def delete_unit(self, unit_id: int) -> bool:
        """
        Delete a leaf unit nobody belongs to.

        Returns False, leaving everything untouched, when the unit is unknown,
        still has child units, or still has actors (primary or multi-unit).
        """

        try:
            with self._session_factory.begin() as session:
                unit = session.get(OrgUnit, unit_id)
                if unit is None:
                    return False

                has_children = session.scalar(
                    select(OrgUnit.id)
                    .where(OrgUnit.tenant_id == unit.tenant_id, OrgUnit.parent_id == unit_id)
                    .limit(1)
                )
                if has_children is not None:
                    return False

                has_members = session.scalar(
                    select(Actor.id)
                    .where(
                        Actor.tenant_id == unit.tenant_id,
                        (Actor.unit_id == unit_id) | json_array_intersects(Actor.unit_ids, [unit_id]),
                    )
                    .limit(1)
                )
                if has_members is not None:
                    return False

                tenant_id = unit.tenant_id
                ancestors = unit.ancestor_ids()
                session.delete(unit)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"deleting unit {unit_id} failed") from exc

        for affected_id in (unit_id, *ancestors):
            self.invalidate(tenant_id, affected_id)
        logger.info("Deleted unit=%s tenant=%s", unit_id, tenant_id)
        return True
