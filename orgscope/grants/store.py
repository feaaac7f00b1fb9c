"""
Ad hoc grants: actor X may access resource R of type T at scope S.

Read path: `list_resource_ids_for_actor` is hit on every scoped query of a
grant-participating entity, so it is cached per (actor, type) in a process-local
tier and in redis (TTL default 300s).

Write path: each mutation runs in one storage transaction. After commit, the
cache entries of every affected actor are dropped; "affected" is the union of
the actors holding a grant on the resource before and after the mutation. If
the transaction fails nothing is persisted, no cache entry is touched, and
`StoreFailure` is raised.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from orgscope.cache import TieredCache
from orgscope.db.base import utcnow
from orgscope.errors import StoreFailure
from orgscope.models.grant import Grant
from orgscope.security.levels import GrantScope

logger = logging.getLogger(__name__)


def _live():
    return (Grant.enabled.is_(True), Grant.deleted_at.is_(None))


class GrantStore:
    def __init__(self, session_factory: sessionmaker[Session], cache: TieredCache | None = None) -> None:
        self._session_factory = session_factory
        self.cache = cache if cache is not None else TieredCache("grants:")

    @staticmethod
    def _cache_key(actor_id: int, resource_type: int) -> str:
        return f"{actor_id}:{resource_type}"

    def _invalidate(self, actor_ids: Iterable[int], resource_type: int) -> None:
        for actor_id in actor_ids:
            self.cache.delete(self._cache_key(actor_id, resource_type))

    # ---- reads ----------------------------------------------------------------------

    def list_resource_ids_for_actor(self, actor_id: int, resource_type: int) -> frozenset[int]:
        key = self._cache_key(actor_id, resource_type)
        cached = self.cache.get(key)
        if cached is not None:
            return frozenset(cached)

        try:
            with self._session_factory() as session:
                ids = session.scalars(
                    select(Grant.resource_id).where(
                        Grant.actor_id == actor_id,
                        Grant.resource_type == resource_type,
                        *_live(),
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"grant lookup failed actor={actor_id} type={resource_type}") from exc

        resource_ids = frozenset(ids)
        self.cache.set(key, sorted(resource_ids))
        return resource_ids

    def list_actors_for_resource(self, resource_id: int, resource_type: int) -> frozenset[int]:
        try:
            with self._session_factory() as session:
                return self._actors_for_resource(session, resource_id, resource_type)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"grant lookup failed resource={resource_id} type={resource_type}") from exc

    def has_grant(
        self,
        actor_id: int,
        resource_id: int,
        resource_type: int,
        min_scope: GrantScope = GrantScope.VIEW,
    ) -> bool:
        try:
            with self._session_factory() as session:
                found = session.scalar(
                    select(Grant.id)
                    .where(
                        Grant.actor_id == actor_id,
                        Grant.resource_id == resource_id,
                        Grant.resource_type == resource_type,
                        Grant.scope >= int(min_scope),
                        *_live(),
                    )
                    .limit(1)
                )
        except SQLAlchemyError as exc:
            raise StoreFailure(f"grant check failed actor={actor_id} resource={resource_id}") from exc
        return found is not None

    @staticmethod
    def _actors_for_resource(session: Session, resource_id: int, resource_type: int) -> frozenset[int]:
        ids = session.scalars(
            select(Grant.actor_id).where(
                Grant.resource_id == resource_id,
                Grant.resource_type == resource_type,
                *_live(),
            )
        ).all()
        return frozenset(ids)

    # ---- writes ---------------------------------------------------------------------

    @staticmethod
    def _upsert(session: Session, actor_id: int, resource_id: int, resource_type: int, scope: GrantScope) -> Grant:
        # Matches soft-deleted rows too: the unique key spans them.
        grant = session.scalars(
            select(Grant).where(
                Grant.actor_id == actor_id,
                Grant.resource_id == resource_id,
                Grant.resource_type == resource_type,
            )
        ).first()
        if grant is None:
            grant = Grant(actor_id=actor_id, resource_id=resource_id, resource_type=resource_type)
            session.add(grant)
        grant.scope = int(scope)
        grant.enabled = True
        grant.deleted_at = None
        return grant

    @staticmethod
    def _soft_delete_for_resource(session: Session, resource_id: int, resource_type: int) -> int:
        grants = session.scalars(
            select(Grant).where(
                Grant.resource_id == resource_id,
                Grant.resource_type == resource_type,
                Grant.deleted_at.is_(None),
            )
        ).all()
        now = utcnow()
        for grant in grants:
            grant.deleted_at = now
        session.flush()
        return len(grants)

    def add(self, actor_id: int, resource_id: int, resource_type: int, scope: GrantScope = GrantScope.VIEW) -> None:
        """Create the grant, or update scope / re-enable / revive the existing one."""
        try:
            with self._session_factory.begin() as session:
                self._upsert(session, actor_id, resource_id, resource_type, scope)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"adding grant actor={actor_id} resource={resource_id} failed") from exc

        self._invalidate([actor_id], resource_type)

    def add_many(
        self,
        actor_ids: Iterable[int],
        resource_id: int,
        resource_type: int,
        scope: GrantScope = GrantScope.VIEW,
    ) -> int:
        actors = list(dict.fromkeys(actor_ids))
        try:
            with self._session_factory.begin() as session:
                for actor_id in actors:
                    self._upsert(session, actor_id, resource_id, resource_type, scope)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"adding grants on resource={resource_id} failed") from exc

        self._invalidate(actors, resource_type)
        return len(actors)

    def remove(self, actor_id: int, resource_id: int, resource_type: int) -> bool:
        try:
            with self._session_factory.begin() as session:
                grant = session.scalars(
                    select(Grant).where(
                        Grant.actor_id == actor_id,
                        Grant.resource_id == resource_id,
                        Grant.resource_type == resource_type,
                        Grant.deleted_at.is_(None),
                    )
                ).first()
                if grant is None:
                    return False
                grant.deleted_at = utcnow()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"removing grant actor={actor_id} resource={resource_id} failed") from exc

        self._invalidate([actor_id], resource_type)
        return True

    def replace_for_resource(
        self,
        resource_id: int,
        resource_type: int,
        actor_ids: Iterable[int],
        scope: GrantScope = GrantScope.VIEW,
    ) -> None:
        """
        Make `actor_ids` the exact set of grantees of the resource.

        Actors that lose their grant are invalidated as well as the new ones.
        """

        new_actors = list(dict.fromkeys(actor_ids))
        try:
            with self._session_factory.begin() as session:
                previous = self._actors_for_resource(session, resource_id, resource_type)
                self._soft_delete_for_resource(session, resource_id, resource_type)
                for actor_id in new_actors:
                    self._upsert(session, actor_id, resource_id, resource_type, scope)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"replacing grants on resource={resource_id} type={resource_type} failed") from exc

        affected = previous | set(new_actors)
        self._invalidate(affected, resource_type)
        logger.info(
            "Replaced grants resource=%s type=%s actors=%s invalidated=%s",
            resource_id,
            resource_type,
            len(new_actors),
            len(affected),
        )

    def clear_for_resource(self, resource_id: int, resource_type: int) -> int:
        try:
            with self._session_factory.begin() as session:
                previous = self._actors_for_resource(session, resource_id, resource_type)
                removed = self._soft_delete_for_resource(session, resource_id, resource_type)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"clearing grants on resource={resource_id} type={resource_type} failed") from exc

        self._invalidate(previous, resource_type)
        return removed
