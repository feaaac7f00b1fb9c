from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import redis
from sqlalchemy.orm import Session, sessionmaker

from orgscope.cache import LocalCache, RedisCache, TieredCache
from orgscope.db.session import create_db_engine, create_session_factory
from orgscope.grants.store import GrantStore
from orgscope.org.hierarchy import OrgUnitHierarchy
from orgscope.security.descriptors import EntityRegistry, load_entity_registry
from orgscope.security.resolver import ScopeResolver
from orgscope.security.tiers import VisibilityTierResolver
from orgscope.settings import Settings


@dataclass
class ScopeServices:
    """Everything a request needs to establish and apply row visibility."""

    session_factory: sessionmaker[Session]
    hierarchy: OrgUnitHierarchy
    grants: GrantStore
    tiers: VisibilityTierResolver
    resolver: ScopeResolver
    registry: EntityRegistry

    def clear_caches(self) -> None:
        self.hierarchy.cache.clear()
        self.grants.cache.clear()


def build_services(
    settings: Settings,
    *,
    session_factory: sessionmaker[Session] | None = None,
    registry: EntityRegistry | None = None,
    entities: Iterable[Any] | None = None,
    redis_client: redis.Redis | None = None,
) -> ScopeServices:
    """
    Wire the components from settings.

    - No `session_factory`: one is built for `settings.db_url`.
    - No `registry` but `entities`: descriptors are loaded from the YAML registry.
    - Redis is used when a client is passed or `settings.redis_url` is set.
    """

    if session_factory is None:
        session_factory = create_session_factory(create_db_engine(settings.resolved_db_url()))

    if registry is None:
        if entities is not None:
            registry = load_entity_registry(settings.resolved_entity_registry_path(), entities)
        else:
            registry = EntityRegistry()

    remote: RedisCache | None = None
    if redis_client is not None:
        remote = RedisCache(redis_client)
    elif settings.redis_url:
        remote = RedisCache.from_url(settings.redis_url)

    def tiered(namespace: str) -> TieredCache:
        return TieredCache(
            f"{settings.cache_key_prefix}{namespace}",
            local=LocalCache(settings.local_cache_ttl_seconds, settings.local_cache_max_entries),
            remote=remote,
            ttl_seconds=settings.cache_ttl_seconds,
        )

    hierarchy = OrgUnitHierarchy(session_factory, tiered("unit-tree:"))
    grants = GrantStore(session_factory, tiered("grants:"))

    return ScopeServices(
        session_factory=session_factory,
        hierarchy=hierarchy,
        grants=grants,
        tiers=VisibilityTierResolver(session_factory),
        resolver=ScopeResolver(
            hierarchy,
            grants,
            allow_unauthenticated_passthrough=settings.allow_unauthenticated_passthrough,
        ),
        registry=registry,
    )
