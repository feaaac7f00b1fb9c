from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Iterator
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from orgscope.db.filters import attach_scope
from orgscope.logging_config import configure_app_logging
from orgscope.models.org import ACTOR_STATUS_ACTIVE, Actor
from orgscope.security.context import SecurityContext, bind_context
from orgscope.security.levels import VisibilityTier
from orgscope.security.tiers import VisibilityTierResolver
from orgscope.services import ScopeServices, build_services
from orgscope.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def get_scope_services(request: Request) -> ScopeServices:
    services = getattr(request.app.state, "scope_services", None)
    if services is None:
        raise RuntimeError("Scope services not configured. Did app startup run?")
    return services


def load_actor(session_factory: sessionmaker[Session], actor_id: int) -> Actor:
    with session_factory() as db:
        actor = db.execute(select(Actor).where(Actor.id == actor_id)).scalar_one_or_none()

    if actor is None or actor.status != ACTOR_STATUS_ACTIVE:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or inactive actor")
    return actor


def context_for_actor(actor: Actor, tiers: VisibilityTierResolver) -> SecurityContext:
    """Admins see the whole tenant; everyone else gets the highest tier of their enabled roles."""
    tier = VisibilityTier.ALL if actor.is_admin else tiers.resolve(actor.id)
    return SecurityContext.begin(
        tenant_id=actor.tenant_id,
        actor_id=actor.id,
        unit_id=actor.unit_id,
        tier=tier,
        is_admin=actor.is_admin,
    )


async def get_security_context(
    request: Request,
    services: ScopeServices = Depends(get_scope_services),
) -> AsyncIterator[SecurityContext]:
    """
    Request-scoped SecurityContext.

    Authentication happens upstream and leaves the actor id on
    `request.state.actor_id`. The context is bound to the task-local slot
    for the request and ended when the request finishes, errors included.
    It runs on the event loop so that the route and its other dependencies
    see the binding; the database lookups go to the threadpool.
    """

    actor_id = getattr(request.state, "actor_id", None)
    if actor_id is None:
        logger.info("No authenticated actor path=%s method=%s", request.url.path, request.method)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

    actor = await run_in_threadpool(load_actor, services.session_factory, int(actor_id))
    context = await run_in_threadpool(context_for_actor, actor, services.tiers)
    request.state.security_context = context

    with bind_context(context):
        yield context


def get_scoped_session(
    context: SecurityContext = Depends(get_security_context),
    services: ScopeServices = Depends(get_scope_services),
) -> Iterator[Session]:
    """Session whose ORM statements are scoped to the request's context."""

    db = services.session_factory()
    try:
        attach_scope(db, context, services.resolver, services.registry)
        yield db
    finally:
        db.close()


def install_scope(
    app: FastAPI,
    entities: Iterable[Any] | None = None,
    *,
    settings: Settings | None = None,
    **overrides: Any,
) -> ScopeServices:
    """
    Build the scope services and make them reachable from request dependencies.

    Call it from the host application's lifespan. `overrides` are passed to
    `build_services` (session_factory, registry, redis_client).
    """

    settings = settings or get_settings()
    configure_app_logging(settings.log_level)

    services = build_services(settings, entities=entities, **overrides)
    app.state.scope_services = services
    logger.info(
        "Row scoping installed entities=%s redis=%s",
        len(services.registry),
        services.hierarchy.cache.remote is not None,
    )
    return services
