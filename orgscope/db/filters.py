from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, with_loader_criteria

from orgscope.errors import TenantImmutableError
from orgscope.security.levels import GrantScope

logger = logging.getLogger(__name__)

SCOPE_CONTEXT_KEY = "scope_context"
SCOPE_RESOLVER_KEY = "scope_resolver"
ENTITY_REGISTRY_KEY = "entity_registry"
PENDING_CREATOR_GRANTS_KEY = "pending_creator_grants"


def attach_scope(session: Session, context: Any, resolver: Any, registry: Any) -> Session:
    """Bind a SecurityContext (plus resolver and registry) to a session."""
    session.info[SCOPE_CONTEXT_KEY] = context
    session.info[SCOPE_RESOLVER_KEY] = resolver
    session.info[ENTITY_REGISTRY_KEY] = registry
    return session


def _scope_of(session: Session) -> tuple[Any, Any, Any] | None:
    context = session.info.get(SCOPE_CONTEXT_KEY)
    resolver = session.info.get(SCOPE_RESOLVER_KEY)
    registry = session.info.get(ENTITY_REGISTRY_KEY)
    if context is None or resolver is None or registry is None:
        return None
    return context, resolver, registry


@event.listens_for(Session, "do_orm_execute")
def _apply_visibility_filters(execute_state) -> None:
    """
    Transparent row scoping.

    Query code stays unchanged:
        db.scalars(select(Order)).all()
    only returns the rows the session's SecurityContext may see. ORM-enabled
    UPDATE and DELETE statements get the same predicate.
    """

    if not (execute_state.is_select or execute_state.is_update or execute_state.is_delete):
        return

    scope = _scope_of(execute_state.session)
    if scope is None:
        return
    context, resolver, registry = scope

    if context.scope_disabled:
        return

    stmt = execute_state.statement

    if execute_state.is_select:
        options = []
        for mapper in execute_state.all_mappers:
            descriptor = registry.for_entity(mapper.class_)
            if descriptor is None:
                continue
            predicate = resolver.predicate(descriptor, context)
            if predicate is None:
                continue
            options.append(with_loader_criteria(mapper.class_, predicate, include_aliases=True))
        if options:
            execute_state.statement = stmt.options(*options)
        return

    mapper = execute_state.bind_mapper
    descriptor = registry.for_entity(mapper.class_) if mapper is not None else None
    if descriptor is None:
        return
    predicate = resolver.predicate(descriptor, context)
    if predicate is not None:
        execute_state.statement = stmt.where(predicate)


@event.listens_for(Session, "before_flush")
def _stamp_scoped_rows(session: Session, flush_context, instances) -> None:
    """
    Fill tenant / owner / unit of new scoped rows from the context, and keep
    every written row inside the context's tenant.
    """

    scope = _scope_of(session)
    if scope is None:
        return
    context, _resolver, registry = scope

    if context.is_authenticated:
        for obj in session.new:
            descriptor = registry.for_entity(type(obj))
            if descriptor is None:
                continue
            if descriptor.tenant_column and not context.scope_disabled:
                tenant = getattr(obj, descriptor.tenant_column, None)
                if tenant and tenant != context.tenant_id:
                    logger.warning(
                        "Rejected %s row for tenant=%s from context tenant=%s",
                        descriptor.name,
                        tenant,
                        context.tenant_id,
                    )
                    raise TenantImmutableError(f"new {descriptor.name} row belongs to another tenant")
            for column, value in (
                (descriptor.tenant_column, context.tenant_id),
                (descriptor.owner_column, context.actor_id),
                (descriptor.unit_column, context.unit_id),
            ):
                if column and not getattr(obj, column, None):
                    setattr(obj, column, value)

    for obj in session.dirty:
        descriptor = registry.for_entity(type(obj))
        if descriptor is None or not descriptor.tenant_column:
            continue
        history = inspect(obj).attrs[descriptor.tenant_column].history
        if history.deleted and any(old for old in history.deleted):
            logger.warning("Rejected tenant change on %s row", descriptor.name)
            raise TenantImmutableError(f"tenant of an existing {descriptor.name} row cannot change")


@event.listens_for(Session, "after_flush")
def _collect_creator_grants(session: Session, flush_context) -> None:
    """Remember (actor, resource, type) for rows created in grant-participating entities."""

    scope = _scope_of(session)
    if scope is None:
        return
    context, _resolver, registry = scope
    if not context.is_authenticated:
        return

    pending = session.info.setdefault(PENDING_CREATOR_GRANTS_KEY, [])
    for obj in session.new:
        descriptor = registry.for_entity(type(obj))
        if descriptor is None or not descriptor.participates_in_grants or not descriptor.grant.grant_creator:
            continue
        resource_id = getattr(obj, descriptor.grant.resource_id_column, None)
        if resource_id:
            pending.append((context.actor_id, resource_id, descriptor.grant.resource_type))


@event.listens_for(Session, "after_commit")
def _grant_creators(session: Session) -> None:
    # GrantStore writes in its own transaction, so only after the rows are committed.
    pending = session.info.pop(PENDING_CREATOR_GRANTS_KEY, None)
    scope = _scope_of(session)
    if not pending or scope is None:
        return
    _context, resolver, _registry = scope

    for actor_id, resource_id, resource_type in pending:
        resolver.grants.add(actor_id, resource_id, resource_type, GrantScope.OWNER)
    logger.info("Granted OWNER to creators of %s new rows", len(pending))


@event.listens_for(Session, "after_rollback")
def _drop_creator_grants(session: Session) -> None:
    session.info.pop(PENDING_CREATOR_GRANTS_KEY, None)
