from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from orgscope.errors import StoreFailure
from orgscope.models.org import Actor, Role, actor_roles
from orgscope.security.levels import VisibilityTier

logger = logging.getLogger(__name__)


class VisibilityTierResolver:
    """Highest tier among an actor's enabled roles; SELF when there is none."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def resolve(self, actor_id: int) -> VisibilityTier:
        try:
            with self._session_factory() as session:
                highest = session.scalar(
                    select(func.max(Role.tier))
                    .join(actor_roles, actor_roles.c.role_id == Role.id)
                    .join(Actor, Actor.id == actor_roles.c.actor_id)
                    .where(
                        actor_roles.c.actor_id == actor_id,
                        Role.enabled.is_(True),
                        Role.tenant_id == Actor.tenant_id,
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreFailure(f"tier lookup failed actor={actor_id}") from exc

        if not highest:
            return VisibilityTier.SELF
        try:
            return VisibilityTier(highest)
        except ValueError:
            logger.warning("Unknown visibility tier %s on roles of actor=%s; using SELF", highest, actor_id)
            return VisibilityTier.SELF
