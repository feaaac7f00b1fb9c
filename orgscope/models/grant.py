from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from orgscope.db.base import Base, utcnow
from orgscope.security.levels import GrantScope


class Grant(Base):
    """
    Ad hoc access of one actor to one resource, outside the role tiers.

    `resource_type` is a caller-defined namespace (e.g. 10 = scripts, 12 = tasks).
    Removal is a soft delete; the (actor, resource, resource_type) key stays
    unique across live and deleted rows.
    """

    __tablename__ = "grants"
    __table_args__ = (
        UniqueConstraint("actor_id", "resource_id", "resource_type", name="uq_grants_actor_resource"),
        Index("ix_grants_actor_type", "actor_id", "resource_type", "enabled"),
        Index("ix_grants_resource_type", "resource_id", "resource_type", "enabled"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    resource_id: Mapped[int] = mapped_column(Integer, nullable=False)
    resource_type: Mapped[int] = mapped_column(Integer, nullable=False)

    scope: Mapped[int] = mapped_column(Integer, default=int(GrantScope.VIEW), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def is_live(self) -> bool:
        return self.enabled and self.deleted_at is None
