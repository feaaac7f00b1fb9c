from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Table
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orgscope.db.base import Base, utcnow
from orgscope.security.levels import VisibilityTier

STATUS_DISABLED = 0
STATUS_ENABLED = 1

ACTOR_STATUS_ACTIVE = 1
ACTOR_STATUS_SUSPENDED = 2


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[int] = mapped_column(Integer, default=STATUS_ENABLED, nullable=False)


class OrgUnit(Base):
    __tablename__ = "org_units"
    __table_args__ = (
        Index("ix_org_units_tenant_parent", "tenant_id", "parent_id"),
        Index("ix_org_units_path", "path"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # 0 = root of the tenant's tree
    parent_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Materialized path, self-inclusive: "/1/2/5/". Maintained by OrgUnitHierarchy.
    path: Mapped[str] = mapped_column(String(500), default="/", nullable=False)
    depth: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[int] = mapped_column(Integer, default=STATUS_ENABLED, nullable=False)

    def is_root(self) -> bool:
        return self.parent_id == 0

    def path_ids(self) -> list[int]:
        return [int(part) for part in self.path.strip("/").split("/") if part]

    def ancestor_ids(self) -> list[int]:
        return self.path_ids()[:-1]


actor_roles = Table(
    "actor_roles",
    Base.metadata,
    Column("actor_id", ForeignKey("actors.id"), primary_key=True),
    Column("role_id", ForeignKey("roles.id"), primary_key=True),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)

    # Stored as the VisibilityTier integer so MAX() works in SQL.
    tier: Mapped[int] = mapped_column(Integer, default=int(VisibilityTier.SELF), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    actors: Mapped[list["Actor"]] = relationship(
        secondary=actor_roles,
        back_populates="roles",
    )


class Actor(Base):
    __tablename__ = "actors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Primary unit plus any additional units (multi-membership).
    unit_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False, index=True)
    unit_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[int] = mapped_column(Integer, default=ACTOR_STATUS_ACTIVE, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    roles: Mapped[list[Role]] = relationship(
        secondary=actor_roles,
        back_populates="actors",
    )

    def all_unit_ids(self) -> list[int]:
        ids = list(self.unit_ids or [])
        if self.unit_id > 0 and self.unit_id not in ids:
            ids.insert(0, self.unit_id)
        return ids
