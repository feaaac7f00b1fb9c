"""
Entity descriptors: which scoping columns a business table carries.

A descriptor is declared explicitly per entity (in code or in the YAML
registry) instead of probing the schema at query time. A wrong guess would
silently drop a security clause, so live introspection is only available
through the opt-in `introspect_descriptor()` adapter.

YAML shape:

    entities:
      orders:
        tenant_column: tenant_id
        owner_column: owner_id
        unit_column: unit_id
        multi_unit_column: unit_ids
        grant:
          resource_type: 10
          resource_id_column: id
          grant_creator: true
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import Table, inspect
from sqlalchemy.sql.expression import ColumnElement

from orgscope.errors import DescriptorConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GrantParticipation:
    resource_type: int
    resource_id_column: str = "id"
    # Creating a row through a scoped session grants its creator OWNER scope.
    grant_creator: bool = True


@dataclass(frozen=True)
class ScopableEntityDescriptor:
    """
    Capability declaration for one business table.

    `entity` is a mapped ORM class or a Core `Table`; column names are looked
    up on it when a predicate is built.
    """

    entity: Any
    tenant_column: str | None = None
    owner_column: str | None = None
    unit_column: str | None = None
    multi_unit_column: str | None = None
    grant: GrantParticipation | None = None

    @property
    def name(self) -> str:
        if isinstance(self.entity, Table):
            return self.entity.name
        return getattr(self.entity, "__tablename__", getattr(self.entity, "__name__", repr(self.entity)))

    @property
    def has_tenant_column(self) -> bool:
        return self.tenant_column is not None

    @property
    def has_owner_column(self) -> bool:
        return self.owner_column is not None

    @property
    def participates_in_grants(self) -> bool:
        return self.grant is not None and self.grant.resource_type > 0

    def declared_columns(self) -> list[str]:
        names = [self.tenant_column, self.owner_column, self.unit_column, self.multi_unit_column]
        if self.grant is not None:
            names.append(self.grant.resource_id_column)
        return [n for n in names if n]

    def column(self, name: str | None) -> ColumnElement[Any] | None:
        """Column expression for `name`, or None if the entity has no such column."""
        if not name:
            return None
        if isinstance(self.entity, Table):
            return self.entity.c.get(name)
        attr = getattr(self.entity, name, None)
        if attr is None or not hasattr(attr, "__clause_element__"):
            return None
        return attr

    def missing_columns(self) -> list[str]:
        return [n for n in self.declared_columns() if self.column(n) is None]


def _table_of(entity: Any) -> Table:
    if isinstance(entity, Table):
        return entity
    return inspect(entity).local_table


def introspect_descriptor(
    entity: Any,
    *,
    resource_type: int = 0,
    resource_id_column: str = "id",
    tenant_column: str = "tenant_id",
    owner_column: str = "owner_id",
    unit_column: str = "unit_id",
    multi_unit_column: str = "unit_ids",
) -> ScopableEntityDescriptor:
    """
    Opt-in adapter: build a descriptor from conventional column names.

    Only columns actually present on the table are declared. Prefer an
    explicit descriptor for anything security relevant.
    """

    columns = set(_table_of(entity).c.keys())

    def present(name: str) -> str | None:
        return name if name in columns else None

    grant = None
    if resource_type > 0 and resource_id_column in columns:
        grant = GrantParticipation(resource_type=resource_type, resource_id_column=resource_id_column)

    descriptor = ScopableEntityDescriptor(
        entity=entity,
        tenant_column=present(tenant_column),
        owner_column=present(owner_column),
        unit_column=present(unit_column),
        multi_unit_column=present(multi_unit_column),
        grant=grant,
    )
    logger.debug("Introspected descriptor for %s: %s", descriptor.name, descriptor.declared_columns())
    return descriptor


# ---- registry ------------------------------------------------------------------------


class GrantRule(BaseModel):
    resource_type: int = Field(gt=0)
    resource_id_column: str = "id"
    grant_creator: bool = True


class EntityRule(BaseModel):
    tenant_column: str | None = "tenant_id"
    owner_column: str | None = None
    unit_column: str | None = None
    multi_unit_column: str | None = None
    grant: GrantRule | None = None


class EntityRegistryModel(BaseModel):
    entities: dict[str, EntityRule] = Field(default_factory=dict)


class EntityRegistry:
    """Descriptors by table name, with lookup by ORM class for the session filters."""

    def __init__(self, descriptors: Iterable[ScopableEntityDescriptor] = ()) -> None:
        self._by_name: dict[str, ScopableEntityDescriptor] = {}
        self._by_entity: dict[Any, ScopableEntityDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: ScopableEntityDescriptor) -> ScopableEntityDescriptor:
        missing = descriptor.missing_columns()
        if missing:
            raise DescriptorConfigError(f"entity {descriptor.name!r} has no column(s) {missing}")
        self._by_name[descriptor.name] = descriptor
        self._by_entity[descriptor.entity] = descriptor
        return descriptor

    def get(self, name: str) -> ScopableEntityDescriptor | None:
        return self._by_name.get(name)

    def for_entity(self, entity: Any) -> ScopableEntityDescriptor | None:
        return self._by_entity.get(entity)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __iter__(self):
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)


def build_entity_registry(model: EntityRegistryModel, entities: Iterable[Any]) -> EntityRegistry:
    by_table = {_table_of(entity).name: entity for entity in entities}

    registry = EntityRegistry()
    for table_name, rule in model.entities.items():
        entity = by_table.get(table_name)
        if entity is None:
            raise DescriptorConfigError(f"entity {table_name!r} is not a known table")

        grant = None
        if rule.grant is not None:
            grant = GrantParticipation(
                resource_type=rule.grant.resource_type,
                resource_id_column=rule.grant.resource_id_column,
                grant_creator=rule.grant.grant_creator,
            )
        registry.register(
            ScopableEntityDescriptor(
                entity=entity,
                tenant_column=rule.tenant_column,
                owner_column=rule.owner_column,
                unit_column=rule.unit_column,
                multi_unit_column=rule.multi_unit_column,
                grant=grant,
            )
        )
    return registry


def load_entity_registry(path: Path, entities: Iterable[Any]) -> EntityRegistry:
    raw_text = path.read_text(encoding="utf-8")
    raw: dict[str, Any] = yaml.safe_load(raw_text) or {}

    if "entities" not in raw:
        raise DescriptorConfigError(f"Missing top-level 'entities' key in config: {path}")

    try:
        model = EntityRegistryModel.model_validate(raw)
    except ValidationError as exc:
        raise DescriptorConfigError(f"Invalid entity registry {path}: {exc}") from exc
    return build_entity_registry(model, entities)
