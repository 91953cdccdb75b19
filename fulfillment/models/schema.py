"""
Declarative schema for the entity set.

Each EntitySchema names the record class, the key field(s), the fields that
must be unique when set, and outgoing references with their delete action.
Stores use it for key extraction, scan indexes and commit-time checks; the
validator uses it for reference lookups.

Referential actions:
- RESTRICT: target cannot be deleted while a dependent row points at it
- CASCADE:  dependent rows are deleted together with the target
- SET_NULL: dependent rows survive with the reference cleared
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

from .entities import (
    USER, CATEGORY, PRODUCT, ORDER, ORDER_ITEM, PAYMENT, SHIPMENT,
    INVENTORY, INVENTORY_MOVEMENT,
    User, Category, Product, Order, OrderItem, Payment, Shipment,
    InventoryRecord, InventoryMovement,
)


RESTRICT = "restrict"
CASCADE = "cascade"
SET_NULL = "set_null"


@dataclass(frozen=True)
class Reference:
    field: str
    target: str
    on_delete: str = RESTRICT


@dataclass(frozen=True)
class EntitySchema:
    name: str
    entity_cls: type
    key_fields: tuple[str, ...]
    unique: tuple[str, ...] = ()
    references: tuple[Reference, ...] = ()
    indexes: tuple[str, ...] = ()

    def key_of(self, entity) -> Any:
        if len(self.key_fields) == 1:
            return getattr(entity, self.key_fields[0])
        return tuple(getattr(entity, name) for name in self.key_fields)

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in fields(self.entity_cls))

    @property
    def index_names(self) -> frozenset[str]:
        """Every field a scan may filter on: unique, referencing, or declared."""
        names = set(self.unique) | set(self.indexes)
        names.update(ref.field for ref in self.references)
        return frozenset(names)

    def reference(self, field: str) -> Reference | None:
        for ref in self.references:
            if ref.field == field:
                return ref
        return None


SCHEMAS: dict[str, EntitySchema] = {
    USER: EntitySchema(
        name=USER,
        entity_cls=User,
        key_fields=("id",),
        unique=("email",),
    ),
    CATEGORY: EntitySchema(
        name=CATEGORY,
        entity_cls=Category,
        key_fields=("id",),
        unique=("name",),
    ),
    PRODUCT: EntitySchema(
        name=PRODUCT,
        entity_cls=Product,
        key_fields=("id",),
        unique=("sku",),
        references=(Reference("category_id", CATEGORY, RESTRICT),),
        indexes=("is_active",),
    ),
    ORDER: EntitySchema(
        name=ORDER,
        entity_cls=Order,
        key_fields=("id",),
        unique=("external_ref",),
        references=(Reference("user_id", USER, RESTRICT),),
        indexes=("status",),
    ),
    ORDER_ITEM: EntitySchema(
        name=ORDER_ITEM,
        entity_cls=OrderItem,
        key_fields=("order_id", "product_id"),
        references=(
            Reference("order_id", ORDER, CASCADE),
            Reference("product_id", PRODUCT, RESTRICT),
        ),
    ),
    PAYMENT: EntitySchema(
        name=PAYMENT,
        entity_cls=Payment,
        key_fields=("id",),
        unique=("order_id", "provider_txn"),
        references=(Reference("order_id", ORDER, CASCADE),),
    ),
    SHIPMENT: EntitySchema(
        name=SHIPMENT,
        entity_cls=Shipment,
        key_fields=("id",),
        unique=("order_id", "tracking_no"),
        references=(Reference("order_id", ORDER, CASCADE),),
    ),
    INVENTORY: EntitySchema(
        name=INVENTORY,
        entity_cls=InventoryRecord,
        key_fields=("product_id",),
        references=(Reference("product_id", PRODUCT, CASCADE),),
    ),
    INVENTORY_MOVEMENT: EntitySchema(
        name=INVENTORY_MOVEMENT,
        entity_cls=InventoryMovement,
        key_fields=("id",),
        references=(
            Reference("product_id", PRODUCT, CASCADE),
            Reference("order_id", ORDER, SET_NULL),
        ),
    ),
}


def dependents_of(entity_type: str, schemas: dict[str, EntitySchema] = SCHEMAS):
    """Yield (schema, reference) pairs for every reference that targets entity_type."""
    for schema in schemas.values():
        for ref in schema.references:
            if ref.target == entity_type:
                yield schema, ref
