from __future__ import annotations

from ..extensions import db
from .entities import (
    USER, CATEGORY, PRODUCT, ORDER, ORDER_ITEM, PAYMENT, SHIPMENT,
    INVENTORY, INVENTORY_MOVEMENT,
)

# Relational layout used by SqlEntityStore. Column names follow the record
# fields one-to-one; every table carries version_id for optimistic locking so a
# stale UPDATE raises StaleDataError instead of silently losing a write.
# Referential actions mirror models/schema.py; the store applies them itself
# before the database would.


class UserRow(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(32), primary_key=True)
    email = db.Column(db.Text, nullable=False, unique=True)
    full_name = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<UserRow id={self.id} email={self.email!r}>"


class CategoryRow(db.Model):
    __tablename__ = "categories"

    id = db.Column(db.String(32), primary_key=True)
    name = db.Column(db.Text, nullable=False, unique=True)
    created_at = db.Column(db.DateTime, nullable=False)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}


class ProductRow(db.Model):
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("unit_price >= 0", name="ck_products_unit_price"),
    )

    id = db.Column(db.String(32), primary_key=True)
    category_id = db.Column(
        db.String(32), db.ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    sku = db.Column(db.Text, nullable=False, unique=True)
    name = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=True)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<ProductRow id={self.id} sku={self.sku!r} active={self.is_active}>"


class OrderRow(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('cart','placed','paid','shipped','cancelled','refunded')",
            name="ck_orders_status",
        ),
    )

    id = db.Column(db.String(32), primary_key=True)
    user_id = db.Column(
        db.String(32), db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status = db.Column(db.String(16), nullable=False, index=True)
    placed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False)
    external_ref = db.Column(db.Text, nullable=True, unique=True)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<OrderRow id={self.id} status={self.status}>"


class OrderItemRow(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity"),
        db.CheckConstraint("unit_price >= 0", name="ck_order_items_unit_price"),
    )

    order_id = db.Column(
        db.String(32), db.ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True
    )
    product_id = db.Column(
        db.String(32), db.ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True, index=True
    )
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}


class PaymentRow(db.Model):
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount >= 0", name="ck_payments_amount"),
        db.CheckConstraint(
            "status IN ('pending','captured','failed','refunded')", name="ck_payments_status"
        ),
    )

    id = db.Column(db.String(32), primary_key=True)
    order_id = db.Column(
        db.String(32), db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    provider = db.Column(db.Text, nullable=False)
    provider_txn = db.Column(db.Text, nullable=True, unique=True)
    # "metadata" is reserved on declarative classes
    metadata_json = db.Column("metadata", db.JSON, nullable=True)
    status = db.Column(db.String(16), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}


class ShipmentRow(db.Model):
    __tablename__ = "shipments"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','shipped','delivered','returned')", name="ck_shipments_status"
        ),
    )

    id = db.Column(db.String(32), primary_key=True)
    order_id = db.Column(
        db.String(32), db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    carrier = db.Column(db.Text, nullable=True)
    tracking_no = db.Column(db.Text, nullable=True, unique=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(16), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}


class InventoryRow(db.Model):
    __tablename__ = "inventory"
    __table_args__ = (
        db.CheckConstraint("on_hand >= 0", name="ck_inventory_on_hand"),
    )

    product_id = db.Column(
        db.String(32), db.ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    on_hand = db.Column(db.Integer, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<InventoryRow product_id={self.product_id} on_hand={self.on_hand}>"


class InventoryMovementRow(db.Model):
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.CheckConstraint(
            "reason IN ('purchase','sale','adjustment','return')", name="ck_inventory_movements_reason"
        ),
    )

    id = db.Column(db.String(32), primary_key=True)
    product_id = db.Column(
        db.String(32), db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_id = db.Column(
        db.String(32), db.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    delta = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(16), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False)

    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}


ROW_CLASSES = {
    USER: UserRow,
    CATEGORY: CategoryRow,
    PRODUCT: ProductRow,
    ORDER: OrderRow,
    ORDER_ITEM: OrderItemRow,
    PAYMENT: PaymentRow,
    SHIPMENT: ShipmentRow,
    INVENTORY: InventoryRow,
    INVENTORY_MOVEMENT: InventoryMovementRow,
}

# Record field -> mapped attribute, where they differ
ATTRIBUTE_OVERRIDES = {
    PAYMENT: {"metadata": "metadata_json"},
}
