# Overview: Catalog service; users, categories, products and their stock records.

"""
Catalog Service

Every product owns exactly one inventory record, created in the same scope as
the product. Initial stock is booked as a `purchase` movement so the ledger
invariant (on_hand == sum of movements) holds from the first commit.

Products with order history are never removed; deactivate them instead.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from ..errors import NonNegativeViolation
from ..models import (
    CATEGORY, PRODUCT, USER,
    Category, InventoryMovement, Product, User,
    new_id, to_money,
)
from ..models.entities import REASON_PURCHASE
from ..store.base import Scope
from .concurrency import TransactionalService, get_for_update
from .inventory_service import (
    apply_movement, create_inventory_record, find_ledger_drift, get_on_hand, iter_movements,
    summarize_movements,
)
from .validation import ensure_valid, validate_delete

logger = logging.getLogger(__name__)

PRODUCT_MUTABLE_FIELDS = {"name", "description", "unit_price", "is_active"}


class CatalogService(TransactionalService):
    """Reference data owned by the catalog; every write is one atomic scope."""

    def register_user(self, email: str, full_name: str) -> str:
        def _op(scope: Scope) -> str:
            user = User(id=new_id(), email=email, full_name=full_name, created_at=self.clock())
            ensure_valid(scope, USER, user)
            scope.insert(USER, user)
            return user.id

        user_id = self._execute("register_user", _op)
        logger.info("registered user %s", user_id)
        return user_id

    def create_category(self, name: str) -> str:
        def _op(scope: Scope) -> str:
            category = Category(id=new_id(), name=name, created_at=self.clock())
            ensure_valid(scope, CATEGORY, category)
            scope.insert(CATEGORY, category)
            return category.id

        category_id = self._execute("create_category", _op)
        logger.info("created category %s (%s)", category_id, name)
        return category_id

    def create_product(
        self,
        category_id: str,
        sku: str,
        name: str,
        unit_price,
        description: Optional[str] = None,
        initial_stock: int = 0,
    ) -> str:
        """
        Create a product together with its inventory record.

        Args:
            category_id: Owning category (must exist)
            sku: Unique stock keeping unit
            name: Display name
            unit_price: Price; quantized to cents
            description: Optional free text
            initial_stock: Units on hand after creation, booked as a purchase

        Returns:
            The new product id

        Raises:
            DuplicateKey: If the sku is taken
            InvalidReference: If the category does not exist
            NonNegativeViolation: If unit_price or initial_stock is negative
        """
        if not isinstance(initial_stock, int) or isinstance(initial_stock, bool) or initial_stock < 0:
            raise NonNegativeViolation(PRODUCT, "initial_stock", f"must be >= 0, got {initial_stock!r}")
        unit_price = to_money(unit_price, PRODUCT, "unit_price")

        def _op(scope: Scope) -> str:
            now = self.clock()
            product = Product(
                id=new_id(),
                category_id=category_id,
                sku=sku,
                name=name,
                unit_price=unit_price,
                created_at=now,
                description=description,
            )
            ensure_valid(scope, PRODUCT, product)
            scope.insert(PRODUCT, product)
            create_inventory_record(scope, product.id, now=now)
            if initial_stock > 0:
                apply_movement(scope, product.id, initial_stock, REASON_PURCHASE, now=now)
            return product.id

        product_id = self._execute("create_product", _op)
        logger.info("created product %s (sku=%s, stock=%d)", product_id, sku, initial_stock)
        return product_id

    def update_product(self, product_id: str, **patch) -> Product:
        """
        Change mutable product fields. Prices already snapshotted on order
        items are unaffected.

        Raises:
            ValueError: If the patch names a field that cannot be changed
        """
        unknown = set(patch) - PRODUCT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Product fields not mutable: {', '.join(sorted(unknown))}")
        if "unit_price" in patch:
            patch["unit_price"] = to_money(patch["unit_price"], PRODUCT, "unit_price")

        def _op(scope: Scope) -> Product:
            product = get_for_update(scope, PRODUCT, product_id)
            updated = replace(product, **patch)
            ensure_valid(scope, PRODUCT, updated)
            scope.put(PRODUCT, product_id, updated)
            return updated

        updated = self._execute("update_product", _op)
        logger.info("updated product %s (%s)", product_id, ", ".join(sorted(patch)))
        return updated

    def update_product_price(self, product_id: str, unit_price) -> Product:
        return self.update_product(product_id, unit_price=unit_price)

    def deactivate_product(self, product_id: str) -> Product:
        return self.update_product(product_id, is_active=False)

    def delete_product(self, product_id: str) -> None:
        """
        Physically remove a product that was never ordered. Its inventory
        record and movements go with it.

        Raises:
            InvalidReference: If any order item references the product
        """

        def _op(scope: Scope) -> None:
            scope.get(PRODUCT, product_id)
            validate_delete(scope, PRODUCT, product_id).raise_if_invalid()
            scope.delete(PRODUCT, product_id)

        self._execute("delete_product", _op)
        logger.info("deleted product %s", product_id)

    def delete_category(self, category_id: str) -> None:
        """
        Raises:
            InvalidReference: While any product is in the category
        """

        def _op(scope: Scope) -> None:
            scope.delete(CATEGORY, category_id)

        self._execute("delete_category", _op)
        logger.info("deleted category %s", category_id)

    # =========================================================================
    # READS
    # =========================================================================

    def get_user(self, user_id: str) -> User:
        return self._read(lambda scope: scope.get(USER, user_id))

    def get_product(self, product_id: str) -> Product:
        return self._read(lambda scope: scope.get(PRODUCT, product_id))

    def get_on_hand(self, product_id: str) -> int:
        return self._read(lambda scope: get_on_hand(scope, product_id))

    def list_movements(self, product_id: str) -> list[InventoryMovement]:
        """Movements for a product, oldest first."""

        def _op(scope: Scope) -> list[InventoryMovement]:
            scope.get(PRODUCT, product_id)
            return sorted(iter_movements(scope, product_id), key=lambda m: (m.created_at, m.id))

        return self._read(_op)

    def movement_summary(self, product_id: str) -> dict[str, int]:
        return summarize_movements(self.list_movements(product_id))

    def verify_ledger(self) -> list[str]:
        """Product ids whose on_hand disagrees with their movement history."""
        return sorted(self._read(find_ledger_drift))
