from .entities import (
    User, Category, Product, Order, OrderItem, Payment, Shipment,
    InventoryRecord, InventoryMovement,
    USER, CATEGORY, PRODUCT, ORDER, ORDER_ITEM, PAYMENT, SHIPMENT,
    INVENTORY, INVENTORY_MOVEMENT,
    to_money, new_id,
)
from .schema import SCHEMAS, EntitySchema, Reference, RESTRICT, CASCADE, SET_NULL
from .tables import ROW_CLASSES

__all__ = [
    'User', 'Category', 'Product', 'Order', 'OrderItem', 'Payment', 'Shipment',
    'InventoryRecord', 'InventoryMovement',
    'USER', 'CATEGORY', 'PRODUCT', 'ORDER', 'ORDER_ITEM', 'PAYMENT', 'SHIPMENT',
    'INVENTORY', 'INVENTORY_MOVEMENT',
    'to_money', 'new_id',
    'SCHEMAS', 'EntitySchema', 'Reference', 'RESTRICT', 'CASCADE', 'SET_NULL',
    'ROW_CLASSES',
]
