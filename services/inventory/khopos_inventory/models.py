"""
SQLAlchemy ORM models for the Inventory service.

Defines the database schema for the catalog rows the ledger mutates, the
append-only stock movement ledger, and the activity log alerts are written to.
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, ForeignKey, Text, JSON
from .config import DEFAULT_MIN_STOCK
from .database import Base


class MovementType(str, Enum):
    """Kinds of stock-changing events recorded in the ledger."""
    SALE = "sale"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"
    RETURN = "return"


class Category(Base):
    """Product category, used for alert snapshots and valuation grouping."""
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)


class User(Base):
    """
    Read-only view of the users owned by the Users service.

    Only the columns needed to label movement history are mapped.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    role = Column(String, default="cashier", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class Product(Base):
    """
    Product model representing a sellable item and its cached stock level.

    Attributes:
        id (int): Primary key, auto-incremented product ID
        name (str): Display name
        barcode (str): Optional barcode (unique when present)
        price (Decimal): Selling price
        cost_price (Decimal): Purchase cost, used for valuation
        stock (int): Current on-hand quantity, only written by the stock ledger
        min_stock (int): Reorder level; at or below it the product is low stock
        category_id (int): Optional category
        active (bool): False once the product is soft deleted
        created_at (datetime): Timestamp when the product was created
        updated_at (datetime): Timestamp of the last change
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    barcode = Column(String, unique=True, index=True, nullable=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    cost_price = Column(Numeric(12, 2), nullable=True)
    stock = Column(Integer, nullable=False, default=0)
    min_stock = Column(Integer, nullable=False, default=DEFAULT_MIN_STOCK)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True, index=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class InventoryMovement(Base):
    """
    One immutable ledger entry per stock-changing event.

    quantity_after always equals quantity_before + quantity_change, and
    quantity_before equals the quantity_after of the previous movement
    for the same product.
    """
    __tablename__ = "inventory_movements"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    movement_type = Column(String(20), nullable=False)
    quantity_change = Column(Integer, nullable=False)
    quantity_before = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)
    reference_id = Column(Integer, nullable=True)
    reference_type = Column(String(30), nullable=True)
    notes = Column(Text, nullable=True)
    user_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ActivityLog(Base):
    """Generic append-only activity log; low stock alerts land here."""
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    action = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Order(Base):
    """
    Order header. Line items are stored as JSON; their stock effects live in
    inventory_movements with reference_type 'order'.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")
    items = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)


class OrderReturn(Base):
    """Return header; the returned quantities are restocked as 'return' movements."""
    __tablename__ = "order_returns"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    items = Column(JSON, nullable=False, default=list)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
