"""
Pydantic schemas for request/response validation in the Inventory service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from .config import DEFAULT_MIN_STOCK
from .models import MovementType


# Stock writes

class StockUpdate(BaseModel):
    """Schema for setting a product's stock to an absolute value."""
    product_id: int = Field(..., gt=0)
    new_stock: int = Field(..., ge=0)
    notes: Optional[str] = None


class MovementCreate(BaseModel):
    """Schema for recording a single stock movement."""
    product_id: int = Field(..., gt=0)
    movement_type: MovementType
    quantity_change: int
    reference_id: Optional[int] = Field(default=None, gt=0)
    reference_type: Optional[str] = None
    notes: Optional[str] = None


class BatchMovementCreate(BaseModel):
    """Schema for a bulk list of movements applied one by one."""
    movements: List[MovementCreate] = Field(..., min_length=1, max_length=500)


class MovementResult(BaseModel):
    """Result of a committed (or no-op) stock write."""
    success: bool = True
    product_id: int
    movement_id: Optional[int] = None
    movement_type: Optional[str] = None
    quantity_change: int
    previous_stock: int
    new_stock: int

    class Config:
        from_attributes = True


class StockUpdateResult(MovementResult):
    message: str = "Stock updated successfully"


class BatchOutcome(BaseModel):
    index: int
    product_id: Optional[int] = None
    success: bool
    new_stock: Optional[int] = None
    movement_id: Optional[int] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class BatchMovementResult(BaseModel):
    """Per-item outcomes of a batch movement request."""
    results: List[BatchOutcome]
    total_processed: int
    successful: int
    failed: int

    class Config:
        from_attributes = True


# Ledger reads

class Movement(BaseModel):
    """
    Schema for a stock movement row in history responses.

    Attributes:
        user_name (str): Full name of the actor, joined from the users table
    """
    id: int
    product_id: int
    movement_type: str
    quantity_change: int
    quantity_before: int
    quantity_after: int
    reference_id: Optional[int] = None
    reference_type: Optional[str] = None
    notes: Optional[str] = None
    user_id: int
    user_name: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int


class MovementPage(BaseModel):
    data: List[Movement]
    pagination: Pagination


class LedgerReport(BaseModel):
    """Reconciliation of a product's cached stock against its movement history."""
    product_id: int
    stock: int
    movement_count: int
    last_quantity_after: Optional[int] = None
    reconciled: bool
    chain_breaks: List[Dict[str, Any]] = Field(default_factory=list)


# Catalog

class ProductBase(BaseModel):
    """Base schema with common product attributes."""
    name: str = Field(..., min_length=1, max_length=255)
    barcode: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    min_stock: int = Field(default=DEFAULT_MIN_STOCK, ge=0)
    category_id: Optional[int] = Field(default=None, gt=0)


class ProductCreate(ProductBase):
    """Schema for creating a product; stock is the opening inventory."""
    stock: int = Field(default=0, ge=0)
    active: bool = True


class ProductUpdate(BaseModel):
    """Schema for updating a product. All fields are optional; stock goes through the ledger."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    barcode: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    min_stock: Optional[int] = Field(default=None, ge=0)
    category_id: Optional[int] = Field(default=None, gt=0)
    active: Optional[bool] = None
    stock: Optional[int] = Field(default=None, ge=0)
    stock_notes: Optional[str] = None


class Product(ProductBase):
    """Schema for product responses, includes all database fields."""
    id: int
    stock: int
    active: bool
    is_low_stock: bool = False
    category_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProductDetail(Product):
    recent_movements: List[Movement] = Field(default_factory=list)


# Orders and returns

class OrderItem(BaseModel):
    """Schema for an order line item."""
    product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    price: Decimal = Field(..., ge=0, description="Price per unit")


class OrderCreate(BaseModel):
    """Schema for placing a new order; total is checked against the items when given."""
    items: List[OrderItem] = Field(..., description="Order line items")
    total: Optional[Decimal] = None


class Order(BaseModel):
    id: int
    user_id: int
    total: Decimal
    status: str
    items: List[Dict[str, Any]]
    created_at: datetime

    class Config:
        from_attributes = True


class ReturnItem(BaseModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)
    return_reason: Optional[str] = None


class ReturnCreate(BaseModel):
    items: List[ReturnItem]
    reason: Optional[str] = None


class OrderReturn(BaseModel):
    id: int
    order_id: int
    user_id: int
    items: List[Dict[str, Any]]
    reason: Optional[str] = None
    created_at: datetime
    movements: List[MovementResult] = Field(default_factory=list)

    class Config:
        from_attributes = True
