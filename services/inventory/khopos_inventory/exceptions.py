"""
Error taxonomy for stock ledger operations.

Every error carries the HTTP status the API maps it to, plus the context a
client needs to act on it.
"""
from typing import Any, Dict, Optional


class InventoryError(Exception):
    """Base class for ledger and applier failures."""
    status_code = 500

    def __init__(self, message: str, product_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.product_id = product_id

    def to_dict(self) -> Dict[str, Any]:
        payload = {"detail": self.message, "error": type(self).__name__}
        if self.product_id is not None:
            payload["product_id"] = self.product_id
        return payload


class ProductNotFoundError(InventoryError):
    status_code = 404

    def __init__(self, product_id: int):
        super().__init__(f"Product not found: {product_id}", product_id)


class InvalidOperationError(InventoryError):
    """A non-adjustment movement would take stock below zero."""
    status_code = 400

    def __init__(
        self,
        message: str,
        product_id: Optional[int] = None,
        current_stock: Optional[int] = None,
        quantity_change: Optional[int] = None,
        resulting_stock: Optional[int] = None,
    ):
        super().__init__(message, product_id)
        self.current_stock = current_stock
        self.quantity_change = quantity_change
        self.resulting_stock = resulting_stock

    @classmethod
    def negative_stock(cls, product_id: int, current_stock: int, quantity_change: int) -> "InvalidOperationError":
        resulting = current_stock + quantity_change
        return cls(
            f"Operation would result in negative stock ({resulting}) for product {product_id}",
            product_id=product_id,
            current_stock=current_stock,
            quantity_change=quantity_change,
            resulting_stock=resulting,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.resulting_stock is not None:
            payload["resulting_stock"] = self.resulting_stock
            payload["deficit"] = -self.resulting_stock
        return payload


class InsufficientStockError(InventoryError):
    """An order line asks for more than is on hand."""
    status_code = 400

    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}. Available: {available}, Requested: {requested}",
            product_id,
        )
        self.requested = requested
        self.available = available

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({"requested": self.requested, "available": self.available})
        return payload


class StorageError(InventoryError):
    """The atomic write failed; nothing was applied."""
    status_code = 500


class StockConflictError(StorageError):
    """Concurrent writers kept changing the stock between read and write."""
    status_code = 409


class OrderStockError(StorageError):
    """The order's stock batch could not be committed and was rolled back."""
    status_code = 500

    def __init__(self, order_id: int, cause: str):
        super().__init__(f"Failed to apply stock for order {order_id}: {cause}")
        self.order_id = order_id
