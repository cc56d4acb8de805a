"""
Stock appliers for orders, returns and batch movements.

Each applier translates a business event into ledger writes. Orders and
returns are all-or-nothing; batch imports tolerate partial failure.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from . import models
from .exceptions import (
    InventoryError,
    InvalidOperationError,
    InsufficientStockError,
    OrderStockError,
    StockConflictError,
    StorageError,
)
from .ledger import MovementEntry, MovementResult, StockLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockLine:
    product_id: int
    quantity: int
    return_reason: Optional[str] = None


def _field(item: Any, name: str, default=None):
    if hasattr(item, name):
        return getattr(item, name)
    if isinstance(item, dict):
        return item.get(name, default)
    return default


def to_stock_lines(items: List[Any]) -> List[StockLine]:
    """Normalize schema objects or dicts into StockLine values."""
    lines = []
    for item in items:
        line = StockLine(
            product_id=int(_field(item, "product_id")),
            quantity=int(_field(item, "quantity")),
            return_reason=_field(item, "return_reason"),
        )
        if line.quantity <= 0:
            raise InvalidOperationError(
                f"Quantity for product {line.product_id} must be positive",
                product_id=line.product_id,
            )
        lines.append(line)
    return lines


class OrderStockApplier:
    """Deducts the stock of a confirmed order as one atomic batch."""

    def __init__(self, ledger: StockLedger):
        self.ledger = ledger

    def apply_order(self, items: List[Any], order_id: int, user_id: int) -> List[MovementResult]:
        """
        Record a 'sale' movement per order line.

        Raises:
            InsufficientStockError: a line asks for more than is on hand
            ProductNotFoundError: a line references an unknown product
            StockConflictError: concurrent writers exhausted the retries
            OrderStockError: the batch could not be committed
        """
        entries = [
            MovementEntry(
                product_id=line.product_id,
                movement_type=models.MovementType.SALE,
                quantity_change=-line.quantity,
                reference_id=order_id,
                reference_type="order",
                notes="Sale from order",
            )
            for line in to_stock_lines(items)
        ]
        try:
            results = self.ledger.write_batch(entries, user_id)
        except InvalidOperationError as exc:
            logger.warning(f"Order {order_id} rejected: {exc.message}")
            raise InsufficientStockError(
                exc.product_id,
                requested=-exc.quantity_change,
                available=exc.current_stock,
            ) from exc
        except StockConflictError:
            raise
        except StorageError as exc:
            logger.error(f"Order {order_id} stock batch rolled back: {exc.message}")
            raise OrderStockError(order_id, exc.message) from exc

        logger.info(f"Applied stock for order {order_id}: {len(results)} line(s)")
        return results


class ReturnStockApplier:
    """Restocks returned items as one atomic batch of 'return' movements."""

    def __init__(self, ledger: StockLedger):
        self.ledger = ledger

    def apply_return(self, items: List[Any], return_id: int, user_id: int) -> List[MovementResult]:
        entries = [
            MovementEntry(
                product_id=line.product_id,
                movement_type=models.MovementType.RETURN,
                quantity_change=line.quantity,
                reference_id=return_id,
                reference_type="return",
                notes=line.return_reason or "Product return",
            )
            for line in to_stock_lines(items)
        ]
        results = self.ledger.write_batch(entries, user_id)
        logger.info(f"Applied stock for return {return_id}: {len(results)} line(s)")
        return results


@dataclass
class BatchOutcome:
    index: int
    product_id: Optional[int]
    success: bool
    new_stock: Optional[int] = None
    movement_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    results: List[BatchOutcome] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total_processed - self.successful


class BatchMovementApplier:
    """
    Applies a list of heterogeneous movements one by one.

    Every movement commits on its own, so one bad row does not undo or block
    the others; the caller gets a per-item outcome instead.
    """

    def __init__(self, ledger: StockLedger):
        self.ledger = ledger

    def apply(self, movements: List[Any], user_id: int) -> BatchResult:
        batch = BatchResult()
        for index, movement in enumerate(movements):
            product_id = _field(movement, "product_id")
            try:
                result = self.ledger.record_movement(
                    product_id=product_id,
                    movement_type=_field(movement, "movement_type"),
                    quantity_change=_field(movement, "quantity_change"),
                    user_id=user_id,
                    reference_id=_field(movement, "reference_id"),
                    reference_type=_field(movement, "reference_type"),
                    notes=_field(movement, "notes"),
                )
            except InventoryError as exc:
                logger.warning(f"Batch movement {index} for product {product_id} failed: {exc.message}")
                batch.results.append(BatchOutcome(index=index, product_id=product_id, success=False, error=exc.message))
                continue

            batch.results.append(BatchOutcome(
                index=index,
                product_id=product_id,
                success=True,
                new_stock=result.new_stock,
                movement_id=result.movement_id,
            ))

        logger.info(f"Batch movement: {batch.successful}/{batch.total_processed} applied")
        return batch
