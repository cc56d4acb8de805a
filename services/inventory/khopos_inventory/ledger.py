"""
Stock ledger writer.

StockLedger is the only code path allowed to change products.stock. Every
change is written together with an inventory_movements row inside one
transaction, and the stock update is a compare-and-swap against the value
that was read, so concurrent writers cannot lose updates or break the
quantity_before / quantity_after chain.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import config, models
from .exceptions import (
    InventoryError,
    InvalidOperationError,
    ProductNotFoundError,
    StockConflictError,
    StorageError,
)

logger = logging.getLogger(__name__)

# Movement types that may not leave stock below zero
GUARDED_TYPES = frozenset({models.MovementType.SALE, models.MovementType.PURCHASE})


class StaleStockError(Exception):
    """The compare-and-swap matched no row: stock changed since it was read."""

    def __init__(self, product_id: int, expected: int):
        super().__init__(f"Stock for product {product_id} changed from {expected}")
        self.product_id = product_id
        self.expected = expected


@dataclass(frozen=True)
class MovementEntry:
    """One requested stock change, before it has been applied."""
    product_id: int
    movement_type: models.MovementType
    quantity_change: int
    reference_id: Optional[int] = None
    reference_type: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class MovementResult:
    """Outcome of one applied (or skipped) stock change."""
    product_id: int
    movement_id: Optional[int]
    movement_type: Optional[str]
    quantity_change: int
    previous_stock: int
    new_stock: int
    min_stock: int

    @property
    def changed(self) -> bool:
        return self.movement_id is not None


def coerce_movement_type(value) -> models.MovementType:
    try:
        return models.MovementType(value)
    except ValueError:
        raise InvalidOperationError(f"Unknown movement type: {value}") from None


class StockLedger:
    """
    Writes stock movements and keeps Product.stock in step with them.

    Args:
        db: Session the writes run in; the ledger commits or rolls it back
        alerts: Low stock trigger run after each commit (optional)
        cache: Report cache invalidated after each commit (optional)
        defer: Callable used to schedule post-commit alert checks for batch
            writes, e.g. BackgroundTasks.add_task; when None they run inline
    """

    def __init__(
        self,
        db: Session,
        alerts=None,
        cache=None,
        defer: Optional[Callable] = None,
        write_attempts: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        alert_mode: Optional[str] = None,
    ):
        self.db = db
        self.alerts = alerts
        self.cache = cache
        self.defer = defer
        self.write_attempts = max(1, write_attempts or config.STOCK_WRITE_ATTEMPTS)
        self.retry_attempts = max(1, retry_attempts or config.STORAGE_RETRY_ATTEMPTS)
        self.retry_backoff = config.STORAGE_RETRY_BACKOFF if retry_backoff is None else retry_backoff
        self.alert_mode = alert_mode or config.LOW_STOCK_ALERT_MODE

    def get_stock(self, product_id: int) -> int:
        """Return the current stock of a product."""
        return self._read_stock(product_id).stock

    def record_movement(
        self,
        product_id: int,
        movement_type,
        quantity_change: int,
        user_id: int,
        reference_id: Optional[int] = None,
        reference_type: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> MovementResult:
        """
        Apply one stock movement and append its ledger row.

        Sales and purchases may not take stock below zero. Adjustments and
        returns may, since stock can already be negative after a correction.

        Raises:
            ProductNotFoundError: no such product
            InvalidOperationError: unknown type or negative stock
            StockConflictError: stock kept changing under concurrent writers
            StorageError: the write could not be committed
        """
        entry = MovementEntry(
            product_id=product_id,
            movement_type=coerce_movement_type(movement_type),
            quantity_change=quantity_change,
            reference_id=reference_id,
            reference_type=reference_type,
            notes=notes,
        )
        results = self._run_unit(lambda: [self._apply(entry, user_id)])
        self._after_commit(results)
        return results[0]

    def set_stock(
        self,
        product_id: int,
        new_stock: int,
        user_id: int,
        notes: Optional[str] = "Manual stock update",
    ) -> MovementResult:
        """
        Set a product's stock to an absolute value.

        Increases are recorded as 'purchase', decreases as 'adjustment'.
        Setting the current value writes nothing and returns a result whose
        movement_id is None.
        """
        def unit():
            current = self._read_stock(product_id)
            change = new_stock - current.stock
            if change == 0:
                return [MovementResult(
                    product_id=product_id,
                    movement_id=None,
                    movement_type=None,
                    quantity_change=0,
                    previous_stock=current.stock,
                    new_stock=current.stock,
                    min_stock=current.min_stock,
                )]
            movement_type = models.MovementType.PURCHASE if change > 0 else models.MovementType.ADJUSTMENT
            entry = MovementEntry(product_id, movement_type, change, notes=notes)
            return [self._apply(entry, user_id, current=current)]

        results = self._run_unit(unit)
        self._after_commit([r for r in results if r.changed])
        return results[0]

    def write_batch(self, entries: List[MovementEntry], user_id: int) -> List[MovementResult]:
        """
        Apply several movements as one all-or-nothing unit.

        Entries are applied in order; a product listed twice sees the stock
        left by its earlier entry. Alert checks are deferred when a defer
        callable was supplied.
        """
        if not entries:
            return []
        results = self._run_unit(lambda: [self._apply(entry, user_id) for entry in entries])
        self._after_commit(results, deferred=True)
        return results

    def _read_stock(self, product_id: int):
        row = self.db.execute(
            select(models.Product.stock, models.Product.min_stock).where(models.Product.id == product_id)
        ).one_or_none()
        if row is None:
            raise ProductNotFoundError(product_id)
        return row

    def _swap_stock(self, product_id: int, expected: int, new_stock: int) -> None:
        result = self.db.execute(
            update(models.Product)
            .where(models.Product.id == product_id, models.Product.stock == expected)
            .values(stock=new_stock, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleStockError(product_id, expected)

    def _apply(self, entry: MovementEntry, user_id: int, current=None) -> MovementResult:
        if current is None:
            current = self._read_stock(entry.product_id)
        before = current.stock
        after = before + entry.quantity_change

        if after < 0 and entry.movement_type in GUARDED_TYPES:
            raise InvalidOperationError.negative_stock(entry.product_id, before, entry.quantity_change)

        self._swap_stock(entry.product_id, before, after)

        movement = models.InventoryMovement(
            product_id=entry.product_id,
            movement_type=entry.movement_type.value,
            quantity_change=entry.quantity_change,
            quantity_before=before,
            quantity_after=after,
            reference_id=entry.reference_id,
            reference_type=entry.reference_type,
            notes=entry.notes,
            user_id=user_id,
        )
        self.db.add(movement)
        self.db.flush()

        return MovementResult(
            product_id=entry.product_id,
            movement_id=movement.id,
            movement_type=entry.movement_type.value,
            quantity_change=entry.quantity_change,
            previous_stock=before,
            new_stock=after,
            min_stock=current.min_stock,
        )

    def _run_unit(self, work: Callable[[], List[MovementResult]]) -> List[MovementResult]:
        """
        Run work() and commit it as one transaction.

        A stale compare-and-swap re-runs the whole unit with fresh reads; an
        OperationalError re-runs it after an exponential backoff. Domain
        errors roll back and propagate immediately.
        """
        conflicts = 0
        failures = 0
        while True:
            try:
                results = work()
                self.db.commit()
                return results
            except StaleStockError as exc:
                self.db.rollback()
                conflicts += 1
                if conflicts >= self.write_attempts:
                    logger.error(f"Giving up on product {exc.product_id} after {conflicts} conflicting writes")
                    raise StockConflictError(
                        f"Stock for product {exc.product_id} is being changed concurrently; try again",
                        exc.product_id,
                    )
                logger.info(f"Concurrent stock change on product {exc.product_id}, retrying ({conflicts})")
            except InventoryError:
                self.db.rollback()
                raise
            except OperationalError as exc:
                self.db.rollback()
                failures += 1
                if failures >= self.retry_attempts:
                    logger.error(f"Stock write failed after {failures} attempts: {exc}")
                    raise StorageError(f"Stock write failed: {exc.orig or exc}") from exc
                delay = self.retry_backoff * (2 ** (failures - 1))
                logger.warning(f"Stock write failed ({exc}), retrying in {delay:.2f}s")
                time.sleep(delay)
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error(f"Stock write failed: {exc}")
                raise StorageError(f"Stock write failed: {exc}") from exc

    def _should_alert(self, result: MovementResult) -> bool:
        if result.new_stock > result.min_stock:
            return False
        if self.alert_mode == "on_crossing":
            return result.previous_stock > result.min_stock
        return True

    def _after_commit(self, results: List[MovementResult], deferred: bool = False) -> None:
        if not results:
            return
        if self.cache is not None:
            self.cache.invalidate()
        if self.alerts is None:
            return
        for result in results:
            if not self._should_alert(result):
                continue
            try:
                if deferred and self.defer is not None:
                    self.defer(self.alerts.trigger, result.product_id, result.new_stock)
                else:
                    self.alerts.trigger(result.product_id, result.new_stock)
            except Exception:
                logger.exception(f"Low stock check failed for product {result.product_id}")
