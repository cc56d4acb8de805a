"""
    Inventory Service API

    This module implements the FastAPI service behind KhoAugment POS inventory:
    the stock movement ledger, the order and return stock appliers, and the
    read-only inventory reports.

    The service exposes:
    - Stock writes: set stock, record movement, batch movements (admin/manager)
    - Ledger reads: movement history, low stock, valuation, alerts, reconciliation
    - Catalog endpoints whose stock changes go through the ledger
    - Order placement and returns, which drive the stock appliers
    - Health endpoint: Provides service health status for monitoring and orchestration
"""
import logging
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import auth, config, crud, models, schemas, validators, webhooks
from .alerts import LowStockAlertTrigger
from .appliers import BatchMovementApplier, OrderStockApplier, ReturnStockApplier
from .cache import ReportCache, get_report_cache
from .database import engine, get_db, get_session_factory
from .exceptions import InventoryError, ProductNotFoundError
from .ledger import StockLedger

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="inventory-service")


@app.exception_handler(InventoryError)
async def inventory_error_handler(request: Request, exc: InventoryError):
    """Map ledger and applier errors to their HTTP status codes."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_ledger(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    cache: ReportCache = Depends(get_report_cache),
) -> StockLedger:
    """
    Build the request's stock ledger.

    Low stock webhooks and the alert checks of order/return batches are
    scheduled as background tasks so they never delay the response.
    """
    def notify(event_type, data):
        background_tasks.add_task(webhooks.send_webhook, event_type, data)

    alerts = LowStockAlertTrigger(session_factory, notify=notify if config.WEBHOOK_URLS else None)
    return StockLedger(db, alerts=alerts, cache=cache, defer=background_tasks.add_task)


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the inventory service.

    Returns:
        dict: A dictionary containing the health status of the service.
            - status (str): "healthy" if the service is operational.

    Example:
        GET /healthz
        Response: {"status": "healthy"}
    """
    return {"status": "healthy"}


# Inventory reads

@app.get("/inventory")
def get_inventory(
    category_id: Optional[int] = None,
    low_stock: bool = False,
    search: str = "",
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Current inventory levels with summary figures (authenticated users).

    Returns:
        dict: products, summary (total_products, low_stock, out_of_stock,
        total_value) and pagination
    """
    return crud.get_inventory_overview(
        db, category_id=category_id, low_stock=low_stock, search=search, page=page, limit=limit
    )


@app.get("/inventory/low-stock", response_model=List[schemas.Product])
def get_low_stock(
    limit: int = 20,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_report_cache),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Products at or below their reorder level, largest deficit first.
    """
    limit = max(1, min(limit, 200))
    return cache.get_or_compute(
        ReportCache.key("low_stock", limit),
        lambda: crud.get_low_stock_products(db, limit=limit),
    )


@app.get("/inventory/movements/{product_id}", response_model=schemas.MovementPage)
def get_movements(
    product_id: int,
    limit: int = 20,
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Paginated stock movement history for a product, newest first.

    Raises:
        ProductNotFoundError: 404 if the product does not exist
    """
    if db.get(models.Product, product_id) is None:
        raise ProductNotFoundError(product_id)
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    return crud.get_product_movements(db, product_id, limit=limit, offset=offset)


@app.get("/inventory/valuation")
def get_valuation(
    category_id: Optional[int] = None,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_report_cache),
    current_user: auth.CurrentUser = Depends(auth.require_stock_writer)
):
    """
    Inventory value (stock * cost_price) grouped by category (admin/manager).
    """
    return cache.get_or_compute(
        ReportCache.key("valuation", category_id or "all"),
        lambda: crud.get_inventory_valuation(db, category_id=category_id),
    )


@app.get("/inventory/alerts")
def get_alerts(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Low stock products, their recent movements and the latest alert log entries.
    """
    return crud.get_inventory_alerts(db)


@app.get("/inventory/reconcile/{product_id}", response_model=schemas.LedgerReport)
def reconcile_product(
    product_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_stock_writer)
):
    """
    Check that a product's stock matches its movement history (admin/manager).
    """
    report = crud.verify_product_ledger(db, product_id)
    if report is None:
        raise ProductNotFoundError(product_id)
    if not report["reconciled"]:
        logger.error(f"Ledger for product {product_id} does not reconcile: {report['chain_breaks']}")
    return report


# Stock writes

@app.put("/inventory/stock", response_model=schemas.StockUpdateResult)
def update_stock(
    body: schemas.StockUpdate,
    ledger: StockLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_stock_writer)
):
    """
    Set a product's stock to an absolute value (admin/manager).

    Setting the current value is a no-op and writes no movement.
    """
    result = ledger.set_stock(
        body.product_id,
        body.new_stock,
        current_user.id,
        notes=body.notes or "Manual stock update",
    )
    message = "Stock updated successfully" if result.changed else "Stock unchanged"
    return schemas.StockUpdateResult.model_validate(result).model_copy(update={"message": message})


@app.post("/inventory/movement", response_model=schemas.MovementResult, status_code=status.HTTP_201_CREATED)
def record_movement(
    body: schemas.MovementCreate,
    ledger: StockLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_stock_writer)
):
    """
    Record a single stock movement (admin/manager).

    Raises:
        InvalidOperationError: 400 if a non-adjustment would make stock negative
        ProductNotFoundError: 404 if the product does not exist
    """
    result = ledger.record_movement(
        product_id=body.product_id,
        movement_type=body.movement_type,
        quantity_change=body.quantity_change,
        user_id=current_user.id,
        reference_id=body.reference_id,
        reference_type=body.reference_type,
        notes=body.notes,
    )
    return schemas.MovementResult.model_validate(result)


@app.post("/inventory/batch-movement", response_model=schemas.BatchMovementResult)
def record_batch_movement(
    body: schemas.BatchMovementCreate,
    ledger: StockLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_stock_writer)
):
    """
    Apply a list of movements one by one (admin/manager).

    Each movement commits on its own; failures are reported per item and do
    not stop the rest of the batch.
    """
    batch = BatchMovementApplier(ledger).apply(body.movements, current_user.id)
    return schemas.BatchMovementResult.model_validate(batch)


# Catalog

@app.get("/products", response_model=List[schemas.Product])
def list_products(
    skip: int = 0,
    limit: int = 100,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Retrieve a list of products with pagination.

    Args:
        skip: Number of records to skip (default: 0)
        limit: Maximum number of records to return (default: 100)
        include_inactive: Also list soft deleted products
    """
    return crud.get_products(db, skip=skip, limit=limit, include_inactive=include_inactive)


@app.get("/products/barcode/{barcode}", response_model=schemas.ProductDetail)
def get_product_by_barcode(
    barcode: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Look up a product by barcode, as scanned at the till."""
    product = crud.get_product_by_barcode(db, barcode)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.get("/products/{product_id}", response_model=schemas.ProductDetail)
def get_product(
    product_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Get a product with its five most recent stock movements."""
    product = crud.get_product(db, product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.post("/products", response_model=schemas.ProductDetail, status_code=status.HTTP_201_CREATED)
def create_product(
    product: schemas.ProductCreate,
    db: Session = Depends(get_db),
    ledger: StockLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_stock_writer)
):
    """
    Create a product (admin/manager). A non-zero opening stock is recorded
    as a 'purchase' movement.
    """
    return crud.create_product(db, product, ledger, current_user.id)


@app.put("/products/{product_id}", response_model=schemas.ProductDetail)
def update_product(
    product_id: int,
    product: schemas.ProductUpdate,
    db: Session = Depends(get_db),
    ledger: StockLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_stock_writer)
):
    """Update a product (admin/manager); stock changes are recorded in the ledger."""
    updated = crud.update_product(db, product_id, product, ledger, current_user.id)
    if updated is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return updated


@app.delete("/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_product(
    product_id: int,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_report_cache),
    current_user: auth.CurrentUser = Depends(auth.require_stock_writer)
):
    """Soft delete a product (admin/manager)."""
    if not crud.deactivate_product(db, product_id, cache=cache):
        raise HTTPException(status_code=404, detail="Product not found")


# Orders and returns

@app.post("/orders", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
def create_order(
    order: schemas.OrderCreate,
    db: Session = Depends(get_db),
    ledger: StockLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Place an order and deduct its stock (authenticated users).

    The order header is stored first; if the stock cannot be applied in full
    the header is removed again and the stock error is returned.

    Raises:
        HTTPException: 400 if the order fails business validation
        InsufficientStockError: 400 if a line exceeds the available stock
    """
    is_valid, error_message = validators.validate_order_items(order.items)
    if not is_valid:
        raise HTTPException(status_code=400, detail=error_message)

    total = validators.calculate_order_total(order.items)
    if order.total is not None:
        is_valid, error_message = validators.validate_order_total(order.items, order.total)
        if not is_valid:
            raise HTTPException(status_code=400, detail=error_message)

    db_order = crud.create_order(db, order, user_id=current_user.id, total=total)
    try:
        OrderStockApplier(ledger).apply_order(order.items, order_id=db_order.id, user_id=current_user.id)
    except InventoryError:
        crud.delete_order(db, db_order.id)
        raise

    logger.info(f"Order {db_order.id} placed by user {current_user.id}")
    return crud.set_order_status(db, db_order, "completed")


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single order by ID (owner, admin or manager).

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    db_order = crud.get_order(db, order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    if not current_user.can_write_stock and db_order.user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this order"
        )
    return db_order


@app.post("/orders/{order_id}/returns", response_model=schemas.OrderReturn, status_code=status.HTTP_201_CREATED)
def create_return(
    order_id: int,
    body: schemas.ReturnCreate,
    db: Session = Depends(get_db),
    ledger: StockLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_stock_writer)
):
    """
    Process a return against an order and restock the items (admin/manager).

    Raises:
        HTTPException: 404 if order not found
        HTTPException: 400 if the items were not sold on this order
    """
    db_order = crud.get_order(db, order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    is_valid, error_message = validators.validate_return_items(
        body.items, db_order.items, crud.get_returned_quantities(db, order_id)
    )
    if not is_valid:
        raise HTTPException(status_code=400, detail=error_message)

    db_return = crud.create_return(db, order_id, body, user_id=current_user.id)
    try:
        results = ReturnStockApplier(ledger).apply_return(body.items, return_id=db_return.id, user_id=current_user.id)
    except InventoryError:
        crud.delete_return(db, db_return.id)
        raise

    response = schemas.OrderReturn.model_validate(db_return)
    response.movements = [schemas.MovementResult.model_validate(r) for r in results]
    return response
