"""
Database operations for the Inventory service.

Read-side projections over products and the movement ledger (history, low
stock, valuation, overview, alerts, reconciliation) plus catalog and order
header persistence. Nothing in here writes products.stock directly; stock
changes go through the StockLedger.
"""
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from . import models, schemas
from .alerts import LOW_STOCK_ACTION
from .cache import ReportCache
from .exceptions import InventoryError
from .ledger import StockLedger


def _number(value) -> float:
    if value is None:
        return 0.0
    if isinstance(value, Decimal):
        return float(value)
    return value


def _product_columns():
    return (
        models.Product,
        models.Category.name.label("category_name"),
    )


def _product_dict(product: models.Product, category_name: Optional[str]) -> Dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name,
        "barcode": product.barcode,
        "price": product.price,
        "cost_price": product.cost_price,
        "stock": product.stock,
        "min_stock": product.min_stock,
        "category_id": product.category_id,
        "category_name": category_name,
        "active": product.active,
        "is_low_stock": product.stock <= product.min_stock,
        "created_at": product.created_at,
        "updated_at": product.updated_at,
    }


# Movement history

def get_product_movements(db: Session, product_id: int, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
    """
    Retrieve a page of a product's movement history, newest first.

    Args:
        db: Database session
        product_id: Product whose history to read
        limit: Maximum number of rows to return
        offset: Number of rows to skip

    Returns:
        Dict with "data" (movement rows with user_name) and "pagination"
    """
    total = db.scalar(
        select(func.count(models.InventoryMovement.id)).where(models.InventoryMovement.product_id == product_id)
    ) or 0

    rows = db.execute(
        select(models.InventoryMovement, models.User.full_name.label("user_name"))
        .outerjoin(models.User, models.InventoryMovement.user_id == models.User.id)
        .where(models.InventoryMovement.product_id == product_id)
        .order_by(models.InventoryMovement.created_at.desc(), models.InventoryMovement.id.desc())
        .limit(limit)
        .offset(offset)
    ).all()

    data = []
    for movement, user_name in rows:
        row = schemas.Movement.model_validate(movement).model_dump()
        row["user_name"] = user_name
        data.append(row)

    return {"data": data, "pagination": {"limit": limit, "offset": offset, "total": total}}


def verify_product_ledger(db: Session, product_id: int) -> Optional[Dict[str, Any]]:
    """
    Check a product's stock against its movement history.

    Reports whether stock equals the last quantity_after and lists every
    movement whose quantity_before does not continue the previous
    quantity_after, or whose own arithmetic does not add up.

    Returns:
        Reconciliation report, or None if the product does not exist
    """
    product = db.get(models.Product, product_id)
    if product is None:
        return None

    movements = db.scalars(
        select(models.InventoryMovement)
        .where(models.InventoryMovement.product_id == product_id)
        .order_by(models.InventoryMovement.id.asc())
    ).all()

    breaks = []
    previous = None
    for movement in movements:
        if movement.quantity_before + movement.quantity_change != movement.quantity_after:
            breaks.append({
                "movement_id": movement.id,
                "reason": "arithmetic",
                "quantity_before": movement.quantity_before,
                "quantity_change": movement.quantity_change,
                "quantity_after": movement.quantity_after,
            })
        if previous is not None and movement.quantity_before != previous.quantity_after:
            breaks.append({
                "movement_id": movement.id,
                "reason": "chain",
                "expected_before": previous.quantity_after,
                "quantity_before": movement.quantity_before,
            })
        previous = movement

    last_after = previous.quantity_after if previous is not None else None
    reconciled = (last_after is None or last_after == product.stock) and not breaks

    return {
        "product_id": product_id,
        "stock": product.stock,
        "movement_count": len(movements),
        "last_quantity_after": last_after,
        "reconciled": reconciled,
        "chain_breaks": breaks,
    }


# Reports

def get_low_stock_products(db: Session, limit: int = 20) -> List[Dict[str, Any]]:
    """
    List active products at or below their reorder level, biggest deficit first.
    """
    rows = db.execute(
        select(*_product_columns())
        .outerjoin(models.Category, models.Product.category_id == models.Category.id)
        .where(models.Product.stock <= models.Product.min_stock, models.Product.active.is_(True))
        .order_by((models.Product.min_stock - models.Product.stock).desc(), models.Product.id)
        .limit(limit)
    ).all()
    return [_product_dict(product, category_name) for product, category_name in rows]


def get_inventory_valuation(db: Session, category_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Aggregate stock * cost_price of active products grouped by category.

    Returns:
        Dict with per-category rows (highest value first) and a summary
    """
    value = func.coalesce(func.sum(models.Product.stock * models.Product.cost_price), 0)
    query = (
        select(
            models.Product.category_id,
            models.Category.name.label("category_name"),
            func.coalesce(func.sum(models.Product.stock), 0).label("total_items"),
            value.label("total_value"),
            func.count(models.Product.id).label("product_count"),
            func.avg(models.Product.cost_price).label("average_cost"),
        )
        .outerjoin(models.Category, models.Product.category_id == models.Category.id)
        .where(models.Product.active.is_(True))
        .group_by(models.Product.category_id, models.Category.name)
        .order_by(value.desc())
    )
    if category_id:
        query = query.where(models.Product.category_id == category_id)

    categories = []
    summary = {"total_products": 0, "total_items": 0, "total_value": 0.0}
    for row in db.execute(query).all():
        entry = {
            "category_id": row.category_id,
            "category_name": row.category_name,
            "total_items": int(row.total_items or 0),
            "total_value": _number(row.total_value),
            "product_count": int(row.product_count or 0),
            "average_cost": _number(row.average_cost),
        }
        categories.append(entry)
        summary["total_products"] += entry["product_count"]
        summary["total_items"] += entry["total_items"]
        summary["total_value"] += entry["total_value"]

    return {"categories": categories, "summary": summary}


def get_inventory_overview(
    db: Session,
    category_id: Optional[int] = None,
    low_stock: bool = False,
    search: str = "",
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    """
    Paginated list of active products with stock summary figures.
    """
    page = max(1, page)
    limit = max(1, min(limit, 200))

    filters = [models.Product.active.is_(True)]
    if category_id:
        filters.append(models.Product.category_id == category_id)
    if search:
        pattern = f"%{search}%"
        filters.append(or_(models.Product.name.ilike(pattern), models.Product.barcode.ilike(pattern)))
    if low_stock:
        filters.append(models.Product.stock <= models.Product.min_stock)

    total = db.scalar(select(func.count(models.Product.id)).where(*filters)) or 0
    rows = db.execute(
        select(*_product_columns())
        .outerjoin(models.Category, models.Product.category_id == models.Category.id)
        .where(*filters)
        .order_by(models.Product.name)
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()

    active = models.Product.active.is_(True)
    summary_row = db.execute(
        select(
            func.count(models.Product.id).label("total_products"),
            func.coalesce(func.sum(case((models.Product.stock <= models.Product.min_stock, 1), else_=0)), 0).label("low_stock"),
            func.coalesce(func.sum(case((models.Product.stock == 0, 1), else_=0)), 0).label("out_of_stock"),
            func.coalesce(func.sum(models.Product.stock * models.Product.cost_price), 0).label("total_value"),
        ).where(active)
    ).one()

    return {
        "products": [_product_dict(product, category_name) for product, category_name in rows],
        "summary": {
            "total_products": int(summary_row.total_products or 0),
            "low_stock": int(summary_row.low_stock or 0),
            "out_of_stock": int(summary_row.out_of_stock or 0),
            "total_value": _number(summary_row.total_value),
        },
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


def get_recent_alerts(db: Session, limit: int = 10) -> List[Dict[str, Any]]:
    """Most recent low stock alert log entries, newest first."""
    logs = db.scalars(
        select(models.ActivityLog)
        .where(models.ActivityLog.action == LOW_STOCK_ACTION)
        .order_by(models.ActivityLog.created_at.desc(), models.ActivityLog.id.desc())
        .limit(limit)
    ).all()
    return [
        {
            "id": log.id,
            "action": log.action,
            "entity_type": log.entity_type,
            "entity_id": log.entity_id,
            "details": json.loads(log.details) if log.details else None,
            "created_at": log.created_at,
        }
        for log in logs
    ]


def get_inventory_alerts(db: Session) -> Dict[str, Any]:
    """Low stock products, recent history of the worst five, and recent alerts."""
    low_stock = get_low_stock_products(db, limit=10)
    stock_history = [
        {
            "product_id": product["id"],
            "product_name": product["name"],
            "movements": get_product_movements(db, product["id"], limit=5)["data"],
        }
        for product in low_stock[:5]
    ]
    return {
        "low_stock": low_stock,
        "stock_history": stock_history,
        "recent_alerts": get_recent_alerts(db, limit=10),
    }


# Catalog

def get_products(db: Session, skip: int = 0, limit: int = 100, include_inactive: bool = False) -> List[Dict[str, Any]]:
    """
    Retrieve a list of products with pagination.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
        include_inactive: Also list soft deleted products

    Returns:
        List of product dicts ordered by name
    """
    query = (
        select(*_product_columns())
        .outerjoin(models.Category, models.Product.category_id == models.Category.id)
        .order_by(models.Product.name, models.Product.id)
        .offset(skip)
        .limit(limit)
    )
    if not include_inactive:
        query = query.where(models.Product.active.is_(True))
    return [_product_dict(product, category_name) for product, category_name in db.execute(query).all()]


def _invalidate_reports(cache: Optional[ReportCache]) -> None:
    if cache is not None:
        cache.invalidate()


def get_product(db: Session, product_id: int) -> Optional[Dict[str, Any]]:
    """
    Retrieve a product with its category name and five latest movements.

    Returns:
        Product dict or None if not found
    """
    row = db.execute(
        select(*_product_columns())
        .outerjoin(models.Category, models.Product.category_id == models.Category.id)
        .where(models.Product.id == product_id)
    ).one_or_none()
    if row is None:
        return None
    product, category_name = row
    data = _product_dict(product, category_name)
    data["recent_movements"] = get_product_movements(db, product_id, limit=5)["data"]
    return data


def get_product_by_barcode(db: Session, barcode: str) -> Optional[Dict[str, Any]]:
    """
    Look up a product by its barcode (POS scan).

    Returns:
        Product dict or None if no product carries the barcode
    """
    product_id = db.scalar(select(models.Product.id).where(models.Product.barcode == barcode))
    if product_id is None:
        return None
    return get_product(db, product_id)


def create_product(db: Session, product: schemas.ProductCreate, ledger: StockLedger, user_id: int) -> Dict[str, Any]:
    """
    Create a product and record its opening stock as a 'purchase' movement.

    The row is inserted with stock 0 so that the ledger is the one writing
    the opening quantity and the movement history starts from it. If the
    opening movement cannot be written the row is removed again.
    """
    data = product.model_dump(exclude={"stock"})
    db_product = models.Product(**data, stock=0)
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    product_id = db_product.id

    if product.stock > 0:
        try:
            ledger.record_movement(
                product_id=product_id,
                movement_type=models.MovementType.PURCHASE,
                quantity_change=product.stock,
                user_id=user_id,
                notes="Initial inventory for new product",
            )
        except InventoryError:
            db.delete(db.get(models.Product, product_id))
            db.commit()
            raise
    else:
        _invalidate_reports(ledger.cache)
    return get_product(db, product_id)


def update_product(
    db: Session,
    product_id: int,
    product: schemas.ProductUpdate,
    ledger: StockLedger,
    user_id: int,
) -> Optional[Dict[str, Any]]:
    """
    Update catalog fields; a changed stock value goes through set_stock.

    Returns:
        Updated product dict or None if not found
    """
    db_product = db.get(models.Product, product_id)
    if db_product is None:
        return None

    update_data = product.model_dump(exclude_unset=True, exclude={"stock", "stock_notes"})
    for key, value in update_data.items():
        setattr(db_product, key, value)
    db.commit()
    # min_stock, cost_price, category and active all feed the cached reports
    _invalidate_reports(ledger.cache)

    if product.stock is not None and product.stock != db_product.stock:
        ledger.set_stock(product_id, product.stock, user_id, notes=product.stock_notes or "Stock adjustment")
    return get_product(db, product_id)


def deactivate_product(db: Session, product_id: int, cache: Optional[ReportCache] = None) -> bool:
    """
    Soft delete a product; its movement history is kept.

    Returns:
        True if the product was deactivated, False if not found
    """
    db_product = db.get(models.Product, product_id)
    if db_product is None:
        return False
    db_product.active = False
    db.commit()
    _invalidate_reports(cache)
    return True


# Orders and returns

def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    return db.get(models.Order, order_id)


def create_order(db: Session, order: schemas.OrderCreate, user_id: int, total: Decimal) -> models.Order:
    """
    Persist an order header in 'pending' status.

    Items are stored as JSON with prices as strings.
    """
    items_data = [
        {"product_id": item.product_id, "quantity": item.quantity, "price": str(item.price)}
        for item in order.items
    ]
    db_order = models.Order(user_id=user_id, total=total, status="pending", items=items_data)
    db.add(db_order)
    db.commit()
    db.refresh(db_order)
    return db_order


def set_order_status(db: Session, db_order: models.Order, status: str) -> models.Order:
    db_order.status = status
    db.commit()
    db.refresh(db_order)
    return db_order


def delete_order(db: Session, order_id: int) -> bool:
    db_order = get_order(db, order_id)
    if db_order is None:
        return False
    db.delete(db_order)
    db.commit()
    return True


def get_returned_quantities(db: Session, order_id: int) -> Dict[int, int]:
    """Sum of quantities already returned per product for an order."""
    returned: Dict[int, int] = {}
    for order_return in db.scalars(select(models.OrderReturn).where(models.OrderReturn.order_id == order_id)):
        for item in order_return.items or []:
            product_id = int(item["product_id"])
            returned[product_id] = returned.get(product_id, 0) + int(item["quantity"])
    return returned


def create_return(db: Session, order_id: int, data: schemas.ReturnCreate, user_id: int) -> models.OrderReturn:
    items_data = [
        {"product_id": item.product_id, "quantity": item.quantity, "return_reason": item.return_reason}
        for item in data.items
    ]
    db_return = models.OrderReturn(order_id=order_id, user_id=user_id, items=items_data, reason=data.reason)
    db.add(db_return)
    db.commit()
    db.refresh(db_return)
    return db_return


def delete_return(db: Session, return_id: int) -> bool:
    db_return = db.get(models.OrderReturn, return_id)
    if db_return is None:
        return False
    db.delete(db_return)
    db.commit()
    return True
