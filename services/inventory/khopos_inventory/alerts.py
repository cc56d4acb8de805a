"""
Low stock alerts.

Alerts are a side effect of a committed stock write: they run in their own
session, never hold the writer's transaction open, and never raise.
"""
import json
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select

from . import models

logger = logging.getLogger(__name__)

LOW_STOCK_ACTION = "low_stock_alert"
LOW_STOCK_EVENT = "inventory.low_stock"


class LowStockAlertTrigger:
    """
    Records a low_stock_alert activity log entry for a product.

    Args:
        session_factory: Callable returning a new SQLAlchemy session
        notify: Optional callable(event_type, payload) for outbound
            notifications (webhooks); failures there are logged too
    """

    def __init__(self, session_factory: Callable, notify: Optional[Callable[[str, Dict[str, Any]], None]] = None):
        self.session_factory = session_factory
        self.notify = notify

    def trigger(self, product_id: int, current_stock: int) -> Optional[Dict[str, Any]]:
        """
        Log a low stock alert snapshot for the product.

        Returns:
            The snapshot that was logged, or None when nothing was logged
        """
        try:
            with self.session_factory() as db:
                row = db.execute(
                    select(models.Product.name, models.Product.min_stock, models.Category.name.label("category_name"))
                    .outerjoin(models.Category, models.Product.category_id == models.Category.id)
                    .where(models.Product.id == product_id)
                ).one_or_none()
                if row is None:
                    return None

                details = {
                    "product_name": row.name,
                    "current_stock": current_stock,
                    "min_stock": row.min_stock,
                    "category": row.category_name,
                }
                db.add(models.ActivityLog(
                    action=LOW_STOCK_ACTION,
                    entity_type="product",
                    entity_id=product_id,
                    details=json.dumps(details),
                ))
                db.commit()
        except Exception:
            logger.exception(f"Error triggering low stock alert for product {product_id}")
            return None

        logger.warning(
            f"Low stock: product {product_id} ({details['product_name']}) at {current_stock}, "
            f"reorder level {details['min_stock']}"
        )

        if self.notify is not None:
            try:
                self.notify(LOW_STOCK_EVENT, {"product_id": product_id, **details})
            except Exception:
                logger.exception(f"Error sending low stock notification for product {product_id}")

        return details
