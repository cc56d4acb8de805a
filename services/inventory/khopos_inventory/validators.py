"""
Business validation for orders and returns.

Provides checks beyond schema validation, run before any stock is touched.
"""
from typing import Dict, List, Tuple
from decimal import Decimal
from . import schemas


def validate_order_items(items: List[schemas.OrderItem]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > 100:
        return False, "Order cannot contain more than 100 items"

    product_ids = [item.product_id for item in items]
    if len(product_ids) != len(set(product_ids)):
        return False, "Order contains duplicate products"

    for item in items:
        if item.quantity > 10000:
            return False, f"Product {item.product_id}: quantity exceeds maximum (10000)"

        if item.price > Decimal('1000000'):
            return False, f"Product {item.product_id}: price exceeds maximum (1,000,000)"

    return True, ""


def calculate_order_total(items: List[schemas.OrderItem]) -> Decimal:
    return sum((Decimal(str(item.price)) * item.quantity for item in items), Decimal('0'))


def validate_order_total(items: List[schemas.OrderItem], claimed_total: Decimal) -> Tuple[bool, str]:
    """
    Validate that the order total matches the sum of item prices.

    Returns:
        Tuple of (is_valid, error_message)
    """
    calculated_total = calculate_order_total(items)

    # Allow small rounding differences (up to 0.01)
    if abs(calculated_total - claimed_total) > Decimal('0.01'):
        return False, f"Order total mismatch: calculated {calculated_total}, claimed {claimed_total}"

    return True, ""


def validate_return_items(
    items: List[schemas.ReturnItem],
    ordered_items: List[Dict],
    already_returned: Dict[int, int],
) -> Tuple[bool, str]:
    """
    Validate that every returned product was ordered and is not returned
    more often than it was sold.

    Args:
        items: Items being returned
        ordered_items: The order's stored line items
        already_returned: Quantities returned earlier, per product

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Return must contain at least one item"

    ordered: Dict[int, int] = {}
    for line in ordered_items or []:
        product_id = int(line["product_id"])
        ordered[product_id] = ordered.get(product_id, 0) + int(line["quantity"])

    requested: Dict[int, int] = {}
    for item in items:
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity

    for product_id, quantity in requested.items():
        if product_id not in ordered:
            return False, f"Product {product_id} is not part of this order"
        remaining = ordered[product_id] - already_returned.get(product_id, 0)
        if quantity > remaining:
            return False, f"Product {product_id}: cannot return {quantity}, only {remaining} returnable"

    return True, ""
