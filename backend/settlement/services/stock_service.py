# Overview: Service-layer operations for stock reservation; soft holds and permanent commits.

"""
Stock Reservation Service

WHY: Two buyers racing for the last unit must not both succeed, and an
abandoned unpaid order must not lock stock forever.

MODEL:
- reserve: soft hold at checkout (reserved_quantity += qty), only if available
- commit:  permanent decrement on confirmed payment (quantity -= qty, hold consumed)
- release: hold returned on cancellation, expiry or rejection
- restock: committed units returned when a paid order is cancelled and refunded

All functions lock the product row and run inside the caller's transaction;
they never commit. Order-level helpers gate on Order.stock_state so that a
given order commits or releases at most once.
"""

from __future__ import annotations

from ..extensions import db
from ..models import Order, Product
from ..validation import ConflictError, ValidationError, NotFoundError
from .concurrency import lock_for_update


STOCK_HELD = "held"
STOCK_COMMITTED = "committed"
STOCK_RELEASED = "released"
STOCK_NONE = "none"


class StockError(ValidationError):
    """Raised for invalid stock operations."""


class InsufficientStock(ConflictError):
    """Raised when a hold or commit would oversell a product."""

    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


def _locked_product(product_id: int) -> Product:
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def _check_qty(qty: int) -> None:
    if qty <= 0:
        raise StockError("Quantity must be positive")


# =============================================================================
# PRODUCT-LEVEL PRIMITIVES
# =============================================================================

def reserve(product_id: int, qty: int) -> Product:
    """
    Take a soft hold of qty units.

    Raises:
        InsufficientStock: available quantity is below qty
        StockError: product inactive or qty invalid
    """
    _check_qty(qty)
    product = _locked_product(product_id)
    if not product.is_active:
        raise StockError(f"Product {product_id} is not available for sale")
    if product.available_quantity < qty:
        raise InsufficientStock(product_id, qty, product.available_quantity)
    product.reserved_quantity += qty
    db.session.flush()
    return product


def commit(product_id: int, qty: int, *, from_hold: bool = True) -> Product:
    """
    Permanently decrement stock for a confirmed payment.

    from_hold=True consumes an existing soft hold of the same size.
    from_hold=False (synthesized QR orders) must fit in the unheld stock.
    """
    _check_qty(qty)
    product = _locked_product(product_id)
    if from_hold:
        if product.reserved_quantity < qty or product.quantity < qty:
            raise StockError(f"Product {product_id} has no matching hold of {qty} units")
        product.reserved_quantity -= qty
    elif product.available_quantity < qty:
        raise InsufficientStock(product_id, qty, product.available_quantity)
    product.quantity -= qty
    db.session.flush()
    return product


def release(product_id: int, qty: int) -> Product:
    """Return a soft hold to the available pool."""
    _check_qty(qty)
    product = _locked_product(product_id)
    if product.reserved_quantity < qty:
        raise StockError(f"Product {product_id} has only {product.reserved_quantity} units held")
    product.reserved_quantity -= qty
    db.session.flush()
    return product


def restock(product_id: int, qty: int) -> Product:
    """Return committed units to stock (refunded cancellation)."""
    _check_qty(qty)
    product = _locked_product(product_id)
    product.quantity += qty
    db.session.flush()
    return product


def available_quantity(product_id: int) -> int:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product.available_quantity


# =============================================================================
# ORDER-LEVEL HELPERS
# =============================================================================

def commit_order_stock(order: Order) -> bool:
    """
    Commit the order's units exactly once.

    Returns True if stock was decremented by this call, False if the order
    had already committed.
    """
    if order.stock_state == STOCK_COMMITTED:
        return False
    if order.stock_state == STOCK_HELD:
        commit(order.product_id, order.quantity, from_hold=True)
    elif order.stock_state == STOCK_NONE:
        commit(order.product_id, order.quantity, from_hold=False)
    else:
        raise StockError(f"Order {order.id} released its stock and cannot commit")
    order.stock_state = STOCK_COMMITTED
    return True


def release_order_stock(order: Order) -> bool:
    """Release the order's hold if it still has one."""
    if order.stock_state != STOCK_HELD:
        return False
    release(order.product_id, order.quantity)
    order.stock_state = STOCK_RELEASED
    return True


def restock_order(order: Order) -> bool:
    """Return a committed order's units to stock."""
    if order.stock_state != STOCK_COMMITTED:
        return False
    restock(order.product_id, order.quantity)
    order.stock_state = STOCK_RELEASED
    return True
