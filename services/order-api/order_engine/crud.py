import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy.orm import Session

from . import config, coupons, inventory, models
from .database import run_in_transaction, utcnow
from .errors import (
    InsufficientStockError,
    InvalidOrderStateError,
    NotFoundError,
    ValidationError,
)
from .schemas import OrderResult

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")
NON_CANCELLABLE = {"shipped", "delivered", "cancelled", "refunded"}

ERROR_CODES = {
    ValidationError: "validation_error",
    NotFoundError: "not_found",
    InsufficientStockError: "insufficient_stock",
}


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    total_amount: Decimal


def compute_totals(subtotal: Decimal, decision: coupons.CouponDecision) -> OrderTotals:
    subtotal = subtotal.quantize(CENTS, ROUND_HALF_UP)
    discount = decision.discount_amount.quantize(CENTS, ROUND_HALF_UP)
    shipping = Decimal("0.00") if decision.free_shipping else config.FLAT_SHIPPING_FEE.quantize(CENTS)
    tax = ((subtotal - discount) * config.TAX_RATE).quantize(CENTS, ROUND_HALF_UP)
    return OrderTotals(
        subtotal=subtotal,
        discount_amount=discount,
        tax_amount=tax,
        shipping_amount=shipping,
        total_amount=subtotal + tax + shipping - discount,
    )


@dataclass(frozen=True)
class PlacedOrder:
    order: models.Order
    coupon: coupons.CouponDecision


def generate_order_number(now) -> str:
    return f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:10].upper()}"


def _coupon_note(decision: coupons.CouponDecision):
    if decision.code and not decision.applied:
        return f"coupon {decision.code} not applied: {decision.reason}"
    return None


def create_order_with_outbox(db: Session, order_data, now=None) -> PlacedOrder:
    """
    Within the caller's transaction:
    - lock and validate stock for every line, all shortfalls at once
    - insert orders / order_items with catalog snapshots
    - decrement stock through the inventory ledger
    - record coupon usage, clear the cart
    - write order.placed to event_outbox
    Nothing is written unless the whole batch is satisfiable.
    """
    now = now or utcnow()
    if not order_data.items:
        raise ValidationError("Order must contain at least one item")
    if any(item.quantity <= 0 for item in order_data.items):
        raise ValidationError("Item quantities must be positive")
    if db.get(models.User, order_data.user_id) is None:
        raise NotFoundError(f"User not found: {order_data.user_id}")

    resolved = inventory.lock_lines(db, order_data.items)
    checks = inventory.check_stock(resolved)
    subtotal = sum((line.unit_price * line.quantity for line in resolved), Decimal("0.00"))
    decision = coupons.evaluate_coupon(db, order_data.coupon_code, subtotal, now=now, lock=True)
    note = _coupon_note(decision)
    if note:
        logger.info("coupon rejected", code=decision.code, reason=decision.reason, user_id=str(order_data.user_id))

    shortfalls = [c for c in checks if not c.ok]
    if shortfalls:
        raise InsufficientStockError(shortfalls, notes=[note] if note else [])

    totals = compute_totals(subtotal, decision)
    shipping_address = order_data.shipping_address.model_dump()
    billing_address = order_data.billing_address.model_dump() if order_data.billing_address else shipping_address

    order_id = uuid.uuid4()
    order = models.Order(
        id=order_id,
        order_number=generate_order_number(now),
        user_id=order_data.user_id,
        status="pending",
        payment_status="pending",
        subtotal=totals.subtotal,
        tax_amount=totals.tax_amount,
        shipping_amount=totals.shipping_amount,
        discount_amount=totals.discount_amount,
        total_amount=totals.total_amount,
        shipping_address=shipping_address,
        billing_address=billing_address,
        created_at=now,
        updated_at=now,
    )
    db.add(order)

    for position, line in enumerate(resolved):
        db.add(models.OrderItem(
            order_id=order_id,
            position=position,
            product_id=line.product.id,
            variant_id=line.variant.id if line.variant is not None else None,
            quantity=line.quantity,
            unit_price=line.unit_price,
            total_price=(line.unit_price * line.quantity).quantize(CENTS),
            product_name=line.product.name,
            product_sku=line.product.sku,
            variant_title=line.variant.title if line.variant is not None else None,
        ))

    inventory.commit_reservation(db, resolved, order_id)
    coupons.record_usage(db, decision, order_id, order_data.user_id)
    db.query(models.CartItem).filter(models.CartItem.user_id == order_data.user_id).delete(
        synchronize_session=False
    )

    # outbox event
    payload = {
        "order_id": str(order_id),
        "order_number": order.order_number,
        "user_id": str(order_data.user_id),
        "items": [
            {
                "product_id": str(line.product.id),
                "variant_id": str(line.variant.id) if line.variant is not None else None,
                "sku": line.stock_row.sku,
                "quantity": line.quantity,
                "unit_price": str(line.unit_price),
            }
            for line in resolved
        ],
        "coupon_code": decision.code if decision.applied else None,
        "total_amount": str(totals.total_amount),
    }
    db.add(models.EventOutbox(event_type="order.placed", payload=payload))

    db.flush()
    logger.info(
        "order committed",
        order_id=str(order_id),
        order_number=order.order_number,
        total_amount=str(totals.total_amount),
        lines=len(resolved),
    )
    return PlacedOrder(order=order, coupon=decision)


def process_order(db: Session, order_data, now=None) -> OrderResult:
    """Place an order atomically and report the outcome.

    Business failures come back as ``success=False`` with every shortfall in
    the message. ``ConcurrencyConflictError`` propagates once retries run out.
    """
    try:
        placed = run_in_transaction(db, create_order_with_outbox, order_data, now=now)
    except (ValidationError, NotFoundError, InsufficientStockError) as e:
        logger.info("order rejected", user_id=str(order_data.user_id), reason=str(e))
        return OrderResult(success=False, message=str(e), error=ERROR_CODES[type(e)])

    order, decision = placed.order, placed.coupon
    message = "Order processed successfully"
    note = _coupon_note(decision)
    if note:
        message += "; " + note
    return OrderResult(
        success=True,
        order_id=order.id,
        order_number=order.order_number,
        total_amount=order.total_amount,
        message=message,
    )


def cancel_order(db: Session, order_id, reason=None) -> dict:
    """Cancel a committed order in its own transaction, restoring stock exactly."""
    order = (
        db.query(models.Order)
        .filter(models.Order.id == order_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if order is None:
        raise NotFoundError(f"Order not found: {order_id}")
    if order.status in NON_CANCELLABLE:
        raise InvalidOrderStateError(f"Cannot cancel order {order.order_number} in status {order.status}")

    restored = inventory.release_order_stock(db, order)
    coupons.release_usage(db, order.id)
    order.status = "cancelled"

    db.add(models.EventOutbox(
        event_type="order.cancelled",
        payload={"order_id": str(order.id), "order_number": order.order_number, "reason": reason},
    ))
    db.flush()
    logger.info("order cancelled", order_id=str(order.id), restored_units=restored, reason=reason)
    return {"order_id": order.id, "status": order.status, "restored_units": restored}
