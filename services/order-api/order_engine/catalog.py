"""Read-only lookups over the catalog, account and sales facts.

Nothing here mutates state. The only locking reads are the ``lock_*`` helpers
used by the order path, which take rows ``FOR UPDATE`` in primary-key order.
They flush first so ``populate_existing`` keeps pending changes to rows
already touched in this transaction.

Sales signals count paid orders that were not cancelled.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

from sqlalchemy import distinct, func
from sqlalchemy.orm import Session, aliased

from . import models
from .errors import NotFoundError

PAID = "paid"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class CustomerStats:
    order_count: int
    total_spent: Decimal


def get_product(db: Session, product_id, active_only: bool = True) -> models.Product:
    q = db.query(models.Product).filter(models.Product.id == product_id)
    if active_only:
        q = q.filter(models.Product.is_active.is_(True))
    product = q.first()
    if product is None:
        raise NotFoundError(f"Product not found: {product_id}")
    return product


def get_variant(db: Session, product_id, variant_id) -> models.ProductVariant:
    variant = (
        db.query(models.ProductVariant)
        .filter(
            models.ProductVariant.id == variant_id,
            models.ProductVariant.product_id == product_id,
            models.ProductVariant.is_active.is_(True),
        )
        .first()
    )
    if variant is None:
        raise NotFoundError(f"Product variant not found: {variant_id}")
    return variant


def lock_products(db: Session, product_ids: Iterable) -> Dict:
    ids = sorted(set(product_ids))
    db.flush()
    if not ids:
        return {}
    rows = (
        db.query(models.Product)
        .filter(models.Product.id.in_(ids))
        .order_by(models.Product.id)
        .with_for_update()
        .populate_existing()
        .all()
    )
    return {p.id: p for p in rows}


def lock_variants(db: Session, variant_ids: Iterable) -> Dict:
    ids = sorted(set(variant_ids))
    db.flush()
    if not ids:
        return {}
    rows = (
        db.query(models.ProductVariant)
        .filter(models.ProductVariant.id.in_(ids))
        .order_by(models.ProductVariant.id)
        .with_for_update()
        .populate_existing()
        .all()
    )
    return {v.id: v for v in rows}


def _counted(query):
    return query.filter(models.Order.payment_status == PAID, models.Order.status != CANCELLED)


def _paid_items(db: Session, *columns):
    return _counted(
        db.query(*columns)
        .select_from(models.OrderItem)
        .join(models.Order, models.Order.id == models.OrderItem.order_id)
    )


def units_sold(db: Session, product_id, since) -> int:
    total = (
        _paid_items(db, func.coalesce(func.sum(models.OrderItem.quantity), 0))
        .filter(models.OrderItem.product_id == product_id, models.Order.created_at >= since)
        .scalar()
    )
    return int(total or 0)


def units_sold_by_product(db: Session, since) -> Dict:
    rows = (
        _paid_items(db, models.OrderItem.product_id, func.sum(models.OrderItem.quantity))
        .filter(models.Order.created_at >= since)
        .group_by(models.OrderItem.product_id)
        .all()
    )
    return {pid: int(qty) for pid, qty in rows}


def order_counts_by_product(db: Session, since) -> Dict:
    rows = (
        _paid_items(db, models.OrderItem.product_id, func.count(distinct(models.OrderItem.order_id)))
        .filter(models.Order.created_at >= since)
        .group_by(models.OrderItem.product_id)
        .all()
    )
    return {pid: int(n) for pid, n in rows}


def customer_stats(db: Session, user_id) -> CustomerStats:
    count, spent = _counted(
        db.query(func.count(models.Order.id), func.coalesce(func.sum(models.Order.total_amount), 0))
        .filter(models.Order.user_id == user_id)
    ).one()
    return CustomerStats(order_count=int(count), total_spent=Decimal(str(spent)))


def co_purchase_counts(db: Session, product_id) -> Dict:
    """Number of paid orders containing both ``product_id`` and each other product."""
    anchor = aliased(models.OrderItem)
    other = aliased(models.OrderItem)
    rows = (
        _counted(
            db.query(other.product_id, func.count(distinct(other.order_id)))
            .select_from(anchor)
            .join(other, other.order_id == anchor.order_id)
            .join(models.Order, models.Order.id == anchor.order_id)
        )
        .filter(anchor.product_id == product_id, other.product_id != product_id)
        .group_by(other.product_id)
        .all()
    )
    return {pid: int(n) for pid, n in rows}


def customer_purchases(db: Session, user_id) -> List[Tuple]:
    """``(category_id, brand_id)`` of every line the customer has paid for."""
    return [
        (category_id, brand_id)
        for category_id, brand_id in _paid_items(db, models.Product.category_id, models.Product.brand_id)
        .join(models.Product, models.Product.id == models.OrderItem.product_id)
        .filter(models.Order.user_id == user_id)
        .all()
    ]


def average_ratings(db: Session) -> Dict:
    rows = (
        db.query(models.Review.product_id, func.avg(models.Review.rating))
        .filter(models.Review.is_approved.is_(True))
        .group_by(models.Review.product_id)
        .all()
    )
    return {pid: Decimal(str(avg)) for pid, avg in rows}


def active_products(db: Session):
    return db.query(models.Product).filter(models.Product.is_active.is_(True)).all()
