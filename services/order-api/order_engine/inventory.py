"""Stock reservation and the inventory ledger.

Stock lives on the variant row when a line names a variant and on the product
row otherwise, never both. Every change to a stock counter goes through
``record()``, which appends an ``InventoryTransaction`` carrying the delta and
the resulting balance, so a row's ledger always sums to its current counter.

Reservation is two-phase: ``lock_lines()`` takes the affected rows
``FOR UPDATE`` (ascending primary key), ``check_stock()`` is a pure pass over
the whole batch, and only a batch without shortfalls reaches
``commit_reservation()``.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from . import catalog, models
from .errors import NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

SALE = "sale"
RESTOCK = "restock"
ADJUSTMENT = "adjustment"
RETURN = "return"


@dataclass(frozen=True)
class ResolvedLine:
    product: models.Product
    variant: Optional[models.ProductVariant]
    quantity: int

    @property
    def key(self):
        return (self.product.id, self.variant.id if self.variant is not None else None)

    @property
    def stock_row(self):
        return self.variant if self.variant is not None else self.product

    @property
    def unit_price(self):
        return self.stock_row.price


@dataclass(frozen=True)
class StockCheck:
    product_id: object
    variant_id: Optional[object]
    label: str
    requested: int
    available: int

    @property
    def shortfall(self) -> int:
        return max(self.requested - self.available, 0)

    @property
    def ok(self) -> bool:
        return self.shortfall == 0

    def describe(self) -> str:
        return f"{self.label} (requested {self.requested}, available {self.available}, short {self.shortfall})"


def _label(product, variant) -> str:
    return f"{product.name} ({variant.title})" if variant is not None else product.name


def lock_lines(db: Session, lines) -> List[ResolvedLine]:
    """Lock and resolve the stock rows behind ``lines``.

    Unknown or inactive products and variants are collected and reported
    together.
    """
    products = catalog.lock_products(db, [line.product_id for line in lines])
    variants = catalog.lock_variants(db, [line.variant_id for line in lines if line.variant_id is not None])

    resolved, missing = [], []
    for line in lines:
        product = products.get(line.product_id)
        if product is None or not product.is_active:
            missing.append(f"product {line.product_id}")
            continue
        variant = None
        if line.variant_id is not None:
            variant = variants.get(line.variant_id)
            if variant is None or not variant.is_active or variant.product_id != product.id:
                missing.append(f"variant {line.variant_id}")
                continue
        resolved.append(ResolvedLine(product=product, variant=variant, quantity=line.quantity))

    if missing:
        raise NotFoundError("Not found: " + ", ".join(missing))
    return resolved


def check_stock(resolved: List[ResolvedLine]) -> List[StockCheck]:
    """Validate the whole batch against available stock without touching it.

    Lines hitting the same stock row are summed, so one result per row.
    """
    demand: Dict = {}
    for line in resolved:
        if line.key in demand:
            demand[line.key][1] += line.quantity
        else:
            demand[line.key] = [line, line.quantity]

    return [
        StockCheck(
            product_id=line.product.id,
            variant_id=line.variant.id if line.variant is not None else None,
            label=_label(line.product, line.variant),
            requested=requested,
            available=line.stock_row.available,
        )
        for line, requested in demand.values()
    ]


def record(db: Session, row, delta: int, tx_type: str, reference_id=None, reference_type=None, notes=None):
    """Apply ``delta`` to a locked product or variant row and append it to the ledger."""
    new_quantity = row.inventory_quantity + delta
    if new_quantity < row.reserved_quantity:
        raise ValidationError(
            f"{row.sku}: change of {delta} would leave {new_quantity} on hand with {row.reserved_quantity} reserved"
        )
    row.inventory_quantity = new_quantity

    is_variant = isinstance(row, models.ProductVariant)
    entry = models.InventoryTransaction(
        product_id=row.product_id if is_variant else row.id,
        variant_id=row.id if is_variant else None,
        type=tx_type,
        quantity_change=delta,
        quantity_after=new_quantity,
        reference_id=reference_id,
        reference_type=reference_type,
        notes=notes,
    )
    db.add(entry)
    return entry


def commit_reservation(db: Session, resolved: List[ResolvedLine], order_id) -> List[models.InventoryTransaction]:
    """Decrement stock for an already validated batch, one ledger row per stock row."""
    totals: Dict = {}
    for line in resolved:
        row, qty = totals.get(line.key, (line.stock_row, 0))
        totals[line.key] = (row, qty + line.quantity)

    entries = []
    for row, qty in totals.values():
        entries.append(record(db, row, -qty, SALE, reference_id=order_id, reference_type="order"))
        logger.info("stock reserved", sku=row.sku, quantity=qty, remaining=row.inventory_quantity, order_id=str(order_id))
    return entries


def release_order_stock(db: Session, order: models.Order) -> int:
    """Return a cancelled order's units to stock with compensating ledger rows."""
    totals: Dict = {}
    for item in order.items:
        key = (item.product_id, item.variant_id)
        totals[key] = totals.get(key, 0) + item.quantity

    products = catalog.lock_products(db, [pid for pid, vid in totals if vid is None])
    variants = catalog.lock_variants(db, [vid for pid, vid in totals if vid is not None])

    restored = 0
    for (product_id, variant_id), qty in totals.items():
        row = variants[variant_id] if variant_id is not None else products[product_id]
        record(db, row, qty, RETURN, reference_id=order.id, reference_type="order_cancellation")
        restored += qty
    return restored


def _lock_row(db: Session, product_id, variant_id=None):
    if variant_id is not None:
        row = catalog.lock_variants(db, [variant_id]).get(variant_id)
        if row is None or row.product_id != product_id:
            raise NotFoundError(f"Product variant not found: {variant_id}")
        return row
    row = catalog.lock_products(db, [product_id]).get(product_id)
    if row is None:
        raise NotFoundError(f"Product not found: {product_id}")
    return row


def restock(db: Session, product_id, quantity: int, variant_id=None, notes=None, reference_id=None):
    if quantity <= 0:
        raise ValidationError("restock quantity must be positive")
    row = _lock_row(db, product_id, variant_id)
    entry = record(db, row, quantity, RESTOCK, reference_id=reference_id, reference_type="restock", notes=notes)
    logger.info("stock received", sku=row.sku, quantity=quantity, on_hand=row.inventory_quantity)
    return entry


def adjust_stock(db: Session, product_id, delta: int, variant_id=None, notes=None):
    if delta == 0:
        raise ValidationError("adjustment must change the quantity")
    row = _lock_row(db, product_id, variant_id)
    entry = record(db, row, delta, ADJUSTMENT, reference_type="manual_adjustment", notes=notes)
    logger.info("stock adjusted", sku=row.sku, delta=delta, on_hand=row.inventory_quantity)
    return entry


def _ledger_query(db: Session, *columns, product_id, variant_id):
    q = db.query(*columns).filter(models.InventoryTransaction.product_id == product_id)
    if variant_id is None:
        return q.filter(models.InventoryTransaction.variant_id.is_(None))
    return q.filter(models.InventoryTransaction.variant_id == variant_id)


def ledger_history(db: Session, product_id, variant_id=None) -> List[models.InventoryTransaction]:
    return (
        _ledger_query(db, models.InventoryTransaction, product_id=product_id, variant_id=variant_id)
        .order_by(models.InventoryTransaction.id)
        .all()
    )


def ledger_balance(db: Session, product_id, variant_id=None) -> int:
    total = _ledger_query(
        db,
        func.coalesce(func.sum(models.InventoryTransaction.quantity_change), 0),
        product_id=product_id,
        variant_id=variant_id,
    ).scalar()
    return int(total or 0)


def reconcile(db: Session, product_id, variant_id=None) -> bool:
    """True when the ledger sums to the row's current on-hand counter."""
    if variant_id is not None:
        row = catalog.get_variant(db, product_id, variant_id)
    else:
        row = catalog.get_product(db, product_id, active_only=False)
    return ledger_balance(db, product_id, variant_id) == row.inventory_quantity
