from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List

from sqlalchemy.orm import Session

from . import catalog, config
from .database import utcnow

CENTS = Decimal("0.01")
SALES_WINDOW_DAYS = 30
MIN_SAFETY_STOCK = Decimal(5)
MIN_ORDER_QUANTITY = 10

CRITICAL = "CRITICAL"
HIGH = "HIGH"
MEDIUM = "MEDIUM"
LOW = "LOW"

# (tier, condition on current stock and reorder point), first match wins
URGENCY_RULES = [
    (CRITICAL, lambda stock, point: stock <= 0),
    (HIGH, lambda stock, point: stock <= point * Decimal("0.5")),
    (MEDIUM, lambda stock, point: stock <= point),
]
URGENCY_RANK = {tier: rank for rank, tier in enumerate([CRITICAL, HIGH, MEDIUM, LOW])}


@dataclass(frozen=True)
class ReorderEntry:
    product_id: object
    product_name: str
    current_stock: int
    avg_daily_sales: Decimal
    lead_time_days: int
    safety_stock: Decimal
    reorder_point: Decimal
    suggested_order_quantity: int
    urgency: str


def classify_urgency(current_stock, reorder_point) -> str:
    for tier, applies in URGENCY_RULES:
        if applies(current_stock, reorder_point):
            return tier
    return LOW


def plan(product_id, product_name, current_stock: int, avg_daily_sales: Decimal, lead_time_days: int = None) -> ReorderEntry:
    lead_time_days = config.REORDER_LEAD_TIME_DAYS if lead_time_days is None else lead_time_days
    safety_stock = max(avg_daily_sales * 3, MIN_SAFETY_STOCK)
    reorder_point = avg_daily_sales * lead_time_days + safety_stock
    suggested = max(int((avg_daily_sales * SALES_WINDOW_DAYS).to_integral_value(ROUND_HALF_UP)), MIN_ORDER_QUANTITY)
    return ReorderEntry(
        product_id=product_id,
        product_name=product_name,
        current_stock=current_stock,
        avg_daily_sales=avg_daily_sales.quantize(CENTS, ROUND_HALF_UP),
        lead_time_days=lead_time_days,
        safety_stock=safety_stock.quantize(CENTS, ROUND_HALF_UP),
        reorder_point=reorder_point.quantize(CENTS, ROUND_HALF_UP),
        suggested_order_quantity=suggested,
        urgency=classify_urgency(current_stock, reorder_point),
    )


def _current_stock(product) -> int:
    active_variants = [v for v in product.variants if v.is_active]
    if active_variants:
        return sum(v.available for v in active_variants)
    return product.available


def reorder_report(db: Session, now=None) -> List[ReorderEntry]:
    """Reorder point and urgency for every active, inventory-tracked product.

    Sales velocity is the trailing 30-day unit total spread over all 30 days,
    so days without sales count as zero. Most urgent first, then fastest
    selling.
    """
    now = now or utcnow()
    sold = catalog.units_sold_by_product(db, now - timedelta(days=SALES_WINDOW_DAYS))

    entries = []
    for product in catalog.active_products(db):
        if not product.track_inventory:
            continue
        avg = Decimal(sold.get(product.id, 0)) / SALES_WINDOW_DAYS
        entries.append(plan(product.id, product.name, _current_stock(product), avg))

    entries.sort(key=lambda e: (URGENCY_RANK[e.urgency], -e.avg_daily_sales, e.product_name))
    return entries
