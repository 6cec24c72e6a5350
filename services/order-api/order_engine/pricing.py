"""Demand-sensitive pricing.

Each factor is an ordered list of rules; the first rule whose condition holds
supplies the multiplier and label, otherwise the factor's default applies. The
final price is the base price times every factor, rounded once at the end.
"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from . import catalog
from .database import utcnow

CENTS = Decimal("0.01")
DEMAND_WINDOW_DAYS = 7


@dataclass(frozen=True)
class PricingContext:
    stock: int
    low_stock_threshold: int
    units_sold_7d: int
    customer: Optional[catalog.CustomerStats]
    month: int


@dataclass(frozen=True)
class Rule:
    label: str
    multiplier: Decimal
    applies: Callable[[PricingContext], bool]


@dataclass(frozen=True)
class Factor:
    name: str
    rules: Sequence[Rule]
    default_label: str

    def evaluate(self, ctx: PricingContext) -> Tuple[str, Decimal]:
        for rule in self.rules:
            if rule.applies(ctx):
                return rule.label, rule.multiplier
        return self.default_label, Decimal("1.00")


def _spent_over(amount):
    return lambda c: c.customer is not None and c.customer.total_spent > amount


FACTORS: List[Factor] = [
    Factor(
        "inventory",
        [
            Rule("Low stock premium", Decimal("1.10"), lambda c: c.stock <= c.low_stock_threshold),
            Rule("Overstock discount", Decimal("0.95"), lambda c: c.stock > 100),
        ],
        "Normal stock level",
    ),
    Factor(
        "demand",
        [
            Rule("High demand premium", Decimal("1.05"), lambda c: c.units_sold_7d > 10),
            Rule("Low demand discount", Decimal("0.90"), lambda c: c.units_sold_7d < 2),
        ],
        "Normal demand",
    ),
    Factor(
        "loyalty",
        [
            Rule("VIP customer discount", Decimal("0.90"), _spent_over(1000)),
            Rule("Loyal customer discount", Decimal("0.95"), _spent_over(500)),
            Rule(
                "Regular customer discount",
                Decimal("0.97"),
                lambda c: c.customer is not None and c.customer.order_count > 5,
            ),
        ],
        "No loyalty discount",
    ),
    Factor(
        "seasonal",
        [Rule("Holiday season premium", Decimal("1.05"), lambda c: c.month in (11, 12))],
        "Regular season",
    ),
]


@dataclass(frozen=True)
class AppliedFactor:
    factor: str
    label: str
    multiplier: Decimal


@dataclass(frozen=True)
class DynamicPrice:
    product_id: object
    base_price: Decimal
    dynamic_price: Decimal
    discount_percentage: Decimal
    factors: List[AppliedFactor]


def price_with_factors(base_price: Decimal, ctx: PricingContext, factors=FACTORS) -> Tuple[Decimal, Decimal, List[AppliedFactor]]:
    applied = []
    price = Decimal(base_price)
    for factor in factors:
        label, multiplier = factor.evaluate(ctx)
        applied.append(AppliedFactor(factor.name, label, multiplier))
        price *= multiplier

    if base_price:
        discount_pct = (base_price - price) / base_price * 100
    else:
        discount_pct = Decimal(0)
    return price.quantize(CENTS, ROUND_HALF_UP), discount_pct.quantize(CENTS, ROUND_HALF_UP), applied


def get_dynamic_price(db: Session, product_id, user_id=None, now=None) -> DynamicPrice:
    now = now or utcnow()
    product = catalog.get_product(db, product_id)
    ctx = PricingContext(
        stock=product.available,
        low_stock_threshold=product.low_stock_threshold,
        units_sold_7d=catalog.units_sold(db, product.id, now - timedelta(days=DEMAND_WINDOW_DAYS)),
        customer=catalog.customer_stats(db, user_id) if user_id is not None else None,
        month=now.month,
    )
    dynamic, discount_pct, applied = price_with_factors(product.price, ctx)
    return DynamicPrice(
        product_id=product.id,
        base_price=product.price,
        dynamic_price=dynamic,
        discount_percentage=discount_pct,
        factors=applied,
    )
