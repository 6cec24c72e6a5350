"""Heuristic product recommendations.

Four independent sources each propose candidates with a base score and a
reason. Scores for the same product are summed, an average-rating bonus is
added once, and the best ``limit`` products are returned.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List

from sqlalchemy.orm import Session

from . import catalog
from .database import utcnow

CENTS = Decimal("0.01")
TRENDING_WINDOW_DAYS = 30
RATING_WEIGHT = Decimal("0.5")

SIMILAR = "Similar product"
BOUGHT_TOGETHER = "Frequently bought together"
PREFERENCES = "Based on your preferences"
TRENDING = "Trending product"


@dataclass
class Recommendation:
    product_id: object
    product_name: str
    price: Decimal
    avg_rating: Decimal = Decimal("0.00")
    score: Decimal = Decimal("0.00")
    reasons: List[str] = field(default_factory=list)


def _similar(db, products, product_id, user_id, now):
    anchor = products.get(product_id)
    if anchor is None or anchor.category_id is None:
        return
    for p in products.values():
        if p.category_id == anchor.category_id:
            yield p.id, Decimal("3.0"), SIMILAR


def _bought_together(db, products, product_id, user_id, now):
    if product_id is None:
        return
    for pid, orders in catalog.co_purchase_counts(db, product_id).items():
        yield pid, Decimal("4.0") + Decimal("0.5") * orders, BOUGHT_TOGETHER


def _preferences(db, products, product_id, user_id, now):
    if user_id is None:
        return
    history = catalog.customer_purchases(db, user_id)
    for p in products.values():
        # a purchase matching on both category and brand counts once
        purchases = sum(
            1
            for category_id, brand_id in history
            if (category_id is not None and category_id == p.category_id)
            or (brand_id is not None and brand_id == p.brand_id)
        )
        yield p.id, Decimal("2.0") + Decimal("0.3") * purchases, PREFERENCES


def _trending(db, products, product_id, user_id, now):
    counts = catalog.order_counts_by_product(db, now - timedelta(days=TRENDING_WINDOW_DAYS))
    for pid, orders in counts.items():
        yield pid, Decimal("1.0") + Decimal("0.1") * orders, TRENDING


SOURCES = [_similar, _bought_together, _preferences, _trending]


def get_recommendations(db: Session, user_id=None, product_id=None, limit: int = 5, now=None) -> List[Recommendation]:
    now = now or utcnow()
    products = {p.id: p for p in catalog.active_products(db)}
    # the anchor stays visible to the sources but is never recommended
    candidates = {pid: p for pid, p in products.items() if pid != product_id}

    scored: Dict = {}
    for source in SOURCES:
        for pid, score, reason in source(db, products, product_id, user_id, now):
            if pid not in candidates:
                continue
            rec = scored.get(pid)
            if rec is None:
                p = candidates[pid]
                rec = scored[pid] = Recommendation(product_id=pid, product_name=p.name, price=p.price)
            rec.score += score
            if reason not in rec.reasons:
                rec.reasons.append(reason)

    ratings = catalog.average_ratings(db)
    for pid, rec in scored.items():
        rating = ratings.get(pid, Decimal(0))
        rec.avg_rating = rating.quantize(CENTS, ROUND_HALF_UP)
        rec.score = (rec.score + rating * RATING_WEIGHT).quantize(CENTS, ROUND_HALF_UP)

    ranked = sorted(scored.values(), key=lambda r: (-r.score, r.product_name))
    return ranked[:max(limit, 0)]
