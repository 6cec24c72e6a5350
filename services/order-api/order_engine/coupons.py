from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from . import models
from .database import utcnow

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")

PERCENTAGE = "percentage"
FIXED_AMOUNT = "fixed_amount"
FREE_SHIPPING = "free_shipping"


@dataclass(frozen=True)
class CouponDecision:
    code: Optional[str]
    applied: bool
    discount_amount: Decimal = Decimal("0.00")
    free_shipping: bool = False
    reason: Optional[str] = None
    coupon_id: Optional[object] = None

    @classmethod
    def rejected(cls, code, reason):
        return cls(code=code, applied=False, reason=reason)


NO_COUPON = CouponDecision(code=None, applied=False)

# checked in order, first failing check names the rejection
_CHECKS = (
    ("coupon is inactive", lambda c, subtotal, now: c.is_active),
    ("coupon is not active yet", lambda c, subtotal, now: c.starts_at is None or c.starts_at <= now),
    ("coupon has expired", lambda c, subtotal, now: c.expires_at is None or c.expires_at >= now),
    ("coupon usage limit reached", lambda c, subtotal, now: c.usage_limit is None or c.usage_count < c.usage_limit),
    ("minimum spend not met", lambda c, subtotal, now: subtotal >= (c.minimum_amount or 0)),
)


def _find(db: Session, code: str, lock: bool):
    q = db.query(models.Coupon).filter(models.Coupon.code == code)
    if lock:
        q = q.with_for_update().populate_existing()
    return q.first()


def evaluate_coupon(db: Session, code: Optional[str], subtotal: Decimal, now=None, lock: bool = False) -> CouponDecision:
    """Decide what ``code`` is worth against ``subtotal`` at ``now``.

    Never raises for a bad coupon and never writes: a rejected coupon is a
    decision with ``applied=False`` and a reason. ``lock`` is used by the
    order path to hold the coupon row until commit.
    """
    if not code:
        return NO_COUPON
    now = now or utcnow()

    coupon = _find(db, code, lock)
    if coupon is None:
        return CouponDecision.rejected(code, "coupon not found")

    for reason, check in _CHECKS:
        if not check(coupon, subtotal, now):
            return CouponDecision.rejected(code, reason)

    if coupon.type == PERCENTAGE:
        discount = (subtotal * coupon.value / Decimal(100)).quantize(CENTS, ROUND_HALF_UP)
        return CouponDecision(code=code, applied=True, discount_amount=discount, coupon_id=coupon.id)
    if coupon.type == FIXED_AMOUNT:
        discount = min(coupon.value, subtotal).quantize(CENTS, ROUND_HALF_UP)
        return CouponDecision(code=code, applied=True, discount_amount=discount, coupon_id=coupon.id)
    if coupon.type == FREE_SHIPPING:
        return CouponDecision(code=code, applied=True, free_shipping=True, coupon_id=coupon.id)
    return CouponDecision.rejected(code, f"unsupported coupon type {coupon.type}")


def record_usage(db: Session, decision: CouponDecision, order_id, user_id) -> Optional[models.CouponUsage]:
    if not decision.applied:
        return None
    coupon = db.get(models.Coupon, decision.coupon_id)
    coupon.usage_count += 1
    usage = models.CouponUsage(
        coupon_id=coupon.id,
        order_id=order_id,
        user_id=user_id,
        discount_amount=decision.discount_amount,
    )
    db.add(usage)
    logger.info("coupon used", code=coupon.code, order_id=str(order_id), usage_count=coupon.usage_count)
    return usage


def release_usage(db: Session, order_id) -> int:
    """Undo the coupon usage of a cancelled order."""
    usages = db.query(models.CouponUsage).filter(models.CouponUsage.order_id == order_id).all()
    for usage in usages:
        coupon = (
            db.query(models.Coupon)
            .filter(models.Coupon.id == usage.coupon_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        coupon.usage_count = max(coupon.usage_count - 1, 0)
        db.delete(usage)
        logger.info("coupon usage released", code=coupon.code, order_id=str(order_id))
    return len(usages)
