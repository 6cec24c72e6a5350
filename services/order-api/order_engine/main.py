from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import coupons, crud, database, inventory, pricing, recommendations, reorder, schemas
from .errors import (
    ConcurrencyConflictError,
    InsufficientStockError,
    InvalidOrderStateError,
    NotFoundError,
    ValidationError,
)
from .utils.logging import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    yield


app = FastAPI(title="Order Engine", lifespan=lifespan)

_STATUS_BY_ERROR = {
    ValidationError: 422,
    NotFoundError: 404,
    InsufficientStockError: 409,
    InvalidOrderStateError: 409,
    ConcurrencyConflictError: 503,
}
_STATUS_BY_CODE = {crud.ERROR_CODES[error]: status for error, status in _STATUS_BY_ERROR.items() if error in crud.ERROR_CODES}


def _error_handler(status_code):
    async def handler(request: Request, exc: Exception):
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


for _error, _status in _STATUS_BY_ERROR.items():
    app.add_exception_handler(_error, _error_handler(_status))


@app.post("/orders", status_code=201, response_model=schemas.OrderResult)
def create_order(order: schemas.OrderRequest, db: Session = Depends(database.get_db)):
    result = crud.process_order(db, order)
    if not result.success:
        return JSONResponse(status_code=_STATUS_BY_CODE[result.error], content=result.model_dump(mode="json"))
    return result


@app.post("/orders/{order_id}/cancel", response_model=schemas.CancelResult)
def cancel_order(order_id: UUID, body: Optional[schemas.CancelRequest] = None, db: Session = Depends(database.get_db)):
    reason = body.reason if body else None
    return schemas.CancelResult(**database.run_in_transaction(db, crud.cancel_order, order_id, reason=reason))


@app.get("/products/{product_id}/price", response_model=schemas.DynamicPriceOut)
def get_dynamic_price(product_id: UUID, user_id: Optional[UUID] = None, db: Session = Depends(database.get_db)):
    price = pricing.get_dynamic_price(db, product_id, user_id=user_id)
    return schemas.DynamicPriceOut(
        product_id=price.product_id,
        base_price=price.base_price,
        dynamic_price=price.dynamic_price,
        discount_percentage=price.discount_percentage,
        factors=[schemas.PricingFactorOut(factor=f.factor, label=f.label, multiplier=f.multiplier) for f in price.factors],
    )


@app.post("/products/{product_id}/restock", status_code=201, response_model=schemas.LedgerEntry)
def restock(product_id: UUID, body: schemas.RestockRequest, db: Session = Depends(database.get_db)):
    entry = database.run_in_transaction(
        db, inventory.restock, product_id, body.quantity, variant_id=body.variant_id, notes=body.notes
    )
    return schemas.LedgerEntry.model_validate(entry)


@app.post("/products/{product_id}/adjustments", status_code=201, response_model=schemas.LedgerEntry)
def adjust_stock(product_id: UUID, body: schemas.AdjustmentRequest, db: Session = Depends(database.get_db)):
    entry = database.run_in_transaction(
        db, inventory.adjust_stock, product_id, body.delta, variant_id=body.variant_id, notes=body.notes
    )
    return schemas.LedgerEntry.model_validate(entry)


@app.get("/products/{product_id}/ledger", response_model=List[schemas.LedgerEntry])
def ledger(product_id: UUID, variant_id: Optional[UUID] = None, db: Session = Depends(database.get_db)):
    return [schemas.LedgerEntry.model_validate(e) for e in inventory.ledger_history(db, product_id, variant_id=variant_id)]


@app.get("/coupons/{code}/preview", response_model=schemas.CouponPreview)
def preview_coupon(code: str, subtotal: Decimal = Query(ge=0), db: Session = Depends(database.get_db)):
    decision = coupons.evaluate_coupon(db, code, subtotal)
    return schemas.CouponPreview(
        code=code,
        applied=decision.applied,
        discount_amount=decision.discount_amount,
        free_shipping=decision.free_shipping,
        reason=decision.reason,
    )


@app.get("/reports/reorder", response_model=List[schemas.ReorderEntryOut])
def reorder_report(db: Session = Depends(database.get_db)):
    return [schemas.ReorderEntryOut(**vars(e)) for e in reorder.reorder_report(db)]


@app.get("/recommendations", response_model=List[schemas.RecommendationOut])
def get_recommendations(
    user_id: Optional[UUID] = None,
    product_id: Optional[UUID] = None,
    limit: int = Query(default=5, ge=1, le=50),
    db: Session = Depends(database.get_db),
):
    recs = recommendations.get_recommendations(db, user_id=user_id, product_id=product_id, limit=limit)
    return [schemas.RecommendationOut(**vars(r)) for r in recs]
