from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class Address(BaseModel):
    first_name: str
    last_name: str
    address_line_1: str
    address_line_2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = Field(default="US", min_length=2, max_length=2)
    phone: Optional[str] = None


class OrderLine(BaseModel):
    product_id: UUID
    variant_id: Optional[UUID] = None
    quantity: int = Field(gt=0)


class OrderRequest(BaseModel):
    user_id: UUID
    items: List[OrderLine] = Field(min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    coupon_code: Optional[str] = None


class OrderResult(BaseModel):
    success: bool
    order_id: Optional[UUID] = None
    order_number: Optional[str] = None
    total_amount: Decimal = Decimal("0.00")
    message: str
    error: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class CancelResult(BaseModel):
    order_id: UUID
    status: str
    restored_units: int


class RestockRequest(BaseModel):
    quantity: int = Field(gt=0)
    variant_id: Optional[UUID] = None
    notes: Optional[str] = None


class AdjustmentRequest(BaseModel):
    delta: int
    variant_id: Optional[UUID] = None
    notes: Optional[str] = None


class LedgerEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: UUID
    variant_id: Optional[UUID] = None
    type: str
    quantity_change: int
    quantity_after: int
    reference_id: Optional[UUID] = None
    reference_type: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class CouponPreview(BaseModel):
    code: str
    applied: bool
    discount_amount: Decimal
    free_shipping: bool
    reason: Optional[str] = None


class PricingFactorOut(BaseModel):
    factor: str
    label: str
    multiplier: Decimal


class DynamicPriceOut(BaseModel):
    product_id: UUID
    base_price: Decimal
    dynamic_price: Decimal
    discount_percentage: Decimal
    factors: List[PricingFactorOut]


class ReorderEntryOut(BaseModel):
    product_id: UUID
    product_name: str
    current_stock: int
    avg_daily_sales: Decimal
    lead_time_days: int
    safety_stock: Decimal
    reorder_point: Decimal
    suggested_order_quantity: int
    urgency: str


class RecommendationOut(BaseModel):
    product_id: UUID
    product_name: str
    price: Decimal
    avg_rating: Decimal
    score: Decimal
    reasons: List[str]
