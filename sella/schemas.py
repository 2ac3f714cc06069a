from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from sella.utils.enums import OrderStatus, PaymentMethod


class OrderItemIn(BaseModel):
    product_id: int
    name: str
    is_weight_based: bool
    estimated_weight_g: Optional[int] = Field(default=None, gt=0)
    quantity: int = Field(ge=1)
    unit_price: Optional[Decimal] = None
    price_per_kg: Optional[Decimal] = None
    estimated_total: Decimal


class CreateOrderRequest(BaseModel):
    delivery_address_id: str
    delivery_window: str
    payment_method: PaymentMethod
    notes: Optional[str] = None
    items: List[OrderItemIn] = Field(min_length=1)
    subtotal: Decimal
    delivery_fee: Decimal = Field(ge=0)
    tax_total: Decimal
    discount_total: Decimal = Field(default=Decimal("0"), ge=0)
    grand_total_est: Decimal
    reward_points_used: int = Field(default=0, ge=0)


class CreatePaymentRequest(BaseModel):
    orderId: str
    returnUrl: Optional[str] = None
    cancelUrl: Optional[str] = None


class FinalizeWeightRequest(BaseModel):
    final_weight_g: int


class StatusChangeRequest(BaseModel):
    new_status: OrderStatus
    note: Optional[str] = None
