from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .status import FulfillmentMethod


class OrderItemRequest(BaseModel):
    menu_item_id: int
    quantity: int = Field(gt=0)
    price: Optional[Decimal] = None  # informational only, the catalog price wins
    customizations: Optional[Dict[str, Any]] = None


class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest] = Field(min_length=1)
    total: Optional[Decimal] = None
    fulfillment_method: FulfillmentMethod = FulfillmentMethod.PICKUP
    delivery_address: Optional[str] = None
    user_id: Optional[int] = None


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    menu_item_id: int
    name: Optional[str] = None
    quantity: int
    price: Decimal
    customizations: Optional[Dict[str, Any]] = None


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: str
    fulfillment_method: str
    total: Decimal
    delivery_address: Optional[str] = None
    order_code: Optional[str] = None
    checkout_reference: Optional[str] = None
    estimated_ready_time: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    driver_id: Optional[int] = None
    user_id: Optional[int] = None
    created_at: datetime
    items: List[OrderItemRead] = []


class CreateOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order: OrderRead
    message: str


class OrderStatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order: OrderRead
    payment_check_deferred: bool = False


class EstimateRequest(BaseModel):
    estimated_minutes: int = Field(gt=0, le=240)


class CheckoutRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: int
    checkout_id: str
    checkout_url: str


class PaymentVerificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order: OrderRead
    message: str
    payment_state: Optional[str] = None
    loyalty_points_awarded: int = 0


class PaymentWebhook(BaseModel):
    # SumUp sends {"event_type": "CHECKOUT_STATUS_CHANGED", "id": "<checkout id>"}
    id: str
    event_type: Optional[str] = None


class RepeatItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    menu_item_id: int
    name: str
    price: Decimal
    quantity: int
    customizations: Optional[Dict[str, Any]] = None


class RepeatOrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    items: List[RepeatItemRead]
    unavailable_items: List[str]
    message: str


class LoyaltyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    points: int = 0
    total_spent_this_period: Decimal = Decimal("0")
