"""Order request and response schemas."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from src.models.inventory import InventoryDeductionResult
from src.models.order import (
    BasketDraft,
    CancellationReason,
    DisplayStatus,
    LoyaltyTier,
    Order,
    OrderSource,
    PaymentMethod,
    ProductSelection,
    TransitionAction,
)
from src.services.state_machine import AvailableAction


class HandlingStageInput(BaseModel):
    """Pickup or delivery details. Leave ``address`` empty for in-store."""

    address: str | None = Field(default=None, description="Address; empty means in store")
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    notes: str | None = Field(default=None, max_length=500)


class PaymentInput(BaseModel):
    """Payment taken when the order is placed."""

    method: PaymentMethod = Field(default=PaymentMethod.CASH, description="cash or gcash")
    amount_paid: Decimal | None = Field(default=None, ge=0, description="Amount tendered")
    reference_number: str | None = Field(default=None, max_length=100, description="GCash reference number")


class CreateOrderRequest(BaseModel):
    """Request schema for placing an order at the counter or in the app."""

    source: OrderSource = Field(description="store for counter orders, app for self-service")
    staff_id: str | None = Field(default=None, description="Cashier placing a store order")
    customer_id: str | None = Field(default=None, description="Customer the order belongs to")
    products: list[ProductSelection] = Field(default_factory=list)
    baskets: list[BasketDraft] = Field(default_factory=list)
    staff_service: bool = Field(default=False, description="Staff handle the laundry")
    delivery_fee_override: Decimal | None = Field(default=None, ge=0)
    loyalty_tier: LoyaltyTier | None = None
    pickup: HandlingStageInput = Field(default_factory=HandlingStageInput)
    delivery: HandlingStageInput = Field(default_factory=HandlingStageInput)
    payment: PaymentInput | None = None
    order_note: str | None = Field(default=None, max_length=1000)


class ModifyOrderRequest(BaseModel):
    """Request schema for re-pricing an order with new selections."""

    staff_id: str
    products: list[ProductSelection] = Field(default_factory=list)
    baskets: list[BasketDraft] = Field(default_factory=list)
    staff_service: bool = False
    delivery_fee_override: Decimal | None = Field(default=None, ge=0)
    loyalty_tier: LoyaltyTier | None = None
    order_note: str | None = Field(default=None, max_length=1000)


class ApproveOrderRequest(BaseModel):
    staff_id: str
    gcash_verified: StrictBool
    notes: str | None = Field(default=None, max_length=1000)


class RejectOrderRequest(BaseModel):
    staff_id: str
    reason: str = Field(min_length=1, max_length=500)
    notes: str | None = Field(default=None, max_length=1000)


class CancelOrderRequest(BaseModel):
    staff_id: str
    reason: CancellationReason = CancellationReason.CUSTOMER_REQUEST
    notes: str | None = Field(default=None, max_length=1000)


class AdvanceStatusRequest(BaseModel):
    """Request schema for moving a service or handling stage."""

    staff_id: str
    action: TransitionAction


class OrderResponse(BaseModel):
    """Order with its read-side projections."""

    model_config = ConfigDict(from_attributes=True)

    order: Order
    display_status: DisplayStatus
    next_actions: list[AvailableAction] = Field(default_factory=list)


class ApproveOrderResponse(OrderResponse):
    stock_deducted: InventoryDeductionResult


class NextActionsResponse(BaseModel):
    order_id: str
    display_status: DisplayStatus
    next_actions: list[AvailableAction]
