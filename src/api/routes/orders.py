"""Order lifecycle API routes."""

from fastapi import APIRouter, status

from src.api.deps import BasketNumber, LifecycleService, OrderId
from src.models.order import HandlingStageName, Order, ServiceType
from src.schemas.orders import (
    AdvanceStatusRequest,
    ApproveOrderRequest,
    ApproveOrderResponse,
    CancelOrderRequest,
    CreateOrderRequest,
    ModifyOrderRequest,
    NextActionsResponse,
    OrderResponse,
    RejectOrderRequest,
)
from src.services.state_machine import display_status, next_actions

router = APIRouter(prefix="/orders", tags=["orders"])


def _order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        order=order,
        display_status=display_status(order),
        next_actions=next_actions(order),
    )


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(data: CreateOrderRequest, lifecycle: LifecycleService) -> OrderResponse:
    """Place a counter or app order."""
    order = await lifecycle.create_order(data, staff_id=data.staff_id)
    return _order_response(order)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: OrderId, lifecycle: LifecycleService) -> OrderResponse:
    """Get an order with its display status and next actions."""
    order = await lifecycle.get_order(order_id)
    return _order_response(order)


@router.get("/{order_id}/next-actions", response_model=NextActionsResponse)
async def get_next_actions(order_id: OrderId, lifecycle: LifecycleService) -> NextActionsResponse:
    """List what staff may do next on an order."""
    order = await lifecycle.get_order(order_id)
    return NextActionsResponse(
        order_id=order.id,
        display_status=display_status(order),
        next_actions=next_actions(order),
    )


@router.post("/{order_id}/approve", response_model=ApproveOrderResponse)
async def approve_order(
    order_id: OrderId,
    data: ApproveOrderRequest,
    lifecycle: LifecycleService,
) -> ApproveOrderResponse:
    """Approve a pending app order.

    Returns 424 with the failed products if stock could not be deducted.
    """
    result = await lifecycle.approve(
        order_id,
        staff_id=data.staff_id,
        payment_verified=data.gcash_verified,
        notes=data.notes,
    )
    return ApproveOrderResponse(
        order=result.order,
        display_status=display_status(result.order),
        next_actions=next_actions(result.order),
        stock_deducted=result.stock_deducted,
    )


@router.post("/{order_id}/reject", response_model=OrderResponse)
async def reject_order(order_id: OrderId, data: RejectOrderRequest, lifecycle: LifecycleService) -> OrderResponse:
    """Reject a pending app order."""
    order = await lifecycle.reject(order_id, staff_id=data.staff_id, reason=data.reason, notes=data.notes)
    return _order_response(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(order_id: OrderId, data: CancelOrderRequest, lifecycle: LifecycleService) -> OrderResponse:
    """Cancel an open order."""
    order = await lifecycle.cancel(order_id, staff_id=data.staff_id, reason=data.reason, notes=data.notes)
    return _order_response(order)


@router.put("/{order_id}", response_model=OrderResponse)
async def modify_order(order_id: OrderId, data: ModifyOrderRequest, lifecycle: LifecycleService) -> OrderResponse:
    """Replace an open order's selections and re-price it."""
    order = await lifecycle.modify(order_id, data, staff_id=data.staff_id)
    return _order_response(order)


@router.patch("/{order_id}/baskets/{basket_number}/services/{service_type}", response_model=OrderResponse)
async def advance_service(
    order_id: OrderId,
    basket_number: BasketNumber,
    service_type: ServiceType,
    data: AdvanceStatusRequest,
    lifecycle: LifecycleService,
) -> OrderResponse:
    """Start, complete or skip a basket service."""
    order = await lifecycle.advance_service(
        order_id,
        basket_number=basket_number,
        service_type=service_type,
        action=data.action,
        staff_id=data.staff_id,
    )
    return _order_response(order)


@router.patch("/{order_id}/handling/{stage}", response_model=OrderResponse)
async def advance_handling(
    order_id: OrderId,
    stage: HandlingStageName,
    data: AdvanceStatusRequest,
    lifecycle: LifecycleService,
) -> OrderResponse:
    """Start, complete or skip the pickup or delivery stage."""
    order = await lifecycle.advance_handling(order_id, stage=stage, action=data.action, staff_id=data.staff_id)
    return _order_response(order)
