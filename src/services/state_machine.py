"""Status state machine for services, handling stages and orders.

Every function is pure: it takes an order plus the acting staff member and
the current time, and returns a new order. Rules:

- Services and stages only move forward: pending -> in_progress ->
  completed | skipped, with pending -> completed and pending -> skipped
  allowed directly (the start time is back-filled to the completion time).
- Pickup must be finished or skipped before any basket service moves.
- Within a basket services go wash, spin, dry, iron, fold; only the first
  unfinished one may move.
- Delivery may start or complete only once every service of every basket is
  finished or skipped.
- The order completes once all services and both stages are terminal.
"""

import logging
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from src.api.middleware.error_handler import ConflictError, InvalidTransitionError, NotFoundError
from src.models.order import (
    SERVICE_SEQUENCE,
    AuditAction,
    Basket,
    DisplayStatus,
    HandlingStage,
    HandlingStageName,
    Order,
    OrderStatus,
    ServiceEntry,
    ServiceType,
    StageStatus,
    TrackedProgress,
    TransitionAction,
    evolve,
)
from src.services import audit_log

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

ACTION_TARGETS: dict[TransitionAction, StageStatus] = {
    TransitionAction.START: StageStatus.IN_PROGRESS,
    TransitionAction.COMPLETE: StageStatus.COMPLETED,
    TransitionAction.SKIP: StageStatus.SKIPPED,
}

HANDLING_AUDIT_ACTIONS: dict[TransitionAction, AuditAction] = {
    TransitionAction.START: AuditAction.HANDLING_STARTED,
    TransitionAction.COMPLETE: AuditAction.HANDLING_COMPLETED,
    TransitionAction.SKIP: AuditAction.HANDLING_SKIPPED,
}


class AvailableAction(BaseModel):
    """One thing staff may do next on an order."""

    model_config = ConfigDict(frozen=True)

    action: TransitionAction
    handling_stage: HandlingStageName | None = None
    basket_number: int | None = None
    service_type: ServiceType | None = None


def check_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if target not in ORDER_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)


def allowed_actions(progress: TrackedProgress) -> tuple[TransitionAction, ...]:
    """Actions the current status permits, before any gating rule."""
    if progress.status is StageStatus.PENDING:
        return (TransitionAction.START, TransitionAction.COMPLETE, TransitionAction.SKIP)
    if progress.status is StageStatus.IN_PROGRESS:
        return (TransitionAction.COMPLETE, TransitionAction.SKIP)
    return ()


def transition(progress: TrackedProgress, action: TransitionAction, actor: str, now: datetime, subject: str):
    """Apply ``action`` to a service or stage.

    Args:
        progress: The service entry or handling stage.
        action: Requested action.
        actor: Staff member performing it.
        now: Current time.
        subject: Name used in error messages.

    Returns:
        The same type as ``progress`` with the new status and timestamps.

    Raises:
        InvalidTransitionError: If the current status does not permit it.
    """
    target = ACTION_TARGETS[action]
    if action not in allowed_actions(progress):
        raise InvalidTransitionError(progress.status.value, target.value, subject=subject)

    if action is TransitionAction.START:
        return evolve(progress, status=target, started_at=now)

    started_at = progress.started_at or now
    return evolve(
        progress,
        status=target,
        started_at=started_at,
        completed_at=max(now, started_at),
        completed_by=actor,
    )


def visible_stages(order: Order) -> list[tuple[HandlingStageName, HandlingStage]]:
    """Handling stages shown on the timeline; in-store stages are left out."""
    return [
        (name, order.handling.stage(name))
        for name in HandlingStageName
        if not order.handling.stage(name).is_in_store
    ]


def next_service(basket: Basket) -> ServiceEntry | None:
    """First service of the basket, in sequence, that is not finished."""
    for service_type in SERVICE_SEQUENCE:
        entry = basket.service(service_type)
        if entry is not None and not entry.status.is_terminal:
            return entry
    return None


def _require_processing(order: Order) -> None:
    if order.status is not OrderStatus.PROCESSING:
        raise ConflictError(
            message=f"Order {order.id} is {order.status.value}; only processing orders can be advanced",
        )


def _check_service_gate(order: Order, basket: Basket, entry: ServiceEntry) -> None:
    if not order.handling.pickup.status.is_terminal:
        raise ConflictError(message="Pickup must be finished before basket services can move")
    first_open = next_service(basket)
    if first_open is not None and first_open.service_type is not entry.service_type:
        raise ConflictError(
            message=(
                f"Basket {basket.basket_number}: {first_open.service_type.value} must be finished "
                f"before {entry.service_type.value}"
            ),
        )


def _check_delivery_gate(order: Order, action: TransitionAction) -> None:
    if action is TransitionAction.SKIP:
        return
    if not order.handling.pickup.status.is_terminal or not order.breakdown.all_services_terminal:
        raise ConflictError(message="Delivery cannot move until every basket service is finished")


def advance_service(
    order: Order,
    basket_number: int,
    service_type: ServiceType,
    action: TransitionAction,
    actor: str,
    now: datetime,
) -> Order:
    """Move one basket service and record it.

    Raises:
        ConflictError: If the order is not processing or a gate is closed.
        InvalidTransitionError: If the service's status does not permit it.
        NotFoundError: If the basket or service does not exist.
    """
    _require_processing(order)
    basket = order.breakdown.basket(basket_number)
    if basket is None:
        raise NotFoundError(f"Basket {basket_number} not found on order {order.id}")
    entry = basket.service(service_type)
    if entry is None:
        raise NotFoundError(f"Basket {basket_number} has no {service_type.value} service")

    path = f"baskets.{basket_number}.services.{service_type.value}"
    if action not in allowed_actions(entry):
        raise InvalidTransitionError(entry.status.value, ACTION_TARGETS[action].value, subject=path)
    _check_service_gate(order, basket, entry)

    updated_entry = transition(entry, action, actor, audit_log.next_timestamp(order, now), subject=path)
    updated = evolve(order, breakdown=order.breakdown.with_basket(basket.with_service(updated_entry)))
    updated = audit_log.record(
        updated,
        AuditAction.SERVICE_STATUS_CHANGED,
        now,
        actor,
        basket_number=basket_number,
        service_type=service_type,
        service_path=path,
        from_status=entry.status.value,
        to_status=updated_entry.status.value,
        duration_minutes=updated_entry.duration_minutes,
    )
    return complete_if_finished(updated, actor, now)


def advance_handling(
    order: Order,
    stage_name: HandlingStageName,
    action: TransitionAction,
    actor: str,
    now: datetime,
) -> Order:
    """Move the pickup or delivery stage and record it.

    Raises:
        ConflictError: If the order is not processing, the stage happens in
            store, or delivery is gated by unfinished services.
        InvalidTransitionError: If the stage's status does not permit it.
    """
    _require_processing(order)
    stage = order.handling.stage(stage_name)
    if stage.is_in_store:
        raise ConflictError(message=f"The {stage_name.value} stage happens in store and cannot be changed")

    if action not in allowed_actions(stage):
        raise InvalidTransitionError(stage.status.value, ACTION_TARGETS[action].value, subject=stage_name.value)
    if stage_name is HandlingStageName.DELIVERY:
        _check_delivery_gate(order, action)

    updated_stage = transition(stage, action, actor, audit_log.next_timestamp(order, now), subject=stage_name.value)
    updated = evolve(order, handling=order.handling.with_stage(stage_name, updated_stage))
    updated = audit_log.record(
        updated,
        HANDLING_AUDIT_ACTIONS[action],
        now,
        actor,
        handling_stage=stage_name,
        from_status=stage.status.value,
        to_status=updated_stage.status.value,
        duration_minutes=updated_stage.duration_minutes,
    )
    return complete_if_finished(updated, actor, now)


def is_finished(order: Order) -> bool:
    """Whether all work on the order is done."""
    return (
        order.handling.pickup.status.is_terminal
        and order.breakdown.all_services_terminal
        and order.handling.delivery.status.is_terminal
    )


def complete_if_finished(order: Order, actor: str | None, now: datetime) -> Order:
    """Complete a processing order whose services and stages are all terminal."""
    if order.status is not OrderStatus.PROCESSING or not is_finished(order):
        return order
    check_order_transition(order.status, OrderStatus.COMPLETED)
    completed_at = audit_log.next_timestamp(order, now)
    updated = evolve(order, status=OrderStatus.COMPLETED, completed_at=completed_at)
    logger.info("Order %s completed", order.id)
    return audit_log.record(
        updated,
        AuditAction.COMPLETED,
        now,
        actor,
        from_status=OrderStatus.PROCESSING.value,
        to_status=OrderStatus.COMPLETED.value,
    )


def skip_open_work(order: Order, actor: str, now: datetime) -> Order:
    """Skip every service and stage that has not reached a terminal status.

    Used when an order is cancelled. No audit entries are written here; the
    cancellation entry covers them.
    """
    baskets = []
    for basket in order.breakdown.baskets:
        for entry in basket.services:
            if not entry.status.is_terminal:
                basket = basket.with_service(
                    transition(entry, TransitionAction.SKIP, actor, now, subject=entry.service_type.value)
                )
        baskets.append(basket)

    handling = order.handling
    for name in HandlingStageName:
        stage = handling.stage(name)
        if not stage.status.is_terminal:
            handling = handling.with_stage(name, transition(stage, TransitionAction.SKIP, actor, now, subject=name.value))

    breakdown = evolve(order.breakdown, baskets=tuple(baskets))
    return evolve(order, breakdown=breakdown, handling=handling)


def next_actions(order: Order) -> list[AvailableAction]:
    """Every action staff may take on the order right now.

    Mirrors the gates enforced by ``advance_service`` and
    ``advance_handling``: anything listed here will be accepted.
    """
    if order.status is not OrderStatus.PROCESSING:
        return []

    actions: list[AvailableAction] = []
    pickup = order.handling.pickup
    if not pickup.is_in_store:
        actions.extend(
            AvailableAction(action=action, handling_stage=HandlingStageName.PICKUP)
            for action in allowed_actions(pickup)
        )

    if pickup.status.is_terminal:
        for basket in order.breakdown.baskets:
            entry = next_service(basket)
            if entry is None:
                continue
            actions.extend(
                AvailableAction(
                    action=action,
                    basket_number=basket.basket_number,
                    service_type=entry.service_type,
                )
                for action in allowed_actions(entry)
            )

    delivery = order.handling.delivery
    if not delivery.is_in_store:
        gate_open = pickup.status.is_terminal and order.breakdown.all_services_terminal
        actions.extend(
            AvailableAction(action=action, handling_stage=HandlingStageName.DELIVERY)
            for action in allowed_actions(delivery)
            if gate_open or action is TransitionAction.SKIP
        )
    return actions


def display_status(order: Order) -> DisplayStatus:
    """Grouping label for boards and lists.

    This is a projection only; the stored ``status`` stays authoritative.
    """
    if order.status is OrderStatus.CANCELLED:
        return DisplayStatus.CANCELLED
    if order.status is OrderStatus.COMPLETED:
        return DisplayStatus.COMPLETED
    if order.status is OrderStatus.PENDING:
        return DisplayStatus.PENDING

    pickup = order.handling.pickup
    if not pickup.is_in_store and not pickup.status.is_terminal:
        return DisplayStatus.FOR_PICKUP
    if not order.breakdown.all_services_terminal:
        return DisplayStatus.PROCESSING
    delivery = order.handling.delivery
    if not delivery.is_in_store and not delivery.status.is_terminal:
        return DisplayStatus.FOR_DELIVERY
    return DisplayStatus.PROCESSING
