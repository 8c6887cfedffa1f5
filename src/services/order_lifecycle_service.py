"""Order lifecycle operations: create, approve, reject, modify, advance, cancel.

Every mutating operation runs under the order's lock, reloads the order,
checks all preconditions before writing anything and saves with a
status/revision precondition. Notifications go out only after the save.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from src.api.middleware.error_handler import (
    ConflictError,
    DependentFailureError,
    NotFoundError,
    ValidationError,
)
from src.core.clock import Clock, get_clock
from src.core.order_locks import OrderLockRegistry, get_order_locks
from src.models.inventory import InventoryDeductionResult, InventoryLine
from src.models.order import (
    ApprovalStatus,
    AuditAction,
    Breakdown,
    Cancellation,
    CancellationReason,
    Handling,
    HandlingStage,
    HandlingStageName,
    LoyaltyTier,
    Order,
    OrderItem,
    OrderSource,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    ServiceType,
    StageStatus,
    TransitionAction,
    evolve,
)
from src.models.staff import Staff
from src.schemas.orders import CreateOrderRequest, ModifyOrderRequest, PaymentInput
from src.services import audit_log, state_machine
from src.services.basket_partitioner import normalize_baskets
from src.services.breakdown_builder import PricingPolicy, build_breakdown, to_money
from src.services.catalog_service import CatalogService, get_catalog_service
from src.services.customer_service import CustomerService, get_customer_service
from src.services.inventory_service import InventoryService, get_inventory_service
from src.services.notification_service import (
    Notification,
    NotificationEvent,
    NotificationService,
    get_notification_service,
)
from src.services.order_repository import OrderRepository, get_order_repository
from src.services.staff_service import StaffService, get_staff_service
from src.services.state_machine import AvailableAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApproveResult:
    """Approved order plus the stock that was taken for it."""

    order: Order
    stock_deducted: InventoryDeductionResult


def inventory_lines(items: Sequence[OrderItem]) -> list[InventoryLine]:
    return [
        InventoryLine(product_id=item.product_id, product_name=item.product_name, quantity=item.quantity)
        for item in items
    ]


def inventory_deducted(order: Order) -> bool:
    """Whether the order's products have been taken out of stock.

    Store orders deduct at creation and app orders on approval.
    """
    return order.source is OrderSource.STORE or order.approved_at is not None


def product_deltas(
    before: Sequence[OrderItem],
    after: Sequence[OrderItem],
) -> tuple[list[InventoryLine], list[InventoryLine]]:
    """Split a product change into lines to deduct and lines to restore."""
    old = {item.product_id: item for item in before}
    new = {item.product_id: item for item in after}
    to_deduct = []
    to_restore = []
    for product_id in {**old, **new}:
        old_qty = old[product_id].quantity if product_id in old else 0
        new_qty = new[product_id].quantity if product_id in new else 0
        name = (new.get(product_id) or old[product_id]).product_name
        if new_qty > old_qty:
            to_deduct.append(InventoryLine(product_id=product_id, product_name=name, quantity=new_qty - old_qty))
        elif old_qty > new_qty:
            to_restore.append(InventoryLine(product_id=product_id, product_name=name, quantity=old_qty - new_qty))
    return to_deduct, to_restore


def _deduction_failed(result: InventoryDeductionResult) -> DependentFailureError:
    return DependentFailureError(
        message="Stock deduction failed",
        details=[
            {"loc": ["products", failed.product_id], "msg": f"{failed.product_name}: {failed.error}", "type": "inventory_failure"}
            for failed in result.failed_products
        ],
        result=result,
    )


class OrderLifecycleService:
    """Service composing pricing, the state machine and the audit log."""

    def __init__(
        self,
        repository: OrderRepository | None = None,
        catalog_service: CatalogService | None = None,
        inventory_service: InventoryService | None = None,
        staff_service: StaffService | None = None,
        customer_service: CustomerService | None = None,
        notification_service: NotificationService | None = None,
        clock: Clock | None = None,
        locks: OrderLockRegistry | None = None,
        policy: PricingPolicy | None = None,
    ) -> None:
        """Initialize lifecycle service.

        Args:
            repository: Optional order repository for testing.
            catalog_service: Optional catalog source for testing.
            inventory_service: Optional inventory service for testing.
            staff_service: Optional staff directory for testing.
            customer_service: Optional loyalty point store for testing.
            notification_service: Optional notification service for testing.
            clock: Optional clock for testing.
            locks: Optional lock registry for testing.
            policy: Optional pricing policy for testing.
        """
        self._repository = repository
        self._catalog_service = catalog_service
        self._inventory_service = inventory_service
        self._staff_service = staff_service
        self._customer_service = customer_service
        self._notification_service = notification_service
        self._clock = clock
        self._locks = locks
        self._policy = policy

    @property
    def repository(self) -> OrderRepository:
        if self._repository is None:
            self._repository = get_order_repository()
        return self._repository

    @property
    def catalog_service(self) -> CatalogService:
        if self._catalog_service is None:
            self._catalog_service = get_catalog_service()
        return self._catalog_service

    @property
    def inventory_service(self) -> InventoryService:
        if self._inventory_service is None:
            self._inventory_service = get_inventory_service()
        return self._inventory_service

    @property
    def staff_service(self) -> StaffService:
        if self._staff_service is None:
            self._staff_service = get_staff_service()
        return self._staff_service

    @property
    def customer_service(self) -> CustomerService:
        if self._customer_service is None:
            self._customer_service = get_customer_service()
        return self._customer_service

    @property
    def notification_service(self) -> NotificationService:
        if self._notification_service is None:
            self._notification_service = get_notification_service()
        return self._notification_service

    @property
    def clock(self) -> Clock:
        if self._clock is None:
            self._clock = get_clock()
        return self._clock

    @property
    def locks(self) -> OrderLockRegistry:
        if self._locks is None:
            self._locks = get_order_locks()
        return self._locks

    @property
    def policy(self) -> PricingPolicy:
        if self._policy is None:
            self._policy = PricingPolicy.from_settings()
        return self._policy

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _load(self, order_id: str) -> Order:
        order = await self.repository.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def _require_staff(self, staff_id: str | None) -> Staff:
        if not staff_id:
            raise ValidationError(message="staff_id is required")
        staff = await self.staff_service.get_staff(staff_id)
        if staff is None:
            raise NotFoundError(f"Staff member {staff_id} not found")
        return staff

    async def _commit(self, before: Order, after: Order) -> Order:
        if not audit_log.is_extension_of(before, after):
            raise RuntimeError(f"Audit log of order {before.id} was rewritten")
        return await self.repository.save(after, expected_status=before.status, expected_revision=before.revision)

    def _notify(self, order: Order, event: NotificationEvent, message: str) -> None:
        try:
            self.notification_service.enqueue(
                Notification(event=event, order_id=order.id, customer_id=order.customer_id, message=message)
            )
        except Exception as e:
            logger.error("Could not queue %s notification for order %s: %s", event.value, order.id, e)

    def _approve_baskets(self, breakdown: Breakdown, staff_id: str, now: datetime) -> Breakdown:
        baskets = tuple(
            basket
            if basket.approval_status is ApprovalStatus.APPROVED
            else evolve(basket, approval_status=ApprovalStatus.APPROVED, approved_at=now, approved_by=staff_id)
            for basket in breakdown.baskets
        )
        return evolve(breakdown, baskets=baskets)

    def _counter_payment(self, payment: PaymentInput | None, total: Decimal, now: datetime) -> Payment:
        if payment is None:
            raise ValidationError(message="Store orders need a payment")
        if payment.method is PaymentMethod.CASH:
            amount_paid = payment.amount_paid if payment.amount_paid is not None else total
            if amount_paid < total:
                raise ValidationError(
                    message=f"Amount paid {amount_paid} is less than the total {total}",
                    details=[{"loc": ["payment", "amount_paid"], "msg": "insufficient payment", "type": "value_error"}],
                )
            return Payment(
                method=PaymentMethod.CASH,
                amount_paid=amount_paid,
                change=to_money(amount_paid - total),
                payment_status=PaymentStatus.SUCCESSFUL,
                completed_at=now,
            )
        if not payment.reference_number:
            raise ValidationError(message="GCash payments need a reference number")
        return Payment(
            method=PaymentMethod.GCASH,
            amount_paid=total,
            change=Decimal("0.00"),
            reference_number=payment.reference_number,
            payment_status=PaymentStatus.SUCCESSFUL,
            gcash_verified=True,
            completed_at=now,
        )

    def _loyalty_cost(self, tier: LoyaltyTier | None) -> int:
        return 0 if tier is None else self.policy.loyalty_points[tier]

    async def _check_loyalty_points(
        self,
        customer_id: str | None,
        tier: LoyaltyTier | None,
        previous_tier: LoyaltyTier | None = None,
    ) -> int:
        """Points a loyalty tier change redeems, checked against the balance.

        Returns:
            int: Points to take from the customer once the order is saved.
                Negative when a cheaper tier hands points back.

        Raises:
            ValidationError: If the tier needs a customer or more points than
                the customer has.
            NotFoundError: If the customer does not exist.
        """
        cost = self._loyalty_cost(tier) - self._loyalty_cost(previous_tier)
        if cost <= 0:
            return cost
        if not customer_id:
            raise ValidationError(
                message="A loyalty discount needs a customer",
                details=[{"loc": ["customer_id"], "msg": "required for loyalty_tier", "type": "value_error"}],
            )
        balance = await self.customer_service.get_loyalty_points(customer_id)
        if balance is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        if balance < cost:
            raise ValidationError(
                message=f"Customer has {balance} loyalty points; {tier.value} needs {cost}",
                details=[{"loc": ["loyalty_tier"], "msg": "not enough loyalty points", "type": "loyalty_points"}],
            )
        return cost

    async def _redeem_loyalty_points(self, order: Order, points: int) -> None:
        if not points or not order.customer_id:
            return
        try:
            await self.customer_service.adjust_loyalty_points(order.customer_id, -points)
        except Exception as e:
            logger.error("Order %s saved but loyalty points were not adjusted by %d: %s", order.id, -points, e)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        """Get an order by ID.

        Raises:
            NotFoundError: If the order does not exist.
        """
        return await self._load(order_id)

    async def get_next_actions(self, order_id: str) -> list[AvailableAction]:
        """Actions staff may take on the order right now."""
        return state_machine.next_actions(await self._load(order_id))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_order(self, request: CreateOrderRequest, staff_id: str | None = None) -> Order:
        """Price and store a new order.

        Store orders are paid at the counter: they need an existing cashier,
        take their products out of stock straight away and start in
        ``processing``. App orders start ``pending`` with payment still
        processing and wait for approval.

        Args:
            request: Order contents.
            staff_id: Cashier placing a store order.

        Returns:
            Order: The stored order.

        Raises:
            ValidationError: If the order is empty, the payment is missing or
                short, the loyalty tier is not covered by the customer's
                points, or anything fails to price.
            NotFoundError: If the cashier or the discounted customer does not
                exist.
            DependentFailureError: If stock could not be deducted.
        """
        if not request.baskets and not request.products:
            raise ValidationError(message="An order needs at least one basket or product")

        is_store = request.source is OrderSource.STORE
        if is_store:
            await self._require_staff(staff_id)

        now = self.clock.now()
        handling = Handling(
            pickup=HandlingStage.initial(**request.pickup.model_dump()),
            delivery=HandlingStage.initial(**request.delivery.model_dump()),
        )
        baskets = normalize_baskets(request.baskets, self.policy.basket_weight_max)
        loyalty_points = await self._check_loyalty_points(request.customer_id, request.loyalty_tier)
        catalog = await self.catalog_service.get_catalog()
        breakdown = build_breakdown(
            products=request.products,
            baskets=baskets,
            staff_service_requested=request.staff_service,
            is_delivery=not handling.delivery.is_in_store,
            delivery_fee_override=request.delivery_fee_override,
            catalog=catalog,
            policy=self.policy,
            loyalty_tier=request.loyalty_tier,
        )
        total = breakdown.summary.total

        if is_store:
            payment = self._counter_payment(request.payment, total, now)
            breakdown = self._approve_baskets(evolve(breakdown, payment=payment), staff_id, now)
        else:
            requested = request.payment or PaymentInput(method=PaymentMethod.GCASH)
            payment = Payment(
                method=requested.method,
                amount_paid=requested.amount_paid,
                reference_number=requested.reference_number,
                payment_status=PaymentStatus.PROCESSING,
            )
            breakdown = evolve(breakdown, payment=payment)

        order = Order(
            id=str(uuid4()),
            source=request.source,
            customer_id=request.customer_id,
            cashier_id=staff_id if is_store else None,
            status=OrderStatus.PROCESSING if is_store else OrderStatus.PENDING,
            total_amount=total,
            created_at=now,
            order_note=request.order_note,
            handling=handling,
            breakdown=breakdown,
        )
        order = audit_log.record(
            order,
            AuditAction.CREATED,
            now,
            staff_id if is_store else None,
            to_status=order.status.value,
            details={"source": order.source.value, "total": str(total), "baskets": len(breakdown.baskets)},
        )
        if is_store:
            order = audit_log.record(
                order,
                AuditAction.PAYMENT_PROCESSED,
                now,
                staff_id,
                details={
                    "method": payment.method.value,
                    "amount_paid": str(payment.amount_paid),
                    "change": str(payment.change),
                },
            )
            order = state_machine.complete_if_finished(order, staff_id, now)

        deducted = InventoryDeductionResult.empty()
        if is_store and breakdown.items:
            deducted = await self.inventory_service.deduct(order.id, inventory_lines(breakdown.items))
            if not deducted.success:
                logger.warning("Order creation aborted: stock deduction failed")
                raise _deduction_failed(deducted)

        try:
            stored = await self.repository.create(order)
        except Exception:
            if deducted.deducted_products:
                await self.inventory_service.restore(order.id, inventory_lines(breakdown.items))
            raise

        await self._redeem_loyalty_points(stored, loyalty_points)
        logger.info("Created %s order %s in %s, total %s", stored.source.value, stored.id, stored.status.value, total)
        if not is_store:
            self._notify(stored, NotificationEvent.ORDER_CREATED, f"We received order {stored.id}. Total: {total}.")
        return stored

    async def approve(
        self,
        order_id: str,
        staff_id: str,
        payment_verified: bool,
        notes: str | None = None,
    ) -> ApproveResult:
        """Approve a pending app order and take its products out of stock.

        All checks run before stock is touched. If any product cannot be
        deducted the order is left exactly as it was.

        Args:
            order_id: Order UUID.
            staff_id: Approving cashier.
            payment_verified: Whether the cashier verified the GCash payment.
            notes: Optional cashier notes.

        Returns:
            ApproveResult: The approved order and the deduction result.

        Raises:
            ValidationError: If ``payment_verified`` is not a bool or the order
                did not come from the app.
            NotFoundError: If the order or staff member does not exist.
            ConflictError: If the order is no longer pending.
            DependentFailureError: If any product could not be deducted.
        """
        if not isinstance(payment_verified, bool):
            raise ValidationError(
                message="gcash_verified must be a boolean",
                details=[{"loc": ["gcash_verified"], "msg": "must be a boolean", "type": "type_error"}],
            )

        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            await self._require_staff(staff_id)
            if order.source is not OrderSource.APP:
                raise ValidationError(message="Only app orders go through approval")
            if order.status is not OrderStatus.PENDING:
                raise ConflictError(message=f"Order is {order.status.value}; only pending orders can be approved")

            now = audit_log.next_timestamp(order, self.clock.now())
            state_machine.check_order_transition(order.status, OrderStatus.PROCESSING)

            breakdown = self._approve_baskets(order.breakdown, staff_id, now)
            payment = order.breakdown.payment or Payment(method=PaymentMethod.GCASH)
            breakdown = evolve(
                breakdown,
                payment=evolve(
                    payment,
                    payment_status=PaymentStatus.SUCCESSFUL,
                    gcash_verified=payment_verified,
                    completed_at=now,
                ),
            )
            updated = evolve(
                order,
                status=OrderStatus.PROCESSING,
                cashier_id=staff_id,
                approved_at=now,
                breakdown=breakdown,
            )
            updated = audit_log.record(
                updated,
                AuditAction.APPROVED,
                now,
                staff_id,
                from_status=OrderStatus.PENDING.value,
                to_status=OrderStatus.PROCESSING.value,
                details={
                    "gcash_verified": payment_verified,
                    "cashier_notes": notes,
                    "baskets_approved": len(breakdown.baskets),
                },
            )
            updated = state_machine.complete_if_finished(updated, staff_id, now)

            lines = inventory_lines(order.breakdown.items)
            deducted = InventoryDeductionResult.empty()
            if lines:
                deducted = await self.inventory_service.deduct(order.id, lines)
                if not deducted.success:
                    logger.warning("Approval of order %s aborted: stock deduction failed", order.id)
                    raise _deduction_failed(deducted)

            try:
                saved = await self._commit(order, updated)
            except Exception:
                if deducted.deducted_products:
                    logger.warning("Save failed after deducting stock for order %s; restoring", order.id)
                    await self.inventory_service.restore(order.id, lines)
                raise

        logger.info("Order %s approved by %s", order.id, staff_id)
        self._notify(saved, NotificationEvent.ORDER_APPROVED, f"Order {saved.id} was approved and is being processed.")
        return ApproveResult(order=saved, stock_deducted=deducted)

    async def reject(
        self,
        order_id: str,
        staff_id: str,
        reason: str,
        notes: str | None = None,
    ) -> Order:
        """Reject a pending app order. Stock is not touched.

        Raises:
            ValidationError: If no reason is given or the order did not come
                from the app.
            NotFoundError: If the order or staff member does not exist.
            ConflictError: If the order is no longer pending.
        """
        if not reason or not reason.strip():
            raise ValidationError(message="A rejection reason is required")

        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            await self._require_staff(staff_id)
            if order.source is not OrderSource.APP:
                raise ValidationError(message="Only app orders go through approval")
            if order.status is not OrderStatus.PENDING:
                raise ConflictError(message=f"Order is {order.status.value}; only pending orders can be rejected")

            now = audit_log.next_timestamp(order, self.clock.now())
            state_machine.check_order_transition(order.status, OrderStatus.CANCELLED)

            updated = state_machine.skip_open_work(order, staff_id, now)
            baskets = tuple(
                evolve(basket, approval_status=ApprovalStatus.REJECTED, rejection_reason=reason)
                for basket in updated.breakdown.baskets
            )
            payment = updated.breakdown.payment
            breakdown = evolve(
                updated.breakdown,
                baskets=baskets,
                payment=evolve(payment, payment_status=PaymentStatus.FAILED) if payment is not None else None,
            )
            refund = (
                RefundStatus.PENDING
                if payment is not None and payment.amount_paid
                else RefundStatus.NOT_APPLICABLE
            )
            updated = evolve(
                updated,
                status=OrderStatus.CANCELLED,
                cancelled_at=now,
                breakdown=breakdown,
                cancellation=Cancellation(
                    reason=CancellationReason.REJECTED,
                    notes=f"{reason} - {notes}" if notes else reason,
                    requested_at=now,
                    requested_by=staff_id,
                    refund_status=refund,
                ),
            )
            updated = audit_log.record(
                updated,
                AuditAction.CANCELLED,
                now,
                staff_id,
                from_status=OrderStatus.PENDING.value,
                to_status=OrderStatus.CANCELLED.value,
                reason=reason,
                details={"rejected": True, "cashier_notes": notes},
            )
            saved = await self._commit(order, updated)

        logger.info("Order %s rejected by %s: %s", order.id, staff_id, reason)
        self._notify(saved, NotificationEvent.ORDER_REJECTED, f"Order {saved.id} could not be approved: {reason}")
        return saved

    async def modify(self, order_id: str, request: ModifyOrderRequest, staff_id: str) -> Order:
        """Re-price an open order from new selections.

        The breakdown is rebuilt wholesale. Lines that survive keep their price
        snapshot and progress; new lines are priced from the current catalog.
        On an order whose stock was already taken, added quantities are
        deducted before the save and removed quantities restored after it. A
        loyalty tier change costs or hands back the difference in points.

        Raises:
            NotFoundError: If the order, staff member or discounted customer
                does not exist.
            ConflictError: If the order is completed or cancelled, a service
                that already started would be removed, or delivery is under
                way and a basket would gain unfinished work.
            ValidationError: If the new selections fail to price or the
                customer lacks the points for a dearer loyalty tier.
            DependentFailureError: If added products could not be deducted.
        """
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            await self._require_staff(staff_id)
            if order.status.is_terminal:
                raise ConflictError(message=f"Order is {order.status.value} and can no longer be modified")
            if not request.baskets and not request.products:
                raise ValidationError(message="An order needs at least one basket or product")

            now = audit_log.next_timestamp(order, self.clock.now())
            baskets = normalize_baskets(
                request.baskets,
                self.policy.basket_weight_max,
                reserved=[basket.basket_number for basket in order.breakdown.baskets],
            )
            loyalty_points = await self._check_loyalty_points(
                order.customer_id, request.loyalty_tier, order.breakdown.loyalty_tier
            )
            catalog = await self.catalog_service.get_catalog()
            breakdown = build_breakdown(
                products=request.products,
                baskets=baskets,
                staff_service_requested=request.staff_service,
                is_delivery=order.breakdown.is_delivery,
                delivery_fee_override=request.delivery_fee_override,
                catalog=catalog,
                policy=self.policy,
                loyalty_tier=request.loyalty_tier,
                payment=order.breakdown.payment,
                previous=order.breakdown,
            )

            for old_basket in order.breakdown.baskets:
                new_basket = breakdown.basket(old_basket.basket_number)
                for entry in old_basket.services:
                    if entry.status is StageStatus.PENDING:
                        continue
                    kept = new_basket.service(entry.service_type) if new_basket is not None else None
                    if kept is None or kept.tier is not entry.tier:
                        raise ConflictError(
                            message=(
                                f"Basket {old_basket.basket_number} {entry.service_type.value} is already "
                                f"{entry.status.value} and cannot be removed or changed"
                            ),
                        )

            if order.handling.delivery.status is StageStatus.IN_PROGRESS and not breakdown.all_services_terminal:
                raise ConflictError(
                    message=f"Delivery of order {order.id} is under way; baskets cannot take on unfinished services",
                )

            if order.status is not OrderStatus.PENDING:
                breakdown = self._approve_baskets(breakdown, staff_id, now)

            previous_total = order.total_amount
            updated = evolve(
                order,
                breakdown=breakdown,
                total_amount=breakdown.summary.total,
                order_note=request.order_note if request.order_note is not None else order.order_note,
            )
            updated = audit_log.record(
                updated,
                AuditAction.MODIFIED,
                now,
                staff_id,
                details={
                    "previous_total": str(previous_total),
                    "new_total": str(breakdown.summary.total),
                    "baskets": len(breakdown.baskets),
                    "products": len(breakdown.items),
                },
            )
            updated = state_machine.complete_if_finished(updated, staff_id, now)

            to_deduct: list[InventoryLine] = []
            to_restore: list[InventoryLine] = []
            if inventory_deducted(order):
                to_deduct, to_restore = product_deltas(order.breakdown.items, breakdown.items)
            deducted = InventoryDeductionResult.empty()
            if to_deduct:
                deducted = await self.inventory_service.deduct(order.id, to_deduct)
                if not deducted.success:
                    raise _deduction_failed(deducted)

            try:
                saved = await self._commit(order, updated)
            except Exception:
                if deducted.deducted_products:
                    await self.inventory_service.restore(order.id, to_deduct)
                raise

        await self._redeem_loyalty_points(saved, loyalty_points)
        if to_restore:
            restored = await self.inventory_service.restore(order.id, to_restore)
            if not restored.success:
                logger.error("Order %s modified but %d product(s) were not restocked", order.id, len(restored.failed_products))

        logger.info("Order %s modified by %s: %s -> %s", order.id, staff_id, previous_total, saved.total_amount)
        return saved

    async def advance_service(
        self,
        order_id: str,
        basket_number: int,
        service_type: ServiceType,
        action: TransitionAction,
        staff_id: str,
    ) -> Order:
        """Start, complete or skip one basket service.

        Raises:
            NotFoundError: If the order, staff member, basket or service does
                not exist.
            ConflictError: If the order is not processing or a gate is closed.
            InvalidTransitionError: If the service cannot make that move.
        """
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            await self._require_staff(staff_id)
            updated = state_machine.advance_service(
                order, basket_number, service_type, action, staff_id, self.clock.now()
            )
            saved = await self._commit(order, updated)

        logger.info(
            "Order %s basket %d %s: %s by %s",
            order.id,
            basket_number,
            service_type.value,
            action.value,
            staff_id,
        )
        if saved.status is OrderStatus.COMPLETED:
            self._notify(saved, NotificationEvent.ORDER_COMPLETED, f"Order {saved.id} is complete.")
        return saved

    async def advance_handling(
        self,
        order_id: str,
        stage: HandlingStageName,
        action: TransitionAction,
        staff_id: str,
    ) -> Order:
        """Start, complete or skip the pickup or delivery stage.

        Raises:
            NotFoundError: If the order or staff member does not exist.
            ConflictError: If the order is not processing, the stage is in
                store, or delivery is blocked by unfinished services.
            InvalidTransitionError: If the stage cannot make that move.
        """
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            await self._require_staff(staff_id)
            updated = state_machine.advance_handling(order, stage, action, staff_id, self.clock.now())
            saved = await self._commit(order, updated)

        logger.info("Order %s %s: %s by %s", order.id, stage.value, action.value, staff_id)
        if saved.status is OrderStatus.COMPLETED:
            self._notify(saved, NotificationEvent.ORDER_COMPLETED, f"Order {saved.id} is complete.")
        return saved

    async def cancel(
        self,
        order_id: str,
        staff_id: str,
        reason: CancellationReason = CancellationReason.CUSTOMER_REQUEST,
        notes: str | None = None,
    ) -> Order:
        """Cancel an open order.

        Open services and stages are skipped. Stock already taken for the
        order is put back after the save; a failed restock is logged and
        does not undo the cancellation.

        Raises:
            NotFoundError: If the order or staff member does not exist.
            InvalidTransitionError: If the order is completed or cancelled.
        """
        async with self.locks.hold(order_id):
            order = await self._load(order_id)
            await self._require_staff(staff_id)
            state_machine.check_order_transition(order.status, OrderStatus.CANCELLED)

            now = audit_log.next_timestamp(order, self.clock.now())
            updated = state_machine.skip_open_work(order, staff_id, now)
            payment = updated.breakdown.payment
            refund = RefundStatus.NOT_APPLICABLE
            if payment is not None:
                if payment.payment_status is PaymentStatus.SUCCESSFUL and payment.amount_paid:
                    refund = RefundStatus.PENDING
                elif payment.payment_status is PaymentStatus.PROCESSING:
                    payment = evolve(payment, payment_status=PaymentStatus.FAILED)
            updated = evolve(
                updated,
                status=OrderStatus.CANCELLED,
                cancelled_at=now,
                breakdown=evolve(updated.breakdown, payment=payment),
                cancellation=Cancellation(
                    reason=reason,
                    notes=notes,
                    requested_at=now,
                    requested_by=staff_id,
                    refund_status=refund,
                ),
            )
            updated = audit_log.record(
                updated,
                AuditAction.CANCELLED,
                now,
                staff_id,
                from_status=order.status.value,
                to_status=OrderStatus.CANCELLED.value,
                reason=reason.value,
                details={"notes": notes, "refund_status": refund.value},
            )
            saved = await self._commit(order, updated)

        if inventory_deducted(order) and order.breakdown.items:
            restored = await self.inventory_service.restore(order.id, inventory_lines(order.breakdown.items))
            if not restored.success:
                logger.error("Order %s cancelled but %d product(s) were not restocked", order.id, len(restored.failed_products))

        logger.info("Order %s cancelled by %s (%s)", order.id, staff_id, reason.value)
        self._notify(saved, NotificationEvent.ORDER_CANCELLED, f"Order {saved.id} was cancelled.")
        return saved


# Global singleton instance
_order_lifecycle_service: OrderLifecycleService | None = None


def get_order_lifecycle_service() -> OrderLifecycleService:
    """Get or create the global order lifecycle service."""
    global _order_lifecycle_service
    if _order_lifecycle_service is None:
        _order_lifecycle_service = OrderLifecycleService()
    return _order_lifecycle_service
