"""Unit tests for OrderLifecycleService."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from order_fixtures import (
    CASHIER_ID,
    CUSTOMER_ID,
    DETERGENT_ID,
    OTHER_CASHIER_ID,
    SOFTENER_ID,
    UNKNOWN_STAFF_ID,
    FakeInventory,
    FrozenClock,
    InMemoryOrderRepository,
    app_request,
    basket,
    modify_request,
    product,
    store_request,
)
from src.api.middleware.error_handler import (
    ConflictError,
    DependentFailureError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from src.models.order import (
    ApprovalStatus,
    AuditAction,
    CancellationReason,
    HandlingStageName,
    LoyaltyTier,
    OrderStatus,
    PaymentStatus,
    RefundStatus,
    SelectionTier,
    ServiceType,
    StageStatus,
    TransitionAction,
)
from src.schemas.orders import PaymentInput
from src.services.notification_service import NotificationEvent
from src.services.order_lifecycle_service import OrderLifecycleService, product_deltas


def _actions(order) -> list[AuditAction]:
    return [entry.action for entry in order.audit_log]


class TestCreateOrder:
    """Tests for create_order."""

    @pytest.mark.asyncio
    async def test_store_order_starts_processing(
        self, lifecycle: OrderLifecycleService, repository: InMemoryOrderRepository
    ) -> None:
        order = await lifecycle.create_order(store_request(), staff_id=CASHIER_ID)

        assert order.status is OrderStatus.PROCESSING
        assert order.cashier_id == CASHIER_ID
        assert order.total_amount == Decimal("130.00")
        assert order.breakdown.payment.payment_status is PaymentStatus.SUCCESSFUL
        assert order.breakdown.payment.change == Decimal("870.00")
        assert all(b.approval_status is ApprovalStatus.APPROVED for b in order.baskets)
        assert _actions(order) == [AuditAction.CREATED, AuditAction.PAYMENT_PROCESSED]
        assert repository.orders[order.id] == order

    @pytest.mark.asyncio
    async def test_store_order_deducts_products(
        self, lifecycle: OrderLifecycleService, inventory: FakeInventory
    ) -> None:
        await lifecycle.create_order(store_request(products=[product(DETERGENT_ID, 2)]), staff_id=CASHIER_ID)

        assert inventory.stock[DETERGENT_ID] == 8

    @pytest.mark.asyncio
    async def test_store_order_insufficient_stock_writes_nothing(
        self,
        lifecycle: OrderLifecycleService,
        repository: InMemoryOrderRepository,
        inventory: FakeInventory,
    ) -> None:
        with pytest.raises(DependentFailureError) as exc_info:
            await lifecycle.create_order(store_request(products=[product(SOFTENER_ID, 6)]), staff_id=CASHIER_ID)

        assert exc_info.value.status_code == 424
        assert exc_info.value.result.failed_products[0].product_id == SOFTENER_ID
        assert repository.orders == {}
        assert inventory.stock[SOFTENER_ID] == 5

    @pytest.mark.asyncio
    async def test_store_order_needs_known_cashier(self, lifecycle: OrderLifecycleService) -> None:
        with pytest.raises(NotFoundError):
            await lifecycle.create_order(store_request(), staff_id=UNKNOWN_STAFF_ID)
        with pytest.raises(ValidationError):
            await lifecycle.create_order(store_request(), staff_id=None)

    @pytest.mark.asyncio
    async def test_store_order_cash_must_cover_total(self, lifecycle: OrderLifecycleService) -> None:
        with pytest.raises(ValidationError):
            await lifecycle.create_order(store_request(amount_paid="100"), staff_id=CASHIER_ID)

    @pytest.mark.asyncio
    async def test_store_order_needs_payment(self, lifecycle: OrderLifecycleService) -> None:
        with pytest.raises(ValidationError):
            await lifecycle.create_order(store_request(payment=None), staff_id=CASHIER_ID)

    @pytest.mark.asyncio
    async def test_store_gcash_needs_reference(self, lifecycle: OrderLifecycleService) -> None:
        request = store_request(payment=PaymentInput(method="gcash"))

        with pytest.raises(ValidationError):
            await lifecycle.create_order(request, staff_id=CASHIER_ID)

    @pytest.mark.asyncio
    async def test_product_only_store_order_completes(self, lifecycle: OrderLifecycleService) -> None:
        order = await lifecycle.create_order(
            store_request(baskets=[], products=[product(DETERGENT_ID, 1)]),
            staff_id=CASHIER_ID,
        )

        assert order.status is OrderStatus.COMPLETED
        assert order.completed_at is not None
        assert _actions(order)[-1] is AuditAction.COMPLETED

    @pytest.mark.asyncio
    async def test_heavy_basket_split_on_create(self, lifecycle: OrderLifecycleService) -> None:
        order = await lifecycle.create_order(store_request(baskets=[basket(1, "10")]), staff_id=CASHIER_ID)

        assert [(b.basket_number, b.weight_kg) for b in order.baskets] == [(1, Decimal("8")), (2, Decimal("2"))]
        assert order.total_amount == Decimal("260.00")

    @pytest.mark.asyncio
    async def test_app_order_waits_for_approval(
        self, lifecycle: OrderLifecycleService, notifications: MagicMock, inventory: FakeInventory
    ) -> None:
        order = await lifecycle.create_order(app_request(products=[product(DETERGENT_ID, 1)]))

        assert order.status is OrderStatus.PENDING
        assert order.cashier_id is None
        assert order.breakdown.payment.payment_status is PaymentStatus.PROCESSING
        assert order.breakdown.summary.delivery_fee == Decimal("50.00")
        assert order.handling.pickup.status is StageStatus.PENDING
        assert all(b.approval_status is ApprovalStatus.PENDING for b in order.baskets)
        assert inventory.deduct_calls == []
        sent = notifications.enqueue.call_args.args[0]
        assert sent.event is NotificationEvent.ORDER_CREATED

    @pytest.mark.asyncio
    async def test_empty_order_rejected(self, lifecycle: OrderLifecycleService) -> None:
        with pytest.raises(ValidationError):
            await lifecycle.create_order(app_request(baskets=[]))

    @pytest.mark.asyncio
    async def test_duplicate_basket_numbers_rejected(
        self, lifecycle: OrderLifecycleService, repository: InMemoryOrderRepository
    ) -> None:
        request = store_request(baskets=[basket(1, "10"), basket(1, "10")])

        with pytest.raises(ValidationError, match="Basket number 1"):
            await lifecycle.create_order(request, staff_id=CASHIER_ID)
        assert repository.orders == {}

    @pytest.mark.asyncio
    async def test_loyalty_points_redeemed_on_create(
        self, lifecycle: OrderLifecycleService, customer_service: MagicMock
    ) -> None:
        order = await lifecycle.create_order(store_request(loyalty_tier=LoyaltyTier.TIER1), staff_id=CASHIER_ID)

        assert order.breakdown.summary.loyalty_discount == Decimal("6.50")
        customer_service.get_loyalty_points.assert_awaited_once_with(CUSTOMER_ID)
        customer_service.adjust_loyalty_points.assert_awaited_once_with(CUSTOMER_ID, -10)

    @pytest.mark.asyncio
    async def test_loyalty_tier_needs_enough_points(
        self,
        lifecycle: OrderLifecycleService,
        customer_service: MagicMock,
        repository: InMemoryOrderRepository,
    ) -> None:
        customer_service.get_loyalty_points.return_value = 15

        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.create_order(store_request(loyalty_tier=LoyaltyTier.TIER2), staff_id=CASHIER_ID)

        assert exc_info.value.details[0]["type"] == "loyalty_points"
        assert repository.orders == {}
        customer_service.adjust_loyalty_points.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_loyalty_tier_for_unknown_customer(
        self, lifecycle: OrderLifecycleService, customer_service: MagicMock
    ) -> None:
        customer_service.get_loyalty_points.return_value = None

        with pytest.raises(NotFoundError):
            await lifecycle.create_order(app_request(loyalty_tier=LoyaltyTier.TIER1))

    @pytest.mark.asyncio
    async def test_no_loyalty_tier_leaves_points_alone(
        self, lifecycle: OrderLifecycleService, customer_service: MagicMock
    ) -> None:
        await lifecycle.create_order(store_request(), staff_id=CASHIER_ID)

        customer_service.get_loyalty_points.assert_not_awaited()
        customer_service.adjust_loyalty_points.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_redemption_keeps_order(
        self,
        lifecycle: OrderLifecycleService,
        customer_service: MagicMock,
        repository: InMemoryOrderRepository,
    ) -> None:
        customer_service.adjust_loyalty_points.side_effect = Exception("database unavailable")

        order = await lifecycle.create_order(store_request(loyalty_tier=LoyaltyTier.TIER1), staff_id=CASHIER_ID)

        assert repository.orders[order.id] == order


class TestApprove:
    """Tests for approve."""

    @pytest.mark.asyncio
    async def test_approve_moves_to_processing(
        self,
        lifecycle: OrderLifecycleService,
        inventory: FakeInventory,
        notifications: MagicMock,
        clock: FrozenClock,
    ) -> None:
        created = await lifecycle.create_order(app_request(products=[product(DETERGENT_ID, 2)]))
        approved_at = clock.advance(10)

        result = await lifecycle.approve(created.id, CASHIER_ID, payment_verified=True, notes="paid")

        order = result.order
        assert order.status is OrderStatus.PROCESSING
        assert order.cashier_id == CASHIER_ID
        assert order.approved_at == approved_at
        assert order.revision == created.revision + 1
        assert order.breakdown.payment.payment_status is PaymentStatus.SUCCESSFUL
        assert order.breakdown.payment.gcash_verified is True
        assert all(b.approval_status is ApprovalStatus.APPROVED for b in order.baskets)
        assert _actions(order)[-1] is AuditAction.APPROVED
        assert result.stock_deducted.success is True
        assert inventory.stock[DETERGENT_ID] == 8
        assert notifications.enqueue.call_args.args[0].event is NotificationEvent.ORDER_APPROVED

    @pytest.mark.asyncio
    async def test_approve_store_order_rejected(
        self, lifecycle: OrderLifecycleService, repository: InMemoryOrderRepository
    ) -> None:
        created = await lifecycle.create_order(store_request(), staff_id=CASHIER_ID)

        with pytest.raises(ValidationError):
            await lifecycle.approve(created.id, CASHIER_ID, payment_verified=True)

        assert repository.orders[created.id] == created

    @pytest.mark.asyncio
    async def test_approve_twice_conflicts(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(app_request())
        await lifecycle.approve(created.id, CASHIER_ID, payment_verified=True)

        with pytest.raises(ConflictError):
            await lifecycle.approve(created.id, CASHIER_ID, payment_verified=True)

    @pytest.mark.asyncio
    async def test_payment_verified_must_be_bool(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(app_request())

        with pytest.raises(ValidationError):
            await lifecycle.approve(created.id, CASHIER_ID, payment_verified="true")  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_unknown_order(self, lifecycle: OrderLifecycleService) -> None:
        with pytest.raises(NotFoundError):
            await lifecycle.approve("missing", CASHIER_ID, payment_verified=True)

    @pytest.mark.asyncio
    async def test_unknown_staff(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(app_request())

        with pytest.raises(NotFoundError):
            await lifecycle.approve(created.id, UNKNOWN_STAFF_ID, payment_verified=True)

    @pytest.mark.asyncio
    async def test_stock_failure_leaves_order_pending(
        self,
        lifecycle: OrderLifecycleService,
        repository: InMemoryOrderRepository,
        inventory: FakeInventory,
    ) -> None:
        created = await lifecycle.create_order(
            app_request(products=[product(DETERGENT_ID, 2), product(SOFTENER_ID, 9)])
        )

        with pytest.raises(DependentFailureError) as exc_info:
            await lifecycle.approve(created.id, CASHIER_ID, payment_verified=True)

        assert [f.product_id for f in exc_info.value.result.failed_products] == [SOFTENER_ID]
        assert repository.orders[created.id] == created
        assert repository.saves == 0
        assert inventory.stock == {DETERGENT_ID: 10, SOFTENER_ID: 5, "prod-bag": 100}

    @pytest.mark.asyncio
    async def test_failed_save_restores_stock(
        self,
        lifecycle: OrderLifecycleService,
        repository: InMemoryOrderRepository,
        inventory: FakeInventory,
    ) -> None:
        created = await lifecycle.create_order(app_request(products=[product(DETERGENT_ID, 3)]))
        repository.save = AsyncMock(side_effect=ConflictError(message="changed"))

        with pytest.raises(ConflictError):
            await lifecycle.approve(created.id, CASHIER_ID, payment_verified=True)

        assert inventory.stock[DETERGENT_ID] == 10
        assert len(inventory.restore_calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_approvals_apply_once(
        self, lifecycle: OrderLifecycleService, inventory: FakeInventory
    ) -> None:
        created = await lifecycle.create_order(app_request(products=[product(DETERGENT_ID, 4)]))

        results = await asyncio.gather(
            lifecycle.approve(created.id, CASHIER_ID, payment_verified=True),
            lifecycle.approve(created.id, OTHER_CASHIER_ID, payment_verified=True),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], ConflictError)
        assert inventory.stock[DETERGENT_ID] == 6

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_approval(
        self, lifecycle: OrderLifecycleService, notifications: MagicMock
    ) -> None:
        created = await lifecycle.create_order(app_request())
        notifications.enqueue.side_effect = RuntimeError("queue closed")

        result = await lifecycle.approve(created.id, CASHIER_ID, payment_verified=False)

        assert result.order.status is OrderStatus.PROCESSING
        assert result.order.breakdown.payment.gcash_verified is False


class TestReject:
    """Tests for reject."""

    @pytest.mark.asyncio
    async def test_reject_cancels_order(
        self, lifecycle: OrderLifecycleService, inventory: FakeInventory, notifications: MagicMock
    ) -> None:
        created = await lifecycle.create_order(app_request(products=[product(DETERGENT_ID, 1)]))

        order = await lifecycle.reject(created.id, CASHIER_ID, reason="Blurry payment screenshot")

        assert order.status is OrderStatus.CANCELLED
        assert order.cancelled_at is not None
        assert order.cancellation.reason is CancellationReason.REJECTED
        assert order.cancellation.refund_status is RefundStatus.NOT_APPLICABLE
        assert order.breakdown.payment.payment_status is PaymentStatus.FAILED
        assert all(b.approval_status is ApprovalStatus.REJECTED for b in order.baskets)
        assert order.handling.pickup.status is StageStatus.SKIPPED
        assert _actions(order)[-1] is AuditAction.CANCELLED
        assert order.audit_log[-1].reason == "Blurry payment screenshot"
        assert inventory.deduct_calls == [] and inventory.restore_calls == []
        assert notifications.enqueue.call_args.args[0].event is NotificationEvent.ORDER_REJECTED

    @pytest.mark.asyncio
    async def test_reject_processing_order_conflicts(
        self, lifecycle: OrderLifecycleService, repository: InMemoryOrderRepository
    ) -> None:
        created = await lifecycle.create_order(app_request())
        approved = (await lifecycle.approve(created.id, CASHIER_ID, payment_verified=True)).order

        with pytest.raises(ConflictError):
            await lifecycle.reject(created.id, CASHIER_ID, reason="too late")

        stored = repository.orders[created.id]
        assert stored == approved
        assert stored.cancellation is None

    @pytest.mark.asyncio
    async def test_reject_needs_reason(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(app_request())

        with pytest.raises(ValidationError):
            await lifecycle.reject(created.id, CASHIER_ID, reason="  ")


class TestModify:
    """Tests for modify."""

    @pytest.mark.asyncio
    async def test_adding_products_deducts_difference(
        self, lifecycle: OrderLifecycleService, inventory: FakeInventory
    ) -> None:
        created = await lifecycle.create_order(store_request(products=[product(DETERGENT_ID, 1)]), staff_id=CASHIER_ID)

        order = await lifecycle.modify(created.id, modify_request(products=[product(DETERGENT_ID, 3)]), CASHIER_ID)

        assert inventory.stock[DETERGENT_ID] == 7
        assert order.total_amount == Decimal("175.00")
        assert _actions(order)[-1] is AuditAction.MODIFIED
        assert order.audit_log[-1].details["previous_total"] == "145.00"

    @pytest.mark.asyncio
    async def test_removing_products_restores_stock(
        self, lifecycle: OrderLifecycleService, inventory: FakeInventory
    ) -> None:
        created = await lifecycle.create_order(store_request(products=[product(DETERGENT_ID, 2)]), staff_id=CASHIER_ID)

        await lifecycle.modify(created.id, modify_request(products=[]), CASHIER_ID)

        assert inventory.stock[DETERGENT_ID] == 10

    @pytest.mark.asyncio
    async def test_pending_app_order_does_not_touch_stock(
        self, lifecycle: OrderLifecycleService, inventory: FakeInventory
    ) -> None:
        created = await lifecycle.create_order(app_request())

        order = await lifecycle.modify(
            created.id, modify_request(products=[product(DETERGENT_ID, 2)]), CASHIER_ID
        )

        assert order.status is OrderStatus.PENDING
        assert inventory.deduct_calls == []
        assert order.breakdown.summary.delivery_fee == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_progress_survives_modification(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(store_request(), staff_id=CASHIER_ID)
        await lifecycle.advance_service(created.id, 1, ServiceType.WASH, TransitionAction.START, CASHIER_ID)

        order = await lifecycle.modify(created.id, modify_request(baskets=[basket(fold=True)]), CASHIER_ID)

        wash = order.baskets[0].service(ServiceType.WASH)
        assert wash.status is StageStatus.IN_PROGRESS
        assert order.baskets[0].service(ServiceType.FOLD).status is StageStatus.PENDING
        assert order.total_amount == Decimal("155.00")

    @pytest.mark.asyncio
    async def test_started_service_cannot_be_removed(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(store_request(), staff_id=CASHIER_ID)
        await lifecycle.advance_service(created.id, 1, ServiceType.WASH, TransitionAction.START, CASHIER_ID)

        with pytest.raises(ConflictError):
            await lifecycle.modify(created.id, modify_request(baskets=[basket(wash=SelectionTier.OFF)]), CASHIER_ID)
        with pytest.raises(ConflictError):
            await lifecycle.modify(
                created.id, modify_request(baskets=[basket(wash=SelectionTier.PREMIUM)]), CASHIER_ID
            )

    @pytest.mark.asyncio
    async def test_overflow_basket_takes_fresh_number(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(
            store_request(baskets=[basket(1, "3"), basket(2, "3")]), staff_id=CASHIER_ID
        )

        order = await lifecycle.modify(created.id, modify_request(baskets=[basket(1, "10")]), CASHIER_ID)

        assert [(b.basket_number, b.weight_kg) for b in order.baskets] == [(1, Decimal("8")), (3, Decimal("2"))]
        assert all(s.status is StageStatus.PENDING for s in order.baskets[1].services)

    @pytest.mark.asyncio
    async def test_overflow_cannot_take_over_started_basket(
        self, lifecycle: OrderLifecycleService, repository: InMemoryOrderRepository
    ) -> None:
        created = await lifecycle.create_order(
            store_request(baskets=[basket(1, "3"), basket(2, "3")]), staff_id=CASHIER_ID
        )
        washed = await lifecycle.advance_service(
            created.id, 2, ServiceType.WASH, TransitionAction.COMPLETE, CASHIER_ID
        )

        with pytest.raises(ConflictError):
            await lifecycle.modify(created.id, modify_request(baskets=[basket(1, "10")]), CASHIER_ID)
        assert repository.orders[created.id].revision == washed.revision

    @pytest.mark.asyncio
    async def test_no_new_work_once_delivery_started(
        self, lifecycle: OrderLifecycleService, repository: InMemoryOrderRepository
    ) -> None:
        created = await lifecycle.create_order(app_request())
        await lifecycle.approve(created.id, CASHIER_ID, payment_verified=True)
        await lifecycle.advance_handling(created.id, HandlingStageName.PICKUP, TransitionAction.COMPLETE, CASHIER_ID)
        await lifecycle.advance_service(created.id, 1, ServiceType.WASH, TransitionAction.COMPLETE, CASHIER_ID)
        await lifecycle.advance_service(created.id, 1, ServiceType.DRY, TransitionAction.COMPLETE, CASHIER_ID)
        delivering = await lifecycle.advance_handling(
            created.id, HandlingStageName.DELIVERY, TransitionAction.START, CASHIER_ID
        )

        with pytest.raises(ConflictError, match="Delivery"):
            await lifecycle.modify(created.id, modify_request(baskets=[basket(1), basket(2)]), CASHIER_ID)
        assert repository.orders[created.id].revision == delivering.revision

    @pytest.mark.asyncio
    async def test_products_can_change_during_delivery(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(app_request())
        await lifecycle.approve(created.id, CASHIER_ID, payment_verified=True)
        await lifecycle.advance_handling(created.id, HandlingStageName.PICKUP, TransitionAction.COMPLETE, CASHIER_ID)
        await lifecycle.advance_service(created.id, 1, ServiceType.WASH, TransitionAction.COMPLETE, CASHIER_ID)
        await lifecycle.advance_service(created.id, 1, ServiceType.DRY, TransitionAction.COMPLETE, CASHIER_ID)
        await lifecycle.advance_handling(created.id, HandlingStageName.DELIVERY, TransitionAction.START, CASHIER_ID)

        order = await lifecycle.modify(
            created.id, modify_request(products=[product(DETERGENT_ID, 1)]), CASHIER_ID
        )

        assert order.status is OrderStatus.PROCESSING
        assert order.handling.delivery.status is StageStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_upgrading_loyalty_tier_redeems_difference(
        self, lifecycle: OrderLifecycleService, customer_service: MagicMock
    ) -> None:
        created = await lifecycle.create_order(store_request(loyalty_tier=LoyaltyTier.TIER1), staff_id=CASHIER_ID)

        await lifecycle.modify(created.id, modify_request(loyalty_tier=LoyaltyTier.TIER2), CASHIER_ID)

        assert customer_service.adjust_loyalty_points.await_args_list == [
            call(CUSTOMER_ID, -10),
            call(CUSTOMER_ID, -10),
        ]

    @pytest.mark.asyncio
    async def test_upgrade_beyond_balance_rejected(
        self, lifecycle: OrderLifecycleService, customer_service: MagicMock
    ) -> None:
        created = await lifecycle.create_order(store_request(loyalty_tier=LoyaltyTier.TIER1), staff_id=CASHIER_ID)
        customer_service.get_loyalty_points.return_value = 5

        with pytest.raises(ValidationError):
            await lifecycle.modify(created.id, modify_request(loyalty_tier=LoyaltyTier.TIER2), CASHIER_ID)
        customer_service.adjust_loyalty_points.assert_awaited_once_with(CUSTOMER_ID, -10)

    @pytest.mark.asyncio
    async def test_dropping_loyalty_tier_refunds_points(
        self, lifecycle: OrderLifecycleService, customer_service: MagicMock
    ) -> None:
        created = await lifecycle.create_order(store_request(loyalty_tier=LoyaltyTier.TIER2), staff_id=CASHIER_ID)

        order = await lifecycle.modify(created.id, modify_request(), CASHIER_ID)

        assert order.breakdown.summary.loyalty_discount == Decimal("0")
        customer_service.adjust_loyalty_points.assert_awaited_with(CUSTOMER_ID, 20)

    @pytest.mark.asyncio
    async def test_terminal_order_cannot_be_modified(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(app_request())
        await lifecycle.cancel(created.id, CASHIER_ID)

        with pytest.raises(ConflictError):
            await lifecycle.modify(created.id, modify_request(), CASHIER_ID)

    def test_product_deltas(self) -> None:
        from src.models.order import OrderItem

        before = [OrderItem(product_id="a", product_name="A", quantity=2, unit_price=1, subtotal=2)]
        after = [
            OrderItem(product_id="a", product_name="A", quantity=1, unit_price=1, subtotal=1),
            OrderItem(product_id="b", product_name="B", quantity=4, unit_price=1, subtotal=4),
        ]

        to_deduct, to_restore = product_deltas(before, after)

        assert [(line.product_id, line.quantity) for line in to_deduct] == [("b", 4)]
        assert [(line.product_id, line.quantity) for line in to_restore] == [("a", 1)]


class TestAdvance:
    """Tests for advance_service and advance_handling."""

    @pytest.mark.asyncio
    async def test_full_in_store_flow_completes(
        self, lifecycle: OrderLifecycleService, notifications: MagicMock, clock: FrozenClock
    ) -> None:
        created = await lifecycle.create_order(store_request(), staff_id=CASHIER_ID)

        clock.advance(5)
        await lifecycle.advance_service(created.id, 1, ServiceType.WASH, TransitionAction.START, CASHIER_ID)
        clock.advance(40)
        await lifecycle.advance_service(created.id, 1, ServiceType.WASH, TransitionAction.COMPLETE, CASHIER_ID)
        clock.advance(1)
        order = await lifecycle.advance_service(
            created.id, 1, ServiceType.DRY, TransitionAction.SKIP, OTHER_CASHIER_ID
        )

        assert order.status is OrderStatus.COMPLETED
        assert order.baskets[0].service(ServiceType.WASH).duration_minutes == 40
        assert order.revision == 3
        assert notifications.enqueue.call_args.args[0].event is NotificationEvent.ORDER_COMPLETED

    @pytest.mark.asyncio
    async def test_pickup_then_services(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(app_request())
        await lifecycle.approve(created.id, CASHIER_ID, payment_verified=True)

        with pytest.raises(ConflictError):
            await lifecycle.advance_service(created.id, 1, ServiceType.WASH, TransitionAction.START, CASHIER_ID)

        await lifecycle.advance_handling(created.id, HandlingStageName.PICKUP, TransitionAction.COMPLETE, CASHIER_ID)
        order = await lifecycle.advance_service(
            created.id, 1, ServiceType.WASH, TransitionAction.START, CASHIER_ID
        )

        assert order.handling.pickup.status is StageStatus.COMPLETED
        assert order.baskets[0].service(ServiceType.WASH).status is StageStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_unknown_staff(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(store_request(), staff_id=CASHIER_ID)

        with pytest.raises(NotFoundError):
            await lifecycle.advance_service(
                created.id, 1, ServiceType.WASH, TransitionAction.START, UNKNOWN_STAFF_ID
            )

    @pytest.mark.asyncio
    async def test_audit_log_only_grows(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(store_request(), staff_id=CASHIER_ID)

        order = await lifecycle.advance_service(
            created.id, 1, ServiceType.WASH, TransitionAction.START, CASHIER_ID
        )

        assert order.audit_log[: len(created.audit_log)] == created.audit_log
        assert len(order.audit_log) == len(created.audit_log) + 1


class TestCancel:
    """Tests for cancel."""

    @pytest.mark.asyncio
    async def test_cancel_store_order_restores_stock(
        self, lifecycle: OrderLifecycleService, inventory: FakeInventory
    ) -> None:
        created = await lifecycle.create_order(store_request(products=[product(DETERGENT_ID, 2)]), staff_id=CASHIER_ID)

        order = await lifecycle.cancel(created.id, CASHIER_ID, notes="changed mind")

        assert order.status is OrderStatus.CANCELLED
        assert order.cancellation.reason is CancellationReason.CUSTOMER_REQUEST
        assert order.cancellation.refund_status is RefundStatus.PENDING
        assert all(entry.status.is_terminal for entry in order.baskets[0].services)
        assert inventory.stock[DETERGENT_ID] == 10

    @pytest.mark.asyncio
    async def test_cancel_pending_app_order(
        self, lifecycle: OrderLifecycleService, inventory: FakeInventory
    ) -> None:
        created = await lifecycle.create_order(app_request(products=[product(DETERGENT_ID, 1)]))

        order = await lifecycle.cancel(created.id, CASHIER_ID, reason=CancellationReason.OTHER)

        assert order.breakdown.payment.payment_status is PaymentStatus.FAILED
        assert order.cancellation.refund_status is RefundStatus.NOT_APPLICABLE
        assert inventory.restore_calls == []

    @pytest.mark.asyncio
    async def test_cancel_completed_order_rejected(self, lifecycle: OrderLifecycleService) -> None:
        created = await lifecycle.create_order(
            store_request(baskets=[], products=[product(DETERGENT_ID, 1)]), staff_id=CASHIER_ID
        )

        with pytest.raises(InvalidTransitionError):
            await lifecycle.cancel(created.id, CASHIER_ID)
