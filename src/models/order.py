"""Order aggregate type definitions.

Domain values are immutable pydantic models. A transition never edits an
order in place; it builds a new value through ``evolve`` so a half-applied
change can never leak into a shared reference. Validators make
the illegal combinations (a completed service with no actor, a finished
stage that never started, a total that disagrees with its breakdown)
unrepresentable.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TypedDict, TypeVar

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

ModelT = TypeVar("ModelT", bound=BaseModel)


def evolve(model: ModelT, **changes: Any) -> ModelT:
    """Return a copy of ``model`` with ``changes`` applied, validators re-run.

    ``model_copy(update=...)`` skips validation, which would let a transition
    build a value the model forbids.
    """
    values = {name: getattr(model, name) for name in type(model).model_fields}
    values.update(changes)
    return type(model).model_validate(values)


class OrderSource(str, Enum):
    """Channel the order was placed through."""

    STORE = "store"
    APP = "app"


class OrderStatus(str, Enum):
    """Stored, authoritative order status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class DisplayStatus(str, Enum):
    """Read-side grouping label derived from stage and service progress."""

    PENDING = "pending"
    FOR_PICKUP = "for_pick-up"
    PROCESSING = "processing"
    FOR_DELIVERY = "for_delivery"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    """Progress of a single service or handling stage."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.COMPLETED, StageStatus.SKIPPED)


class TransitionAction(str, Enum):
    """Staff action applied to a service or handling stage."""

    START = "start"
    COMPLETE = "complete"
    SKIP = "skip"


class HandlingStageName(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class ServiceType(str, Enum):
    WASH = "wash"
    SPIN = "spin"
    DRY = "dry"
    IRON = "iron"
    FOLD = "fold"

    @property
    def is_tiered(self) -> bool:
        return self in (ServiceType.WASH, ServiceType.DRY)


# Fixed order in which a basket's services are offered to staff
SERVICE_SEQUENCE: tuple[ServiceType, ...] = (
    ServiceType.WASH,
    ServiceType.SPIN,
    ServiceType.DRY,
    ServiceType.IRON,
    ServiceType.FOLD,
)


class ServiceTier(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"


class SelectionTier(str, Enum):
    """Tier picked at the counter; ``off`` means the service is not wanted."""

    OFF = "off"
    BASIC = "basic"
    PREMIUM = "premium"

    def as_service_tier(self) -> ServiceTier | None:
        if self is SelectionTier.OFF:
            return None
        return ServiceTier(self.value)


class PaymentMethod(str, Enum):
    CASH = "cash"
    GCASH = "gcash"


class PaymentStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESSFUL = "successful"
    FAILED = "failed"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LoyaltyTier(str, Enum):
    TIER1 = "tier1"
    TIER2 = "tier2"


class FeeType(str, Enum):
    STAFF_SERVICE_FEE = "staff_service_fee"
    DELIVERY_FEE = "delivery_fee"
    VAT = "vat"


class AuditAction(str, Enum):
    """Kinds of audit log entries."""

    CREATED = "created"
    SERVICE_STATUS_CHANGED = "service_status_changed"
    HANDLING_STARTED = "handling_started"
    HANDLING_COMPLETED = "handling_completed"
    HANDLING_SKIPPED = "handling_skipped"
    PAYMENT_PROCESSED = "payment_processed"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    MODIFIED = "modified"
    COMPLETED = "completed"


class CancellationReason(str, Enum):
    CUSTOMER_REQUEST = "customer_request"
    PAYMENT_FAILED = "payment_failed"
    DAMAGED = "damaged"
    REJECTED = "rejected"
    OTHER = "other"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"


class TrackedProgress(BaseModel):
    """Status and timestamps shared by services and handling stages.

    Allowed shapes:
        pending: no timestamps, no actor.
        in_progress: started_at only.
        completed: started_at, completed_at and completed_by.
        skipped: either nothing (skipped by the system at creation) or the
            same three fields as completed (skipped by a staff member).
    """

    model_config = ConfigDict(frozen=True)

    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    completed_by: str | None = None

    @model_validator(mode="after")
    def check_progress_shape(self) -> "TrackedProgress":
        if self.completed_at is not None and self.started_at is None:
            raise ValueError("completed_at requires started_at")
        if self.completed_at is not None and self.completed_at < self.started_at:
            raise ValueError("completed_at is earlier than started_at")

        if self.status is StageStatus.PENDING:
            if self.started_at or self.completed_at or self.completed_by:
                raise ValueError("pending progress carries no timestamps or actor")
        elif self.status is StageStatus.IN_PROGRESS:
            if self.started_at is None:
                raise ValueError("in_progress requires started_at")
            if self.completed_at or self.completed_by:
                raise ValueError("in_progress cannot be completed")
        elif self.status is StageStatus.COMPLETED:
            if self.completed_at is None or not self.completed_by:
                raise ValueError("completed requires completed_at and completed_by")
        elif self.started_at is not None or self.completed_by is not None:
            if self.completed_at is None or not self.completed_by:
                raise ValueError("a staff skip requires completed_at and completed_by")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration_minutes(self) -> int | None:
        """Minutes between start and completion, derived on read."""
        if self.started_at is None or self.completed_at is None:
            return None
        return round((self.completed_at - self.started_at).total_seconds() / 60)


class HandlingStage(TrackedProgress):
    """Pickup or delivery leg of an order.

    A stage without an address happens at the counter. Such stages are
    skipped from the start and never shown on the timeline.
    """

    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    notes: str | None = None

    @property
    def is_in_store(self) -> bool:
        return self.address is None or not self.address.strip()

    @model_validator(mode="after")
    def check_in_store_skipped(self) -> "HandlingStage":
        if self.is_in_store and self.status is not StageStatus.SKIPPED:
            raise ValueError("an in-store stage is always skipped")
        return self

    @classmethod
    def initial(
        cls,
        address: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        notes: str | None = None,
    ) -> "HandlingStage":
        """Build a fresh stage, skipped when it happens in store."""
        in_store = address is None or not address.strip()
        return cls(
            address=None if in_store else address.strip(),
            latitude=latitude,
            longitude=longitude,
            notes=notes,
            status=StageStatus.SKIPPED if in_store else StageStatus.PENDING,
        )


class Handling(BaseModel):
    model_config = ConfigDict(frozen=True)

    pickup: HandlingStage = Field(default_factory=HandlingStage.initial)
    delivery: HandlingStage = Field(default_factory=HandlingStage.initial)

    def stage(self, name: HandlingStageName) -> HandlingStage:
        return self.pickup if name is HandlingStageName.PICKUP else self.delivery

    def with_stage(self, name: HandlingStageName, stage: HandlingStage) -> "Handling":
        return evolve(self, **{name.value: stage})


class BasketSelection(BaseModel):
    """Services a customer picked for one basket."""

    model_config = ConfigDict(frozen=True)

    wash: SelectionTier = SelectionTier.OFF
    wash_cycles: int = Field(default=1, ge=1, le=3)
    dry: SelectionTier = SelectionTier.OFF
    spin: bool = False
    iron_weight_kg: Decimal = Field(default=Decimal("0"), ge=0)
    fold: bool = False
    additional_dry_time_minutes: int = Field(default=0, ge=0, le=24)
    plastic_bags: int = Field(default=0, ge=0)
    heavy_fabrics: bool = False


class ProductSelection(BaseModel):
    """Retail product requested for an order, before pricing."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int = Field(gt=0)


class BasketDraft(BaseModel):
    """Basket as entered at the counter, before pricing."""

    model_config = ConfigDict(frozen=True)

    basket_number: int = Field(ge=1)
    weight_kg: Decimal = Field(default=Decimal("0"), ge=0)
    notes: str | None = None
    selection: BasketSelection = Field(default_factory=BasketSelection)


class ServiceEntry(TrackedProgress):
    """One priced treatment applied to a basket.

    ``unit_price`` is the rate captured when the entry was first priced and is
    kept as is for the life of the order.
    """

    service_type: ServiceType
    tier: ServiceTier | None = None
    service_name: str
    multiplier: Decimal = Decimal("1")
    unit_price: Decimal
    subtotal: Decimal
    estimated_minutes: int = 0

    @model_validator(mode="after")
    def check_tier_applies(self) -> "ServiceEntry":
        if self.tier is not None and not self.service_type.is_tiered:
            raise ValueError(f"{self.service_type.value} has no tiers")
        return self


class Basket(BaseModel):
    """Priced basket with its per-service progress."""

    model_config = ConfigDict(frozen=True)

    basket_number: int = Field(ge=1)
    weight_kg: Decimal = Field(ge=0)
    notes: str | None = None
    selection: BasketSelection = Field(default_factory=BasketSelection)
    services: tuple[ServiceEntry, ...] = ()
    additional_dry_time_charge: Decimal = Decimal("0")
    plastic_bag_charge: Decimal = Decimal("0")
    subtotal: Decimal = Decimal("0")
    estimated_duration_minutes: int = 0
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    approved_at: datetime | None = None
    approved_by: str | None = None
    rejection_reason: str | None = None

    @model_validator(mode="after")
    def check_services_unique(self) -> "Basket":
        types = [entry.service_type for entry in self.services]
        if len(types) != len(set(types)):
            raise ValueError(f"basket {self.basket_number} lists a service twice")
        return self

    def service(self, service_type: ServiceType) -> ServiceEntry | None:
        for entry in self.services:
            if entry.service_type is service_type:
                return entry
        return None

    def with_service(self, entry: ServiceEntry) -> "Basket":
        services = tuple(
            entry if existing.service_type is entry.service_type else existing
            for existing in self.services
        )
        return evolve(self, services=services)

    @property
    def all_services_terminal(self) -> bool:
        return all(entry.status.is_terminal for entry in self.services)


class OrderItem(BaseModel):
    """Retail product line with its price snapshot."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    product_name: str
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    subtotal: Decimal = Field(ge=0)


class Fee(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: FeeType
    description: str
    amount: Decimal


class Discount(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "loyalty"
    description: str
    rate: Decimal
    amount: Decimal


class BreakdownSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal_products: Decimal = Decimal("0")
    subtotal_services: Decimal = Decimal("0")
    staff_service_fee: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    subtotal_before_vat: Decimal = Decimal("0")
    vat_rate: Decimal = Decimal("0")
    vat_amount: Decimal = Decimal("0")
    loyalty_discount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


class Payment(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: PaymentMethod = PaymentMethod.CASH
    amount_paid: Decimal | None = None
    change: Decimal | None = None
    reference_number: str | None = None
    payment_status: PaymentStatus = PaymentStatus.PROCESSING
    gcash_verified: bool | None = None
    completed_at: datetime | None = None


class Breakdown(BaseModel):
    """Complete financial picture of an order."""

    model_config = ConfigDict(frozen=True)

    items: tuple[OrderItem, ...] = ()
    baskets: tuple[Basket, ...] = ()
    fees: tuple[Fee, ...] = ()
    discounts: tuple[Discount, ...] = ()
    summary: BreakdownSummary = Field(default_factory=BreakdownSummary)
    payment: Payment | None = None
    staff_service: bool = False
    is_delivery: bool = False
    delivery_fee_override: Decimal | None = None
    loyalty_tier: LoyaltyTier | None = None

    def basket(self, basket_number: int) -> Basket | None:
        for basket in self.baskets:
            if basket.basket_number == basket_number:
                return basket
        return None

    def with_basket(self, basket: Basket) -> "Breakdown":
        baskets = tuple(
            basket if existing.basket_number == basket.basket_number else existing
            for existing in self.baskets
        )
        return evolve(self, baskets=baskets)

    @property
    def all_services_terminal(self) -> bool:
        return all(basket.all_services_terminal for basket in self.baskets)


class AuditLogEntry(BaseModel):
    """One immutable record of who changed what, and when."""

    model_config = ConfigDict(frozen=True)

    action: AuditAction
    timestamp: datetime
    changed_by: str | None = None
    basket_number: int | None = None
    service_type: ServiceType | None = None
    service_path: str | None = None
    handling_stage: HandlingStageName | None = None
    from_status: str | None = None
    to_status: str | None = None
    duration_minutes: int | None = None
    reason: str | None = None
    details: dict[str, Any] | None = None


class Cancellation(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: CancellationReason
    notes: str | None = None
    requested_at: datetime
    requested_by: str
    refund_status: RefundStatus = RefundStatus.NOT_APPLICABLE


class Order(BaseModel):
    """Root aggregate. ``breakdown`` is the only source of financial truth."""

    model_config = ConfigDict(frozen=True)

    id: str
    source: OrderSource
    customer_id: str | None = None
    cashier_id: str | None = None
    status: OrderStatus = OrderStatus.PENDING
    total_amount: Decimal
    created_at: datetime
    approved_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    order_note: str | None = None
    handling: Handling = Field(default_factory=Handling)
    breakdown: Breakdown
    cancellation: Cancellation | None = None
    audit_log: tuple[AuditLogEntry, ...] = ()
    revision: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_order_consistency(self) -> "Order":
        if self.total_amount != self.breakdown.summary.total:
            raise ValueError("total_amount must equal breakdown.summary.total")
        if self.status is OrderStatus.CANCELLED:
            if self.cancellation is None or self.cancelled_at is None:
                raise ValueError("a cancelled order carries a cancellation record")
        elif self.cancellation is not None:
            raise ValueError("only cancelled orders carry a cancellation record")
        if self.status is OrderStatus.COMPLETED and self.completed_at is None:
            raise ValueError("a completed order carries completed_at")
        if self.status in (OrderStatus.PROCESSING, OrderStatus.COMPLETED) and not self.cashier_id:
            raise ValueError("an order in processing has an assigned cashier")
        return self

    @property
    def baskets(self) -> tuple[Basket, ...]:
        return self.breakdown.baskets


class OrderRow(TypedDict):
    """Orders table row representation.

    ``handling`` and ``breakdown`` are JSONB columns; the audit log is kept
    inside the breakdown document under ``audit_log``.
    """

    id: str
    source: str
    customer_id: str | None
    cashier_id: str | None
    status: str
    total_amount: str | float
    created_at: str
    approved_at: str | None
    completed_at: str | None
    cancelled_at: str | None
    order_note: str | None
    handling: dict[str, Any]
    breakdown: dict[str, Any]
    cancellation: dict[str, Any] | None
    revision: int
