"""Breakdown builder: prices products, baskets, fees, VAT and discounts.

Everything here is pure. Given the same inputs and catalog snapshot the
builder returns an identical breakdown, which is what lets an unchanged order
be re-priced without drifting.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from src.api.middleware.error_handler import ValidationError
from src.models.catalog import Catalog
from src.models.order import (
    SERVICE_SEQUENCE,
    Basket,
    BasketDraft,
    Breakdown,
    BreakdownSummary,
    Discount,
    Fee,
    FeeType,
    LoyaltyTier,
    OrderItem,
    Payment,
    ProductSelection,
    SelectionTier,
    ServiceEntry,
    ServiceTier,
    ServiceType,
)
from src.services.basket_partitioner import ensure_unique_numbers
from src.services.catalog_service import resolve

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_money(value: Decimal) -> Decimal:
    """Round an amount to centavos."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingPolicy:
    """Pricing constants applied by the builder."""

    vat_rate: Decimal = Decimal("0.12")
    staff_service_fee: Decimal = Decimal("40")
    delivery_fee_default: Decimal = Decimal("50")
    delivery_fee_min: Decimal = Decimal("50")
    basket_weight_max: Decimal = Decimal("8")
    iron_weight_min: Decimal = Decimal("2")
    iron_weight_max: Decimal = Decimal("8")
    additional_dry_time_increment_minutes: int = 8
    additional_dry_time_price: Decimal = Decimal("15")
    plastic_bag_price: Decimal = Decimal("0.50")
    loyalty_rates: dict[LoyaltyTier, Decimal] = field(
        default_factory=lambda: {
            LoyaltyTier.TIER1: Decimal("0.05"),
            LoyaltyTier.TIER2: Decimal("0.15"),
        }
    )
    loyalty_points: dict[LoyaltyTier, int] = field(
        default_factory=lambda: {
            LoyaltyTier.TIER1: 10,
            LoyaltyTier.TIER2: 20,
        }
    )

    @classmethod
    def from_settings(cls) -> "PricingPolicy":
        """Create policy from application settings."""
        from src.core.config import get_settings
        settings = get_settings()
        return cls(
            vat_rate=settings.vat_rate,
            staff_service_fee=settings.staff_service_fee,
            delivery_fee_default=settings.delivery_fee_default,
            delivery_fee_min=settings.delivery_fee_min,
            basket_weight_max=settings.basket_weight_max,
            iron_weight_min=settings.iron_weight_min,
            iron_weight_max=settings.iron_weight_max,
            additional_dry_time_increment_minutes=settings.additional_dry_time_increment_minutes,
            additional_dry_time_price=settings.additional_dry_time_price,
            plastic_bag_price=settings.plastic_bag_price,
            loyalty_rates={
                LoyaltyTier.TIER1: settings.loyalty_tier1_rate,
                LoyaltyTier.TIER2: settings.loyalty_tier2_rate,
            },
            loyalty_points={
                LoyaltyTier.TIER1: settings.loyalty_tier1_points,
                LoyaltyTier.TIER2: settings.loyalty_tier2_points,
            },
        )


def delivery_fee(policy: PricingPolicy, is_delivery: bool, override: Decimal | None = None) -> Decimal:
    """Delivery fee actually charged.

    A cashier override may raise the fee but never take it below the
    configured minimum.
    """
    if not is_delivery:
        return ZERO
    requested = policy.delivery_fee_default if override is None else override
    return max(policy.delivery_fee_min, requested)


def extract_vat(amount: Decimal, rate: Decimal) -> Decimal:
    """VAT already contained in a VAT-inclusive amount."""
    return to_money(amount * rate / (1 + rate))


def normalize_iron_weight(weight_kg: Decimal, policy: PricingPolicy) -> Decimal:
    """Chargeable iron weight: zero below the minimum, capped at the maximum."""
    if weight_kg < policy.iron_weight_min:
        return ZERO
    return min(weight_kg, policy.iron_weight_max)


def _snapshot_key(entry: ServiceEntry) -> tuple[ServiceType, ServiceTier | None]:
    return entry.service_type, entry.tier


def _price_service(
    service_type: ServiceType,
    tier: ServiceTier | None,
    multiplier: Decimal,
    duration_factor: int,
    catalog: Catalog,
    previous: ServiceEntry | None,
) -> ServiceEntry:
    """Price one service, keeping an earlier snapshot when one exists.

    The previous entry's price and progress are reused when it priced the
    same service at the same tier.
    """
    if previous is not None and _snapshot_key(previous) == (service_type, tier):
        return ServiceEntry(
            service_type=service_type,
            tier=tier,
            service_name=previous.service_name,
            multiplier=multiplier,
            unit_price=previous.unit_price,
            subtotal=to_money(previous.unit_price * multiplier),
            estimated_minutes=previous.estimated_minutes,
            status=previous.status,
            started_at=previous.started_at,
            completed_at=previous.completed_at,
            completed_by=previous.completed_by,
        )

    quote = resolve(catalog, service_type, tier)
    if not quote.is_available:
        label = service_type.value if tier is None else f"{service_type.value} ({tier.value})"
        raise ValidationError(
            message=f"Service '{label}' is not available in the catalog",
            details=[{"loc": ["services", service_type.value], "msg": "no active price", "type": "service_unavailable"}],
        )

    return ServiceEntry(
        service_type=service_type,
        tier=tier,
        service_name=quote.name,
        multiplier=multiplier,
        unit_price=quote.unit_price,
        subtotal=to_money(quote.unit_price * multiplier),
        estimated_minutes=quote.duration_minutes * duration_factor,
    )


def build_basket(
    draft: BasketDraft,
    catalog: Catalog,
    policy: PricingPolicy,
    previous: Basket | None = None,
) -> Basket:
    """Price a single basket.

    Args:
        draft: Basket weight, notes and service selection.
        catalog: Catalog snapshot used for services not priced before.
        policy: Pricing constants.
        previous: The same basket as last priced, if any. Its price snapshots,
            service progress and approval marker carry over.

    Returns:
        Basket: Priced basket with services in wash, spin, dry, iron, fold order.

    Raises:
        ValidationError: If the weight is over the cap, the dry-time extension
            is not a whole number of increments, or a selected service has no
            active catalog price.
    """
    if draft.weight_kg > policy.basket_weight_max:
        raise ValidationError(
            message=f"Basket {draft.basket_number} weighs more than {policy.basket_weight_max} kg",
            details=[{"loc": ["baskets", str(draft.basket_number), "weight_kg"], "msg": "over weight cap", "type": "weight_cap"}],
        )

    selection = draft.selection
    increment = policy.additional_dry_time_increment_minutes
    if selection.additional_dry_time_minutes % increment != 0:
        raise ValidationError(
            message=f"Additional dry time must be a multiple of {increment} minutes",
            details=[{"loc": ["baskets", str(draft.basket_number), "additional_dry_time_minutes"], "msg": "not a whole increment", "type": "value_error"}],
        )
    if selection.additional_dry_time_minutes and selection.dry is SelectionTier.OFF:
        raise ValidationError(message=f"Basket {draft.basket_number} adds dry time without a dry service")

    wanted: dict[ServiceType, tuple[ServiceTier | None, Decimal, int]] = {}
    if selection.wash is not SelectionTier.OFF:
        wanted[ServiceType.WASH] = (selection.wash.as_service_tier(), Decimal(selection.wash_cycles), selection.wash_cycles)
    if selection.spin:
        wanted[ServiceType.SPIN] = (None, Decimal("1"), 1)
    if selection.dry is not SelectionTier.OFF:
        wanted[ServiceType.DRY] = (selection.dry.as_service_tier(), Decimal("1"), 1)
    iron_kg = normalize_iron_weight(selection.iron_weight_kg, policy)
    if iron_kg > 0:
        wanted[ServiceType.IRON] = (None, iron_kg, 1)
    if selection.fold:
        wanted[ServiceType.FOLD] = (None, Decimal("1"), 1)

    services = []
    for service_type in SERVICE_SEQUENCE:
        if service_type not in wanted:
            continue
        tier, multiplier, duration_factor = wanted[service_type]
        prior = previous.service(service_type) if previous is not None else None
        services.append(_price_service(service_type, tier, multiplier, duration_factor, catalog, prior))

    dry_charge = (selection.additional_dry_time_minutes // increment) * policy.additional_dry_time_price
    bag_product = catalog.plastic_bag_product()
    bag_price = bag_product.unit_price if bag_product is not None else policy.plastic_bag_price
    bag_charge = to_money(bag_price * selection.plastic_bags)

    subtotal = sum((entry.subtotal for entry in services), ZERO) + dry_charge + bag_charge
    minutes = sum(entry.estimated_minutes for entry in services) + selection.additional_dry_time_minutes

    approval = {}
    if previous is not None:
        approval = {
            "approval_status": previous.approval_status,
            "approved_at": previous.approved_at,
            "approved_by": previous.approved_by,
            "rejection_reason": previous.rejection_reason,
        }

    return Basket(
        basket_number=draft.basket_number,
        weight_kg=draft.weight_kg,
        notes=draft.notes,
        selection=selection,
        services=tuple(services),
        additional_dry_time_charge=to_money(dry_charge),
        plastic_bag_charge=bag_charge,
        subtotal=to_money(subtotal),
        estimated_duration_minutes=minutes,
        **approval,
    )


def build_items(
    products: Sequence[ProductSelection],
    catalog: Catalog,
    previous: Sequence[OrderItem] = (),
) -> tuple[OrderItem, ...]:
    """Price product lines.

    Repeated product ids are merged into one line. A product already on the
    order keeps the price it was sold at.

    Raises:
        ValidationError: If a product is not in the active catalog.
    """
    quantities: dict[str, int] = {}
    for line in products:
        quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity

    sold = {item.product_id: item for item in previous}
    items = []
    for product_id, quantity in quantities.items():
        if product_id in sold:
            name, unit_price = sold[product_id].product_name, sold[product_id].unit_price
        else:
            product = catalog.product(product_id)
            if product is None:
                raise ValidationError(
                    message=f"Product {product_id} is not available",
                    details=[{"loc": ["products", product_id], "msg": "not in active catalog", "type": "product_unavailable"}],
                )
            name, unit_price = product.item_name, product.unit_price
        items.append(
            OrderItem(
                product_id=product_id,
                product_name=name,
                quantity=quantity,
                unit_price=unit_price,
                subtotal=to_money(unit_price * quantity),
            )
        )
    return tuple(items)


def build_breakdown(
    products: Sequence[ProductSelection],
    baskets: Sequence[BasketDraft],
    staff_service_requested: bool,
    is_delivery: bool,
    delivery_fee_override: Decimal | None,
    catalog: Catalog,
    policy: PricingPolicy,
    loyalty_tier: LoyaltyTier | None = None,
    payment: Payment | None = None,
    previous: Breakdown | None = None,
) -> Breakdown:
    """Build the complete financial breakdown of an order.

    VAT is inclusive: it is extracted from the subtotal for display and never
    added on top. The loyalty discount is taken off last.

    Args:
        products: Retail product lines.
        baskets: Basket drafts, already partitioned to the weight cap.
        staff_service_requested: Whether staff handle the laundry.
        is_delivery: Whether the order is delivered.
        delivery_fee_override: Cashier-entered delivery fee, if any.
        catalog: Catalog snapshot for anything not priced before.
        policy: Pricing constants.
        loyalty_tier: Customer loyalty tier, if a discount applies.
        payment: Payment record to attach.
        previous: Breakdown being replaced. Surviving lines keep their price
            snapshots and progress.

    Returns:
        Breakdown: The priced breakdown.

    Raises:
        ValidationError: On duplicate basket numbers or any pricing failure.
    """
    ensure_unique_numbers(baskets)

    items = build_items(products, catalog, previous.items if previous is not None else ())
    priced_baskets = tuple(
        build_basket(
            draft,
            catalog,
            policy,
            previous.basket(draft.basket_number) if previous is not None else None,
        )
        for draft in sorted(baskets, key=lambda d: d.basket_number)
    )

    subtotal_products = sum((item.subtotal for item in items), ZERO)
    subtotal_services = sum((basket.subtotal for basket in priced_baskets), ZERO)
    staff_fee = policy.staff_service_fee if staff_service_requested else ZERO
    delivery = delivery_fee(policy, is_delivery, delivery_fee_override)
    subtotal_before_vat = to_money(subtotal_products + subtotal_services + staff_fee + delivery)
    vat_amount = extract_vat(subtotal_before_vat, policy.vat_rate)

    discounts: tuple[Discount, ...] = ()
    loyalty_discount = ZERO
    if loyalty_tier is not None:
        rate = policy.loyalty_rates[loyalty_tier]
        loyalty_discount = to_money(subtotal_before_vat * rate)
        discounts = (
            Discount(
                description=f"Loyalty discount ({loyalty_tier.value})",
                rate=rate,
                amount=loyalty_discount,
            ),
        )

    fees = []
    if staff_fee > 0:
        fees.append(Fee(type=FeeType.STAFF_SERVICE_FEE, description="Staff service fee", amount=to_money(staff_fee)))
    if delivery > 0:
        fees.append(Fee(type=FeeType.DELIVERY_FEE, description="Delivery fee", amount=to_money(delivery)))
    fees.append(Fee(type=FeeType.VAT, description=f"VAT ({(policy.vat_rate * 100).normalize():f}% inclusive)", amount=vat_amount))

    summary = BreakdownSummary(
        subtotal_products=to_money(subtotal_products),
        subtotal_services=to_money(subtotal_services),
        staff_service_fee=to_money(staff_fee),
        delivery_fee=to_money(delivery),
        subtotal_before_vat=subtotal_before_vat,
        vat_rate=policy.vat_rate,
        vat_amount=vat_amount,
        loyalty_discount=loyalty_discount,
        total=subtotal_before_vat - loyalty_discount,
    )

    return Breakdown(
        items=items,
        baskets=priced_baskets,
        fees=tuple(fees),
        discounts=discounts,
        summary=summary,
        payment=payment,
        staff_service=staff_service_requested,
        is_delivery=is_delivery,
        delivery_fee_override=delivery_fee_override,
        loyalty_tier=loyalty_tier,
    )
