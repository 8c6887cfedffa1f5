"""Catalog type definitions: priced services and retail products."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from src.models.order import ServiceTier, ServiceType


class CatalogServiceEntry(BaseModel):
    """Row of the services table."""

    model_config = ConfigDict(frozen=True)

    id: str
    service_type: ServiceType
    tier: ServiceTier | None = None
    name: str
    base_price: Decimal = Field(ge=0)
    base_duration_minutes: int = Field(default=0, ge=0)
    is_active: bool = True


class CatalogProduct(BaseModel):
    """Row of the products table."""

    model_config = ConfigDict(frozen=True)

    id: str
    item_name: str
    unit_price: Decimal = Field(ge=0)
    quantity: Decimal = Decimal("0")
    is_active: bool = True

    @property
    def is_plastic_bag(self) -> bool:
        name = self.item_name.lower()
        return "plastic" in name or "bag" in name


class Catalog(BaseModel):
    """Snapshot of active services and products at one point in time."""

    model_config = ConfigDict(frozen=True)

    services: tuple[CatalogServiceEntry, ...] = ()
    products: tuple[CatalogProduct, ...] = ()

    def product(self, product_id: str) -> CatalogProduct | None:
        for product in self.products:
            if product.id == product_id and product.is_active:
                return product
        return None

    def plastic_bag_product(self) -> CatalogProduct | None:
        for product in self.products:
            if product.is_active and product.is_plastic_bag:
                return product
        return None


class PriceQuote(BaseModel):
    """Resolved name, price and duration for one service."""

    model_config = ConfigDict(frozen=True)

    name: str
    unit_price: Decimal
    duration_minutes: int = 0

    @classmethod
    def unavailable(cls) -> "PriceQuote":
        return cls(name="", unit_price=Decimal("0"), duration_minutes=0)

    @property
    def is_available(self) -> bool:
        return self.unit_price > 0
