"""Domain model type definitions."""

from src.models.catalog import Catalog, CatalogProduct, CatalogServiceEntry, PriceQuote
from src.models.inventory import InventoryDeductionResult, InventoryLine
from src.models.order import (
    AuditLogEntry,
    Basket,
    Breakdown,
    Handling,
    HandlingStage,
    Order,
    OrderRow,
    OrderStatus,
    ServiceEntry,
    StageStatus,
)
from src.models.staff import Staff

__all__ = [
    "AuditLogEntry",
    "Basket",
    "Breakdown",
    "Catalog",
    "CatalogProduct",
    "CatalogServiceEntry",
    "Handling",
    "HandlingStage",
    "InventoryDeductionResult",
    "InventoryLine",
    "Order",
    "OrderRow",
    "OrderStatus",
    "PriceQuote",
    "ServiceEntry",
    "StageStatus",
    "Staff",
]
