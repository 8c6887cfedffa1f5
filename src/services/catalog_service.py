"""Pricing catalog lookup and the Supabase-backed catalog source."""

import logging

from supabase import Client

from src.core.supabase import get_supabase_client
from src.models.catalog import Catalog, CatalogProduct, CatalogServiceEntry, PriceQuote
from src.models.order import ServiceTier, ServiceType

logger = logging.getLogger(__name__)


def resolve(
    catalog: Catalog,
    service_type: ServiceType,
    tier: ServiceTier | None = None,
) -> PriceQuote:
    """Resolve a service type and tier to a price snapshot.

    Only active entries are considered. The tier is honoured for wash and dry
    only: an exact tier match wins, otherwise the first active entry of the
    type is used.

    Args:
        catalog: Catalog snapshot to search.
        service_type: Service being priced.
        tier: Requested tier, ignored for untiered services.

    Returns:
        PriceQuote: The resolved quote, or ``PriceQuote.unavailable()`` when
            the catalog has no active entry for the service. Callers must
            treat a zero quote as unavailable rather than charge nothing.
    """
    matching = [
        entry
        for entry in catalog.services
        if entry.is_active and entry.service_type is service_type
    ]
    if not matching:
        return PriceQuote.unavailable()

    chosen = matching[0]
    if service_type.is_tiered and tier is not None:
        for entry in matching:
            if entry.tier is tier:
                chosen = entry
                break

    return PriceQuote(
        name=chosen.name,
        unit_price=chosen.base_price,
        duration_minutes=chosen.base_duration_minutes,
    )


class CatalogService:
    """Loads the active service and product catalog."""

    def __init__(self, supabase_client: Client | None = None) -> None:
        """Initialize catalog service.

        Args:
            supabase_client: Optional Supabase client for testing.
        """
        self._supabase_client = supabase_client

    @property
    def supabase(self) -> Client:
        """Get Supabase client."""
        if self._supabase_client is None:
            self._supabase_client = get_supabase_client()
        return self._supabase_client

    async def get_catalog(self) -> Catalog:
        """Fetch a snapshot of every active service and product.

        Rows for service types the order core does not price (pickup and
        delivery entries share the services table) are ignored.

        Returns:
            Catalog: Active services and products.
        """
        service_rows = (
            self.supabase.table("services")
            .select("id, service_type, tier, name, base_price, base_duration_minutes, is_active")
            .eq("is_active", True)
            .execute()
        ).data or []
        product_rows = (
            self.supabase.table("products")
            .select("id, item_name, unit_price, quantity, is_active")
            .eq("is_active", True)
            .execute()
        ).data or []

        priced_types = {service_type.value for service_type in ServiceType}
        services = []
        for row in service_rows:
            if row.get("service_type") not in priced_types:
                continue
            services.append(
                CatalogServiceEntry(
                    id=str(row["id"]),
                    service_type=row["service_type"],
                    tier=row.get("tier"),
                    name=row["name"],
                    base_price=row.get("base_price") or 0,
                    base_duration_minutes=int(row.get("base_duration_minutes") or 0),
                    is_active=row.get("is_active", True),
                )
            )
        products = [
            CatalogProduct(
                id=str(row["id"]),
                item_name=row["item_name"],
                unit_price=row.get("unit_price") or 0,
                quantity=row.get("quantity") or 0,
                is_active=row.get("is_active", True),
            )
            for row in product_rows
        ]

        logger.debug("Loaded catalog with %d services and %d products", len(services), len(products))
        return Catalog(services=tuple(services), products=tuple(products))


# Global singleton instance
_catalog_service: CatalogService | None = None


def get_catalog_service() -> CatalogService:
    """Get or create the global catalog service."""
    global _catalog_service
    if _catalog_service is None:
        _catalog_service = CatalogService()
    return _catalog_service
