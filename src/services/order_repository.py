"""Order persistence over the Supabase ``orders`` table."""

import logging
from typing import Any

from supabase import Client

from src.api.middleware.error_handler import ConflictError
from src.core.supabase import get_supabase_client
from src.models.order import Order, OrderRow, OrderStatus, evolve

logger = logging.getLogger(__name__)

# Columns a save is allowed to overwrite
MUTABLE_COLUMNS = (
    "cashier_id",
    "status",
    "total_amount",
    "approved_at",
    "completed_at",
    "cancelled_at",
    "order_note",
    "handling",
    "breakdown",
    "cancellation",
    "revision",
)


def order_to_row(order: Order) -> OrderRow:
    """Serialize an order into an ``orders`` row.

    The audit log travels inside the breakdown document.
    """
    data = order.model_dump(mode="json")
    breakdown = data["breakdown"]
    breakdown["audit_log"] = data["audit_log"]
    return {
        "id": data["id"],
        "source": data["source"],
        "customer_id": data["customer_id"],
        "cashier_id": data["cashier_id"],
        "status": data["status"],
        "total_amount": data["total_amount"],
        "created_at": data["created_at"],
        "approved_at": data["approved_at"],
        "completed_at": data["completed_at"],
        "cancelled_at": data["cancelled_at"],
        "order_note": data["order_note"],
        "handling": data["handling"],
        "breakdown": breakdown,
        "cancellation": data["cancellation"],
        "revision": data["revision"],
    }


def order_from_row(row: dict[str, Any]) -> Order:
    """Rebuild an order from an ``orders`` row."""
    breakdown = dict(row.get("breakdown") or {})
    audit_log = breakdown.pop("audit_log", [])
    return Order.model_validate({
        **row,
        "breakdown": breakdown,
        "audit_log": audit_log,
        "revision": row.get("revision") or 0,
    })


class OrderRepository:
    """Loads and stores orders.

    ``save`` is a compare-and-set: it only writes when the stored status and
    revision still match what the caller loaded.
    """

    def __init__(self, supabase_client: Client | None = None) -> None:
        """Initialize order repository.

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

    async def get(self, order_id: str) -> Order | None:
        """Get an order by ID.

        Args:
            order_id: Order UUID.

        Returns:
            Order or None if not found.
        """
        try:
            result = (
                self.supabase.table("orders")
                .select("*")
                .eq("id", str(order_id))
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to get order {order_id}: {e}")
            raise

        if not result.data:
            return None
        return order_from_row(result.data[0])

    async def create(self, order: Order) -> Order:
        """Insert a new order.

        Args:
            order: Order to insert.

        Returns:
            Order: The stored order.

        Raises:
            Exception: If the insert returns no row.
        """
        result = self.supabase.table("orders").insert(dict(order_to_row(order))).execute()
        if not result.data:
            raise Exception(f"Failed to create order {order.id}")

        logger.info(f"Created order {order.id}")
        return order_from_row(result.data[0])

    async def save(self, order: Order, expected_status: OrderStatus, expected_revision: int) -> Order:
        """Replace an order's mutable fields if nobody changed it meanwhile.

        Args:
            order: New order value.
            expected_status: Status the caller loaded.
            expected_revision: Revision the caller loaded.

        Returns:
            Order: The stored order, with its revision bumped.

        Raises:
            ConflictError: If the stored status or revision no longer match.
        """
        to_store = evolve(order, revision=expected_revision + 1)
        row = order_to_row(to_store)
        changes = {column: row[column] for column in MUTABLE_COLUMNS}

        result = (
            self.supabase.table("orders")
            .update(changes)
            .eq("id", str(order.id))
            .eq("status", expected_status.value)
            .eq("revision", expected_revision)
            .execute()
        )
        if not result.data:
            logger.warning(
                "Order %s changed concurrently (expected %s at revision %d)",
                order.id,
                expected_status.value,
                expected_revision,
            )
            raise ConflictError(message=f"Order {order.id} was modified by another operation; reload and retry")

        return order_from_row(result.data[0])


# Global singleton instance
_order_repository: OrderRepository | None = None


def get_order_repository() -> OrderRepository:
    """Get or create the global order repository."""
    global _order_repository
    if _order_repository is None:
        _order_repository = OrderRepository()
    return _order_repository
