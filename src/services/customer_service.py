"""Customer loyalty point balances."""

import logging

from supabase import Client

from src.core.supabase import get_supabase_client

logger = logging.getLogger(__name__)


class CustomerService:
    """Service for reading and adjusting customer loyalty points."""

    def __init__(self, supabase_client: Client | None = None) -> None:
        """Initialize customer service.

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

    async def get_loyalty_points(self, customer_id: str) -> int | None:
        """Get a customer's loyalty point balance.

        Args:
            customer_id: Customer UUID.

        Returns:
            int or None if the customer does not exist.
        """
        result = (
            self.supabase.table("customers")
            .select("id, loyalty_points")
            .eq("id", str(customer_id))
            .execute()
        )
        if not result.data:
            return None
        return int(result.data[0].get("loyalty_points") or 0)

    async def adjust_loyalty_points(self, customer_id: str, delta: int) -> int | None:
        """Add ``delta`` points (negative to redeem), never going below zero.

        Args:
            customer_id: Customer UUID.
            delta: Points to add or, when negative, take away.

        Returns:
            int: The new balance, or None if the customer does not exist.
        """
        current = await self.get_loyalty_points(customer_id)
        if current is None:
            return None
        balance = max(0, current + delta)
        self.supabase.table("customers").update({"loyalty_points": balance}).eq("id", str(customer_id)).execute()
        logger.info("Loyalty points for customer %s: %d -> %d", customer_id, current, balance)
        return balance


# Global singleton instance
_customer_service: CustomerService | None = None


def get_customer_service() -> CustomerService:
    """Get or create the global customer service."""
    global _customer_service
    if _customer_service is None:
        _customer_service = CustomerService()
    return _customer_service
