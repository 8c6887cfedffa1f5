"""Inventory deduction and restoration for order product lines."""

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from decimal import Decimal

from supabase import Client

from src.core.supabase import get_supabase_client
from src.models.inventory import (
    DeductedProduct,
    FailedProduct,
    InventoryDeductionResult,
    InventoryLine,
)

logger = logging.getLogger(__name__)


class InventoryService:
    """Moves product stock in and out for orders.

    Each movement updates ``products.quantity`` and writes a row to
    ``product_transactions``.
    """

    def __init__(self, supabase_client: Client | None = None) -> None:
        """Initialize inventory service.

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

    def _current_quantity(self, product_id: str) -> Decimal | None:
        result = (
            self.supabase.table("products")
            .select("id, item_name, quantity")
            .eq("id", product_id)
            .execute()
        )
        if not result.data:
            return None
        return Decimal(str(result.data[0].get("quantity") or 0))

    def _set_quantity(self, product_id: str, expected: Decimal, new_quantity: Decimal) -> bool:
        """Write a new stock level if nobody changed it since it was read."""
        result = (
            self.supabase.table("products")
            .update({
                "quantity": str(new_quantity),
                "last_updated": datetime.now(timezone.utc).isoformat(),
            })
            .eq("id", product_id)
            .eq("quantity", str(expected))
            .execute()
        )
        return bool(result.data)

    def _log_transaction(self, order_id: str, line: InventoryLine, change_type: str, reason: str) -> None:
        self.supabase.table("product_transactions").insert({
            "product_id": line.product_id,
            "order_id": order_id,
            "change_type": change_type,
            "quantity": line.quantity,
            "reason": reason,
        }).execute()

    async def check_stock(self, lines: Sequence[InventoryLine]) -> list[FailedProduct]:
        """List lines that cannot be served from current stock."""
        failed = []
        for line in lines:
            available = self._current_quantity(line.product_id)
            if available is None:
                failed.append(
                    FailedProduct(product_id=line.product_id, product_name=line.product_name, error="Product not found")
                )
            elif available < line.quantity:
                failed.append(
                    FailedProduct(
                        product_id=line.product_id,
                        product_name=line.product_name,
                        error=f"Insufficient stock: {available} available, {line.quantity} requested",
                    )
                )
        return failed

    async def deduct(self, order_id: str, lines: Sequence[InventoryLine]) -> InventoryDeductionResult:
        """Take every line out of stock, or none of them.

        Stock is checked for all lines first. If a write fails part way, the
        lines already taken are put back before returning.

        Args:
            order_id: Order the stock is consumed by.
            lines: Product lines to deduct.

        Returns:
            InventoryDeductionResult: ``success`` with every deducted line, or
                the failed lines and nothing deducted.
        """
        if not lines:
            return InventoryDeductionResult.empty()

        failed = await self.check_stock(lines)
        if failed:
            logger.warning("Stock check failed for order %s: %d product(s)", order_id, len(failed))
            return InventoryDeductionResult(success=False, failed_products=tuple(failed))

        deducted: list[InventoryLine] = []
        for line in lines:
            try:
                current = self._current_quantity(line.product_id)
                if current is None:
                    raise LookupError("Product not found")
                if current < line.quantity:
                    raise ValueError(f"Insufficient stock: {current} available, {line.quantity} requested")
                if not self._set_quantity(line.product_id, current, current - line.quantity):
                    raise RuntimeError("Stock changed while deducting")
                deducted.append(line)
                self._log_transaction(
                    order_id,
                    line,
                    "consume",
                    f"Order {order_id}: {line.quantity}x {line.product_name}",
                )
            except Exception as e:
                logger.error("Failed to deduct %s for order %s: %s", line.product_id, order_id, e)
                if deducted:
                    await self.restore(order_id, deducted)
                return InventoryDeductionResult(
                    success=False,
                    failed_products=(
                        FailedProduct(product_id=line.product_id, product_name=line.product_name, error=str(e)),
                    ),
                )

        logger.info("Deducted %d product line(s) for order %s", len(deducted), order_id)
        return InventoryDeductionResult(
            success=True,
            deducted_products=tuple(
                DeductedProduct(product_id=line.product_id, product_name=line.product_name, quantity=line.quantity)
                for line in deducted
            ),
        )

    async def restore(self, order_id: str, lines: Sequence[InventoryLine]) -> InventoryDeductionResult:
        """Put product lines back into stock.

        Restoring is best effort: each line is attempted and failures are
        reported in the result rather than raised.
        """
        restored = []
        failed = []
        for line in lines:
            try:
                current = self._current_quantity(line.product_id)
                if current is None:
                    raise LookupError("Product not found")
                if not self._set_quantity(line.product_id, current, current + line.quantity):
                    raise RuntimeError("Stock changed while restoring")
                self._log_transaction(
                    order_id,
                    line,
                    "add",
                    f"Order {order_id} reversed: {line.quantity}x {line.product_name}",
                )
                restored.append(
                    DeductedProduct(product_id=line.product_id, product_name=line.product_name, quantity=line.quantity)
                )
            except Exception as e:
                logger.error("Failed to restore %s for order %s: %s", line.product_id, order_id, e)
                failed.append(FailedProduct(product_id=line.product_id, product_name=line.product_name, error=str(e)))

        return InventoryDeductionResult(
            success=not failed,
            deducted_products=tuple(restored),
            failed_products=tuple(failed),
        )


# Global singleton instance
_inventory_service: InventoryService | None = None


def get_inventory_service() -> InventoryService:
    """Get or create the global inventory service."""
    global _inventory_service
    if _inventory_service is None:
        _inventory_service = InventoryService()
    return _inventory_service
