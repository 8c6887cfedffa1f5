"""Staff directory lookups."""

import logging

from supabase import Client

from src.core.supabase import get_supabase_client
from src.models.staff import Staff

logger = logging.getLogger(__name__)


class StaffService:
    """Service for resolving staff members."""

    def __init__(self, supabase_client: Client | None = None) -> None:
        """Initialize staff service.

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

    async def get_staff(self, staff_id: str) -> Staff | None:
        """Get an active staff member by ID.

        Args:
            staff_id: Staff UUID.

        Returns:
            Staff or None if the id is unknown or the member is inactive.
        """
        try:
            result = (
                self.supabase.table("staff")
                .select("id, first_name, last_name, email_address, is_active")
                .eq("id", str(staff_id))
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to get staff {staff_id}: {e}")
            raise

        if not result.data:
            return None
        staff = result.data[0]
        if staff.get("is_active") is False:
            logger.info(f"Staff {staff_id} is inactive")
            return None
        return staff


# Global singleton instance
_staff_service: StaffService | None = None


def get_staff_service() -> StaffService:
    """Get or create the global staff service."""
    global _staff_service
    if _staff_service is None:
        _staff_service = StaffService()
    return _staff_service
