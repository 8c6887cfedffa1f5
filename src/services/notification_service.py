"""Customer notifications sent after an order changes state.

Notifications are queued as background tasks once the triggering operation
has committed. Delivery is retried with tenacity; a notification that still
fails is logged and kept on the failure channel. Nothing here ever raises
into the operation that queued it.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import resend
from supabase import Client
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from src.core.config import get_settings
from src.core.supabase import get_supabase_client

logger = logging.getLogger(__name__)

MAX_RETRY_WAIT_SECONDS = 10
MAX_RECORDED_FAILURES = 500


class NotificationEvent(str, Enum):
    ORDER_CREATED = "order_created"
    ORDER_APPROVED = "order_approved"
    ORDER_REJECTED = "order_rejected"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_COMPLETED = "order_completed"


SUBJECTS: dict[NotificationEvent, str] = {
    NotificationEvent.ORDER_CREATED: "We received your laundry order",
    NotificationEvent.ORDER_APPROVED: "Your order has been approved",
    NotificationEvent.ORDER_REJECTED: "Your order could not be approved",
    NotificationEvent.ORDER_CANCELLED: "Your order was cancelled",
    NotificationEvent.ORDER_COMPLETED: "Your laundry is done",
}


@dataclass(frozen=True)
class Notification:
    """Message for one customer about one order."""

    event: NotificationEvent
    order_id: str
    customer_id: str | None
    message: str


@dataclass
class NotificationFailure:
    """A notification that could not be delivered."""

    notification: Notification
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationService:
    """Queues and delivers customer notifications by email via Resend."""

    def __init__(
        self,
        supabase_client: Client | None = None,
        max_attempts: int | None = None,
        retry_wait_seconds: float | None = None,
    ) -> None:
        """Initialize notification service.

        Args:
            supabase_client: Optional Supabase client for testing.
            max_attempts: Delivery attempts per notification.
            retry_wait_seconds: Base of the exponential wait between attempts.
        """
        settings = get_settings()
        resend.api_key = settings.resend_api_key
        self.from_email = settings.email_from_address
        self.max_attempts = max_attempts or settings.notification_max_attempts
        self.retry_wait_seconds = (
            settings.notification_retry_wait_seconds if retry_wait_seconds is None else retry_wait_seconds
        )
        self._supabase_client = supabase_client
        self._tasks: set[asyncio.Task] = set()
        self._failures: deque[NotificationFailure] = deque(maxlen=MAX_RECORDED_FAILURES)

    @property
    def supabase(self) -> Client:
        """Get Supabase client."""
        if self._supabase_client is None:
            self._supabase_client = get_supabase_client()
        return self._supabase_client

    @property
    def failures(self) -> list[NotificationFailure]:
        """Notifications that exhausted their attempts, oldest first."""
        return list(self._failures)

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def enqueue(self, notification: Notification) -> asyncio.Task | None:
        """Schedule delivery in the background and return immediately.

        Args:
            notification: What to send.

        Returns:
            The delivery task, or None when the order has no customer.
        """
        if not notification.customer_id:
            logger.debug("Order %s has no customer; skipping %s", notification.order_id, notification.event.value)
            return None

        task = asyncio.create_task(self._deliver(notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every queued notification to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _customer_email(self, customer_id: str) -> str | None:
        result = (
            self.supabase.table("customers")
            .select("email_address")
            .eq("id", customer_id)
            .execute()
        )
        if not result.data:
            return None
        return result.data[0].get("email_address")

    async def _send_email(self, to_email: str, notification: Notification) -> str | None:
        params = {
            "from": self.from_email,
            "to": [to_email],
            "subject": SUBJECTS[notification.event],
            "text": notification.message,
        }
        response = await asyncio.to_thread(resend.Emails.send, params)
        return response.get("id")

    async def _deliver(self, notification: Notification) -> None:
        attempts = 0
        try:
            to_email = self._customer_email(notification.customer_id)
            if not to_email:
                logger.info("Customer %s has no email address; skipping notification", notification.customer_id)
                return

            retrying = AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_wait_seconds, max=MAX_RETRY_WAIT_SECONDS),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    email_id = await self._send_email(to_email, notification)

            logger.info(
                "Sent %s notification for order %s, id: %s",
                notification.event.value,
                notification.order_id,
                email_id,
            )
        except Exception as e:
            logger.error(
                "Notification %s for order %s failed after %d attempt(s): %s",
                notification.event.value,
                notification.order_id,
                attempts,
                e,
            )
            self._failures.append(NotificationFailure(notification=notification, error=str(e), attempts=attempts))


# Global singleton instance
_notification_service: NotificationService | None = None


def get_notification_service() -> NotificationService:
    """Get or create the global notification service."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
