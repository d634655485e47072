"""Push dispatcher — fan a notification out to a user's subscriptions.

Per-subscription outcomes drive subscription state: a delivery bumps
last_used, a "gone" outcome deactivates the subscription for good, and any
other error is only reported (the next notification is the retry).

Without a transport (no VAPID credentials) the dispatcher is disabled:
every send reports "disabled" and nothing is raised.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone

from src.data.models import InventoryItem, PushSubscriptionRecord
from src.data.push_payloads import (
    CosignRequestData,
    LowInventoryWarningData,
    MedicationReminderData,
    NotificationAction,
    PushPayload,
    SystemAnnouncementData,
)
from src.ports.push_port import (
    GONE,
    DeliveryOptions,
    DeliveryOutcome,
    PushTransport,
)
from src.ports.store_port import SubscriptionStore

logger = logging.getLogger(__name__)

DISABLED = "disabled"

ICON = "/icon-192x192.png"
BADGE = "/badge-72x72.png"

_ANNOUNCEMENT_URGENCY = {
    "low": "low",
    "medium": "normal",
    "high": "high",
    "critical": "high",
}


@dataclass
class SubscriptionResult:
    subscription_id: str
    success: bool
    error: str | None = None


@dataclass
class SendSummary:
    sent: int = 0
    failed: int = 0
    results: list[SubscriptionResult] = field(default_factory=list)


@dataclass
class UserSendCount:
    user_id: str
    sent: int
    failed: int


@dataclass
class BulkSendSummary:
    total_sent: int = 0
    total_failed: int = 0
    user_results: list[UserSendCount] = field(default_factory=list)


class PushDispatcher:
    """Delivers payloads through a PushTransport and maintains subscriptions."""

    def __init__(
        self,
        store: SubscriptionStore,
        transport: PushTransport | None = None,
    ) -> None:
        self._store = store
        self._transport = transport

    def is_enabled(self) -> bool:
        return self._transport is not None

    # ------------------------------------------------------------------
    # Core fan-out
    # ------------------------------------------------------------------

    async def _send_to_subscription(
        self,
        subscription: PushSubscriptionRecord,
        body: str,
        options: DeliveryOptions,
    ) -> SubscriptionResult:
        if self._transport is None:
            return SubscriptionResult(subscription.id, success=False, error=DISABLED)

        try:
            outcome = await self._transport.deliver(body, subscription, options)
        except Exception as exc:
            outcome = DeliveryOutcome(status="error", error=str(exc) or type(exc).__name__)

        if outcome.success:
            self._update_subscription(
                self._store.touch_subscription, subscription.id, datetime.now(timezone.utc),
            )
            return SubscriptionResult(subscription.id, success=True)

        if outcome.status == GONE:
            logger.info(
                "Subscription %s for user %s is gone (%s), deactivating",
                subscription.id, subscription.user_id, outcome.status_code,
            )
            self._update_subscription(self._store.deactivate_subscription, subscription.id)
        else:
            logger.warning(
                "Push to subscription %s failed: %s", subscription.id, outcome.error,
            )
        return SubscriptionResult(
            subscription.id, success=False, error=outcome.error or outcome.status,
        )

    @staticmethod
    def _update_subscription(update, subscription_id: str, *args) -> None:
        # A failed bookkeeping write must not hide the delivery outcome.
        try:
            update(subscription_id, *args)
        except Exception as exc:
            logger.error("Could not update subscription %s: %s", subscription_id, exc)

    async def send_to_user(
        self,
        user_id: str,
        payload: PushPayload,
        options: DeliveryOptions | None = None,
    ) -> SendSummary:
        """Send one payload to every active subscription of a user."""
        subscriptions = self._store.get_active_subscriptions(user_id)
        if not subscriptions:
            return SendSummary()

        options = options or DeliveryOptions()
        body = payload.to_json()
        results = await asyncio.gather(
            *(self._send_to_subscription(s, body, options) for s in subscriptions)
        )

        sent = sum(1 for r in results if r.success)
        return SendSummary(sent=sent, failed=len(results) - sent, results=list(results))

    async def send_to_users(
        self,
        user_ids: list[str],
        payload: PushPayload,
        options: DeliveryOptions | None = None,
    ) -> BulkSendSummary:
        summary = BulkSendSummary()
        for user_id in user_ids:
            result = await self.send_to_user(user_id, payload, options)
            summary.user_results.append(UserSendCount(user_id, result.sent, result.failed))
            summary.total_sent += result.sent
            summary.total_failed += result.failed
        return summary

    # ------------------------------------------------------------------
    # Typed builders
    # ------------------------------------------------------------------

    async def send_medication_reminder(
        self,
        user_id: str,
        data: MedicationReminderData,
        options: DeliveryOptions | None = None,
    ) -> SendSummary:
        """Reminder or overdue alert; escalates title and urgency with lateness."""
        title, body, urgency = format_medication_reminder(data)
        payload = PushPayload(
            title=title,
            body=body,
            icon=ICON,
            badge=BADGE,
            tag=f"medication-{data.regimen_id}",
            data=data.model_dump(by_alias=True, exclude_none=True),
            actions=[
                NotificationAction(action="record", title="Record Now", icon="/icon-check.png"),
                NotificationAction(action="snooze", title="Remind in 15min", icon="/icon-clock.png"),
            ],
            require_interaction=data.is_overdue,
            urgency=urgency,
        )
        base = options or DeliveryOptions()
        return await self.send_to_user(
            user_id,
            payload,
            DeliveryOptions(
                ttl=base.ttl,
                urgency=urgency,
                topic=f"medication-{data.animal_id}",
            ),
        )

    async def send_low_inventory_warning(
        self,
        user_id: str,
        data: LowInventoryWarningData,
        options: DeliveryOptions | None = None,
    ) -> SendSummary:
        payload = PushPayload(
            title="Low Inventory Warning",
            body=format_low_inventory_body(data),
            icon=ICON,
            badge=BADGE,
            tag=f"inventory-{data.inventory_item_id}",
            data=data.model_dump(by_alias=True),
            actions=[
                NotificationAction(action="view_inventory", title="View Inventory"),
                NotificationAction(action="dismiss", title="Dismiss"),
            ],
            urgency="low",
            ttl=86400,
        )
        topic = options.topic if options else None
        return await self.send_to_user(
            user_id, payload, DeliveryOptions(ttl=86400, urgency="low", topic=topic),
        )

    async def send_cosign_request(
        self,
        user_id: str,
        data: CosignRequestData,
        options: DeliveryOptions | None = None,
    ) -> SendSummary:
        payload = PushPayload(
            title="Co-sign Required",
            body=(
                f"{data.requester_name} needs co-signature for "
                f"{data.animal_name}'s {data.medication_name}"
            ),
            icon=ICON,
            badge=BADGE,
            tag=f"cosign-{data.cosign_request_id}",
            data=data.model_dump(by_alias=True),
            actions=[
                NotificationAction(action="approve", title="Approve", icon="/icon-check.png"),
                NotificationAction(action="review", title="Review", icon="/icon-eye.png"),
            ],
            require_interaction=True,
            urgency="high",
            ttl=3600,
        )
        topic = options.topic if options else None
        return await self.send_to_user(
            user_id, payload, DeliveryOptions(ttl=3600, urgency="high", topic=topic),
        )

    async def send_system_announcement(
        self,
        user_ids: list[str],
        data: SystemAnnouncementData,
        title: str,
        body: str,
        options: DeliveryOptions | None = None,
    ) -> BulkSendSummary:
        critical = data.priority == "critical"
        urgency = _ANNOUNCEMENT_URGENCY[data.priority]
        ttl = 3600 if critical else 86400
        payload = PushPayload(
            title=title,
            body=body,
            icon=ICON,
            badge=BADGE,
            tag=f"announcement-{data.announcement_id}",
            data=data.model_dump(by_alias=True),
            require_interaction=critical,
            urgency=urgency,
            ttl=ttl,
        )
        topic = options.topic if options else None
        return await self.send_to_users(
            user_ids, payload, DeliveryOptions(ttl=ttl, urgency=urgency, topic=topic),
        )


def format_medication_reminder(data: MedicationReminderData) -> tuple[str, str, str]:
    """Return (title, body, urgency) for a reminder or overdue alert."""
    if not data.is_overdue:
        return (
            f"{data.animal_name} - Medication Reminder",
            f"Time for {data.medication_name} ({data.dose})",
            "normal",
        )

    minutes_late = data.minutes_late or 0
    if minutes_late > 180:
        title, urgency = f"{data.animal_name} - Very Late Medication", "high"
    elif minutes_late > 60:
        title, urgency = f"{data.animal_name} - Late Medication", "normal"
    else:
        title, urgency = f"{data.animal_name} - Medication Due", "normal"
    body = f"{data.medication_name} ({data.dose}) was due {minutes_late} minutes ago"
    return title, body, urgency


def format_low_inventory_body(data: LowInventoryWarningData) -> str:
    return (
        f"{data.medication_name} is running low "
        f"({data.current_quantity} remaining, ~{data.days_remaining} days left)"
    )


def low_inventory_data(item: InventoryItem) -> LowInventoryWarningData:
    """Build the warning data block for an inventory item."""
    remaining = item.units_remaining or 0
    threshold = max(math.ceil((item.quantity_units or 0) * 0.2), 3)
    return LowInventoryWarningData(
        inventory_item_id=item.id,
        medication_name=item.medication_name,
        current_quantity=remaining,
        low_threshold=threshold,
        days_remaining=math.ceil(remaining / 2),
    )
