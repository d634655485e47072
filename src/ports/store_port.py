"""Store port — the queries and writes the notification engine needs.

Core modules depend on this protocol; src.data.db.MedicationStore is the
SQLite implementation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from src.data.models import (
    Administration,
    InventoryItem,
    NotificationQueueEntry,
    PushSubscriptionRecord,
    RegimenSchedule,
)


class ScheduleStore(Protocol):
    """Read side used by the regimen calculator."""

    def get_active_regimens(self, now: datetime) -> list[RegimenSchedule]: ...

    def get_administrations(
        self,
        regimen_id: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[Administration]: ...


class NotificationLedger(Protocol):
    """Dedup ledger and audit trail used by the scheduler."""

    def add_notification(
        self, entry: NotificationQueueEntry, created_at: datetime | None = None,
    ) -> NotificationQueueEntry: ...

    def find_notification(
        self,
        user_id: str,
        type_: str,
        start: datetime,
        end: datetime,
        regimen_id: str | None = None,
    ) -> NotificationQueueEntry | None: ...

    def insert_notification_if_absent(
        self,
        entry: NotificationQueueEntry,
        window_minutes: int,
        created_at: datetime | None = None,
    ) -> bool: ...

    def mark_notification_sent(self, notification_id: int, sent_at: datetime) -> None: ...

    def delete_notifications_before(self, cutoff: datetime) -> int: ...

    def get_low_inventory_items(self) -> list[InventoryItem]: ...

    def get_household_recipients(self, household_id: str) -> list[str]: ...


class SubscriptionStore(Protocol):
    """Subscription reads and the two mutations the dispatcher performs."""

    def get_active_subscriptions(self, user_id: str) -> list[PushSubscriptionRecord]: ...

    def touch_subscription(self, subscription_id: str, used_at: datetime) -> None: ...

    def deactivate_subscription(self, subscription_id: str) -> None: ...
