"""
VetMed Reminders — Push payload wire contract.

The service worker on the client reads these JSON documents, so field names
are camelCase on the wire regardless of the Python attribute names.
`data.type` tells the client which kind of notification it is routing.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Urgency = Literal["very-low", "low", "normal", "high"]


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NotificationAction(_WireModel):
    action: str
    title: str
    icon: str | None = None


class MedicationReminderData(_WireModel):
    type: Literal["medication_reminder"] = "medication_reminder"
    animal_id: str
    animal_name: str
    regimen_id: str
    medication_name: str
    dose: str
    due_time: str                     # ISO-8601 UTC
    is_overdue: bool = False
    minutes_late: int | None = None


class LowInventoryWarningData(_WireModel):
    type: Literal["low_inventory"] = "low_inventory"
    inventory_item_id: str
    medication_name: str
    current_quantity: int
    low_threshold: int
    days_remaining: int


class CosignRequestData(_WireModel):
    type: Literal["cosign_request"] = "cosign_request"
    cosign_request_id: str
    requester_id: str
    requester_name: str
    animal_name: str
    medication_name: str
    expires_at: str


class SystemAnnouncementData(_WireModel):
    type: Literal["system_announcement"] = "system_announcement"
    announcement_id: str
    category: Literal["maintenance", "feature", "security", "general"] = "general"
    priority: Literal["low", "medium", "high", "critical"] = "medium"


class PushPayload(_WireModel):
    title: str = Field(min_length=1)
    body: str = Field(min_length=1)
    icon: str | None = None
    badge: str | None = None
    tag: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    actions: list[NotificationAction] | None = None
    require_interaction: bool | None = None
    silent: bool | None = None
    timestamp: int = Field(default_factory=lambda: now_millis())
    ttl: int | None = None
    urgency: Urgency | None = None

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-ready dict the client expects (camelCase, no nulls)."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), separators=(",", ":"))


def now_millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)
