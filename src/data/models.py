"""
VetMed Reminders — Data Models.

Read models come from the store (regimens joined with animal timezone and
the caregiver who should be reminded). ScheduledDose and MissedDose are
derived per scheduler tick and never persisted. All datetimes are
timezone-aware UTC unless a field says otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

# Regimen schedule types
FIXED = "FIXED"
INTERVAL = "INTERVAL"
TAPER = "TAPER"
PRN = "PRN"

# Dose types
DOSE_SCHEDULED = "scheduled"
DOSE_INTERVAL = "interval"
DOSE_PRN = "prn"

# Notification ledger types
MEDICATION_REMINDER = "medication_reminder"
MEDICATION_OVERDUE = "medication_overdue"
LOW_INVENTORY = "low_inventory"


@dataclass
class RegimenSchedule:
    """One active regimen as seen by one notification recipient.

    A regimen shared by a household with three caregivers yields three
    RegimenSchedule rows, one per userId.
    """

    regimen_id: str
    animal_id: str
    animal_name: str
    animal_timezone: str              # IANA zone, e.g. "America/New_York"
    household_id: str
    user_id: str                      # notification recipient
    medication_name: str
    dose: str
    schedule_type: str                # FIXED | INTERVAL | TAPER | PRN
    start_date: str                   # ISO date or datetime
    times: list[str] = field(default_factory=list)   # "HH:MM", FIXED/TAPER
    interval_hours: float | None = None              # INTERVAL only
    end_date: str | None = None
    user_lead_time_minutes: int = 15
    notifications_enabled: bool = True


@dataclass
class Administration:
    """A recorded dose, used as INTERVAL anchor and for missed-dose matching."""

    regimen_id: str
    recorded_at: datetime
    scheduled_for: datetime | None = None


@dataclass
class ScheduledDose:
    household_id: str
    regimen_id: str
    animal_id: str
    animal_name: str
    user_id: str
    medication_name: str
    dose: str
    scheduled_time: datetime
    notification_time: datetime       # scheduled_time - lead time
    timezone: str
    type: str                         # scheduled | interval | prn


@dataclass
class MissedDose(ScheduledDose):
    minutes_overdue: int = 0
    last_attempted_notification: datetime | None = None


@dataclass
class NotificationSummary:
    upcoming_count: int
    overdue_count: int
    next_notification: ScheduledDose | None = None


@dataclass
class NotificationQueueEntry:
    """One ledger row per notification attempt.

    sent_at stays None until a delivery reached at least one subscription.
    """

    household_id: str
    user_id: str
    type: str
    title: str
    body: str
    scheduled_for: datetime
    sent_at: datetime | None = None
    regimen_id: str | None = None     # dose-level key for medication rows
    id: int | None = None


@dataclass
class PushSubscriptionRecord:
    id: str
    user_id: str
    endpoint: str
    p256dh_key: str
    auth_key: str
    is_active: bool = True
    last_used: datetime | None = None


@dataclass
class InventoryItem:
    """An in-use medication supply for a household."""

    id: str
    household_id: str
    medication_name: str
    quantity_units: int | None
    units_remaining: int | None
    assigned_animal_id: str | None = None
    in_use: bool = True
