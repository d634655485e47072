"""
VetMed Reminders — Medication Store.

SQLite-backed implementation of the store ports. Holds the regimen read
model (regimens joined with animals, household memberships and per-user
notification preferences), administration history, the notification
ledger and push subscriptions.

Timestamps are stored as fixed-width UTC ISO-8601 strings so that range
queries can compare them as text.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

from src.data.models import (
    Administration,
    InventoryItem,
    NotificationQueueEntry,
    PushSubscriptionRecord,
    RegimenSchedule,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS households (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id                          TEXT PRIMARY KEY,
    display_name                TEXT NOT NULL,
    push_notifications          INTEGER NOT NULL DEFAULT 1,
    reminder_lead_time_minutes  INTEGER
);

CREATE TABLE IF NOT EXISTS memberships (
    household_id  TEXT NOT NULL REFERENCES households(id),
    user_id       TEXT NOT NULL REFERENCES users(id),
    role          TEXT NOT NULL DEFAULT 'CAREGIVER',
    PRIMARY KEY (household_id, user_id)
);

CREATE TABLE IF NOT EXISTS animals (
    id            TEXT PRIMARY KEY,
    household_id  TEXT NOT NULL REFERENCES households(id),
    name          TEXT NOT NULL,
    timezone      TEXT
);

CREATE TABLE IF NOT EXISTS regimens (
    id               TEXT PRIMARY KEY,
    animal_id        TEXT NOT NULL REFERENCES animals(id),
    medication_name  TEXT NOT NULL,
    dose             TEXT NOT NULL DEFAULT '',
    schedule_type    TEXT NOT NULL,
    times_local      TEXT,
    interval_hours   REAL,
    start_date       TEXT NOT NULL,
    end_date         TEXT,
    active           INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS administrations (
    id             TEXT PRIMARY KEY,
    regimen_id     TEXT NOT NULL REFERENCES regimens(id),
    scheduled_for  TEXT,
    recorded_at    TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_admin_regimen ON administrations(regimen_id, recorded_at);

CREATE TABLE IF NOT EXISTS notification_queue (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    household_id   TEXT NOT NULL,
    user_id        TEXT NOT NULL,
    type           TEXT NOT NULL,
    regimen_id     TEXT,
    title          TEXT NOT NULL,
    body           TEXT NOT NULL,
    scheduled_for  TEXT NOT NULL,
    sent_at        TEXT,
    created_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_queue_dedup ON notification_queue(user_id, type, regimen_id, scheduled_for);

CREATE TABLE IF NOT EXISTS push_subscriptions (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    endpoint    TEXT NOT NULL UNIQUE,
    p256dh_key  TEXT NOT NULL,
    auth_key    TEXT NOT NULL,
    is_active   INTEGER NOT NULL DEFAULT 1,
    last_used   TEXT,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS inventory_items (
    id                  TEXT PRIMARY KEY,
    household_id        TEXT NOT NULL REFERENCES households(id),
    medication_name     TEXT NOT NULL,
    assigned_animal_id  TEXT,
    quantity_units      INTEGER,
    units_remaining     INTEGER,
    in_use              INTEGER NOT NULL DEFAULT 1,
    deleted_at          TEXT
);
"""


def to_iso(dt: datetime) -> str:
    """Serialize an aware datetime as fixed-width UTC text."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class MedicationStore:
    """SQLite-backed storage behind the scheduling and dispatch engine."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Medication store initialized at %s", self._db_path)

    # ------------------------------------------------------------------
    # Row mappers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_times(raw: str | None, regimen_id: str) -> list[str]:
        if not raw:
            return []
        try:
            times = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Regimen %s has unreadable times_local %r", regimen_id, raw)
            return []
        if isinstance(times, str):
            return [times]
        if not isinstance(times, list):
            logger.warning("Regimen %s times_local is not a list: %r", regimen_id, raw)
            return []
        return times

    @classmethod
    def _row_to_regimen(cls, row: sqlite3.Row, default_timezone: str, default_lead: int) -> RegimenSchedule:
        lead = row["reminder_lead_time_minutes"]
        return RegimenSchedule(
            regimen_id=row["regimen_id"],
            animal_id=row["animal_id"],
            animal_name=row["animal_name"],
            animal_timezone=row["animal_timezone"] or default_timezone,
            household_id=row["household_id"],
            user_id=row["user_id"],
            medication_name=row["medication_name"],
            dose=row["dose"],
            schedule_type=row["schedule_type"],
            times=cls._parse_times(row["times_local"], row["regimen_id"]),
            interval_hours=row["interval_hours"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            user_lead_time_minutes=default_lead if lead is None else int(lead),
            notifications_enabled=bool(row["push_notifications"]),
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> NotificationQueueEntry:
        return NotificationQueueEntry(
            id=row["id"],
            household_id=row["household_id"],
            user_id=row["user_id"],
            type=row["type"],
            title=row["title"],
            body=row["body"],
            scheduled_for=from_iso(row["scheduled_for"]),
            sent_at=from_iso(row["sent_at"]),
            regimen_id=row["regimen_id"],
        )

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> PushSubscriptionRecord:
        return PushSubscriptionRecord(
            id=row["id"],
            user_id=row["user_id"],
            endpoint=row["endpoint"],
            p256dh_key=row["p256dh_key"],
            auth_key=row["auth_key"],
            is_active=bool(row["is_active"]),
            last_used=from_iso(row["last_used"]),
        )

    # ------------------------------------------------------------------
    # Regimen read model
    # ------------------------------------------------------------------

    def get_active_regimens(self, now: datetime) -> list[RegimenSchedule]:
        """Active regimens x household members with push notifications on."""
        from src.config import settings

        query = """
            SELECT r.id AS regimen_id, r.animal_id, a.name AS animal_name,
                   a.timezone AS animal_timezone, a.household_id,
                   m.user_id, r.medication_name, r.dose, r.schedule_type,
                   r.times_local, r.interval_hours, r.start_date, r.end_date,
                   u.reminder_lead_time_minutes, u.push_notifications
            FROM regimens r
            JOIN animals a ON a.id = r.animal_id
            JOIN memberships m ON m.household_id = a.household_id
            JOIN users u ON u.id = m.user_id
            WHERE r.active = 1
              AND u.push_notifications = 1
              AND (r.end_date IS NULL OR r.end_date >= ?)
            ORDER BY r.id, m.user_id
        """
        # end_date is a local date in the animal's zone. Comparing against
        # yesterday's UTC date keeps the final local day for zones west of
        # UTC; the calculator applies the exact local end-of-day bound.
        earliest_end = (now.astimezone(timezone.utc) - timedelta(days=1)).date().isoformat()
        with self._connect() as conn:
            rows = conn.execute(query, (earliest_end,)).fetchall()

        return [
            self._row_to_regimen(
                r, settings.DEFAULT_TIMEZONE, settings.DEFAULT_LEAD_TIME_MINUTES,
            )
            for r in rows
        ]

    def get_administrations(
        self,
        regimen_id: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[Administration]:
        """Administrations for a regimen, most recently recorded first."""
        query = "SELECT * FROM administrations WHERE regimen_id = ?"
        params: list = [regimen_id]
        if since is not None:
            query += " AND COALESCE(scheduled_for, recorded_at) >= ?"
            params.append(to_iso(since))
        query += " ORDER BY recorded_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            Administration(
                regimen_id=r["regimen_id"],
                recorded_at=from_iso(r["recorded_at"]),
                scheduled_for=from_iso(r["scheduled_for"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Notification ledger
    # ------------------------------------------------------------------

    def add_notification(
        self, entry: NotificationQueueEntry, created_at: datetime | None = None,
    ) -> NotificationQueueEntry:
        """Append a ledger row."""
        with self._connect() as conn:
            entry.id = self._insert_entry(conn, entry, created_at)
        logger.debug("Ledger row #%d: %s for user %s", entry.id, entry.type, entry.user_id)
        return entry

    @staticmethod
    def _insert_entry(
        conn: sqlite3.Connection,
        entry: NotificationQueueEntry,
        created_at: datetime | None = None,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO notification_queue
                (household_id, user_id, type, regimen_id, title, body,
                 scheduled_for, sent_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.household_id, entry.user_id, entry.type, entry.regimen_id,
                entry.title, entry.body, to_iso(entry.scheduled_for),
                to_iso(entry.sent_at) if entry.sent_at else None,
                to_iso(entry.sent_at or created_at or datetime.now(timezone.utc)),
            ),
        )
        return cursor.lastrowid

    def find_notification(
        self,
        user_id: str,
        type_: str,
        start: datetime,
        end: datetime,
        regimen_id: str | None = None,
    ) -> NotificationQueueEntry | None:
        """Latest ledger row for user/type/regimen with scheduled_for in [start, end]."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM notification_queue
                WHERE user_id = ? AND type = ? AND regimen_id IS ?
                  AND scheduled_for >= ? AND scheduled_for <= ?
                ORDER BY COALESCE(sent_at, created_at) DESC
                LIMIT 1
                """,
                (user_id, type_, regimen_id, to_iso(start), to_iso(end)),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_entry(row)

    def insert_notification_if_absent(
        self,
        entry: NotificationQueueEntry,
        window_minutes: int,
        created_at: datetime | None = None,
    ) -> bool:
        """Insert entry unless a row for the same user/type/regimen lies within the window.

        Check and insert run in one IMMEDIATE transaction, so two processes
        sharing the database cannot both claim the same dose.
        """
        window = timedelta(minutes=window_minutes)
        start = to_iso(entry.scheduled_for - window)
        end = to_iso(entry.scheduled_for + window)

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            existing = conn.execute(
                """
                SELECT 1 FROM notification_queue
                WHERE user_id = ? AND type = ? AND regimen_id IS ?
                  AND scheduled_for >= ? AND scheduled_for <= ?
                LIMIT 1
                """,
                (entry.user_id, entry.type, entry.regimen_id, start, end),
            ).fetchone()
            if existing is not None:
                conn.rollback()
                return False
            entry.id = self._insert_entry(conn, entry, created_at)
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()
        return True

    def mark_notification_sent(self, notification_id: int, sent_at: datetime) -> None:
        """Stamp sent_at on a claimed row once delivery succeeded."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE notification_queue SET sent_at = ? WHERE id = ?",
                (to_iso(sent_at), notification_id),
            )
        if cursor.rowcount == 0:
            raise ValueError(f"Notification {notification_id} not found")

    def delete_notifications_before(self, cutoff: datetime) -> int:
        """Delete ledger rows created before cutoff. Returns the count."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM notification_queue WHERE created_at <= ?",
                (to_iso(cutoff),),
            )
        return cursor.rowcount

    def list_notifications(self, user_id: str | None = None) -> list[NotificationQueueEntry]:
        """Return ledger rows, oldest first."""
        query = "SELECT * FROM notification_queue"
        params: list = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(r) for r in rows]

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def get_low_inventory_items(self) -> list[InventoryItem]:
        """In-use items at or below max(20% of original quantity, 3 units)."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM inventory_items
                WHERE in_use = 1 AND deleted_at IS NULL
                  AND units_remaining IS NOT NULL
                  AND units_remaining <= MAX(COALESCE(quantity_units, 0) * 0.2, 3)
                ORDER BY CAST(units_remaining AS REAL) / MAX(COALESCE(quantity_units, 1), 1)
                """
            ).fetchall()
        return [
            InventoryItem(
                id=r["id"],
                household_id=r["household_id"],
                medication_name=r["medication_name"],
                quantity_units=r["quantity_units"],
                units_remaining=r["units_remaining"],
                assigned_animal_id=r["assigned_animal_id"],
                in_use=bool(r["in_use"]),
            )
            for r in rows
        ]

    def get_household_recipients(self, household_id: str) -> list[str]:
        """User ids of household members with push notifications enabled."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.user_id FROM memberships m
                JOIN users u ON u.id = m.user_id
                WHERE m.household_id = ? AND u.push_notifications = 1
                ORDER BY m.user_id
                """,
                (household_id,),
            ).fetchall()
        return [r["user_id"] for r in rows]

    # ------------------------------------------------------------------
    # Push subscriptions
    # ------------------------------------------------------------------

    def get_active_subscriptions(self, user_id: str) -> list[PushSubscriptionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM push_subscriptions WHERE user_id = ? AND is_active = 1 ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_subscription(r) for r in rows]

    def get_subscription(self, subscription_id: str) -> PushSubscriptionRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM push_subscriptions WHERE id = ?", (subscription_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_subscription(row)

    def touch_subscription(self, subscription_id: str, used_at: datetime) -> None:
        """Bump last_used after a successful delivery."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE push_subscriptions SET last_used = ? WHERE id = ?",
                (to_iso(used_at), subscription_id),
            )
        if cursor.rowcount == 0:
            raise ValueError(f"Subscription {subscription_id} not found")

    def deactivate_subscription(self, subscription_id: str) -> None:
        """Flag a subscription the push service reported as gone."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE push_subscriptions SET is_active = 0 WHERE id = ?",
                (subscription_id,),
            )
        if cursor.rowcount == 0:
            raise ValueError(f"Subscription {subscription_id} not found")
        logger.info("Subscription %s deactivated", subscription_id)

    # ------------------------------------------------------------------
    # Writes owned by other flows (household admin, recording, client
    # subscription). Kept minimal for seeding and tests.
    # ------------------------------------------------------------------

    def add_household(self, name: str, household_id: str | None = None) -> str:
        household_id = household_id or _new_id()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO households (id, name) VALUES (?, ?)", (household_id, name),
            )
        return household_id

    def add_user(
        self,
        display_name: str,
        user_id: str | None = None,
        push_notifications: bool = True,
        lead_time_minutes: int | None = 15,
    ) -> str:
        user_id = user_id or _new_id()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (id, display_name, push_notifications, reminder_lead_time_minutes)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, display_name, int(push_notifications), lead_time_minutes),
            )
        return user_id

    def add_membership(self, household_id: str, user_id: str, role: str = "CAREGIVER") -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO memberships (household_id, user_id, role) VALUES (?, ?, ?)",
                (household_id, user_id, role),
            )

    def add_animal(
        self,
        household_id: str,
        name: str,
        timezone_name: str | None = None,
        animal_id: str | None = None,
    ) -> str:
        animal_id = animal_id or _new_id()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO animals (id, household_id, name, timezone) VALUES (?, ?, ?, ?)",
                (animal_id, household_id, name, timezone_name),
            )
        return animal_id

    def add_regimen(
        self,
        animal_id: str,
        medication_name: str,
        schedule_type: str,
        start_date: str,
        dose: str = "",
        times: list[str] | None = None,
        interval_hours: float | None = None,
        end_date: str | None = None,
        active: bool = True,
        regimen_id: str | None = None,
    ) -> str:
        regimen_id = regimen_id or _new_id()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO regimens
                    (id, animal_id, medication_name, dose, schedule_type,
                     times_local, interval_hours, start_date, end_date, active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    regimen_id, animal_id, medication_name, dose, schedule_type,
                    json.dumps(times) if times is not None else None,
                    interval_hours, start_date, end_date, int(active),
                ),
            )
        logger.info("Regimen added: %s %s (%s)", regimen_id, medication_name, schedule_type)
        return regimen_id

    def record_administration(
        self,
        regimen_id: str,
        recorded_at: datetime,
        scheduled_for: datetime | None = None,
    ) -> str:
        admin_id = _new_id()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO administrations (id, regimen_id, scheduled_for, recorded_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    admin_id, regimen_id,
                    to_iso(scheduled_for) if scheduled_for else None,
                    to_iso(recorded_at),
                ),
            )
        return admin_id

    def add_subscription(
        self,
        user_id: str,
        endpoint: str,
        p256dh_key: str,
        auth_key: str,
        subscription_id: str | None = None,
    ) -> PushSubscriptionRecord:
        subscription_id = subscription_id or _new_id()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO push_subscriptions
                    (id, user_id, endpoint, p256dh_key, auth_key, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    subscription_id, user_id, endpoint, p256dh_key, auth_key,
                    to_iso(datetime.now(timezone.utc)),
                ),
            )
        return PushSubscriptionRecord(
            id=subscription_id,
            user_id=user_id,
            endpoint=endpoint,
            p256dh_key=p256dh_key,
            auth_key=auth_key,
        )

    def add_inventory_item(
        self,
        household_id: str,
        medication_name: str,
        quantity_units: int | None,
        units_remaining: int | None,
        in_use: bool = True,
        assigned_animal_id: str | None = None,
        item_id: str | None = None,
    ) -> str:
        item_id = item_id or _new_id()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO inventory_items
                    (id, household_id, medication_name, assigned_animal_id,
                     quantity_units, units_remaining, in_use)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item_id, household_id, medication_name, assigned_animal_id,
                    quantity_units, units_remaining, int(in_use),
                ),
            )
        return item_id
