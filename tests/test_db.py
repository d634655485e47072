"""Tests for src.data.db — MedicationStore (SQLite storage)."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from src.data.db import MedicationStore, from_iso, to_iso
from src.data.models import MEDICATION_OVERDUE, MEDICATION_REMINDER, NotificationQueueEntry


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _entry(scheduled_for, user_id="user-1", type_=MEDICATION_REMINDER, sent_at=None,
           regimen_id=None):
    return NotificationQueueEntry(
        household_id="hh-1",
        user_id=user_id,
        type=type_,
        title="Rex Medication Reminder",
        body="Time to give Carprofen to Rex",
        scheduled_for=scheduled_for,
        sent_at=sent_at or scheduled_for,
        regimen_id=regimen_id,
    )


class TestTimestamps:
    def test_to_iso_is_utc_fixed_width(self):
        assert to_iso(datetime(2026, 1, 15, 8, 0, tzinfo=timezone(timedelta(hours=-5)))) == (
            "2026-01-15T13:00:00.000000+00:00"
        )

    def test_naive_treated_as_utc(self):
        assert from_iso("2026-01-15T13:00:00") == utc(2026, 1, 15, 13, 0)

    def test_from_iso_empty(self):
        assert from_iso(None) is None
        assert from_iso("") is None


class TestActiveRegimens:
    def test_returns_regimen_with_household_context(self, store, make_regimen):
        regimen_id = make_regimen(times=["08:00", "20:00"], dose="1 tab")

        regimens = store.get_active_regimens(utc(2026, 1, 15, 12, 0))

        assert len(regimens) == 1
        r = regimens[0]
        assert r.regimen_id == regimen_id
        assert r.household_id == "hh-1"
        assert r.user_id == "user-1"
        assert r.animal_name == "Rex"
        assert r.animal_timezone == "America/New_York"
        assert r.times == ["08:00", "20:00"]
        assert r.dose == "1 tab"
        assert r.user_lead_time_minutes == 15
        assert r.notifications_enabled is True

    def test_one_row_per_member(self, store, household, make_regimen):
        store.add_user("Sam", user_id="user-2", lead_time_minutes=5)
        store.add_membership(household["household_id"], "user-2")
        make_regimen(times=["08:00"])

        regimens = store.get_active_regimens(utc(2026, 1, 15, 12, 0))

        assert [(r.user_id, r.user_lead_time_minutes) for r in regimens] == [
            ("user-1", 15),
            ("user-2", 5),
        ]

    def test_members_with_push_off_excluded(self, store, household, make_regimen):
        store.add_user("Quiet", user_id="user-2", push_notifications=False)
        store.add_membership(household["household_id"], "user-2")
        make_regimen(times=["08:00"])

        regimens = store.get_active_regimens(utc(2026, 1, 15, 12, 0))

        assert [r.user_id for r in regimens] == ["user-1"]

    def test_inactive_excluded(self, store, make_regimen):
        make_regimen(times=["08:00"], active=False)
        assert store.get_active_regimens(utc(2026, 1, 15, 12, 0)) == []

    def test_ended_regimen_excluded(self, store, make_regimen):
        make_regimen(times=["08:00"], end_date="2026-01-13")
        assert store.get_active_regimens(utc(2026, 1, 15, 12, 0)) == []

    def test_regimen_ending_today_included(self, store, make_regimen):
        make_regimen(times=["08:00"], end_date="2026-01-15")
        assert len(store.get_active_regimens(utc(2026, 1, 15, 12, 0))) == 1

    def test_final_local_day_west_of_utc_included(self, store, make_regimen):
        # 20:00 in Los Angeles on the end date is already the next UTC day.
        make_regimen(times=["20:00"], timezone_name="America/Los_Angeles", end_date="2026-06-10")
        assert len(store.get_active_regimens(utc(2026, 6, 11, 2, 40))) == 1

    def test_defaults_for_missing_timezone_and_lead_time(self, store):
        store.add_household("Other", household_id="hh-2")
        store.add_user("Pat", user_id="user-9", lead_time_minutes=None)
        store.add_membership("hh-2", "user-9")
        animal_id = store.add_animal("hh-2", "Milo")
        store.add_regimen(animal_id, "Prednisone", "FIXED", "2026-01-01", times=["09:00"])

        r = store.get_active_regimens(utc(2026, 1, 15, 12, 0))[0]

        assert r.animal_timezone == "America/New_York"
        assert r.user_lead_time_minutes == 15

    def test_unreadable_times_become_empty(self, store, tmp_db_path, make_regimen):
        regimen_id = make_regimen(times=["08:00"])
        conn = sqlite3.connect(tmp_db_path)
        conn.execute("UPDATE regimens SET times_local = 'eight' WHERE id = ?", (regimen_id,))
        conn.commit()
        conn.close()

        assert store.get_active_regimens(utc(2026, 1, 15, 12, 0))[0].times == []


class TestAdministrations:
    def test_latest_first_and_limit(self, store, make_regimen):
        regimen_id = make_regimen(schedule_type="INTERVAL", interval_hours=8)
        store.record_administration(regimen_id, recorded_at=utc(2026, 1, 15, 0, 5),
                                    scheduled_for=utc(2026, 1, 15, 0, 0))
        store.record_administration(regimen_id, recorded_at=utc(2026, 1, 15, 8, 2),
                                    scheduled_for=utc(2026, 1, 15, 8, 0))

        latest = store.get_administrations(regimen_id, limit=1)

        assert len(latest) == 1
        assert latest[0].recorded_at == utc(2026, 1, 15, 8, 2)
        assert latest[0].scheduled_for == utc(2026, 1, 15, 8, 0)

    def test_since_filters_on_scheduled_time(self, store, make_regimen):
        regimen_id = make_regimen(times=["08:00"])
        store.record_administration(regimen_id, recorded_at=utc(2026, 1, 15, 9, 0),
                                    scheduled_for=utc(2026, 1, 14, 8, 0))
        store.record_administration(regimen_id, recorded_at=utc(2026, 1, 15, 8, 10))

        history = store.get_administrations(regimen_id, since=utc(2026, 1, 15, 0, 0))

        assert len(history) == 1
        assert history[0].scheduled_for is None

    def test_other_regimens_not_returned(self, store, make_regimen):
        first = make_regimen(times=["08:00"])
        second = make_regimen(times=["08:00"])
        store.record_administration(first, recorded_at=utc(2026, 1, 15, 8, 0))

        assert store.get_administrations(second) == []


class TestNotificationLedger:
    def test_insert_if_absent_claims_once(self, store):
        assert store.insert_notification_if_absent(_entry(utc(2026, 1, 15, 8, 0)), 30) is True
        assert store.insert_notification_if_absent(_entry(utc(2026, 1, 15, 8, 20)), 30) is False
        assert len(store.list_notifications()) == 1

    def test_window_is_per_user_and_type(self, store):
        store.insert_notification_if_absent(_entry(utc(2026, 1, 15, 8, 0)), 30)

        assert store.insert_notification_if_absent(
            _entry(utc(2026, 1, 15, 8, 0), user_id="user-2"), 30,
        ) is True
        assert store.insert_notification_if_absent(
            _entry(utc(2026, 1, 15, 8, 0), type_=MEDICATION_OVERDUE), 30,
        ) is True

    def test_window_is_per_regimen(self, store):
        at = utc(2026, 1, 15, 8, 0)
        assert store.insert_notification_if_absent(_entry(at, regimen_id="regimen-1"), 30) is True
        assert store.insert_notification_if_absent(_entry(at, regimen_id="regimen-2"), 30) is True
        assert store.insert_notification_if_absent(
            _entry(utc(2026, 1, 15, 8, 10), regimen_id="regimen-1"), 30,
        ) is False
        assert sorted(e.regimen_id for e in store.list_notifications()) == ["regimen-1", "regimen-2"]

    def test_outside_window_is_new(self, store):
        store.insert_notification_if_absent(_entry(utc(2026, 1, 15, 8, 0)), 30)
        assert store.insert_notification_if_absent(_entry(utc(2026, 1, 15, 8, 31)), 30) is True

    def test_claim_sets_id(self, store):
        entry = _entry(utc(2026, 1, 15, 8, 0))
        store.insert_notification_if_absent(entry, 30)
        assert entry.id is not None

    def test_find_returns_latest(self, store):
        store.add_notification(_entry(utc(2026, 1, 15, 8, 0), type_=MEDICATION_OVERDUE,
                                      sent_at=utc(2026, 1, 15, 8, 30)))
        store.add_notification(_entry(utc(2026, 1, 15, 8, 0), type_=MEDICATION_OVERDUE,
                                      sent_at=utc(2026, 1, 15, 8, 45)))

        found = store.find_notification(
            "user-1", MEDICATION_OVERDUE, utc(2026, 1, 15, 7, 30), utc(2026, 1, 15, 8, 30),
        )

        assert found.sent_at == utc(2026, 1, 15, 8, 45)

    def test_find_filters_by_regimen(self, store):
        store.add_notification(_entry(utc(2026, 1, 15, 8, 0), type_=MEDICATION_OVERDUE,
                                      sent_at=utc(2026, 1, 15, 8, 30), regimen_id="regimen-1"))
        store.add_notification(_entry(utc(2026, 1, 15, 8, 0), type_=MEDICATION_OVERDUE,
                                      sent_at=utc(2026, 1, 15, 8, 45), regimen_id="regimen-2"))

        found = store.find_notification(
            "user-1", MEDICATION_OVERDUE, utc(2026, 1, 15, 7, 30), utc(2026, 1, 15, 8, 30),
            regimen_id="regimen-1",
        )

        assert found.regimen_id == "regimen-1"
        assert found.sent_at == utc(2026, 1, 15, 8, 30)

    def test_mark_sent(self, store):
        entry = NotificationQueueEntry(
            household_id="hh-1",
            user_id="user-1",
            type=MEDICATION_REMINDER,
            title="Rex Medication Reminder",
            body="Time to give Carprofen to Rex",
            scheduled_for=utc(2026, 1, 15, 8, 0),
            regimen_id="regimen-1",
        )
        store.insert_notification_if_absent(entry, 30, created_at=utc(2026, 1, 15, 7, 45))
        assert store.list_notifications()[0].sent_at is None

        store.mark_notification_sent(entry.id, utc(2026, 1, 15, 7, 46))

        assert store.list_notifications()[0].sent_at == utc(2026, 1, 15, 7, 46)

    def test_mark_sent_unknown_raises(self, store):
        with pytest.raises(ValueError):
            store.mark_notification_sent(999, utc(2026, 1, 15, 7, 46))

    def test_find_nothing(self, store):
        assert store.find_notification(
            "user-1", MEDICATION_OVERDUE, utc(2026, 1, 15, 7, 30), utc(2026, 1, 15, 8, 30),
        ) is None

    def test_delete_before(self, store):
        store.add_notification(_entry(utc(2026, 1, 1, 8, 0)))
        store.add_notification(_entry(utc(2026, 1, 14, 8, 0)))

        assert store.delete_notifications_before(utc(2026, 1, 8, 0, 0)) == 1
        assert [e.scheduled_for for e in store.list_notifications()] == [utc(2026, 1, 14, 8, 0)]

    def test_list_by_user(self, store):
        store.add_notification(_entry(utc(2026, 1, 15, 8, 0)))
        store.add_notification(_entry(utc(2026, 1, 15, 8, 0), user_id="user-2"))

        assert [e.user_id for e in store.list_notifications("user-2")] == ["user-2"]


class TestInventory:
    @pytest.mark.parametrize(
        "quantity, remaining, low",
        [
            (60, 12, True),
            (60, 13, False),
            (10, 3, True),
            (10, 4, False),
            (None, 2, True),
        ],
    )
    def test_low_threshold(self, store, household, quantity, remaining, low):
        store.add_inventory_item("hh-1", "Carprofen", quantity, remaining, item_id="item-1")
        assert bool(store.get_low_inventory_items()) is low

    def test_not_in_use_or_unknown_remaining_ignored(self, store, household):
        store.add_inventory_item("hh-1", "Spare", 60, 1, in_use=False)
        store.add_inventory_item("hh-1", "Unknown", 60, None)
        assert store.get_low_inventory_items() == []

    def test_lowest_ratio_first(self, store, household):
        store.add_inventory_item("hh-1", "A", 100, 10, item_id="a")
        store.add_inventory_item("hh-1", "B", 100, 2, item_id="b")

        assert [i.id for i in store.get_low_inventory_items()] == ["b", "a"]

    def test_household_recipients(self, store, household):
        store.add_user("Sam", user_id="user-2")
        store.add_user("Quiet", user_id="user-3", push_notifications=False)
        store.add_membership("hh-1", "user-2")
        store.add_membership("hh-1", "user-3")

        assert store.get_household_recipients("hh-1") == ["user-1", "user-2"]


class TestSubscriptions:
    def test_active_only(self, store, household):
        store.add_subscription("user-1", "https://push.example/a", "p", "a", subscription_id="sub-a")
        store.add_subscription("user-1", "https://push.example/b", "p", "a", subscription_id="sub-b")
        store.deactivate_subscription("sub-a")

        assert [s.id for s in store.get_active_subscriptions("user-1")] == ["sub-b"]

    def test_touch_sets_last_used(self, store, household):
        store.add_subscription("user-1", "https://push.example/a", "p", "a", subscription_id="sub-a")
        store.touch_subscription("sub-a", utc(2026, 1, 15, 8, 0))

        assert store.get_subscription("sub-a").last_used == utc(2026, 1, 15, 8, 0)

    def test_unknown_subscription_raises(self, store):
        with pytest.raises(ValueError):
            store.touch_subscription("missing", utc(2026, 1, 15, 8, 0))
        with pytest.raises(ValueError):
            store.deactivate_subscription("missing")

    def test_get_missing_returns_none(self, store):
        assert store.get_subscription("missing") is None


def test_store_creates_parent_directory(tmp_path):
    path = tmp_path / "nested" / "dir" / "vetmed.db"
    MedicationStore(db_path=str(path))
    assert path.exists()
