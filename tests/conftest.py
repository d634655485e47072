"""Shared test fixtures and configuration.

Sets up environment variables before any src import (push disabled, no
real database) and provides a temp-file store plus a regimen factory.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("VAPID_PUBLIC_KEY", "")
os.environ.setdefault("VAPID_PRIVATE_KEY", "")
os.environ.setdefault("VAPID_SUBJECT", "")
os.environ.setdefault("SCHEDULER_AUTOSTART", "false")

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_vetmed.db")


@pytest.fixture
def store(tmp_db_path):
    """Return a MedicationStore backed by a temp file."""
    from src.data.db import MedicationStore
    return MedicationStore(db_path=tmp_db_path)


@pytest.fixture
def household(store):
    """A household with one caregiver (push on, 15 min lead time)."""
    household_id = store.add_household("Smith house", household_id="hh-1")
    user_id = store.add_user("Alex", user_id="user-1", lead_time_minutes=15)
    store.add_membership(household_id, user_id)
    return {"household_id": household_id, "user_id": user_id}


@pytest.fixture
def make_regimen(store, household):
    """Factory: create an animal + regimen in the shared household."""
    counter = {"n": 0}

    def _make(
        schedule_type="FIXED",
        times=None,
        interval_hours=None,
        timezone_name="America/New_York",
        start_date="2026-01-01",
        end_date=None,
        animal_name="Rex",
        medication_name="Carprofen",
        dose="25 mg",
        active=True,
    ):
        counter["n"] += 1
        animal_id = store.add_animal(
            household["household_id"], animal_name, timezone_name,
            animal_id=f"animal-{counter['n']}",
        )
        return store.add_regimen(
            animal_id,
            medication_name,
            schedule_type,
            start_date,
            dose=dose,
            times=times,
            interval_hours=interval_hours,
            end_date=end_date,
            active=active,
            regimen_id=f"regimen-{counter['n']}",
        )

    return _make
