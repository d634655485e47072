"""Regimen calculator — when are doses due, and which ones were missed.

Module-level functions are pure: they take a RegimenSchedule, the
administration history and "now", and return derived doses. The
RegimenCalculator class only adds the store reads around them.

Times of day are re-resolved in the animal's IANA zone for every local
date, so DST changes move the UTC instant rather than the wall-clock time.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from src.data.models import (
    DOSE_INTERVAL,
    DOSE_PRN,
    DOSE_SCHEDULED,
    FIXED,
    INTERVAL,
    PRN,
    TAPER,
    Administration,
    MissedDose,
    NotificationSummary,
    RegimenSchedule,
    ScheduledDose,
)
from src.ports.store_port import ScheduleStore

logger = logging.getLogger(__name__)

MISSED_GRACE_MINUTES = 15
ADMINISTRATION_TOLERANCE_MINUTES = 30
# A reminder whose notification time passed less than one upcoming-sweep
# tick ago is still offered; older ones belong to the missed-dose path.
NOTIFICATION_TOLERANCE_MINUTES = 5
SUMMARY_WINDOW_MINUTES = 1440


class RegimenError(ValueError):
    """Raised when a regimen's schedule fields cannot be interpreted."""


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def parse_time_of_day(raw: str) -> tuple[int, int]:
    """Parse "HH:MM" (or "HH:MM:SS") into (hour, minute).

    Raises ValueError on malformed input.
    """
    if not isinstance(raw, str) or ":" not in raw:
        raise ValueError(f"Not an HH:MM time: {raw!r}")
    parts = raw.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Not an HH:MM time: {raw!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Hour/minute out of range: {raw!r}")
    return hour, minute


def get_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (KeyError, ValueError) as exc:
        raise RegimenError(f"Unknown timezone {name!r}") from exc


def resolve_local_time(day: date, hour: int, minute: int, tz: ZoneInfo) -> datetime:
    """Return the UTC instant of a wall-clock time on a local date.

    Ambiguous times (fall-back) resolve to their first occurrence. Times
    that do not exist (spring-forward gap) resolve to the instant the
    clocks jump, i.e. the first valid moment after the requested time.
    """
    local = datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz)
    as_utc = local.astimezone(timezone.utc)
    if as_utc.astimezone(tz).replace(tzinfo=None) == local.replace(tzinfo=None):
        return as_utc

    # fold=1 reads the gap time with the post-transition offset, landing
    # before the jump; fold=0 lands after it.
    lo = local.replace(fold=1).astimezone(timezone.utc)
    hi = as_utc
    before = lo.astimezone(tz).utcoffset()
    while hi - lo > timedelta(minutes=1):
        mid = (lo + (hi - lo) / 2).replace(second=0, microsecond=0)
        if mid.astimezone(tz).utcoffset() == before:
            lo = mid
        else:
            hi = mid
    logger.debug(
        "%s %02d:%02d does not exist in %s, using %s", day, hour, minute, tz.key, hi,
    )
    return hi


def parse_boundary(value: str | None, tz: ZoneInfo, end: bool = False) -> datetime | None:
    """Parse a regimen start/end date into a UTC instant.

    Bare dates are local midnights in the animal's zone; an end date covers
    its whole day (the bound is the following midnight).
    """
    if not value:
        return None
    text = str(value).strip()
    try:
        if len(text) == 10:
            day = date.fromisoformat(text)
            if end:
                day += timedelta(days=1)
            return resolve_local_time(day, 0, 0, tz)
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise RegimenError(f"Unparseable date {value!r}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def _within_bounds(instant: datetime, start: datetime | None, end: datetime | None) -> bool:
    if start is not None and instant < start:
        return False
    if end is not None and instant >= end:
        return False
    return True


# ---------------------------------------------------------------------------
# Occurrence enumeration
# ---------------------------------------------------------------------------


def fixed_occurrences(
    regimen: RegimenSchedule, window_start: datetime, window_end: datetime,
) -> list[datetime]:
    """UTC instants of every local time-of-day in [window_start, window_end].

    Bad time strings are logged and skipped; the remaining ones still count.
    """
    tz = get_zone(regimen.animal_timezone)
    start_bound = parse_boundary(regimen.start_date, tz)
    end_bound = parse_boundary(regimen.end_date, tz, end=True)

    times: list[tuple[int, int]] = []
    for raw in regimen.times or []:
        try:
            times.append(parse_time_of_day(raw))
        except (ValueError, TypeError) as exc:
            logger.warning(
                "Regimen %s (animal %s): skipping time %r: %s",
                regimen.regimen_id, regimen.animal_id, raw, exc,
            )

    first_day = window_start.astimezone(tz).date() - timedelta(days=1)
    last_day = window_end.astimezone(tz).date() + timedelta(days=1)

    occurrences: set[datetime] = set()
    day = first_day
    while day <= last_day:
        for hour, minute in times:
            instant = resolve_local_time(day, hour, minute, tz)
            if window_start <= instant <= window_end and _within_bounds(
                instant, start_bound, end_bound,
            ):
                occurrences.add(instant)
        day += timedelta(days=1)
    return sorted(occurrences)


def interval_anchor(
    regimen: RegimenSchedule, last_given: Administration | None,
) -> tuple[datetime, bool]:
    """Return (anchor, anchor_is_dose).

    The last administration anchors the chain (its scheduled time, else
    when it was recorded); the next dose is one interval later. Without
    history the regimen start is itself the first dose.
    """
    if last_given is not None:
        return last_given.scheduled_for or last_given.recorded_at, False
    tz = get_zone(regimen.animal_timezone)
    start = parse_boundary(regimen.start_date, tz)
    if start is None:
        raise RegimenError("INTERVAL regimen has neither history nor start date")
    return start, True


def interval_occurrences(
    regimen: RegimenSchedule,
    last_given: Administration | None,
    window_start: datetime,
    window_end: datetime,
) -> list[datetime]:
    """anchor + k * intervalHours for every k that lands in the window."""
    step = timedelta(hours=float(regimen.interval_hours))
    anchor, anchor_is_dose = interval_anchor(regimen, last_given)
    end_bound = parse_boundary(regimen.end_date, get_zone(regimen.animal_timezone), end=True)

    k = 0 if anchor_is_dose else 1
    if window_start > anchor:
        k = max(k, math.ceil((window_start - anchor) / step))

    occurrences: list[datetime] = []
    instant = anchor + step * k
    while instant <= window_end:
        if instant >= window_start and _within_bounds(instant, None, end_bound):
            occurrences.append(instant)
        k += 1
        instant = anchor + step * k
    return occurrences


def occurrences_for_regimen(
    regimen: RegimenSchedule,
    last_given: Administration | None,
    window_start: datetime,
    window_end: datetime,
) -> tuple[list[datetime], str]:
    """Dispatch on schedule type. PRN never has occurrences."""
    kind = (regimen.schedule_type or "").upper()
    if kind == PRN:
        return [], DOSE_PRN
    if kind in (FIXED, TAPER):
        # Taper changes the amount, not the timing.
        if not regimen.times:
            logger.warning(
                "Regimen %s (animal %s): %s schedule without times",
                regimen.regimen_id, regimen.animal_id, kind,
            )
            return [], DOSE_SCHEDULED
        return fixed_occurrences(regimen, window_start, window_end), DOSE_SCHEDULED
    if kind == INTERVAL:
        if not regimen.interval_hours or float(regimen.interval_hours) <= 0:
            logger.warning(
                "Regimen %s (animal %s): INTERVAL schedule without positive intervalHours",
                regimen.regimen_id, regimen.animal_id,
            )
            return [], DOSE_INTERVAL
        return (
            interval_occurrences(regimen, last_given, window_start, window_end),
            DOSE_INTERVAL,
        )
    logger.warning(
        "Regimen %s (animal %s): unknown schedule type %r",
        regimen.regimen_id, regimen.animal_id, regimen.schedule_type,
    )
    return [], DOSE_SCHEDULED


def _make_dose(regimen: RegimenSchedule, scheduled: datetime, dose_type: str) -> ScheduledDose:
    return ScheduledDose(
        household_id=regimen.household_id,
        regimen_id=regimen.regimen_id,
        animal_id=regimen.animal_id,
        animal_name=regimen.animal_name,
        user_id=regimen.user_id,
        medication_name=regimen.medication_name,
        dose=regimen.dose,
        scheduled_time=scheduled,
        notification_time=scheduled - timedelta(minutes=regimen.user_lead_time_minutes),
        timezone=regimen.animal_timezone,
        type=dose_type,
    )


def upcoming_doses(
    regimen: RegimenSchedule,
    last_given: Administration | None,
    now: datetime,
    look_ahead_minutes: int,
) -> list[ScheduledDose]:
    """Doses due in (now, now + look_ahead] whose reminder is still current."""
    window_end = now + timedelta(minutes=look_ahead_minutes)
    occurrences, dose_type = occurrences_for_regimen(regimen, last_given, now, window_end)
    earliest_notice = now - timedelta(minutes=NOTIFICATION_TOLERANCE_MINUTES)

    doses = []
    for instant in occurrences:
        if instant <= now:
            continue
        dose = _make_dose(regimen, instant, dose_type)
        if dose.notification_time >= earliest_notice:
            doses.append(dose)
    return doses


def was_given(
    scheduled_time: datetime,
    history: list[Administration],
    tolerance_minutes: int = ADMINISTRATION_TOLERANCE_MINUTES,
) -> bool:
    """True if any administration's scheduledFor is within ±tolerance."""
    tolerance = timedelta(minutes=tolerance_minutes)
    for admin in history:
        if admin.scheduled_for is None:
            continue
        if abs(admin.scheduled_for - scheduled_time) <= tolerance:
            return True
    return False


def missed_doses(
    regimen: RegimenSchedule,
    last_given: Administration | None,
    history: list[Administration],
    now: datetime,
    look_back_minutes: int,
) -> list[MissedDose]:
    """Doses in [now - look_back, now) not given and more than 15 min late."""
    window_start = now - timedelta(minutes=look_back_minutes)
    occurrences, dose_type = occurrences_for_regimen(regimen, last_given, window_start, now)

    missed = []
    for instant in occurrences:
        if instant >= now or was_given(instant, history):
            continue
        overdue = (now - instant).total_seconds() / 60
        if overdue <= MISSED_GRACE_MINUTES:
            continue
        dose = _make_dose(regimen, instant, dose_type)
        missed.append(MissedDose(**vars(dose), minutes_overdue=round(overdue)))
    return missed


# ---------------------------------------------------------------------------
# Store-backed calculator
# ---------------------------------------------------------------------------


class RegimenCalculator:
    """Computes due and missed doses across all active regimens."""

    def __init__(self, store: ScheduleStore) -> None:
        self._store = store

    def get_active_regimens(self, now: datetime | None = None) -> list[RegimenSchedule]:
        now = now or datetime.now(timezone.utc)
        return [r for r in self._store.get_active_regimens(now) if r.notifications_enabled]

    def _last_given(self, regimen: RegimenSchedule, cache: dict) -> Administration | None:
        if (regimen.schedule_type or "").upper() != INTERVAL:
            return None
        key = ("last", regimen.regimen_id)
        if key not in cache:
            latest = self._store.get_administrations(regimen.regimen_id, limit=1)
            cache[key] = latest[0] if latest else None
        return cache[key]

    def calculate_scheduled_doses(
        self, look_ahead_minutes: int = 60, now: datetime | None = None,
    ) -> list[ScheduledDose]:
        """Upcoming doses across all regimens, earliest notification first."""
        now = now or datetime.now(timezone.utc)
        cache: dict = {}
        doses: list[ScheduledDose] = []

        for regimen in self.get_active_regimens(now):
            try:
                last_given = self._last_given(regimen, cache)
                doses.extend(upcoming_doses(regimen, last_given, now, look_ahead_minutes))
            except Exception as exc:
                logger.error(
                    "Skipping regimen %s (animal %s) in upcoming calculation: %s",
                    regimen.regimen_id, regimen.animal_id, exc,
                )

        doses.sort(key=lambda d: d.notification_time)
        return doses

    def calculate_missed_doses(
        self, look_back_minutes: int = 240, now: datetime | None = None,
    ) -> list[MissedDose]:
        """Overdue, unrecorded doses, most overdue first."""
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(minutes=look_back_minutes + ADMINISTRATION_TOLERANCE_MINUTES)
        cache: dict = {}
        missed: list[MissedDose] = []

        for regimen in self.get_active_regimens(now):
            try:
                last_given = self._last_given(regimen, cache)
                key = ("history", regimen.regimen_id)
                if key not in cache:
                    cache[key] = self._store.get_administrations(regimen.regimen_id, since=since)
                missed.extend(
                    missed_doses(regimen, last_given, cache[key], now, look_back_minutes)
                )
            except Exception as exc:
                logger.error(
                    "Skipping regimen %s (animal %s) in missed-dose calculation: %s",
                    regimen.regimen_id, regimen.animal_id, exc,
                )

        missed.sort(key=lambda d: d.minutes_overdue, reverse=True)
        return missed

    def get_notification_summary(
        self, user_id: str, now: datetime | None = None,
    ) -> NotificationSummary:
        """Counts over the next/last 24 hours for one user."""
        now = now or datetime.now(timezone.utc)
        upcoming = [
            d for d in self.calculate_scheduled_doses(SUMMARY_WINDOW_MINUTES, now=now)
            if d.user_id == user_id
        ]
        overdue = [
            d for d in self.calculate_missed_doses(SUMMARY_WINDOW_MINUTES, now=now)
            if d.user_id == user_id
        ]
        return NotificationSummary(
            upcoming_count=len(upcoming),
            overdue_count=len(overdue),
            next_notification=upcoming[0] if upcoming else None,
        )
