"""
VetMed Reminders — Notification Scheduler.

Four periodic jobs drive the engine:

- medicationReminders: every 5 minutes, reminders for doses due in the
  next 30 minutes. Deduplicated against the notification ledger.
- missedDoses: every 15 minutes, overdue alerts for doses from the last
  4 hours. Re-sent on every tick while the dose stays unrecorded.
- inventoryWarnings: daily, low-stock warnings.
- cleanup: daily, drops ledger rows past the retention window.

The scheduler holds no state between ticks; everything it needs to avoid
duplicate reminders lives in the ledger, so a restarted process (or a
second instance on the same database) picks up where the last tick ended.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.core.push_dispatcher import SendSummary, low_inventory_data
from src.data.models import (
    LOW_INVENTORY,
    MEDICATION_OVERDUE,
    MEDICATION_REMINDER,
    MissedDose,
    NotificationQueueEntry,
    ScheduledDose,
)
from src.data.push_payloads import MedicationReminderData

if TYPE_CHECKING:
    from apscheduler.job import Job

    from src.config import Settings
    from src.core.push_dispatcher import PushDispatcher
    from src.core.regimen_calculator import RegimenCalculator
    from src.ports.store_port import NotificationLedger

logger = logging.getLogger(__name__)

# A reminder goes out on the tick closest to its notification time.
SEND_WINDOW_MINUTES = 5
# Ledger rows within this distance of a dose count as "already reminded".
DEDUP_WINDOW_MINUTES = 30

MEDICATION_REMINDERS_JOB = "medicationReminders"
MISSED_DOSES_JOB = "missedDoses"
INVENTORY_WARNINGS_JOB = "inventoryWarnings"
CLEANUP_JOB = "cleanup"


@dataclass
class Cadence:
    """Job timing; defaults are the production contract."""

    reminder_interval_minutes: int = 5
    reminder_lookahead_minutes: int = 30
    missed_interval_minutes: int = 15
    missed_lookback_minutes: int = 240
    inventory_hour: int = 9
    cleanup_hour: int = 2
    retention_days: int = 7
    job_timeout_seconds: int = 300

    @classmethod
    def from_settings(cls, config: Settings) -> Cadence:
        return cls(
            reminder_interval_minutes=config.REMINDER_INTERVAL_MINUTES,
            reminder_lookahead_minutes=config.REMINDER_LOOKAHEAD_MINUTES,
            missed_interval_minutes=config.MISSED_DOSE_INTERVAL_MINUTES,
            missed_lookback_minutes=config.MISSED_DOSE_LOOKBACK_MINUTES,
            inventory_hour=config.INVENTORY_CHECK_HOUR,
            cleanup_hour=config.CLEANUP_HOUR,
            retention_days=config.NOTIFICATION_RETENTION_DAYS,
            job_timeout_seconds=config.JOB_TIMEOUT_SECONDS,
        )


@dataclass
class JobHandle:
    """A named, cancelable registration in the job engine."""

    name: str
    job: Job

    def cancel(self) -> None:
        self.job.remove()


@dataclass
class SchedulerStatus:
    is_running: bool
    jobs: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationScheduler:
    """Periodic orchestration of the calculator and the dispatcher."""

    def __init__(
        self,
        store: NotificationLedger,
        calculator: RegimenCalculator,
        dispatcher: PushDispatcher,
        cadence: Cadence | None = None,
    ) -> None:
        self._store = store
        self._calculator = calculator
        self._dispatcher = dispatcher
        self._cadence = cadence or Cadence()
        self._engine: AsyncIOScheduler | None = None
        self._jobs: list[JobHandle] = []
        self._inflight: set[asyncio.Task] = set()
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _job_specs(self) -> list[tuple[str, object, Callable[[], Awaitable[int]]]]:
        c = self._cadence
        return [
            (
                MEDICATION_REMINDERS_JOB,
                IntervalTrigger(minutes=c.reminder_interval_minutes, timezone="UTC"),
                self.process_medication_reminders,
            ),
            (
                MISSED_DOSES_JOB,
                IntervalTrigger(minutes=c.missed_interval_minutes, timezone="UTC"),
                self.process_missed_doses,
            ),
            (
                INVENTORY_WARNINGS_JOB,
                CronTrigger(hour=c.inventory_hour, minute=0, timezone="UTC"),
                self.process_inventory_warnings,
            ),
            (
                CLEANUP_JOB,
                CronTrigger(hour=c.cleanup_hour, minute=0, timezone="UTC"),
                self.cleanup_old_notifications,
            ),
        ]

    def start(self) -> None:
        """Register all jobs and start ticking. Must run inside an event loop."""
        if self._running:
            logger.info("Notification scheduler is already running")
            return

        if not self._dispatcher.is_enabled():
            logger.warning(
                "Push notifications are disabled (VAPID keys not configured). "
                "Scheduler will run but won't send notifications."
            )

        logger.info("Starting notification scheduler...")
        self._engine = AsyncIOScheduler(timezone="UTC")
        for name, trigger, func in self._job_specs():
            job = self._engine.add_job(
                self._run_job,
                trigger,
                args=[name, func],
                id=name,
                name=name,
                max_instances=1,
                coalesce=True,
            )
            self._jobs.append(JobHandle(name=name, job=job))
            logger.info("Registered %s job (%s)", name, trigger)

        self._engine.start()
        self._running = True
        logger.info("Notification scheduler started")

    def stop(self) -> None:
        """Cancel all jobs. A tick already in progress is left to finish."""
        if not self._running:
            logger.info("Notification scheduler is not running")
            return

        logger.info("Stopping notification scheduler...")
        for handle in self._jobs:
            handle.cancel()
            logger.info("Stopped %s job", handle.name)
        self._jobs.clear()

        if self._engine is not None:
            self._engine.shutdown(wait=False)
            self._engine = None
        self._running = False
        logger.info("Notification scheduler stopped")

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self._running,
            jobs=[handle.name for handle in self._jobs],
        )

    async def _run_job(self, name: str, func: Callable[[], Awaitable[int]]) -> None:
        tick = asyncio.ensure_future(self._run_tick(name, func))
        self._inflight.add(tick)
        tick.add_done_callback(self._inflight.discard)
        # Engine shutdown cancels this wrapper, not the tick itself.
        await asyncio.shield(tick)

    async def _run_tick(self, name: str, func: Callable[[], Awaitable[int]]) -> None:
        try:
            await asyncio.wait_for(func(), timeout=self._cadence.job_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(
                "Job %s exceeded %ds and was abandoned",
                name, self._cadence.job_timeout_seconds,
            )
        except Exception as exc:
            logger.error("Job %s failed: %s", name, exc, exc_info=True)

    # ------------------------------------------------------------------
    # Upcoming reminders
    # ------------------------------------------------------------------

    def should_send_notification(
        self, dose: ScheduledDose, now: datetime,
    ) -> NotificationQueueEntry | None:
        """Tick-alignment filter plus an atomic claim in the ledger.

        Returns the claimed row only for the caller that inserted it, so the
        dose is reminded at most once even across processes. The claim is
        keyed by user, regimen and time; sent_at is stamped after delivery.
        """
        minutes_until = (dose.notification_time - now).total_seconds() / 60
        if abs(minutes_until) > SEND_WINDOW_MINUTES:
            return None

        entry = NotificationQueueEntry(
            household_id=dose.household_id,
            user_id=dose.user_id,
            type=MEDICATION_REMINDER,
            title=f"{dose.animal_name} Medication Reminder",
            body=f"Time to give {dose.medication_name} to {dose.animal_name}",
            scheduled_for=dose.scheduled_time,
            regimen_id=dose.regimen_id,
        )
        if not self._store.insert_notification_if_absent(
            entry, DEDUP_WINDOW_MINUTES, created_at=now,
        ):
            logger.debug(
                "Reminder for regimen %s / user %s at %s already sent",
                dose.regimen_id, dose.user_id, dose.scheduled_time.isoformat(),
            )
            return None
        return entry

    async def process_medication_reminders(self, now: datetime | None = None) -> int:
        """Send reminders for doses coming due. Returns how many fired."""
        now = now or _utcnow()
        upcoming = self._calculator.calculate_scheduled_doses(
            self._cadence.reminder_lookahead_minutes, now=now,
        )
        logger.info("Processing %d upcoming medication reminders", len(upcoming))

        fired = 0
        for dose in upcoming:
            try:
                claim = self.should_send_notification(dose, now)
                if claim is None:
                    continue
                result = await self._send_reminder(dose)
                if result.sent:
                    self._store.mark_notification_sent(claim.id, now)
                fired += 1
            except Exception as exc:
                logger.error(
                    "Failed to send medication reminder for regimen %s (animal %s): %s",
                    dose.regimen_id, dose.animal_id, exc,
                )
        return fired

    async def _send_reminder(self, dose: ScheduledDose) -> SendSummary:
        result = await self._dispatcher.send_medication_reminder(
            dose.user_id,
            MedicationReminderData(
                animal_id=dose.animal_id,
                animal_name=dose.animal_name,
                regimen_id=dose.regimen_id,
                medication_name=dose.medication_name,
                dose=dose.dose,
                due_time=dose.scheduled_time.isoformat(),
                is_overdue=False,
            ),
        )
        logger.info(
            "Sent medication reminder for %s - %s (sent: %d, failed: %d)",
            dose.animal_name, dose.medication_name, result.sent, result.failed,
        )
        return result

    # ------------------------------------------------------------------
    # Missed doses
    # ------------------------------------------------------------------

    async def process_missed_doses(self, now: datetime | None = None) -> int:
        """Alert on every overdue dose. No ledger gate: this escalates."""
        now = now or _utcnow()
        missed = self._calculator.calculate_missed_doses(
            self._cadence.missed_lookback_minutes, now=now,
        )
        logger.info("Processing %d missed doses", len(missed))

        fired = 0
        for dose in missed:
            try:
                await self._send_overdue(dose, now)
                fired += 1
            except Exception as exc:
                logger.error(
                    "Failed to send overdue reminder for regimen %s (animal %s): %s",
                    dose.regimen_id, dose.animal_id, exc,
                )
        return fired

    async def _send_overdue(self, dose: MissedDose, now: datetime) -> None:
        window = timedelta(minutes=DEDUP_WINDOW_MINUTES)
        previous = self._store.find_notification(
            dose.user_id, MEDICATION_OVERDUE,
            dose.scheduled_time - window, dose.scheduled_time + window,
            regimen_id=dose.regimen_id,
        )
        if previous is not None:
            dose.last_attempted_notification = previous.sent_at

        result = await self._dispatcher.send_medication_reminder(
            dose.user_id,
            MedicationReminderData(
                animal_id=dose.animal_id,
                animal_name=dose.animal_name,
                regimen_id=dose.regimen_id,
                medication_name=dose.medication_name,
                dose=dose.dose,
                due_time=dose.scheduled_time.isoformat(),
                is_overdue=True,
                minutes_late=dose.minutes_overdue,
            ),
        )
        self._store.add_notification(
            NotificationQueueEntry(
                household_id=dose.household_id,
                user_id=dose.user_id,
                type=MEDICATION_OVERDUE,
                title=f"{dose.animal_name} Overdue Medication",
                body=(
                    f"{dose.medication_name} for {dose.animal_name} "
                    f"is {dose.minutes_overdue} minutes late"
                ),
                scheduled_for=dose.scheduled_time,
                sent_at=now if result.sent else None,
                regimen_id=dose.regimen_id,
            ),
            created_at=now,
        )
        logger.info(
            "Sent overdue reminder for %s - %s (%d minutes late, previous alert: %s, sent: %d, failed: %d)",
            dose.animal_name, dose.medication_name, dose.minutes_overdue,
            dose.last_attempted_notification.isoformat() if dose.last_attempted_notification else "none",
            result.sent, result.failed,
        )

    # ------------------------------------------------------------------
    # Daily jobs
    # ------------------------------------------------------------------

    async def process_inventory_warnings(self, now: datetime | None = None) -> int:
        """Warn household members about low-stock medication."""
        now = now or _utcnow()
        items = self._store.get_low_inventory_items()
        logger.info("Processing %d low inventory items", len(items))

        fired = 0
        for item in items:
            data = low_inventory_data(item)
            for user_id in self._store.get_household_recipients(item.household_id):
                try:
                    result = await self._dispatcher.send_low_inventory_warning(user_id, data)
                    self._store.add_notification(
                        NotificationQueueEntry(
                            household_id=item.household_id,
                            user_id=user_id,
                            type=LOW_INVENTORY,
                            title="Low Inventory Warning",
                            body=f"{item.medication_name} is running low",
                            scheduled_for=now,
                            sent_at=now if result.sent else None,
                        ),
                        created_at=now,
                    )
                    fired += 1
                    logger.info(
                        "Sent low inventory warning for %s to user %s (sent: %d, failed: %d)",
                        item.medication_name, user_id, result.sent, result.failed,
                    )
                except Exception as exc:
                    logger.error(
                        "Failed to send low inventory warning for item %s to user %s: %s",
                        item.id, user_id, exc,
                    )
        return fired

    async def cleanup_old_notifications(self, now: datetime | None = None) -> int:
        """Delete ledger rows older than the retention window."""
        now = now or _utcnow()
        cutoff = now - timedelta(days=self._cadence.retention_days)
        deleted = self._store.delete_notifications_before(cutoff)
        logger.info("Cleaned up %d old notifications", deleted)
        return deleted
