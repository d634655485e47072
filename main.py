"""
VetMed Reminders — Entry Point.

Single entry point: `python main.py` wires the store, dispatcher,
calculator and scheduler together and runs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from src.adapters.webpush_transport import create_push_transport
from src.config import settings
from src.core.notification_scheduler import Cadence, NotificationScheduler
from src.core.push_dispatcher import PushDispatcher
from src.core.regimen_calculator import RegimenCalculator
from src.data.db import MedicationStore

logger = logging.getLogger(__name__)


def build_scheduler() -> NotificationScheduler:
    """Construct the engine from settings. Nothing is started here."""
    store = MedicationStore()
    dispatcher = PushDispatcher(store, create_push_transport(settings))
    calculator = RegimenCalculator(store)
    return NotificationScheduler(
        store, calculator, dispatcher, Cadence.from_settings(settings),
    )


async def run() -> None:
    scheduler = build_scheduler()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    if settings.SCHEDULER_AUTOSTART:
        scheduler.start()
    else:
        logger.info("SCHEDULER_AUTOSTART is off; scheduler not started")

    await stop_event.wait()
    logger.info("Shutdown signal received")
    scheduler.stop()


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting VetMed notification service...")
    asyncio.run(run())


if __name__ == "__main__":
    main()
