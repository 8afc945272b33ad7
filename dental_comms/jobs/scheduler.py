"""Scheduler process for recurring dispatch jobs.

Run separately from the API and CLI using:
    python -m dental_comms.jobs.scheduler --channels channels.json --appointments appointments.json
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime
from typing import Sequence
from zoneinfo import ZoneInfo

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from dental_comms.adapters.appointments import InMemoryAppointmentRepository
from dental_comms.jobs.tasks import (
    CommsConfig,
    dispatch_tick,
    load_appointments,
    load_channels,
    load_clinic_config,
    purge_finished_jobs,
    reset_channel_counters,
    resolve_config,
    sweep_alerts,
)
from dental_comms.orchestration.service import CommsService, build_service
from dental_comms.utils.phone import PhoneRules

DISPATCH_JOB_ID = "reminder_dispatch_tick"
RESET_JOB_ID = "channel_counter_reset"
SWEEP_JOB_ID = "alert_sweep"
PURGE_JOB_ID = "terminal_job_purge"

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure process-wide logging for scheduler mode."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _log_job_state(scheduler: BlockingScheduler, event: JobExecutionEvent, tz: ZoneInfo) -> None:
    """Log last and next run metadata for observability."""
    job = scheduler.get_job(event.job_id)
    job_next_run = getattr(job, "next_run_time", None) if job else None
    next_run = job_next_run.isoformat() if job_next_run else "none"
    last_run_at = (
        event.scheduled_run_time.astimezone(tz).isoformat()
        if event.scheduled_run_time
        else datetime.now(tz=tz).isoformat()
    )

    if event.exception:
        logger.error(
            "Job %s failed at %s; next run at %s",
            event.job_id,
            last_run_at,
            next_run,
            exc_info=event.exception,
        )
        return

    # The dispatch tick runs every minute; only log its failures.
    if event.job_id != DISPATCH_JOB_ID:
        logger.info("Job %s completed at %s; next run at %s", event.job_id, last_run_at, next_run)


def build_scheduler(service: CommsService, config: CommsConfig) -> BlockingScheduler:
    """Build and configure the scheduler instance."""
    tz = ZoneInfo(config.timezone)
    scheduler = BlockingScheduler(timezone=tz)

    scheduler.add_job(
        dispatch_tick,
        trigger=IntervalTrigger(seconds=config.tick_seconds, timezone=tz),
        args=[service],
        id=DISPATCH_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    # Hourly so every channel timezone crosses midnight within the hour.
    scheduler.add_job(
        reset_channel_counters,
        trigger=CronTrigger(minute=0, timezone=tz),
        args=[service],
        id=RESET_JOB_ID,
        replace_existing=True,
        coalesce=True,
    )
    scheduler.add_job(
        sweep_alerts,
        trigger=IntervalTrigger(minutes=1, timezone=tz),
        args=[service],
        id=SWEEP_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.add_job(
        purge_finished_jobs,
        trigger=CronTrigger(hour=3, minute=30, timezone=tz),
        args=[service],
        id=PURGE_JOB_ID,
        replace_existing=True,
        coalesce=True,
        misfire_grace_time=1800,
    )

    scheduler.add_listener(
        lambda event: _log_job_state(scheduler, event, tz),
        EVENT_JOB_EXECUTED | EVENT_JOB_ERROR,
    )

    logger.info(
        "Registered %s every %ss plus counter reset, alert sweep and nightly purge (%s)",
        DISPATCH_JOB_ID,
        config.tick_seconds,
        tz.key,
    )
    return scheduler


def _build_service_from_fixtures(args: argparse.Namespace, config: CommsConfig) -> CommsService:
    phone_rules = PhoneRules(config.default_country_code, config.default_area_code, config.explicit_country)
    appointments = InMemoryAppointmentRepository(
        load_appointments(args.appointments) if args.appointments else [],
        clinic_config=load_clinic_config(args.clinic),
        phone_rules=phone_rules,
    )
    channels = load_channels(args.channels) if args.channels else []
    return build_service(config, appointments, channels=channels)


def main(argv: Sequence[str] | None = None) -> None:
    """Entrypoint for a dedicated scheduler process."""
    parser = argparse.ArgumentParser(description="Run the recurring reminder dispatch scheduler")
    parser.add_argument(
        "--once",
        action="store_true",
        help=f"Execute {DISPATCH_JOB_ID} immediately and exit (manual mode)",
    )
    parser.add_argument("--channels", help="JSON file with the sending channels")
    parser.add_argument("--appointments", help="JSON file with appointments to remind")
    parser.add_argument("--clinic", help="JSON file with the clinic configuration")
    args = parser.parse_args(argv)

    configure_logging()
    config = resolve_config()
    service = _build_service_from_fixtures(args, config)

    if args.once:
        logger.info("Running in manual mode: executing %s once", DISPATCH_JOB_ID)
        dispatch_tick(service)
        logger.info("Manual execution of %s completed", DISPATCH_JOB_ID)
        return

    scheduler = build_scheduler(service, config)
    logger.info("Starting scheduler process")
    scheduler.start()


if __name__ == "__main__":
    main()
