# ========================
# src/pipeline/scheduler.py
# ========================

"""
Recurring Run Scheduler

Process-wide APScheduler instance that triggers pipeline runs on a configured
recurring schedule.

Lifecycle:
    get_scheduler()       creates the scheduler on first use
    start_scheduler()     registers one job per pipeline and starts it
    describe_schedule()   reports state and next fire times
    shutdown_scheduler()  stops it and forgets the instance
"""

import logging
from typing import Any, Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .errors import ConcurrentRunError
from ..utils.config import Config, TIME_OF_DAY_PATTERN

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None


def get_scheduler(timezone: str = "UTC") -> BackgroundScheduler:
    """Get or create the scheduler instance."""
    global _scheduler

    if _scheduler is None:
        _scheduler = BackgroundScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': ThreadPoolExecutor(max_workers=2)},
            job_defaults={
                'coalesce': True,  # Combine missed ticks into one
                'max_instances': 1,
                'misfire_grace_time': 60 * 5,
            },
            timezone=timezone,
        )
        logger.info("Created new BackgroundScheduler instance")

    return _scheduler


def build_trigger(config: Config) -> Optional[BaseTrigger]:
    """
    Build the recurring trigger described by the configuration.

    A cron expression wins over a time of day, which wins over an interval.

    Returns:
        The trigger, or None when no recurring schedule is configured.

    Raises:
        ValueError: If the configured expression is malformed
    """
    timezone = config.SCHEDULE_TIMEZONE

    if config.SCHEDULE_CRON:
        return CronTrigger.from_crontab(config.SCHEDULE_CRON, timezone=timezone)

    if config.SCHEDULE_TIME_OF_DAY:
        match = TIME_OF_DAY_PATTERN.match(config.SCHEDULE_TIME_OF_DAY)
        if not match:
            raise ValueError(f"SCHEDULE_TIME_OF_DAY must be HH:MM, got {config.SCHEDULE_TIME_OF_DAY!r}")
        return CronTrigger(hour=int(match.group(1)), minute=int(match.group(2)), timezone=timezone)

    if config.SCHEDULE_INTERVAL_MINUTES:
        return IntervalTrigger(minutes=int(config.SCHEDULE_INTERVAL_MINUTES), timezone=timezone)

    return None


def run_scheduled(orchestrator) -> None:
    """Scheduled job body: trigger a run unless one is already in progress."""
    try:
        run = orchestrator.trigger("scheduled")
    except ConcurrentRunError as e:
        logger.warning(f"Skipping scheduled run: {e}")
        return
    logger.info(f"Scheduled run {run.run_id} started for pipeline '{orchestrator.name}'")


def start_scheduler(orchestrators: Dict[str, Any], config: Config) -> bool:
    """
    Register a recurring job per pipeline and start the scheduler.

    Returns:
        bool: True if started, False if already running or nothing is scheduled
    """
    trigger = build_trigger(config)
    if trigger is None:
        logger.info("No recurring schedule configured; runs are on demand only")
        return False

    scheduler = get_scheduler(config.SCHEDULE_TIMEZONE)
    if scheduler.running:
        logger.info("Scheduler already running")
        return False

    for name, orchestrator in orchestrators.items():
        scheduler.add_job(
            run_scheduled,
            trigger=trigger,
            args=[orchestrator],
            id=f"pipeline:{name}",
            name=f"Recurring run of {name}",
            replace_existing=True,
        )
        logger.info(f"Scheduled pipeline '{name}' with {trigger}")

    scheduler.start()
    logger.info("Background scheduler started")
    return True


def shutdown_scheduler(wait: bool = True) -> None:
    """Gracefully shutdown the scheduler."""
    global _scheduler

    if _scheduler is not None:
        if _scheduler.running:
            _scheduler.shutdown(wait=wait)
            logger.info("Scheduler shutdown complete")
        _scheduler = None


def describe_schedule() -> Dict[str, Any]:
    """Report scheduler state and registered jobs."""
    if _scheduler is None:
        return {'running': False, 'jobs': []}

    jobs = []
    for job in _scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'trigger': str(job.trigger),
            'next_run_time': next_run.isoformat() if next_run else None,
        })
    return {'running': _scheduler.running, 'jobs': jobs}
