"""
APScheduler configuration and run triggering for pgshuttle.

Manages:
- The cron-scheduled pipeline run
- The optional run once at startup
- Manual "run now" triggers
- Cooperative cancellation on shutdown
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from pgshuttle.history import RunRecorder, mark_interrupted_runs
from pgshuttle.pipeline.executor import PipelineResult, run_pipeline
from pgshuttle.pipeline.settings import PipelineSettings

logger = logging.getLogger(__name__)

SCHEDULED_JOB_ID = 'pipeline_scheduled'
STARTUP_JOB_ID = 'pipeline_startup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

# Set on shutdown; running pipelines poll it and stop early
cancel_event = threading.Event()

# Held for the duration of a run so scheduled, startup and manual triggers never overlap
_run_lock = threading.Lock()


class RunInProgress(RuntimeError):
    """Raised when a manual trigger arrives while a run is active."""
    pass


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app
    cancel_event.clear()

    with app.app_context():
        interrupted = mark_interrupted_runs()
        if interrupted:
            logger.warning(f"Marked {interrupted} interrupted run(s) from a previous process as failed")

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Skip a firing while the previous run is still going
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    cron_expression = app.config['CRON_SCHEDULE']
    kind = app.config.get('PIPELINE_KIND', 'restore')

    scheduler.add_job(
        func=_execute_pipeline_wrapper,
        trigger=CronTrigger.from_crontab(cron_expression, timezone='UTC'),
        id=SCHEDULED_JOB_ID,
        name=f"Scheduled {kind}",
        replace_existing=True
    )
    logger.info(f"Scheduled {kind} pipeline ({cron_expression})")

    if app.config.get('RUN_ON_STARTUP'):
        scheduler.add_job(
            func=_execute_pipeline_wrapper,
            trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=1)),
            id=STARTUP_JOB_ID,
            name=f"Startup {kind}",
            replace_existing=True
        )
        logger.info(f"Startup {kind} run queued")

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """
    Stop the APScheduler.

    Signals any in-flight run to cancel, then waits for it to clean up.
    """
    cancel_event.set()

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("APScheduler stopped")


def run_pipeline_now() -> Optional[PipelineResult]:
    """
    Run the configured pipeline once, in the calling thread.

    This is the entry point for every trigger. A failed run is logged and
    returned as a PipelineResult; unexpected errors are logged so the
    scheduler keeps running.

    Returns:
        PipelineResult, or None if the run was skipped or could not start

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if flask_app is None:
        raise RuntimeError("Scheduler not initialized")

    if not _run_lock.acquire(blocking=False):
        logger.warning("A pipeline run is already in progress; skipping this trigger")
        return None

    try:
        with flask_app.app_context():
            settings = PipelineSettings.from_config(flask_app.config)
            logger.info(f"Initiating {settings.kind} run")
            result = run_pipeline(settings, cancel_event=cancel_event, listener=RunRecorder())
            logger.info(f"{settings.kind.capitalize()} run {result.run_id} finished with status: {result.status.value}")
            return result
    except Exception as e:
        logger.error(f"Error while running pipeline: {e}", exc_info=True)
        return None
    finally:
        _run_lock.release()


def _execute_pipeline_wrapper():
    """Job function used by APScheduler for every trigger."""
    run_pipeline_now()


def is_run_in_progress() -> bool:
    return _run_lock.locked()


def trigger_run_now() -> str:
    """
    Queue an immediate pipeline run.

    Returns:
        ID of the one-time scheduler job

    Raises:
        RuntimeError: If the scheduler is not initialized
        RunInProgress: If a run is already active
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if is_run_in_progress():
        raise RunInProgress("A pipeline run is already in progress")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{int(now.timestamp())}"

    # 1 second delay so the HTTP request returns before the run starts
    scheduler.add_job(
        func=_execute_pipeline_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name="Manual run",
        replace_existing=True
    )

    logger.info(f"Manually triggered pipeline run ({job_id})")
    return job_id


def get_scheduler_diagnostics() -> dict:
    """
    Get scheduler state for the status endpoint.

    Returns:
        Dict with scheduler state, jobs and whether a run is active
    """
    if scheduler is None:
        return {
            'initialized': False,
            'running': False,
            'run_in_progress': is_run_in_progress(),
            'jobs': []
        }

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return {
        'initialized': True,
        'running': scheduler.running,
        'state': str(scheduler.state),
        'run_in_progress': is_run_in_progress(),
        'jobs': jobs
    }
