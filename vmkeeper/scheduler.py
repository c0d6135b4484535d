"""
APScheduler configuration for vmkeeper.

Manages:
- The nightly backup run (cron expression from the backup settings)
- Manual "run now" triggers
"""

import logging
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from vmkeeper.backup.executor import execute_backup
from vmkeeper.backup.settings import ConfigurationError, load_settings


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'nightly_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Returns:
        The scheduler, or None when no schedule is configured

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    try:
        settings = load_settings(app.config['BACKUP_CONFIG_FILE'])
    except ConfigurationError as e:
        logger.error(f"Scheduler not started: {e}")
        return None

    if not settings.schedule_cron:
        logger.info("No schedule_cron in backup settings - runs must be triggered manually")
        return None

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    # A single worker: runs never overlap
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one run at a time
        'misfire_grace_time': 3600  # 1 hour grace period for misfires
    }

    timezone_name = app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone_name
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=CronTrigger.from_crontab(settings.schedule_cron, timezone=timezone_name),
        id=BACKUP_JOB_ID,
        name='Nightly VM Backup',
        replace_existing=True
    )
    logger.info(f"Scheduled backup run: {settings.schedule_cron} ({timezone_name})")

    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _execute_backup_wrapper():
    """
    Execute a backup run in scheduler context.

    Runs within the stored Flask app context so the database session is
    available to the executor.
    """
    global flask_app

    with flask_app.app_context():
        try:
            logger.info("Scheduler starting backup run")
            run = execute_backup(flask_app.config['BACKUP_CONFIG_FILE'])
            logger.info(f"Backup run {run.run_id} finished with status: {run.status}")
        except ConfigurationError as e:
            logger.error(f"Scheduled backup run not started: {e}")


def trigger_backup_now() -> str:
    """
    Schedule a backup run to start immediately.

    Returns:
        ID of the one-off scheduler job

    Raises:
        RuntimeError: If the scheduler is not running
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    job_id = f"manual_{int(datetime.now(timezone.utc).timestamp())}"

    # 1 second delay to avoid racing the request that triggered it
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=1)),
        id=job_id,
        name='Manual VM Backup',
        replace_existing=False
    )

    logger.info(f"Manually triggered backup run: {job_id}")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]
