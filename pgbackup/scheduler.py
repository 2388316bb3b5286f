"""
APScheduler configuration for pgbackup.

Runs the backup job on the cron expression in SCHEDULE, in the host's local
timezone (the same clock backup keys are stamped with).
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from pgbackup.backup.executor import execute_backup

logger = logging.getLogger(__name__)


# Nicknames understood by cron implementations but not by CronTrigger.from_crontab
CRON_ALIASES = {
    '@yearly': '0 0 1 1 *',
    '@annually': '0 0 1 1 *',
    '@monthly': '0 0 1 * *',
    '@weekly': '0 0 * * sun',
    '@daily': '0 0 * * *',
    '@midnight': '0 0 * * *',
    '@hourly': '0 * * * *',
}

BACKUP_JOB_ID = 'backup'

# crontab counts weekdays from Sunday (0 or 7), APScheduler from Monday
DAY_NAMES = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat']

_DAY_NUMBERS = {name: number for number, name in enumerate(DAY_NAMES)}


def _day_number(value: str) -> int:
    value = value.strip().lower()
    if value in _DAY_NUMBERS:
        return _DAY_NUMBERS[value]
    if not value.isdigit() or int(value) > 7:
        raise ValueError(f"Invalid day of week: {value!r}")
    return int(value)


def expand_day_of_week(field: str) -> str:
    """
    Rewrite a crontab day-of-week field as a list of day names.

    Lists, ranges and steps are expanded with crontab numbering (0 and 7
    are Sunday), so APScheduler never sees a weekday number.

    Raises:
        ValueError: If the field is not valid
    """
    if field == '*':
        return field

    days = set()
    for part in field.split(','):
        base, _, step = part.partition('/')
        if step:
            if not step.isdigit() or int(step) == 0:
                raise ValueError(f"Invalid step in day of week: {part!r}")
            step = int(step)
        else:
            step = 1

        if base == '*':
            first, last = 0, 6
        elif '-' in base:
            first, last = (_day_number(value) for value in base.split('-', 1))
        else:
            first = _day_number(base)
            last = 6 if step > 1 else first

        if first > last:
            raise ValueError(f"Invalid day of week range: {part!r}")
        days.update(number % 7 for number in range(first, last + 1, step))

    return ','.join(DAY_NAMES[number] for number in sorted(days))


def build_trigger(schedule: str) -> CronTrigger:
    """
    Parse a crontab expression or alias into a trigger.

    Raises:
        ValueError: If the expression is not valid
    """
    expression = CRON_ALIASES.get(schedule.strip().lower(), schedule.strip())
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Wrong number of fields; got {len(fields)}, expected 5")

    fields[4] = expand_day_of_week(fields[4])
    return CronTrigger.from_crontab(' '.join(fields))


def _execute_backup_wrapper(config):
    """
    Run one scheduled backup.

    Failures are logged; the scheduler keeps running and the next run
    retries.
    """
    try:
        result = execute_backup(config)
        logger.info(f"Scheduled backup finished (success={result.succeeded})")
    except Exception as e:
        logger.exception(f"Scheduled backup failed: {e}")


def create_scheduler(config) -> BlockingScheduler:
    """
    Create a scheduler with the backup job registered.

    Args:
        config: pgbackup Config with a SCHEDULE set

    Returns:
        BlockingScheduler (not started)
    """
    if not config.schedule:
        raise ValueError("SCHEDULE is not set")

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(job_defaults=job_defaults)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[config],
        trigger=build_trigger(config.schedule),
        id=BACKUP_JOB_ID,
        name='Scheduled backup',
        replace_existing=True
    )
    return scheduler


def run_scheduler(config):
    """Block, running backups on the configured schedule until interrupted."""
    scheduler = create_scheduler(config)
    logger.info(f"Scheduling backups with '{config.schedule}'")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
