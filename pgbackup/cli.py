"""Command line entry points (Typer)."""

import logging
from typing import Optional

import typer

from pgbackup import configure_logging
from pgbackup.config import Config, ConfigError
from pgbackup.backup.executor import execute_backup
from pgbackup.backup.naming import parse_timestamp
from pgbackup.backup.restore import execute_restore
from pgbackup.backup.storage import StorageError
from pgbackup.scheduler import run_scheduler

app = typer.Typer(
    name='pgbackup',
    help='Back up PostgreSQL to S3, and restore from it.',
    no_args_is_help=True,
    add_completion=False,
)
logger = logging.getLogger('pgbackup')


def _load_config() -> Config:
    """Read the environment; configuration errors exit with status 2."""
    try:
        config = Config.from_env()
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=2)
    configure_logging(config.log_level, config.log_dir)
    return config


def _run_backup(config: Config):
    try:
        result = execute_backup(config)
    except StorageError as e:
        logger.error(f"Backup aborted: {e}")
        raise typer.Exit(code=1)

    if not result.succeeded:
        raise typer.Exit(code=1)


@app.command()
def backup():
    """Run one backup now."""
    _run_backup(_load_config())


@app.command()
def restore(
    timestamp: Optional[str] = typer.Argument(
        None,
        help='Backup timestamp to restore (YYYY-MM-DDTHH:MM:SS). Defaults to the latest backup.'
    )
):
    """Restore from the latest backup, or from the one taken at TIMESTAMP."""
    when = None
    if timestamp is not None:
        try:
            when = parse_timestamp(timestamp)
        except ValueError:
            raise typer.BadParameter(
                f"{timestamp!r} is not a timestamp of the form YYYY-MM-DDTHH:MM:SS",
                param_hint='TIMESTAMP'
            )

    config = _load_config()
    try:
        result = execute_restore(config, when)
    except StorageError as e:
        logger.error(f"Restore aborted: {e}")
        raise typer.Exit(code=1)

    if not result.succeeded:
        for database, error in result.failures.items():
            typer.echo(f"Restore failed for {database}: {error}", err=True)
        raise typer.Exit(code=1)

    typer.echo("Restore complete.")


@app.command()
def run():
    """Back up on SCHEDULE, or once when SCHEDULE is unset."""
    config = _load_config()

    if not config.schedule:
        _run_backup(config)
        return

    try:
        run_scheduler(config)
    except ValueError as e:
        typer.echo(f"Configuration error: invalid SCHEDULE {config.schedule!r}: {e}", err=True)
        raise typer.Exit(code=2)


def main():
    app()


if __name__ == '__main__':
    main()
