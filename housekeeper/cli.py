"""Command line entry point of Housekeeper.

Without a command Housekeeper prepares the database and storage, runs the
backup schedule and blocks until it receives SIGINT or SIGTERM. ``backup``
runs a single backup, ``healthcheck`` asks a running instance whether it is
ready.
"""

import os
import sys
import signal
import logging
import threading

import click

from housekeeper import __version__, configure_logging
from housekeeper.backup.executor import BackupError
from housekeeper.backup.storage import StorageError
from housekeeper.config import ConfigError
from housekeeper.database import DatabaseError
from housekeeper.health import HealthcheckError, healthcheck as check_health
from housekeeper.scheduler import SchedulerError
from housekeeper.service import Housekeeper


logger = logging.getLogger('housekeeper')

SHUTDOWN_TIMEOUT = 5 * 60

STARTUP_ERRORS = (DatabaseError, StorageError, HealthcheckError, SchedulerError)


def _create_housekeeper(healthcheck: bool = True) -> Housekeeper:
    """Load config and prepare; exit non-zero on startup errors."""
    try:
        housekeeper = Housekeeper.from_environment()
        housekeeper.prepare(healthcheck=healthcheck)
    except ConfigError as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)
    except STARTUP_ERRORS as e:
        logger.error(str(e))
        sys.exit(1)
    return housekeeper


def _wait_for_signal():
    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    while not stop.wait(1):
        pass


@click.group(invoke_without_command=True, context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Housekeeper - scheduled database and directory backups."""
    if ctx.invoked_subcommand is not None:
        return

    configure_logging()
    housekeeper = _create_housekeeper()

    try:
        housekeeper.start_schedule()
    except SchedulerError as e:
        logger.error(str(e))
        sys.exit(1)

    _wait_for_signal()

    finished = housekeeper.stop_schedule(SHUTDOWN_TIMEOUT)
    housekeeper.shutdown()

    if not finished:
        # worker threads are joined at interpreter exit, leave without them
        logging.shutdown()
        os._exit(1)


@cli.command()
def backup() -> None:
    """Run a single backup and exit."""
    configure_logging()
    housekeeper = _create_housekeeper(healthcheck=False)

    try:
        housekeeper.backup()
    except BackupError as e:
        logger.error(str(e))
        sys.exit(1)


@cli.command()
def healthcheck() -> None:
    """Exit 0 if the running instance is ready."""
    try:
        check_health()
    except HealthcheckError as e:
        click.echo(f"check failed: {e}", err=True)
        sys.exit(1)


def main():
    cli()


if __name__ == '__main__':
    main()
