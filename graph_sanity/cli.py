"""CLI interface for graph-sanity using Click."""

import logging
import os
import signal
import sys
import threading
from typing import Optional

import click

from . import __version__
from .config import ProbeSettings
from .errors import ConfigError
from .probe.runner import run_probe
from .probe.verifier import PollPolicy

logger = logging.getLogger(__name__)


def _colorize(text: str, color: str) -> str:
    """Colorize text using ANSI codes."""
    colors = {
        "red": "\033[91m",
        "green": "\033[92m",
        "reset": "\033[0m",
    }
    if not sys.stdout.isatty():
        return text
    return f"{colors.get(color, '')}{text}{colors['reset']}"


def _print_error(message: str):
    print(_colorize(f"❌ {message}", "red"))


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@click.command()
@click.option("--app-id", help="Object id of the application under test "
              "(default: $SUT_APPLICATION_OBJECT_ID)")
@click.option("--parallel", type=click.IntRange(min=1),
              help="Concurrent addPassword calls (default: $PARALLEL_REQUESTS or 20)")
@click.option("--settle", type=click.FloatRange(min=0),
              help="Seconds to wait before reading back (default: $SETTLE_SECONDS or 10)")
@click.option("--poll-max-wait", type=click.FloatRange(min=0),
              help="Re-read with exponential backoff for up to this many seconds "
              "after settling instead of reading once")
@click.option("--retry-attempts", type=click.IntRange(min=0),
              help="Transport retries per request (default: $RETRY_ATTEMPTS or 3)")
@click.option("--timeout", type=click.IntRange(min=1),
              help="Per-request timeout in seconds (default: $REQUEST_TIMEOUT or 30)")
@click.option("--json", "json_output", is_flag=True, help="Output results as JSON")
@click.option("--skip-cleanup", is_flag=True, help="Leave created credentials on the application")
@click.option("--i-accept-side-effects", "accept_side_effects", is_flag=True,
              help="Confirm that the probe may add and remove credentials")
@click.option("-v", "--verbose", is_flag=True, help="Log requests and state transitions to stderr")
@click.version_option(version=__version__)
def main(
    app_id: Optional[str],
    parallel: Optional[int],
    settle: Optional[float],
    poll_max_wait: Optional[float],
    retry_attempts: Optional[int],
    timeout: Optional[int],
    json_output: bool,
    skip_cleanup: bool,
    accept_side_effects: bool,
    verbose: bool,
):
    """Create password credentials concurrently on a Microsoft Graph application
    and verify every one of them becomes visible.

    Identity and target come from the environment (SUBSCRIPTION_ID, TENANT_ID,
    CLIENT_ID, CLIENT_SECRET, SUT_APPLICATION_OBJECT_ID); options override it.

    Examples:

    \b
      graph-sanity --i-accept-side-effects
      graph-sanity --app-id 00000000-0000-0000-0000-000000000000 --parallel 50 --json --i-accept-side-effects
      graph-sanity --poll-max-wait 120 --i-accept-side-effects
    """
    _configure_logging(verbose)

    try:
        settings = ProbeSettings.from_env(os.environ)
        if app_id:
            settings.application_object_id = app_id
        if parallel is not None:
            settings.parallel_requests = parallel
        if settle is not None:
            settings.settle_seconds = settle
        if retry_attempts is not None:
            settings.retry_attempts = retry_attempts
        if timeout is not None:
            settings.timeout = timeout
        settings.validate()
    except ConfigError as e:
        for problem in e.problems:
            _print_error(problem)
        sys.exit(1)

    logger.debug("Settings: %s", settings.redacted())

    cancel = threading.Event()

    def _interrupt(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupted; abandoning requests not yet sent (Ctrl-C again to abort)")
        cancel.set()

    poll = PollPolicy(max_wait=poll_max_wait) if poll_max_wait else None
    previous_handler = signal.signal(signal.SIGINT, _interrupt)
    try:
        exit_code = run_probe(
            settings,
            accept_side_effects=accept_side_effects,
            json_output=json_output,
            skip_cleanup=skip_cleanup,
            poll=poll,
            cancel=cancel,
        )
    finally:
        signal.signal(signal.SIGINT, previous_handler)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
