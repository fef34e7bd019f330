"""Concurrent credential creation against one application object.

``run_concurrent_adds()`` issues ``count`` ``addPassword`` calls at once on a
thread pool sized to ``count`` (no rate limiting; the point is to stress the
server's concurrent-write path) and collects every outcome into a
``HarnessReport``.

- Every outcome is recorded, success or failure; nothing is dropped
- A failure is logged the moment it arrives but does not cancel siblings
- The function returns only after all ``count`` calls have finished
- If the caller cancels, queued calls abandon before sending, calls waiting
  out a retry backoff abandon there, and the harness raises
  ``OperationCancelled`` with the partial report
"""

import datetime
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from ..errors import DeadlineExceeded, GraphSanityError, OperationCancelled
from ..models import HarnessReport, OperationResult

logger = logging.getLogger(__name__)

# Namespace prefix for created credentials so they are recognisable on the
# target application and easy to clean up by hand
TEST_PREFIX = "graph-sanity-test-"


def run_concurrent_adds(
    client,
    app_id: str,
    count: int,
    lifetime_hours: int = 24,
    display_name_prefix: str = TEST_PREFIX,
    deadline: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    on_outcome: Optional[Callable[[OperationResult], None]] = None,
) -> HarnessReport:
    """Create ``count`` credentials on ``app_id`` concurrently.

    Args:
        client:              Anything with ``add_credential(app_id, display_name,
                             expiry, deadline=, cancel=)`` (normally ``GraphClient``).
        app_id:              Object id of the application under test.
        count:               Number of concurrent adds; must be >= 1.
        lifetime_hours:      Expiry offset for every created credential.
        display_name_prefix: Prefix for credential display names.
        deadline:            Absolute ``time.monotonic()`` deadline for every call.
        cancel:              Event that abandons calls not yet sent (or backing
                             off between retries) when set.
        on_outcome:          Called from the worker thread with each outcome
                             as soon as it is recorded.

    Returns:
        A ``HarnessReport`` holding exactly ``count`` outcomes.

    Raises:
        ValueError:         ``count`` is less than 1.
        OperationCancelled: ``cancel`` fired or ``deadline`` passed; the
                            partial report is attached as ``report``.
    """
    if count < 1:
        raise ValueError(f"count must be >= 1, got {count}")

    report = HarnessReport(app_id, count)
    expiry = (datetime.datetime.now(datetime.timezone.utc)
              + datetime.timedelta(hours=lifetime_hours))

    def _add(index: int) -> None:
        started = time.monotonic()
        try:
            credential = client.add_credential(
                app_id, f"{display_name_prefix}{index}", expiry,
                deadline=deadline, cancel=cancel,
            )
        except GraphSanityError as exc:
            outcome = OperationResult(index, error=exc, elapsed=time.monotonic() - started)
            if isinstance(exc, OperationCancelled):
                logger.warning("Add #%d abandoned: %s", index, exc)
            else:
                logger.error("Add #%d failed: %s", index, exc)
        except Exception as exc:
            # Recorded like any other failure so the report keeps ``count`` outcomes
            outcome = OperationResult(index, error=exc, elapsed=time.monotonic() - started)
            logger.exception("Add #%d raised unexpectedly", index)
        else:
            outcome = OperationResult(
                index,
                key_id=credential.key_id,
                request_id=getattr(credential, "request_id", None),
                date=getattr(credential, "date", None),
                elapsed=time.monotonic() - started,
            )
            logger.info(
                "Created password [keyId: %s] for request [ID: %s] at %s",
                outcome.key_id, outcome.request_id, outcome.date,
            )
        report.record(outcome)
        if on_outcome is not None:
            on_outcome(outcome)

    logger.debug("Launching %d concurrent adds against %s", count, app_id)
    with ThreadPoolExecutor(max_workers=count, thread_name_prefix="add-credential") as pool:
        futures = [pool.submit(_add, i) for i in range(1, count + 1)]
        # Barrier: every add has finished before the report is handed on
        for future in futures:
            future.result()

    abandoned = [o.error for o in report.failures if isinstance(o.error, OperationCancelled)]
    if abandoned or (cancel is not None and cancel.is_set()):
        report.cancelled = True
        if any(isinstance(e, DeadlineExceeded) for e in abandoned):
            raise DeadlineExceeded(
                f"deadline exceeded after {len(report.successes)} of {count} adds",
                report=report,
            )
        raise OperationCancelled(
            f"cancelled after {len(report.successes)} of {count} adds", report=report,
        )

    logger.info("%d of %d adds succeeded", len(report.successes), count)
    return report
