"""Read-after-write convergence check for created credentials.

After the harness finishes, ``verify_convergence()`` waits a fixed settling
period, reads the application once and checks that every created key id is
present.  All missing ids are collected before failing so the report names
every one of them.

The verifier moves through ``IDLE -> SETTLING -> READING`` and ends in
``CONVERGED`` or ``DIVERGED``.  With a ``PollPolicy`` it instead re-reads with
bounded exponential backoff (``READING -> SETTLING -> READING ...``) and only
reports divergence once ``max_wait`` has elapsed.
"""

import logging
import threading
import time
from typing import Callable, Iterable, Iterator, List, Optional

from ..errors import ConvergenceError, DeadlineExceeded, OperationCancelled
from ..models import ApplicationState

logger = logging.getLogger(__name__)

IDLE = "idle"
SETTLING = "settling"
READING = "reading"
CONVERGED = "converged"
DIVERGED = "diverged"

_TRANSITIONS = {
    IDLE: (SETTLING,),
    SETTLING: (READING,),
    READING: (CONVERGED, DIVERGED, SETTLING),
    CONVERGED: (),
    DIVERGED: (),
}


class PollPolicy:
    """Bounded exponential backoff between read-backs.

    Args:
        initial:      First wait between reads, in seconds.
        factor:       Multiplier applied after every read.
        max_interval: Upper bound on a single wait.
        max_wait:     Total time after the settling period before giving up.
    """

    def __init__(self, initial: float = 1.0, factor: float = 2.0,
                 max_interval: float = 30.0, max_wait: float = 120.0):
        if initial <= 0 or factor < 1 or max_interval <= 0 or max_wait < 0:
            raise ValueError("invalid poll policy")
        self.initial = initial
        self.factor = factor
        self.max_interval = max_interval
        self.max_wait = max_wait

    def intervals(self) -> Iterator[float]:
        """Yield wait times until their sum reaches ``max_wait``."""
        waited = 0.0
        interval = self.initial
        while waited < self.max_wait:
            step = min(interval, self.max_interval, self.max_wait - waited)
            yield step
            waited += step
            interval *= self.factor

    def __repr__(self):
        return (f"PollPolicy(initial={self.initial}, factor={self.factor}, "
                f"max_interval={self.max_interval}, max_wait={self.max_wait})")


class ConvergenceOutcome:
    """Result of a successful verification.

    Attributes:
        state:   The final application snapshot.
        reads:   Number of read-backs performed.
        waited:  Seconds spent waiting (settling plus polling).
    """

    def __init__(self, state: ApplicationState, reads: int, waited: float):
        self.state = state
        self.reads = reads
        self.waited = waited

    @property
    def observed(self) -> int:
        return len(self.state)


def missing_key_ids(expected: Iterable[str], state: ApplicationState) -> List[str]:
    """Expected key ids absent from ``state``, in expected order, without repeats."""
    observed = state.key_id_set()
    missing: List[str] = []
    for key_id in expected:
        if key_id not in observed and key_id not in missing:
            missing.append(key_id)
    return missing


class ConvergenceVerifier:
    """One-shot verifier; a second ``verify()`` call raises ``RuntimeError``.

    Args:
        client:         Anything with ``read_application(app_id, deadline=, cancel=)``.
        app_id:         Object id of the application under test.
        settle_seconds: Fixed wait before the first read.
        poll:           Optional backoff policy for re-reads.
        sleep:          Sleep function, replaceable in tests.
    """

    def __init__(
        self,
        client,
        app_id: str,
        settle_seconds: float,
        poll: Optional[PollPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if settle_seconds < 0:
            raise ValueError("settle_seconds must be >= 0")
        self.client = client
        self.app_id = app_id
        self.settle_seconds = settle_seconds
        self.poll = poll
        self._sleep = sleep
        self.state = IDLE
        self.history: List[str] = [IDLE]

    def _enter(self, state: str) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid verifier transition {self.state} -> {state}")
        if state == SETTLING and self.state == READING and self.poll is None:
            raise RuntimeError("re-reading requires a poll policy")
        logger.debug("verifier %s -> %s", self.state, state)
        self.state = state
        self.history.append(state)

    def _pause(self, seconds: float, deadline: Optional[float],
               cancel: Optional[threading.Event]) -> None:
        if deadline is not None and time.monotonic() + seconds > deadline:
            raise DeadlineExceeded("deadline would pass while waiting for convergence")
        if cancel is not None:
            if cancel.wait(seconds):
                raise OperationCancelled("cancelled while waiting for convergence")
        elif seconds > 0:
            self._sleep(seconds)

    def verify(
        self,
        expected_key_ids: Iterable[str],
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ConvergenceOutcome:
        """Wait, read back and compare.

        Raises:
            ConvergenceError: Some expected key ids are not visible.
            RequestError:     A read failed; propagated unchanged.
        """
        if self.state != IDLE:
            raise RuntimeError("verifier has already run")
        expected = list(expected_key_ids)

        self._enter(SETTLING)
        self._pause(self.settle_seconds, deadline, cancel)
        waited = self.settle_seconds
        reads = 0
        intervals = self.poll.intervals() if self.poll is not None else iter(())

        while True:
            self._enter(READING)
            state = self.client.read_application(self.app_id, deadline=deadline, cancel=cancel)
            reads += 1
            missing = missing_key_ids(expected, state)
            if not missing:
                self._enter(CONVERGED)
                logger.info("All %d created credentials visible after %.1fs (%d read%s)",
                            len(expected), waited, reads, "" if reads == 1 else "s")
                return ConvergenceOutcome(state, reads, waited)

            step = next(intervals, None)
            if step is None:
                self._enter(DIVERGED)
                logger.error("%d of %d created credentials missing after %.1fs: %s",
                             len(missing), len(expected), waited, ", ".join(missing))
                raise ConvergenceError(missing, observed=len(state))

            logger.debug("%d credentials not yet visible, re-reading in %.1fs",
                         len(missing), step)
            self._enter(SETTLING)
            self._pause(step, deadline, cancel)
            waited += step


def verify_convergence(
    client,
    app_id: str,
    expected_key_ids: Iterable[str],
    settle_seconds: float,
    poll: Optional[PollPolicy] = None,
    deadline: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ConvergenceOutcome:
    """Run a fresh ``ConvergenceVerifier`` once.  See ``ConvergenceVerifier.verify``."""
    verifier = ConvergenceVerifier(client, app_id, settle_seconds, poll=poll, sleep=sleep)
    return verifier.verify(expected_key_ids, deadline=deadline, cancel=cancel)
