"""Orchestrates the concurrent-create / read-back consistency probe.

``run_probe()`` reads the application under test, creates
``settings.parallel_requests`` password credentials on it concurrently, waits
for the directory to settle, confirms every created key id is visible,
checks that two back-to-back reads agree, removes what it created and
returns an exit code (0 = all pass, 1 = failures).

Safety mechanisms:
- Requires ``accept_side_effects=True`` before executing (CLI flag: ``--i-accept-side-effects``)
- Created credentials use the ``TEST_PREFIX`` display name and a short expiry
- Created credentials are removed at the end unless ``skip_cleanup`` is set
"""

import datetime
import json
import logging
import threading
from typing import List, Optional

from .. import __version__
from ..config import ProbeSettings
from ..errors import (
    ConvergenceError,
    GraphSanityError,
    HarnessFailure,
    OperationCancelled,
)
from ..http_client import GraphClient
from ..models import HarnessReport, OperationResult
from .harness import TEST_PREFIX, run_concurrent_adds
from .report import ProbeResult, RunSummary, print_results
from .verifier import PollPolicy, verify_convergence

logger = logging.getLogger(__name__)

PHASE_BASELINE = "Phase 1 — Baseline Read"
PHASE_CREATE = "Phase 2 — Concurrent Credential Creation"
PHASE_CONVERGE = "Phase 3 — Convergence"
PHASE_STABILITY = "Phase 4 — Read Stability"
PHASE_CLEANUP = "Cleanup"


def run_probe(
    settings: ProbeSettings,
    accept_side_effects: bool = False,
    json_output: bool = False,
    skip_cleanup: bool = False,
    poll: Optional[PollPolicy] = None,
    client: Optional[GraphClient] = None,
    cancel: Optional[threading.Event] = None,
) -> int:
    """Run the full probe and return an exit code.

    Returns:
        0 if every check passes (warnings are OK), 1 if any check fails or errors.

    Args:
        settings:            Validated probe settings.
        accept_side_effects: Must be True to proceed; the probe adds and removes
                             real credentials on the target application.
        json_output:         If True, output results as JSON instead of terminal.
        skip_cleanup:        If True, leave created credentials on the application.
        poll:                Re-read with backoff instead of a single read after settling.
        client:              Pre-built client; one is built from ``settings`` if omitted.
        cancel:              Event that abandons outstanding requests when set.
    """
    app_id = settings.application_object_id

    # --- Safety gate: require explicit consent before running ----------------
    if not accept_side_effects:
        _print_side_effect_warning(app_id, settings.parallel_requests, json_output)
        return 1

    owns_client = client is None
    if client is None:
        client = GraphClient.from_settings(settings)

    results: List[ProbeResult] = []
    summary = RunSummary(app_id, settings.parallel_requests)
    run_timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    try:
        _run_phases(client, settings, results, summary, skip_cleanup, poll, cancel)
    finally:
        if owns_client:
            client.close()

    print_results(results, summary, json_output=json_output,
                  version=__version__, timestamp=run_timestamp)

    has_failures = any(
        r.status in (ProbeResult.FAIL, ProbeResult.ERROR)
        for r in results
    )
    return 1 if has_failures else 0


def _run_phases(
    client: GraphClient,
    settings: ProbeSettings,
    results: List[ProbeResult],
    summary: RunSummary,
    skip_cleanup: bool,
    poll: Optional[PollPolicy],
    cancel: Optional[threading.Event],
):
    app_id = settings.application_object_id

    # Phase 1: Baseline
    try:
        baseline = client.read_application(app_id, cancel=cancel)
    except GraphSanityError as exc:
        results.append(_error_result("GET application", exc, PHASE_BASELINE))
        return
    summary.before = len(baseline)
    results.append(ProbeResult(
        "GET application", ProbeResult.PASS,
        message=f"{len(baseline)} existing credential(s)", phase=PHASE_BASELINE,
    ))

    # Phase 2: Concurrent creation
    report: Optional[HarnessReport] = None
    try:
        report = run_concurrent_adds(
            client, app_id, settings.parallel_requests,
            lifetime_hours=settings.credential_lifetime_hours,
            display_name_prefix=TEST_PREFIX, cancel=cancel,
        )
    except OperationCancelled as exc:
        report = exc.report
        results.append(_error_result("Concurrent addPassword", exc, PHASE_CREATE))

    if report is not None:
        summary.created = report.successes
        results.extend(_outcome_result(o) for o in report.outcomes)
        for key_id in report.duplicate_key_ids():
            results.append(ProbeResult(
                "Unique key ids", ProbeResult.FAIL,
                message=f"key id {key_id} returned by more than one addPassword call",
                phase=PHASE_CREATE,
            ))
        if not report.cancelled:
            try:
                report.raise_for_failures()
            except HarnessFailure as exc:
                results.append(ProbeResult(
                    "Concurrent addPassword", ProbeResult.FAIL,
                    message=f"{exc}; first error: {exc.__cause__}",
                    details=type(exc.__cause__).__name__, phase=PHASE_CREATE,
                ))

    if report is None or not report.ok:
        # Fail fast: a partial fan-out says nothing reliable about convergence
        results.append(ProbeResult(
            "Convergence", ProbeResult.SKIP,
            message="Skipped — concurrent creation did not fully succeed",
            phase=PHASE_CONVERGE,
        ))
    else:
        _converge(client, settings, report, results, summary, poll, cancel)
        _read_stability(client, app_id, results, cancel)

    if skip_cleanup:
        if summary.created:
            results.append(ProbeResult(
                "Remove created credentials", ProbeResult.SKIP,
                message=f"{len(summary.created)} credential(s) left on the application",
                phase=PHASE_CLEANUP,
            ))
    elif summary.created:
        _cleanup(client, app_id, summary, results)


def _converge(client, settings, report, results, summary, poll, cancel):
    """Phase 3: wait, read back and check every created key id is visible."""
    expected = report.successes
    try:
        outcome = verify_convergence(
            client, settings.application_object_id, expected,
            settings.settle_seconds, poll=poll, cancel=cancel,
        )
    except ConvergenceError as exc:
        summary.missing = exc.missing
        summary.after = exc.observed
        results.append(ProbeResult(
            "All created credentials visible", ProbeResult.FAIL,
            message=str(exc), phase=PHASE_CONVERGE,
            details=json.dumps({"missing": exc.missing}),
        ))
        return
    except GraphSanityError as exc:
        results.append(_error_result("GET application after settling", exc, PHASE_CONVERGE))
        return

    summary.after = outcome.observed
    results.append(ProbeResult(
        "All created credentials visible", ProbeResult.PASS,
        message=(f"{len(expected)} of {len(expected)} key ids present after "
                 f"{outcome.waited:.1f}s ({outcome.observed} credentials total)"),
        phase=PHASE_CONVERGE,
    ))


def _read_stability(client, app_id, results, cancel):
    """Phase 4: two reads with no intervening mutation must agree."""
    try:
        first = client.read_application(app_id, cancel=cancel)
        second = client.read_application(app_id, cancel=cancel)
    except GraphSanityError as exc:
        results.append(_error_result("Consecutive reads agree", exc, PHASE_STABILITY))
        return

    only_first = first.key_id_set() - second.key_id_set()
    only_second = second.key_id_set() - first.key_id_set()
    if not only_first and not only_second:
        results.append(ProbeResult(
            "Consecutive reads agree", ProbeResult.PASS,
            message=f"{len(first)} credentials in both reads", phase=PHASE_STABILITY,
        ))
    else:
        results.append(ProbeResult(
            "Consecutive reads agree", ProbeResult.WARN,
            message=(f"reads differ: {len(only_first)} only in first, "
                     f"{len(only_second)} only in second"),
            details=json.dumps({"only_first": sorted(only_first),
                                "only_second": sorted(only_second)}),
            phase=PHASE_STABILITY,
        ))


def _outcome_result(outcome: OperationResult) -> ProbeResult:
    name = f"POST addPassword #{outcome.index}"
    if outcome.ok:
        message = f"keyId {outcome.key_id}"
        if outcome.request_id:
            message += f" (request-id {outcome.request_id})"
        return ProbeResult(name, ProbeResult.PASS, message=message, phase=PHASE_CREATE)
    return _error_result(name, outcome.error, PHASE_CREATE)


def _error_result(name: str, exc: BaseException, phase: str) -> ProbeResult:
    return ProbeResult(
        name, ProbeResult.ERROR, message=str(exc),
        details=type(exc).__name__, phase=phase,
    )


def _print_side_effect_warning(app_id: str, count: int, json_output: bool):
    """Warn the user that the probe will add and remove credentials and exit."""
    if json_output:
        print(json.dumps({
            "error": "Side-effect consent required",
            "message": (
                f"The probe will add {count} password credentials to application "
                f"{app_id} and remove them afterwards. "
                f"All test credentials use the display name prefix '{TEST_PREFIX}'. "
                f"Pass --i-accept-side-effects to proceed."
            ),
        }, indent=2))
    else:
        print(
            f"\n  The probe will add {count} password credentials to application:\n\n"
            f"    {app_id}\n\n"
            f"  and remove them afterwards.\n"
            f"  All test credentials use the display name prefix '{TEST_PREFIX}'.\n"
            f"  Pass --i-accept-side-effects to proceed.\n"
        )


def _cleanup(client: GraphClient, app_id: str, summary: RunSummary,
             results: List[ProbeResult]):
    """Remove every credential created by this run."""
    failed = 0
    for key_id in summary.created:
        try:
            client.remove_credential(app_id, key_id)
            summary.removed += 1
        except GraphSanityError as exc:
            failed += 1
            results.append(_error_result(f"POST removePassword {key_id}", exc, PHASE_CLEANUP))
    if not failed:
        results.append(ProbeResult(
            "Remove created credentials", ProbeResult.PASS,
            message=f"{summary.removed} credential(s) removed", phase=PHASE_CLEANUP,
        ))
