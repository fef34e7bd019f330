"""Formats probe results as colored terminal output or structured JSON.

Two output modes are supported:

- **Terminal**: ANSI-colored output grouped by phase, a summary line with
  pass/fail/warn/skip/error counts, the credential counts before and after
  the run, every missing key id, and a prioritised diagnosis when failures
  are present.
- **JSON**: Machine-readable output with ``summary``, ``counts``,
  ``missing_key_ids``, ``issues`` and ``results`` keys, suitable for CI
  pipelines.
"""

import json
import sys
from typing import Any, Dict, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Known issue patterns
# Each entry: (priority, title, message_substring_or_None, phase_prefix_or_None,
#              rationale, fix)
# ---------------------------------------------------------------------------
_KNOWN_ISSUES: List[Tuple[str, str, Any, Any, str, str]] = [
    (
        "P1",
        "Authorization rejected",
        "AuthError",
        None,
        "Without a token that carries Application.ReadWrite permissions every "
        "call fails and nothing about consistency can be measured.",
        "Grant the probe identity Application.ReadWrite.OwnedBy (and own the app) "
        "or Application.ReadWrite.All",
    ),
    (
        "P2",
        "Created credentials not visible after settling",
        "not visible",
        None,
        "Callers that add a secret and immediately read the application back "
        "can lose track of credentials they were just issued.",
        "Raise --settle or use --poll-max-wait; if ids never appear, the write was "
        "acknowledged but not persisted",
    ),
    (
        "P3",
        "Concurrent credential creation failed",
        None,
        "Phase 2",
        "Concurrent writers to the same application are rejected or throttled "
        "beyond what the retry policy absorbs.",
        "Lower --parallel or raise --retry-attempts, then compare the failing request ids",
    ),
    (
        "P4",
        "Created credentials could not be removed",
        None,
        "Cleanup",
        "Leftover test secrets count against the application's credential limit.",
        "Remove the listed key ids by hand (they use the graph-sanity-test- display name prefix)",
    ),
]


class ProbeResult:
    """A single probe check result.

    Attributes:
        name:    Human-readable check name (e.g. ``POST addPassword #3``).
        status:  One of PASS, FAIL, WARN, SKIP, ERROR.
        message: Optional detail about the outcome.
        details: Optional extended detail (not shown in terminal, included in JSON).
        phase:   Phase label for grouping in output.
    """

    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"
    SKIP = "skip"
    ERROR = "error"

    def __init__(
        self,
        name: str,
        status: str,
        message: str = "",
        details: str = "",
        phase: str = "",
    ):
        self.name = name
        self.status = status
        self.message = message
        self.details = details
        self.phase = phase

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for JSON output.  Omits empty fields."""
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status,
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        if self.phase:
            d["phase"] = self.phase
        return d


class RunSummary:
    """Credential counts and key ids gathered over one probe run."""

    def __init__(self, app_id: str = "", requested: int = 0):
        self.app_id = app_id
        self.requested = requested
        self.before: Optional[int] = None
        self.after: Optional[int] = None
        self.created: List[str] = []
        self.missing: List[str] = []
        self.removed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "application_object_id": self.app_id,
            "requested": self.requested,
            "before": self.before,
            "after": self.after,
            "created": len(self.created),
            "removed": self.removed,
        }


def _colorize(text: str, color: str) -> str:
    """Apply ANSI color codes.  Returns plain text when stdout is not a TTY."""
    colors = {
        "red": "\033[91m",
        "green": "\033[92m",
        "yellow": "\033[93m",
        "blue": "\033[94m",
        "cyan": "\033[96m",
        "bold": "\033[1m",
        "dim": "\033[2m",
        "reset": "\033[0m",
    }
    if not sys.stdout.isatty():
        return text
    return f"{colors.get(color, '')}{text}{colors['reset']}"


_STATUS_SYMBOLS = {
    ProbeResult.PASS: ("PASS", "bold"),
    ProbeResult.FAIL: ("FAIL", "red"),
    ProbeResult.WARN: ("WARN", "dim"),
    ProbeResult.SKIP: ("SKIP", "dim"),
    ProbeResult.ERROR: ("ERR ", "red"),
}


def _count(results: List[ProbeResult]) -> Dict[str, int]:
    return {
        "total": len(results),
        "passed": sum(1 for r in results if r.status == ProbeResult.PASS),
        "failed": sum(1 for r in results if r.status == ProbeResult.FAIL),
        "warnings": sum(1 for r in results if r.status == ProbeResult.WARN),
        "skipped": sum(1 for r in results if r.status == ProbeResult.SKIP),
        "errors": sum(1 for r in results if r.status == ProbeResult.ERROR),
    }


def _build_fix_summary(results: List[ProbeResult]) -> List[Dict[str, Any]]:
    """Derive a prioritised list of distinct issues from probe failures."""
    failures = [r for r in results if r.status in (ProbeResult.FAIL, ProbeResult.ERROR)]
    issues = []
    matched_ids: set = set()
    for priority, title, msg_substr, phase_prefix, rationale, fix in _KNOWN_ISSUES:
        if msg_substr is not None:
            affected = [
                r for r in failures
                if msg_substr.lower() in (r.message + " " + r.details).lower()
            ]
        else:
            affected = [
                r for r in failures
                if r.phase and r.phase.startswith(phase_prefix)
                and id(r) not in matched_ids
            ]
        if affected:
            matched_ids.update(id(r) for r in affected)
            issues.append({
                "priority": priority,
                "title": title,
                "rationale": rationale,
                "fix": fix,
                "affected_checks": len(affected),
            })

    unmatched = [r for r in failures if id(r) not in matched_ids]
    if unmatched:
        issues.append({
            "priority": "?",
            "title": f"{len(unmatched)} failure(s) not matched to a known root cause",
            "rationale": "These failures require individual investigation.",
            "fix": "Review the individual check output above for specific error messages.",
            "affected_checks": len(unmatched),
        })

    return issues


def print_results(
    results: List[ProbeResult],
    summary: Optional[RunSummary] = None,
    json_output: bool = False,
    version: str = "",
    timestamp: str = "",
):
    """Print the full probe report in terminal or JSON format."""
    summary = summary or RunSummary()
    if json_output:
        _print_json(results, summary, version=version, timestamp=timestamp)
    else:
        _print_terminal(results, summary, version=version, timestamp=timestamp)


def _print_terminal(
    results: List[ProbeResult],
    summary: RunSummary,
    version: str = "",
    timestamp: str = "",
):
    """Render results as ANSI-colored terminal output, grouped by phase."""
    current_phase = ""
    counts = _count(results)

    print()
    print(_colorize("Graph Application Credential Consistency Probe", "bold"))
    print(_colorize("=" * 50, "dim"))
    meta_parts = []
    if version:
        meta_parts.append(f"graph-sanity {version}")
    if summary.app_id:
        meta_parts.append(f"app: {summary.app_id}")
    if timestamp:
        meta_parts.append(timestamp)
    print(_colorize("  " + "  |  ".join(meta_parts), "dim"))

    for result in results:
        if result.phase and result.phase != current_phase:
            current_phase = result.phase
            print()
            print(_colorize(f"  {current_phase}", "bold"))
            print(_colorize("  " + "-" * 40, "dim"))

        symbol, color = _STATUS_SYMBOLS.get(result.status, ("??? ", "dim"))
        print(f"  [{_colorize(symbol, color)}] {result.name}")
        if result.message:
            print(f"         {_colorize(result.message, 'dim')}")

    print()
    print(_colorize("=" * 50, "dim"))
    summary_parts = []
    if counts["passed"]:
        summary_parts.append(_colorize(f"{counts['passed']} passed", "bold"))
    if counts["failed"]:
        summary_parts.append(_colorize(f"{counts['failed']} failed", "red"))
    if counts["errors"]:
        summary_parts.append(_colorize(f"{counts['errors']} errors", "red"))
    if counts["warnings"]:
        summary_parts.append(_colorize(f"{counts['warnings']} warnings", "dim"))
    if counts["skipped"]:
        summary_parts.append(_colorize(f"{counts['skipped']} skipped", "dim"))
    summary_parts.append(f"{counts['total']} total")
    print("  " + ", ".join(summary_parts))

    before = "?" if summary.before is None else summary.before
    after = "?" if summary.after is None else summary.after
    print(f"  credentials before: {before}  after: {after}  "
          f"created: {len(summary.created)}/{summary.requested}")
    if summary.missing:
        print(_colorize(f"  missing key ids ({len(summary.missing)}):", "red"))
        for key_id in summary.missing:
            print(f"    {key_id}")

    issues = _build_fix_summary(results)
    if issues:
        print()
        print(_colorize("  Fix Summary", "bold"))
        print(_colorize("  " + "-" * 40, "dim"))
        for issue in issues:
            n = issue["affected_checks"]
            label = "check" if n == 1 else "checks"
            print(
                f"  [{_colorize(issue['priority'], 'red')}] "
                f"Trouble: {issue['title']} "
                f"{_colorize(f'({n} {label} affected)', 'dim')}"
            )
            print(f"       Fix: {_colorize(issue['fix'], 'dim')}")
            print(f"       Rationale: {_colorize(issue['rationale'], 'dim')}")

    print()
    print(_colorize("  " + "-" * 40, "dim"))
    if counts["failed"] == 0 and counts["errors"] == 0:
        print(_colorize("  Result: All checks passed.", "bold"))
    else:
        print(_colorize(
            f"  Result: {counts['failed'] + counts['errors']} failure(s).", "red",
        ))
    print()


def _print_json(
    results: List[ProbeResult],
    summary: RunSummary,
    version: str = "",
    timestamp: str = "",
):
    """Render results as structured JSON with summary counts."""
    output = {
        "graph_sanity_version": version,
        "timestamp": timestamp,
        "summary": _count(results),
        "counts": summary.to_dict(),
        "created_key_ids": list(summary.created),
        "missing_key_ids": list(summary.missing),
        "issues": _build_fix_summary(results),
        "results": [r.to_dict() for r in results],
    }
    print(json.dumps(output, indent=2))
