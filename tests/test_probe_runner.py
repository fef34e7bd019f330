"""Integration tests for the probe runner against mock Graph servers.

These tests exercise the full probe pipeline (runner -> harness -> verifier
-> report) against MockGraphServer instances with various configurations:

- Conformant server (all checks should pass, credentials cleaned up)
- Server that drops acknowledged credentials (convergence failure)
- Server that fails one add (fail fast, convergence skipped)
- Lagging server (fails flat, passes with polling)
- Unknown application and rejected auth
- Side-effect consent gating
"""

import json

import pytest

from graph_sanity.config import ProbeSettings
from graph_sanity.probe.runner import run_probe
from graph_sanity.probe.verifier import PollPolicy
from tests.mock_graph_server import APP_ID, MockGraphServer, make_client


def _settings(**kwargs):
    kwargs.setdefault("application_object_id", APP_ID)
    kwargs.setdefault("parallel_requests", 5)
    kwargs.setdefault("settle_seconds", 0)
    return ProbeSettings(**kwargs)


def _run(server, capsys, settings=None, **kwargs):
    """Helper: run probe with consent and JSON output, return (exit_code, report)."""
    kwargs.setdefault("accept_side_effects", True)
    kwargs.setdefault("json_output", True)
    with make_client(server) as client:
        exit_code = run_probe(settings or _settings(), client=client, **kwargs)
    captured = capsys.readouterr()
    return exit_code, json.loads(captured.out)


@pytest.fixture
def conformant_server():
    with MockGraphServer(applications={APP_ID: 2}) as s:
        yield s


class TestConformantServer:

    def test_full_probe_passes(self, conformant_server, capsys):
        exit_code, report = _run(conformant_server, capsys)

        assert exit_code == 0
        assert report["summary"]["failed"] == 0
        assert report["summary"]["errors"] == 0
        assert report["counts"]["before"] == 2
        assert report["counts"]["after"] == 7
        assert report["counts"]["created"] == 5
        assert report["counts"]["removed"] == 5
        assert report["missing_key_ids"] == []
        assert len(conformant_server.stored(APP_ID)) == 2

    def test_one_result_per_add(self, conformant_server, capsys):
        _, report = _run(conformant_server, capsys)
        adds = [r for r in report["results"] if r["name"].startswith("POST addPassword #")]
        assert len(adds) == 5
        assert all(r["status"] == "pass" for r in adds)

    def test_read_stability_checked(self, conformant_server, capsys):
        _, report = _run(conformant_server, capsys)
        stability = [r for r in report["results"] if r["name"] == "Consecutive reads agree"]
        assert stability[0]["status"] == "pass"

    def test_skip_cleanup_leaves_credentials(self, conformant_server, capsys):
        exit_code, report = _run(conformant_server, capsys, skip_cleanup=True)
        assert exit_code == 0
        assert len(conformant_server.stored(APP_ID)) == 7
        skipped = [r for r in report["results"] if r["status"] == "skip"]
        assert any("Remove" in r["name"] for r in skipped)

    def test_terminal_output(self, conformant_server, capsys):
        with make_client(conformant_server) as client:
            exit_code = run_probe(_settings(), client=client, accept_side_effects=True)
        out = capsys.readouterr().out
        assert exit_code == 0
        assert "credentials before: 2  after: 7" in out
        assert "All checks passed" in out


class TestSideEffectConsent:

    def test_refuses_without_consent(self, conformant_server, capsys):
        exit_code = run_probe(_settings(), accept_side_effects=False, json_output=True)
        assert exit_code == 1
        output = json.loads(capsys.readouterr().out)
        assert "side-effect" in output["error"].lower()
        assert conformant_server.request_count == 0

    def test_refuses_without_consent_terminal(self, capsys):
        exit_code = run_probe(_settings(), accept_side_effects=False)
        assert exit_code == 1
        assert "--i-accept-side-effects" in capsys.readouterr().out


class TestConsistencyFailures:

    def test_dropped_credentials_detected(self, capsys):
        with MockGraphServer(applications={APP_ID: 0},
                             non_conformances={"drop_keys": 2}) as server:
            exit_code, report = _run(server, capsys)
            remaining = server.stored(APP_ID)

        assert exit_code == 1
        assert len(report["missing_key_ids"]) == 2
        assert report["counts"]["after"] == 3
        assert any(i["priority"] == "P2" for i in report["issues"])
        # Dropped credentials still exist server-side and are cleaned up
        assert remaining == []

    def test_lagging_server_fails_without_polling(self, capsys):
        with MockGraphServer(applications={APP_ID: 0},
                             non_conformances={"lagging_reads": 1}) as server:
            exit_code, report = _run(server, capsys)
        assert exit_code == 1
        assert len(report["missing_key_ids"]) == 5

    def test_lagging_server_passes_with_polling(self, capsys):
        with MockGraphServer(applications={APP_ID: 0},
                             non_conformances={"lagging_reads": 2}) as server:
            exit_code, report = _run(
                server, capsys, poll=PollPolicy(initial=0.01, max_wait=2),
            )
        assert exit_code == 0
        assert report["missing_key_ids"] == []


class TestFailFast:

    def test_add_failure_skips_convergence(self, capsys):
        with MockGraphServer(applications={APP_ID: 0},
                             non_conformances={"fail_add_numbers": {3}}) as server:
            exit_code, report = _run(server, capsys)
            remaining = server.stored(APP_ID)

        assert exit_code == 1
        assert report["summary"]["errors"] == 1
        assert report["counts"]["created"] == 4
        convergence = [r for r in report["results"] if r["name"] == "Convergence"]
        assert convergence[0]["status"] == "skip"
        assert any(i["priority"] == "P3" for i in report["issues"])
        fan_out = [r for r in report["results"] if r["name"] == "Concurrent addPassword"]
        assert fan_out[0]["status"] == "fail"
        assert fan_out[0]["message"].startswith("1 of 5 credential creations failed")
        assert fan_out[0]["details"] == "TransportError"
        # The four credentials that were created are still cleaned up
        assert remaining == []

    def test_unknown_application(self, capsys):
        with MockGraphServer(applications={"other": 0}) as server:
            exit_code, report = _run(server, capsys)
        assert exit_code == 1
        assert report["results"][0]["status"] == "error"
        assert report["counts"]["before"] is None
        assert server.add_calls == 0

    def test_rejected_auth(self, capsys):
        with MockGraphServer(applications={APP_ID: 0},
                             non_conformances={"reject_auth": True}) as server:
            exit_code, report = _run(server, capsys)
        assert exit_code == 1
        assert report["issues"][0]["priority"] == "P1"


class TestThrottling:

    def test_429_retry_succeeds(self, capsys):
        with MockGraphServer(applications={APP_ID: 0},
                             non_conformances={"throttle_count": 3}) as server:
            with make_client(server, attempts=5) as client:
                exit_code = run_probe(_settings(), client=client,
                                      accept_side_effects=True, json_output=True)
        report = json.loads(capsys.readouterr().out)
        assert exit_code == 0
        assert report["summary"]["passed"] > 0
