"""Tests for the convergence verifier and its state machine."""

import threading

import pytest

from graph_sanity.errors import ConvergenceError, NotFoundError, OperationCancelled
from graph_sanity.models import ApplicationState, Credential
from graph_sanity.probe.harness import run_concurrent_adds
from graph_sanity.probe.verifier import (
    CONVERGED,
    DIVERGED,
    IDLE,
    READING,
    SETTLING,
    ConvergenceVerifier,
    PollPolicy,
    missing_key_ids,
    verify_convergence,
)
from tests.mock_graph_server import APP_ID, MockGraphServer, make_client


def _state(*key_ids):
    return ApplicationState(APP_ID, [Credential(k) for k in key_ids])


class FakeReader:
    """Returns the given snapshots in order, repeating the last one."""

    def __init__(self, *states, error=None):
        self.states = list(states)
        self.error = error
        self.reads = 0

    def read_application(self, app_id, deadline=None, cancel=None):
        self.reads += 1
        if self.error is not None:
            raise self.error
        index = min(self.reads, len(self.states)) - 1
        return self.states[index]


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def test_empty_expectation_always_converges():
    sleep = SleepRecorder()
    outcome = verify_convergence(FakeReader(_state()), APP_ID, [], 5, sleep=sleep)
    assert outcome.reads == 1
    assert outcome.observed == 0


def test_all_visible_converges():
    keys = [f"k{i}" for i in range(1, 21)]
    sleep = SleepRecorder()
    verifier = ConvergenceVerifier(FakeReader(_state("old", *keys)), APP_ID, 10, sleep=sleep)
    outcome = verifier.verify(keys)

    assert verifier.state == CONVERGED
    assert verifier.history == [IDLE, SETTLING, READING, CONVERGED]
    assert sleep.calls == [10]
    assert outcome.observed == 21
    assert outcome.waited == 10


def test_missing_key_fails():
    sleep = SleepRecorder()
    with pytest.raises(ConvergenceError) as exc_info:
        verify_convergence(FakeReader(_state("k1")), APP_ID, ["k1", "k2"], 0, sleep=sleep)
    assert exc_info.value.missing == ["k2"]
    assert exc_info.value.observed == 1


def test_eighteen_of_twenty_names_exactly_the_two_missing():
    keys = [f"k{i}" for i in range(1, 21)]
    visible = [k for k in keys if k not in ("k7", "k15")]
    verifier = ConvergenceVerifier(FakeReader(_state(*visible)), APP_ID, 0,
                                   sleep=SleepRecorder())
    with pytest.raises(ConvergenceError) as exc_info:
        verifier.verify(keys)
    assert exc_info.value.missing == ["k7", "k15"]
    assert verifier.state == DIVERGED
    assert verifier.history[-1] == DIVERGED
    assert "k7" in str(exc_info.value) and "k15" in str(exc_info.value)


def test_flat_mode_reads_exactly_once():
    reader = FakeReader(_state(), _state("k1"))
    with pytest.raises(ConvergenceError):
        verify_convergence(reader, APP_ID, ["k1"], 0, sleep=SleepRecorder())
    assert reader.reads == 1


def test_missing_key_ids_keeps_order_and_dedupes():
    assert missing_key_ids(["b", "a", "b", "c"], _state("c")) == ["b", "a"]


def test_verifier_runs_once():
    verifier = ConvergenceVerifier(FakeReader(_state()), APP_ID, 0, sleep=SleepRecorder())
    verifier.verify([])
    with pytest.raises(RuntimeError):
        verifier.verify([])


def test_read_errors_propagate_unchanged():
    err = NotFoundError("gone", status_code=404)
    with pytest.raises(NotFoundError) as exc_info:
        verify_convergence(FakeReader(error=err), APP_ID, ["k1"], 0, sleep=SleepRecorder())
    assert exc_info.value is err


def test_negative_settle_rejected():
    with pytest.raises(ValueError):
        ConvergenceVerifier(FakeReader(_state()), APP_ID, -1)


def test_cancel_during_settle():
    cancel = threading.Event()
    cancel.set()
    reader = FakeReader(_state())
    with pytest.raises(OperationCancelled):
        verify_convergence(reader, APP_ID, ["k1"], 30, cancel=cancel)
    assert reader.reads == 0


# -- Polling ----------------------------------------------------------------

def test_poll_policy_intervals_are_bounded():
    policy = PollPolicy(initial=1, factor=2, max_interval=4, max_wait=10)
    assert list(policy.intervals()) == [1, 2, 4, 3]


def test_poll_policy_zero_wait_has_no_intervals():
    assert list(PollPolicy(max_wait=0).intervals()) == []


@pytest.mark.parametrize("kwargs", [
    {"initial": 0}, {"factor": 0.5}, {"max_interval": 0}, {"max_wait": -1},
])
def test_poll_policy_rejects_bad_values(kwargs):
    with pytest.raises(ValueError):
        PollPolicy(**kwargs)


def test_poll_until_converged():
    reader = FakeReader(_state("k1"), _state("k1", "k2"))
    sleep = SleepRecorder()
    verifier = ConvergenceVerifier(reader, APP_ID, 5, poll=PollPolicy(initial=1), sleep=sleep)
    outcome = verifier.verify(["k1", "k2"])

    assert outcome.reads == 2
    assert outcome.waited == 6
    assert sleep.calls == [5, 1]
    assert verifier.history == [IDLE, SETTLING, READING, SETTLING, READING, CONVERGED]


def test_poll_reports_divergence_after_max_wait():
    reader = FakeReader(_state("k1"))
    sleep = SleepRecorder()
    policy = PollPolicy(initial=1, factor=2, max_interval=4, max_wait=10)
    with pytest.raises(ConvergenceError) as exc_info:
        verify_convergence(reader, APP_ID, ["k1", "k2"], 0, poll=policy, sleep=sleep)
    assert exc_info.value.missing == ["k2"]
    assert reader.reads == 5
    assert sum(sleep.calls) == 10


# -- Against the mock server --------------------------------------------------

def test_converges_against_mock_server():
    with MockGraphServer(applications={APP_ID: 3}) as server:
        with make_client(server) as client:
            report = run_concurrent_adds(client, APP_ID, 20)
            outcome = verify_convergence(client, APP_ID, report.successes, 0)
    assert outcome.observed == 23


def test_dropped_keys_are_named():
    with MockGraphServer(applications={APP_ID: 0},
                         non_conformances={"drop_keys": 2}) as server:
        with make_client(server) as client:
            report = run_concurrent_adds(client, APP_ID, 20)
            with pytest.raises(ConvergenceError) as exc_info:
                verify_convergence(client, APP_ID, report.successes, 0)
        dropped = {c["keyId"] for c in server.stored(APP_ID) if c["_dropped"]}
    assert set(exc_info.value.missing) == dropped
    assert len(exc_info.value.missing) == 2


def test_replication_lag_needs_polling():
    with MockGraphServer(applications={APP_ID: 0},
                         non_conformances={"lagging_reads": 1}) as server:
        with make_client(server) as client:
            report = run_concurrent_adds(client, APP_ID, 5)
            with pytest.raises(ConvergenceError):
                verify_convergence(client, APP_ID, report.successes, 0)

    with MockGraphServer(applications={APP_ID: 0},
                         non_conformances={"lagging_reads": 1}) as server:
        with make_client(server) as client:
            report = run_concurrent_adds(client, APP_ID, 5)
            outcome = verify_convergence(
                client, APP_ID, report.successes, 0,
                poll=PollPolicy(initial=0.01, max_wait=1),
            )
    assert outcome.reads == 2
