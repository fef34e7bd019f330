"""Shared fixtures: a mock Graph server and a client pointed at it."""

import pytest

from tests.mock_graph_server import APP_ID, TOKEN, MockGraphServer, make_client


@pytest.fixture
def server():
    with MockGraphServer(applications={APP_ID: 2}, expected_token=TOKEN) as s:
        yield s


@pytest.fixture
def client(server):
    c = make_client(server)
    yield c
    c.close()
