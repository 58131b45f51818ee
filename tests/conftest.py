import pytest
from fakes import FakeNetwork
from flight_sql_server import FlightSqlTestServer

from sqlflight.fetcher import EndpointFetcher
from sqlflight.transport import TransportPool


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def fetcher(network: FakeNetwork) -> EndpointFetcher:
    return EndpointFetcher(TransportPool(connector=network.connect))


@pytest.fixture
def sql_server():
    with FlightSqlTestServer() as server:
        yield server
