import pyarrow.flight as flight
import pytest
from fakes import INT_SCHEMA, FakeNetwork, make_batches, values_of

from sqlflight.client import FlightSqlClient
from sqlflight.config import ClientSettings, ExecutionConfig, FailurePolicy, Ordering
from sqlflight.exceptions import PartialResultError, UnreachableError
from sqlflight.state import ExecutionState
from sqlflight.utils.stream_utils import AsyncToSyncConverter

META = "grpc://meta:1"
DATA = "grpc://data:1"
STRICT = ExecutionConfig(ordering=Ordering.STRICT)


def flight_info(*endpoints: flight.FlightEndpoint) -> flight.FlightInfo:
    return flight.FlightInfo(INT_SCHEMA, flight.FlightDescriptor.for_command(b"cmd"), list(endpoints), -1, -1)


@pytest.fixture
def cluster(network: FakeNetwork) -> FakeNetwork:
    """Endpoint 0 is served on the metadata channel, endpoint 1 by a data node."""
    meta = network.add(META)
    data = network.add(DATA)
    meta.flight_info = flight_info(flight.FlightEndpoint(b"t0", []), flight.FlightEndpoint(b"t1", [DATA]))
    meta.serve(b"t0", make_batches(0, 2))
    data.serve(b"t1", make_batches(100, 3))
    return network


def make_client(network: FakeNetwork, **kwargs) -> FlightSqlClient:
    return FlightSqlClient(
        META,
        settings=ClientSettings(),
        execution_config=kwargs.pop("execution_config", ExecutionConfig()),
        connector=network.connect,
        **kwargs,
    )


class TestAsyncClient:
    @pytest.mark.asyncio
    async def test_execute_to_table(self, cluster):
        async with make_client(cluster) as client:
            table = await client.aexecute_to_table("SELECT x FROM t", STRICT)

        assert table.column("x").to_pylist() == values_of(make_batches(0, 2) + make_batches(100, 3))
        assert all(transport.closed for transport in cluster.transports.values())

    @pytest.mark.asyncio
    async def test_metadata_channel_is_reused_for_endpoints_without_locations(self, cluster):
        async with make_client(cluster) as client:
            await client.aexecute_to_table("SELECT x FROM t")

        assert cluster.connect_attempts.count(META) == 1
        assert cluster.transports[META].do_get_calls == [b"t0"]

    @pytest.mark.asyncio
    async def test_execution_is_lazy(self, cluster):
        async with make_client(cluster) as client:
            execution = await client.aexecute("SELECT x FROM t")

            assert execution.state == ExecutionState.PLANNING
            assert cluster.streams == []
            batches = [batch async for batch in execution]

        assert len(batches) == 5
        assert execution.state == ExecutionState.COMPLETED

    @pytest.mark.asyncio
    async def test_plan_then_fetch(self, cluster):
        async with make_client(cluster) as client:
            info = await client.aplan("SELECT x FROM t")
            execution = await client.afetch(info, STRICT)
            table = await execution.to_table()

        assert len(info.endpoints) == 2
        assert table.num_rows == 10

    @pytest.mark.asyncio
    async def test_to_pandas(self, cluster):
        async with make_client(cluster) as client:
            df = await client.aexecute_to_pandas("SELECT x FROM t", STRICT)

        assert df["x"].tolist() == values_of(make_batches(0, 2) + make_batches(100, 3))

    @pytest.mark.asyncio
    async def test_best_effort_reports_partial_result(self, cluster):
        cluster.transports[META].flight_info = flight_info(
            flight.FlightEndpoint(b"t0", []), flight.FlightEndpoint(b"t1", ["grpc://gone:1"])
        )
        config = ExecutionConfig(failure_policy=FailurePolicy.BEST_EFFORT)

        async with make_client(cluster) as client:
            execution = await client.aexecute("SELECT x FROM t", config)
            received = []
            with pytest.raises(PartialResultError) as exc_info:
                async for batch in execution:
                    received.append(batch)

        assert values_of(received) == values_of(make_batches(0, 2))
        assert exc_info.value.failed_endpoints == [1]
        assert execution.state == ExecutionState.PARTIALLY_FAILED

    @pytest.mark.asyncio
    async def test_unreachable_metadata_location(self, network):
        async with make_client(network) as client:
            with pytest.raises(UnreachableError):
                await client.aplan("SELECT 1")


class TestBlockingClient:
    def test_execute_to_table(self, cluster):
        with make_client(cluster) as client:
            table = client.execute_to_table("SELECT x FROM t", STRICT)

        assert table.num_rows == 10
        assert table.schema.equals(INT_SCHEMA)

    def test_iter_batches(self, cluster):
        with make_client(cluster) as client:
            batches = list(client.iter_batches("SELECT x FROM t", STRICT))

        assert values_of(batches) == values_of(make_batches(0, 2) + make_batches(100, 3))

    def test_leaving_iteration_early_stops_every_stream(self, cluster):
        config = ExecutionConfig(concurrency=1, ordering=Ordering.STRICT, lookahead=1)
        with make_client(cluster) as client:
            batches = client.iter_batches("SELECT x FROM t", config)
            first = next(batches)
            batches.close()

            assert values_of([first]) == [0, 1]
            assert all(stream.stopped for stream in cluster.streams)

    def test_empty_result_keeps_declared_schema(self, network):
        meta = network.add(META)
        meta.flight_info = flight_info()

        with make_client(network) as client:
            table = client.execute_to_table("SELECT x FROM t WHERE false")

        assert table.num_rows == 0
        assert table.schema.equals(INT_SCHEMA)

    def test_shared_converter_is_not_stopped(self, cluster):
        converter = AsyncToSyncConverter()
        try:
            with make_client(cluster, converter=converter) as client:
                client.plan("SELECT x FROM t")

            assert converter.loop.is_running()
        finally:
            converter.stop_loop()
