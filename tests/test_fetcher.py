import pytest
from fakes import FakeTransport, make_batches, make_endpoint, values_of

from prometheus_client import REGISTRY

from sqlflight.exceptions import EndpointRejectedError, EndpointStreamInterruptedError, EndpointUnreachableError
from sqlflight.fetcher import EndpointFetcher
from sqlflight.models import REUSE_CONNECTION_URI

LOCATION_A = "grpc://a:1"
LOCATION_B = "grpc://b:1"
DEAD = "grpc://dead:1"


class TestCandidateLocations:
    def test_endpoint_locations_in_order(self):
        endpoint = make_endpoint(b"t", LOCATION_B, LOCATION_A)
        assert EndpointFetcher.candidate_locations(endpoint, None) == [LOCATION_B, LOCATION_A]

    def test_empty_locations_resolve_to_shared_channel(self):
        shared = FakeTransport("grpc://meta:1")
        assert EndpointFetcher.candidate_locations(make_endpoint(b"t"), shared) == ["grpc://meta:1"]

    def test_empty_locations_without_shared_channel(self):
        assert EndpointFetcher.candidate_locations(make_endpoint(b"t"), None) == []

    def test_reuse_connection_uri_resolves_to_shared_channel(self):
        shared = FakeTransport("grpc://meta:1")
        endpoint = make_endpoint(b"t", REUSE_CONNECTION_URI, LOCATION_A, "grpc://meta:1")
        assert EndpointFetcher.candidate_locations(endpoint, shared) == ["grpc://meta:1", LOCATION_A]


class TestEndpointFetcher:
    @pytest.mark.asyncio
    async def test_fetch_yields_stream_in_order(self, network, fetcher):
        a = network.add(LOCATION_A)
        a.serve(b"t", make_batches(0, 4))

        batches = [batch async for batch in fetcher.fetch(make_endpoint(b"t", LOCATION_A))]

        assert values_of(batches) == values_of(make_batches(0, 4))
        assert a.streams[0].finished

    @pytest.mark.asyncio
    async def test_unreachable_location_moves_to_next_candidate(self, network, fetcher):
        b = network.add(LOCATION_B)
        b.serve(b"t", make_batches(0, 1))
        before = REGISTRY.get_sample_value("sqlflight_endpoint_location_fallbacks_total")

        stream = await fetcher.open(make_endpoint(b"t", DEAD, LOCATION_B), index=3)
        batches = [batch async for batch in stream]

        assert len(batches) == 1
        assert stream.location == LOCATION_B
        assert stream.locations_tried == 2
        assert network.connect_attempts == [DEAD, LOCATION_B]
        assert REGISTRY.get_sample_value("sqlflight_endpoint_location_fallbacks_total") == before + 1
        assert stream.outcome().completed

    @pytest.mark.asyncio
    async def test_each_location_is_tried_once(self, fetcher, network):
        with pytest.raises(EndpointUnreachableError) as exc_info:
            await fetcher.open(make_endpoint(b"t", DEAD, "grpc://dead:2"), index=1)

        error = exc_info.value
        assert network.connect_attempts == [DEAD, "grpc://dead:2"]
        assert error.endpoint_index == 1
        assert error.locations_tried == 2
        assert [location for location, _ in error.attempts] == [DEAD, "grpc://dead:2"]

    @pytest.mark.asyncio
    async def test_unavailable_stream_counts_as_unreachable(self, network, fetcher):
        a = network.add(LOCATION_A)
        a.get_unreachable = True
        b = network.add(LOCATION_B)
        b.serve(b"t", make_batches(0, 1))

        stream = await fetcher.open(make_endpoint(b"t", LOCATION_A, LOCATION_B))

        assert stream.location == LOCATION_B

    @pytest.mark.asyncio
    async def test_rejected_ticket_is_not_tried_elsewhere(self, network, fetcher):
        network.add(LOCATION_A)
        b = network.add(LOCATION_B)
        b.serve(b"t", make_batches(0, 1))

        with pytest.raises(EndpointRejectedError) as exc_info:
            await fetcher.open(make_endpoint(b"t", LOCATION_A, LOCATION_B))

        assert exc_info.value.locations_tried == 1
        assert b.do_get_calls == []

    @pytest.mark.asyncio
    async def test_no_candidates_is_unreachable(self, fetcher):
        with pytest.raises(EndpointUnreachableError) as exc_info:
            await fetcher.open(make_endpoint(b"t"))

        assert exc_info.value.locations_tried == 0

    @pytest.mark.asyncio
    async def test_mid_stream_failure_is_interrupted(self, network, fetcher):
        a = network.add(LOCATION_A)
        a.serve(b"t", make_batches(0, 5), fail_after=2)

        received = []
        with pytest.raises(EndpointStreamInterruptedError) as exc_info:
            async for batch in fetcher.fetch(make_endpoint(b"t", LOCATION_A)):
                received.append(batch)

        assert len(received) == 2
        assert exc_info.value.batches_yielded == 2
        assert exc_info.value.location == LOCATION_A
        assert a.do_get_calls == [b"t"]

    @pytest.mark.asyncio
    async def test_early_close_cancels_stream(self, network, fetcher):
        a = network.add(LOCATION_A)
        a.serve(b"t", make_batches(0, 5))

        batches = fetcher.fetch(make_endpoint(b"t", LOCATION_A))
        await batches.__anext__()
        await batches.aclose()

        assert a.streams[0].cancelled
        assert a.streams[0].reads == 1

    @pytest.mark.asyncio
    async def test_shared_transport_is_reused(self, network, fetcher):
        shared = FakeTransport(LOCATION_A)
        shared.serve(b"t", make_batches(0, 1))

        await fetcher.open(make_endpoint(b"t", LOCATION_A), shared)

        assert shared.do_get_calls == [b"t"]
        assert network.connect_attempts == []
