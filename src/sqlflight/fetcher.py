"""
Endpoint fetching: turns one FlightEndpoint into a lazy sequence of record batches.

Candidate locations are tried in order. Only connection failures move on to the next
candidate; each location is tried at most once. Once a stream is open, any failure is
terminal for the endpoint because a partially read stream cannot be resumed.
"""

import logging
import time
from typing import AsyncIterator, List, Optional, Tuple

import pyarrow as pa

from sqlflight import metrics
from sqlflight.exceptions import (
    EndpointRejectedError,
    EndpointStreamInterruptedError,
    EndpointUnreachableError,
    SqlFlightError,
    UnreachableError,
)
from sqlflight.models import REUSE_CONNECTION_URI, EndpointOutcome, FlightEndpoint
from sqlflight.transport import DataStream, FlightTransport, TransportPool

logger = logging.getLogger(__name__)


class EndpointStream:
    """
    An open data stream for one endpoint.

    Iterating it pulls one batch from the network per requested item, so a consumer
    that stops asking also stops the network reads. The underlying call is cancelled
    when iteration ends early, fails or is cancelled.
    """

    def __init__(self, endpoint_index: int, stream: DataStream, schema: pa.Schema, locations_tried: int):
        self.endpoint_index = endpoint_index
        self.location = stream.location
        self.schema = schema
        self.locations_tried = locations_tried
        self.batches_yielded = 0
        self.rows_yielded = 0
        self._stream = stream
        self._started = time.monotonic()

    def __aiter__(self) -> AsyncIterator[pa.RecordBatch]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[pa.RecordBatch]:
        try:
            while True:
                try:
                    batch = await self._stream.read_batch()
                except SqlFlightError as e:
                    raise EndpointStreamInterruptedError(
                        self.endpoint_index, self.batches_yielded, self.location, e, self.locations_tried
                    ) from e
                if batch is None:
                    break
                self.batches_yielded += 1
                self.rows_yielded += batch.num_rows
                metrics.batches_received_total.inc()
                metrics.rows_received_total.inc(batch.num_rows)
                yield batch
            metrics.endpoint_fetch_duration_seconds.observe(time.monotonic() - self._started)
            logger.debug(
                "Endpoint %s drained from %s: %s batches, %s rows",
                self.endpoint_index,
                self.location,
                self.batches_yielded,
                self.rows_yielded,
            )
        finally:
            self.close()

    def close(self) -> None:
        """Stop the underlying call; no further reads are issued."""
        try:
            self._stream.cancel()
        except Exception as e:
            logger.warning("Error cancelling stream of endpoint %s: %s", self.endpoint_index, e)

    def outcome(self) -> EndpointOutcome:
        return EndpointOutcome.success(self.endpoint_index, self.batches_yielded, self.rows_yielded)


class EndpointFetcher:
    """Opens endpoint streams through a shared TransportPool."""

    def __init__(self, pool: TransportPool):
        self._pool = pool

    @staticmethod
    def candidate_locations(endpoint: FlightEndpoint, shared: Optional[FlightTransport]) -> List[str]:
        """
        Locations to try for an endpoint, in order.

        An endpoint without locations, or a location equal to the reuse-connection URI,
        resolves to the channel the metadata call was made on.
        """
        shared_location = shared.location if shared is not None else None
        if not endpoint.locations:
            return [shared_location] if shared_location else []

        candidates = []
        for location in endpoint.locations:
            if location == REUSE_CONNECTION_URI:
                if shared_location is None:
                    continue
                location = shared_location
            if location not in candidates:
                candidates.append(location)
        return candidates

    async def _transport_for(self, location: str, shared: Optional[FlightTransport]) -> FlightTransport:
        if shared is not None and location == shared.location:
            return shared
        return await self._pool.acquire(location)

    async def open(
        self, endpoint: FlightEndpoint, shared: Optional[FlightTransport] = None, *, index: int = 0
    ) -> EndpointStream:
        """
        Open the data stream of an endpoint and read its schema.

        Args:
            endpoint: The endpoint to retrieve.
            shared: The transport the metadata call was made on.
            index: Position of the endpoint in its FlightInfo, used in errors and logs.

        Raises:
            EndpointUnreachableError: If no candidate location could be connected.
            EndpointRejectedError: If a server answered but refused the ticket.
        """
        attempts: List[Tuple[str, str]] = []
        candidates = self.candidate_locations(endpoint, shared)

        for location in candidates:
            stream: Optional[DataStream] = None
            try:
                transport = await self._transport_for(location, shared)
                stream = await transport.do_get(endpoint.ticket)
                schema = await stream.read_schema()
            except UnreachableError as e:
                if stream is not None:
                    stream.cancel()
                attempts.append((location, str(e)))
                if len(attempts) < len(candidates):
                    metrics.endpoint_location_fallbacks_total.inc()
                    logger.warning(f"Endpoint {index}: location {location} unreachable, trying next candidate: {e}")
                continue
            except SqlFlightError as e:
                if stream is not None:
                    stream.cancel()
                raise EndpointRejectedError(index, len(attempts) + 1, location, e) from e
            except BaseException:
                if stream is not None:
                    stream.cancel()
                raise

            logger.debug("Endpoint %s streaming from %s", index, location)
            return EndpointStream(index, stream, schema, locations_tried=len(attempts) + 1)

        raise EndpointUnreachableError(index, attempts)

    async def fetch(
        self, endpoint: FlightEndpoint, shared: Optional[FlightTransport] = None, *, index: int = 0
    ) -> AsyncIterator[pa.RecordBatch]:
        """Yield the batches of one endpoint in stream order."""
        stream = await self.open(endpoint, shared, index=index)
        try:
            async for batch in stream:
                yield batch
        finally:
            stream.close()
