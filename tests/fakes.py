import asyncio
from typing import Dict, List, Optional, Sequence

import pyarrow as pa
import pyarrow.flight as flight

from sqlflight.exceptions import InvalidStatementError, UnreachableError
from sqlflight.models import FlightEndpoint, FlightInfo, Ticket

INT_SCHEMA = pa.schema([pa.field("x", pa.int64())])


def make_batch(values: Sequence[int], name: str = "x") -> pa.RecordBatch:
    return pa.record_batch([pa.array(list(values), type=pa.int64())], names=[name])


def make_batches(start: int, count: int, rows: int = 2) -> List[pa.RecordBatch]:
    """`count` batches with consecutive, globally distinct values starting at `start`."""
    return [make_batch(range(start + i * rows, start + (i + 1) * rows)) for i in range(count)]


def make_endpoint(ticket: bytes, *locations: str) -> FlightEndpoint:
    return FlightEndpoint(Ticket(ticket), tuple(locations))


def values_of(batches: Sequence[pa.RecordBatch]) -> List[int]:
    return [value for batch in batches for value in batch.column(0).to_pylist()]


class FakeDataStream:
    """An in-memory DataStream: yields its batches, optionally slowly or failing midway."""

    def __init__(
        self,
        location: str,
        batches: Sequence[pa.RecordBatch],
        schema: Optional[pa.Schema] = None,
        fail_after: Optional[int] = None,
        delay: float = 0.0,
    ):
        self.location = location
        self.schema = schema or (batches[0].schema if batches else INT_SCHEMA)
        self._batches = list(batches)
        self._fail_after = fail_after
        self._delay = delay
        self.reads = 0
        self.cancelled = False
        self.finished = False

    async def read_schema(self) -> pa.Schema:
        return self.schema

    async def read_batch(self) -> Optional[pa.RecordBatch]:
        if self.cancelled:
            raise AssertionError("read issued after cancel")
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._fail_after is not None and self.reads >= self._fail_after:
            raise UnreachableError("connection reset by peer", location=self.location)
        if self.reads >= len(self._batches):
            self.finished = True
            return None
        batch = self._batches[self.reads]
        self.reads += 1
        return batch

    def cancel(self) -> None:
        if not self.finished:
            self.cancelled = True

    @property
    def stopped(self) -> bool:
        return self.cancelled or self.finished


class FakeTransport:
    """An in-memory FlightTransport serving registered tickets."""

    def __init__(self, location: str):
        self.location = location
        self.served: Dict[bytes, dict] = {}
        self.streams: List[FakeDataStream] = []
        self.do_get_calls: List[bytes] = []
        self.commands: List[bytes] = []
        self.flight_info: Optional[flight.FlightInfo] = None
        self.get_unreachable = False
        self.closed = False

    def serve(self, ticket: bytes, batches: Sequence[pa.RecordBatch], **kwargs) -> None:
        self.served[ticket] = dict(batches=batches, **kwargs)

    async def get_flight_info(self, command: bytes) -> flight.FlightInfo:
        self.commands.append(command)
        return self.flight_info

    async def do_get(self, ticket: Ticket) -> FakeDataStream:
        raw = bytes(ticket)
        self.do_get_calls.append(raw)
        if self.get_unreachable:
            raise UnreachableError(f"{self.location} unavailable", location=self.location)
        if raw not in self.served:
            raise InvalidStatementError(f"unknown ticket at {self.location}")
        stream = FakeDataStream(self.location, **self.served[raw])
        self.streams.append(stream)
        return stream

    async def close(self) -> None:
        self.closed = True


class FakeNetwork:
    """Connector for TransportPool; locations that were never added are unreachable."""

    def __init__(self):
        self.transports: Dict[str, FakeTransport] = {}
        self.connect_attempts: List[str] = []

    def add(self, location: str) -> FakeTransport:
        transport = FakeTransport(location)
        self.transports[location] = transport
        return transport

    def connect(self, location: str) -> FakeTransport:
        self.connect_attempts.append(location)
        if location not in self.transports:
            raise UnreachableError(f"cannot connect to {location}", location=location)
        return self.transports[location]

    @property
    def streams(self) -> List[FakeDataStream]:
        return [stream for transport in self.transports.values() for stream in transport.streams]


def make_info(endpoints: Sequence[FlightEndpoint], schema: Optional[pa.Schema] = INT_SCHEMA) -> FlightInfo:
    return FlightInfo(schema=schema, endpoints=tuple(endpoints))
