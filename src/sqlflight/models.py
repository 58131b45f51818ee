"""
Value types shared by the planner, the fetchers and the aggregator.

All of them are immutable. Column schemas are `pyarrow.Schema` objects and column batches
are `pyarrow.RecordBatch` objects.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

import pyarrow as pa
import pyarrow.flight as flight

from sqlflight.exceptions import ParameterSchemaMismatchError

logger = logging.getLogger(__name__)

REUSE_CONNECTION_URI = "arrow-flight-reuse-connection://?"


class Ticket:
    """
    Opaque retrieval capability for one endpoint.

    A ticket is handed back to the server byte-for-byte. The only way to read it is
    `bytes(ticket)`; its repr never shows the content.
    """

    __slots__ = ("_raw",)

    def __init__(self, raw: bytes):
        object.__setattr__(self, "_raw", bytes(raw))

    def __setattr__(self, name, value):
        raise AttributeError("Ticket is immutable")

    def __bytes__(self) -> bytes:
        return self._raw

    def __eq__(self, other) -> bool:
        return isinstance(other, Ticket) and self._raw == other._raw

    def __hash__(self) -> int:
        return hash(self._raw)

    def __len__(self) -> int:
        return len(self._raw)

    def __repr__(self) -> str:
        return f"Ticket(<{len(self._raw)} bytes>)"


@dataclass(frozen=True)
class FlightEndpoint:
    """One partition of a result set: a ticket plus the locations that can serve it."""

    ticket: Ticket
    locations: Tuple[str, ...] = ()

    @classmethod
    def from_flight(cls, endpoint: flight.FlightEndpoint) -> "FlightEndpoint":
        locations = []
        for location in endpoint.locations:
            uri = location.uri
            locations.append(uri.decode("utf-8") if isinstance(uri, bytes) else str(uri))
        return cls(ticket=Ticket(endpoint.ticket.ticket), locations=tuple(locations))


@dataclass(frozen=True)
class FlightInfo:
    """
    Result of a metadata-phase call.

    Attributes:
        schema: The declared result schema, or None when the server did not declare one.
        endpoints: Ordered endpoints; an empty tuple is an empty result set.
        total_records: Total row count, -1 when unknown.
        total_bytes: Total size in bytes, -1 when unknown.
    """

    schema: Optional[pa.Schema]
    endpoints: Tuple[FlightEndpoint, ...] = ()
    total_records: int = -1
    total_bytes: int = -1

    @classmethod
    def from_flight(cls, info: flight.FlightInfo) -> "FlightInfo":
        try:
            schema = info.schema
        except (pa.ArrowException, ValueError) as e:
            logger.debug("FlightInfo carries no decodable schema: %s", e)
            schema = None
        return cls(
            schema=schema,
            endpoints=tuple(FlightEndpoint.from_flight(endpoint) for endpoint in info.endpoints),
            total_records=info.total_records,
            total_bytes=info.total_bytes,
        )


@dataclass(frozen=True)
class PreparedStatementHandle:
    """Reference to a server-side prepared statement."""

    id: bytes = field(repr=False)
    parameter_schema: pa.Schema = field(default_factory=lambda: pa.schema([]))
    result_schema: pa.Schema = field(default_factory=lambda: pa.schema([]))
    query: Optional[str] = None


@dataclass(frozen=True)
class StatementQuery:
    """Raw SQL text to plan on the server."""

    query: str
    transaction_id: Optional[bytes] = None


@dataclass(frozen=True)
class PreparedStatementQuery:
    """Execution of a prepared statement with an optional bound parameter batch."""

    handle: PreparedStatementHandle
    parameters: Optional[pa.RecordBatch] = None


SqlCommand = Union[StatementQuery, PreparedStatementQuery]


@dataclass(frozen=True)
class EndpointOutcome:
    """Terminal state of one endpoint within an execution."""

    endpoint_index: int
    completed: bool
    batch_count: int = 0
    row_count: int = 0
    error: Optional[BaseException] = None
    locations_tried: int = 0

    @classmethod
    def success(cls, endpoint_index: int, batch_count: int, row_count: int) -> "EndpointOutcome":
        return cls(endpoint_index=endpoint_index, completed=True, batch_count=batch_count, row_count=row_count)

    @classmethod
    def failure(
        cls, endpoint_index: int, error: BaseException, locations_tried: int, batch_count: int = 0
    ) -> "EndpointOutcome":
        return cls(
            endpoint_index=endpoint_index,
            completed=False,
            batch_count=batch_count,
            error=error,
            locations_tried=locations_tried,
        )

    @property
    def failed(self) -> bool:
        return not self.completed


def schema_differences(declared: pa.Schema, actual: pa.Schema) -> Tuple[list[str], list[str]]:
    """
    Compare a stream schema against the declared schema.

    Field count, order and logical types must match; those differences are returned as
    fatal. Name and nullability differences are only advisory.

    Returns:
        A `(fatal, advisory)` tuple of human readable differences.
    """
    fatal: list[str] = []
    advisory: list[str] = []
    if len(declared) != len(actual):
        fatal.append(f"expected {len(declared)} field(s), got {len(actual)}")
        return fatal, advisory

    for position, (expected, received) in enumerate(zip(declared, actual)):
        if not expected.type.equals(received.type):
            fatal.append(f"field {position} ({expected.name}): expected type {expected.type}, got {received.type}")
        if expected.name != received.name:
            advisory.append(f"field {position}: expected name {expected.name!r}, got {received.name!r}")
        if expected.nullable != received.nullable:
            advisory.append(
                f"field {position} ({expected.name}): expected nullable={expected.nullable}, got {received.nullable}"
            )
    return fatal, advisory


def check_parameters(handle: PreparedStatementHandle, parameters: Optional[pa.RecordBatch]) -> None:
    """
    Validate a parameter batch against the parameter schema of a prepared statement.

    Field count, names and types must be equal field-for-field.

    Raises:
        ParameterSchemaMismatchError: On any mismatch, including missing parameters for a
            statement that declares some.
    """
    expected = handle.parameter_schema
    if parameters is None:
        if len(expected) > 0:
            raise ParameterSchemaMismatchError(
                f"Prepared statement expects {len(expected)} parameter(s) but none were bound",
                expected=expected,
                actual=None,
            )
        return

    actual = parameters.schema
    if len(expected) != len(actual):
        raise ParameterSchemaMismatchError(
            f"Prepared statement expects {len(expected)} parameter(s), got {len(actual)}",
            expected=expected,
            actual=actual,
        )
    for position, (want, got) in enumerate(zip(expected, actual)):
        if want.name != got.name or not want.type.equals(got.type):
            raise ParameterSchemaMismatchError(
                f"Parameter {position} mismatch: expected {want.name}: {want.type}, got {got.name}: {got.type}",
                expected=expected,
                actual=actual,
            )
