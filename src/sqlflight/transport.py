import asyncio
import functools
import logging
from typing import Callable, Dict, List, Optional, Tuple

import pyarrow as pa
import pyarrow.flight as flight

from sqlflight.config import ClientSettings, client_settings
from sqlflight.exceptions import (
    InvalidStatementError,
    SqlFlightError,
    UnauthorizedError,
    UnreachableError,
)
from sqlflight.models import Ticket

logger = logging.getLogger(__name__)

Header = Tuple[bytes, bytes]


def _handle_flight_error(error: Exception, operation_context: str, location: Optional[str] = None) -> SqlFlightError:
    """
    Convert pyarrow.flight exceptions to the sqlflight exception hierarchy.

    Args:
        error: The original exception from pyarrow.flight operations.
        operation_context: Description of the operation that failed.
        location: The location the operation was issued against.

    Returns:
        A sqlflight exception with appropriate context.
    """
    if isinstance(error, SqlFlightError):
        return error

    details = {"original_error": str(error), "error_type": type(error).__name__, "location": location}
    if isinstance(error, (flight.FlightUnauthenticatedError, flight.FlightUnauthorizedError)):
        return UnauthorizedError(f"Access denied during {operation_context}: {error}", details=details)
    elif isinstance(error, flight.FlightUnavailableError):
        return UnreachableError(
            f"Flight server unavailable during {operation_context}: {error}", location=location, details=details
        )
    elif isinstance(error, flight.FlightTimedOutError):
        return UnreachableError(f"Timed out during {operation_context}: {error}", location=location, details=details)
    elif isinstance(
        error, (flight.FlightServerError, flight.FlightInternalError, pa.ArrowInvalid, pa.ArrowNotImplementedError)
    ):
        return InvalidStatementError(
            f"Server rejected {operation_context}: {error}", server_message=str(error), details=details
        )
    elif isinstance(error, (ConnectionError, OSError)):
        return UnreachableError(
            f"Connection failed during {operation_context}: {error}", location=location, details=details
        )
    else:
        return SqlFlightError(f"Unexpected error during {operation_context}: {error}", details=details)


class DataStream:
    """
    One server-streaming DoGet call.

    Reads are blocking in pyarrow, so each read runs in a worker thread; a read is only
    issued when the caller asks for the next batch.
    """

    def __init__(self, reader: flight.FlightStreamReader, location: str):
        self._reader = reader
        self.location = location
        self._finished = False

    async def read_schema(self) -> pa.Schema:
        try:
            return await asyncio.to_thread(lambda: self._reader.schema)
        except Exception as e:
            raise _handle_flight_error(e, "stream schema retrieval", self.location) from e

    async def read_batch(self) -> Optional[pa.RecordBatch]:
        """Return the next batch, or None at a clean end of stream."""
        try:
            return await asyncio.to_thread(self._read_next)
        except Exception as e:
            raise _handle_flight_error(e, "stream read", self.location) from e

    def _read_next(self) -> Optional[pa.RecordBatch]:
        while True:
            try:
                chunk = self._reader.read_chunk()
            except StopIteration:
                self._finished = True
                return None
            # Metadata-only messages carry no rows.
            if chunk.data is not None:
                return chunk.data

    def cancel(self) -> None:
        if not self._finished:
            self._finished = True
            self._reader.cancel()


class FlightTransport:
    """
    An open channel to one Flight location.

    Every call is an independent RPC on the shared gRPC channel, so one transport can
    serve many concurrent streams.
    """

    def __init__(
        self,
        location: str,
        client: flight.FlightClient,
        headers: Optional[List[Header]] = None,
        timeout: Optional[float] = None,
    ):
        self.location = location
        self._client = client
        self.headers = list(headers or [])
        self._options = flight.FlightCallOptions(timeout=timeout, headers=self.headers)
        # Streams may legitimately outlive any unary deadline.
        self._stream_options = flight.FlightCallOptions(headers=self.headers)

    async def get_flight_info(self, command: bytes) -> flight.FlightInfo:
        descriptor = flight.FlightDescriptor.for_command(command)
        try:
            return await asyncio.to_thread(self._client.get_flight_info, descriptor, self._options)
        except Exception as e:
            raise _handle_flight_error(e, "statement submission", self.location) from e

    async def do_get(self, ticket: Ticket) -> DataStream:
        flight_ticket = flight.Ticket(bytes(ticket))
        try:
            reader = await asyncio.to_thread(self._client.do_get, flight_ticket, self._stream_options)
        except Exception as e:
            raise _handle_flight_error(e, "data retrieval", self.location) from e
        return DataStream(reader, self.location)

    async def do_action(self, action_type: str, body: bytes) -> List[bytes]:
        def _call() -> List[bytes]:
            results = self._client.do_action(flight.Action(action_type, body), self._options)
            return [result.body.to_pybytes() for result in results]

        try:
            return await asyncio.to_thread(_call)
        except Exception as e:
            raise _handle_flight_error(e, f"action {action_type}", self.location) from e

    async def do_put(
        self, command: bytes, schema: pa.Schema, batch: Optional[pa.RecordBatch] = None
    ) -> Optional[bytes]:
        """Upload at most one batch under a command descriptor and return the first metadata message."""

        def _call() -> Optional[bytes]:
            descriptor = flight.FlightDescriptor.for_command(command)
            writer, metadata_reader = self._client.do_put(descriptor, schema, self._options)
            try:
                if batch is not None:
                    writer.write_batch(batch)
                writer.done_writing()
                metadata = metadata_reader.read()
                return metadata.to_pybytes() if metadata is not None else None
            finally:
                writer.close()

        try:
            return await asyncio.to_thread(_call)
        except Exception as e:
            raise _handle_flight_error(e, "parameter upload", self.location) from e

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)

    def __repr__(self) -> str:
        return f"FlightTransport({self.location!r})"


def connect(location: str, settings: Optional[ClientSettings] = None) -> FlightTransport:
    """
    Open an authenticated transport to a location.

    Args:
        location: A Flight URI such as `grpc://host:port` or `grpc+tls://host:port`.
        settings: Client settings; defaults to the SQLFLIGHT_CLIENT_* environment.

    Raises:
        UnreachableError: If the client cannot be created or the handshake fails to connect.
        UnauthorizedError: If basic token authentication is rejected.
    """
    settings = settings or client_settings
    kwargs = {}
    if settings.tls_root_certs_path:
        with open(settings.tls_root_certs_path, "rb") as f:
            kwargs["tls_root_certs"] = f.read()
    if settings.disable_server_verification:
        kwargs["disable_server_verification"] = True

    try:
        client = flight.FlightClient(location, **kwargs)
    except Exception as e:
        raise _handle_flight_error(e, "connection setup", location) from e

    headers: List[Header] = [(key.lower().encode(), value.encode()) for key, value in settings.headers.items()]
    if settings.token:
        headers.append((b"authorization", f"Bearer {settings.token}".encode()))
    elif settings.username and settings.password:
        try:
            headers.append(client.authenticate_basic_token(settings.username, settings.password))
        except Exception as e:
            client.close()
            raise _handle_flight_error(e, "basic token authentication", location) from e

    logger.debug("Connected transport to %s", location)
    return FlightTransport(location, client, headers=headers, timeout=settings.call_timeout)


Connector = Callable[[str], FlightTransport]


def _normalize(location: str) -> str:
    return location.rstrip("/")


class TransportPool:
    """
    Keeps one transport per location so endpoints served from the same address share a
    channel. Each DoGet is still its own stream with independent flow control.
    """

    def __init__(self, connector: Optional[Connector] = None, settings: Optional[ClientSettings] = None):
        self._connector = connector or functools.partial(connect, settings=settings)
        self._transports: Dict[str, FlightTransport] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def register(self, transport: FlightTransport) -> None:
        """Make an already open transport (e.g. the metadata channel) available for reuse."""
        self._transports.setdefault(_normalize(transport.location), transport)

    def get(self, location: str) -> Optional[FlightTransport]:
        return self._transports.get(_normalize(location))

    async def acquire(self, location: str) -> FlightTransport:
        key = _normalize(location)
        if key in self._transports:
            return self._transports[key]

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key not in self._transports:
                try:
                    transport = await asyncio.to_thread(self._connector, location)
                except SqlFlightError:
                    raise
                except Exception as e:
                    raise _handle_flight_error(e, "connection setup", location) from e
                self._transports[key] = transport
                logger.info(f"Opened transport to {location} (pool size: {len(self._transports)})")
        return self._transports[key]

    def __len__(self) -> int:
        return len(self._transports)

    async def close_async(self) -> None:
        transports, self._transports = list(self._transports.values()), {}
        for transport in transports:
            try:
                await transport.close()
            except Exception as e:
                logger.error("Error closing transport to %s: %s", transport.location, e, exc_info=True)
