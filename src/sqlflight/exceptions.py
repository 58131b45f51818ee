"""
Exception hierarchy for sqlflight.

Every error raised by the client derives from `SqlFlightError`, so callers can catch
the whole family at once or pick the specific failure they know how to handle.
Errors carry a `details` dictionary with enough context to decide whether a full
re-execution of the statement is safe.
"""

from typing import Any, Dict, List, Optional, Sequence


class SqlFlightError(Exception):
    """Base class for all sqlflight errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class UnreachableError(SqlFlightError):
    """The transport to a location could not be established."""

    def __init__(self, message: str, location: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.location = location


class UnauthorizedError(SqlFlightError):
    """Authentication or authorization was rejected by the server."""


class InvalidStatementError(SqlFlightError):
    """The server rejected the SQL text or the prepared statement reference."""

    def __init__(self, message: str, server_message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.server_message = server_message


class ParameterSchemaMismatchError(SqlFlightError):
    """Bound parameters do not match the parameter schema of a prepared statement."""

    def __init__(self, message: str, expected: Any = None, actual: Any = None):
        super().__init__(message, details={"expected": str(expected), "actual": str(actual)})
        self.expected = expected
        self.actual = actual


class EndpointError(SqlFlightError):
    """Base class for failures scoped to a single endpoint of a FlightInfo."""

    def __init__(
        self,
        message: str,
        endpoint_index: int,
        locations_tried: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        details.setdefault("endpoint_index", endpoint_index)
        details.setdefault("locations_tried", locations_tried)
        super().__init__(message, details)
        self.endpoint_index = endpoint_index
        self.locations_tried = locations_tried


class EndpointUnreachableError(EndpointError):
    """Every candidate location of an endpoint failed to connect."""

    def __init__(self, endpoint_index: int, attempts: Sequence[tuple[str, str]]):
        tried = len(attempts)
        summary = "; ".join(f"{location}: {reason}" for location, reason in attempts) or "no candidate locations"
        super().__init__(
            f"Endpoint {endpoint_index} unreachable after trying {tried} location(s): {summary}",
            endpoint_index=endpoint_index,
            locations_tried=tried,
            details={"attempts": [{"location": loc, "error": reason} for loc, reason in attempts]},
        )
        self.attempts = list(attempts)


class EndpointStreamInterruptedError(EndpointError):
    """A data stream was opened and then broke before a clean end of stream."""

    def __init__(
        self,
        endpoint_index: int,
        batches_yielded: int,
        location: Optional[str],
        cause: BaseException,
        locations_tried: int = 1,
    ):
        super().__init__(
            f"Stream for endpoint {endpoint_index} interrupted after {batches_yielded} batch(es)"
            f" from {location}: {cause}",
            endpoint_index=endpoint_index,
            locations_tried=locations_tried,
            details={"batches_yielded": batches_yielded, "location": location, "original_error": str(cause)},
        )
        self.batches_yielded = batches_yielded
        self.location = location


class EndpointRejectedError(EndpointError):
    """The server answered but refused to serve the ticket (auth or invalid ticket)."""

    def __init__(self, endpoint_index: int, locations_tried: int, location: Optional[str], cause: SqlFlightError):
        super().__init__(
            f"Endpoint {endpoint_index} rejected by {location}: {cause}",
            endpoint_index=endpoint_index,
            locations_tried=locations_tried,
            details={"location": location, "error_type": type(cause).__name__, "original_error": str(cause)},
        )
        self.cause = cause


class SchemaMismatchError(EndpointError):
    """An endpoint stream's schema is incompatible with the declared FlightInfo schema."""

    def __init__(
        self, endpoint_index: int, expected: Any, actual: Any, differences: List[str], locations_tried: int = 1
    ):
        super().__init__(
            f"Schema of endpoint {endpoint_index} does not match the declared schema: {'; '.join(differences)}",
            endpoint_index=endpoint_index,
            locations_tried=locations_tried,
            details={"differences": list(differences)},
        )
        self.expected = expected
        self.actual = actual
        self.differences = list(differences)


class ExecutionCancelledError(SqlFlightError):
    """The caller cancelled an execution whose complete result was required."""


class ExecutionFailedError(SqlFlightError):
    """One or more endpoints failed and no complete result could be produced."""

    def __init__(self, message: str, failures: Sequence[Any], batches_yielded: int = 0):
        super().__init__(
            message,
            details={
                "batches_yielded": batches_yielded,
                "failed_endpoints": [
                    {
                        "endpoint_index": failure.endpoint_index,
                        "locations_tried": failure.locations_tried,
                        "error": str(failure.error),
                    }
                    for failure in failures
                ],
            },
        )
        self.failures = list(failures)
        self.batches_yielded = batches_yielded

    @property
    def failed_endpoints(self) -> List[int]:
        return [failure.endpoint_index for failure in self.failures]


class PartialResultError(ExecutionFailedError):
    """Trailing error of a best-effort execution that delivered partial results."""
