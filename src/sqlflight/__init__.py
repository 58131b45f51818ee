"""
sqlflight - Flight SQL client built on Apache Arrow Flight.

Plans SQL statements on a Flight SQL server and fetches the resulting endpoints
concurrently, with bounded lookahead, configurable failure policy and ordering.
"""

from sqlflight.aggregator import Execution, ResultAggregator
from sqlflight.client import FlightSqlClient
from sqlflight.config import ExecutionConfig, FailurePolicy, Ordering
from sqlflight.exceptions import (
    EndpointError,
    EndpointRejectedError,
    EndpointStreamInterruptedError,
    EndpointUnreachableError,
    ExecutionCancelledError,
    ExecutionFailedError,
    InvalidStatementError,
    ParameterSchemaMismatchError,
    PartialResultError,
    SchemaMismatchError,
    SqlFlightError,
    UnauthorizedError,
    UnreachableError,
)
from sqlflight.fetcher import EndpointFetcher
from sqlflight.models import (
    EndpointOutcome,
    FlightEndpoint,
    FlightInfo,
    PreparedStatementHandle,
    PreparedStatementQuery,
    StatementQuery,
    Ticket,
)
from sqlflight.planner import StatementPlanner
from sqlflight.prepared import PreparedStatementManager
from sqlflight.state import ExecutionState

__version__ = "0.1.0"

__all__ = [
    # Core classes
    "FlightSqlClient",
    "StatementPlanner",
    "PreparedStatementManager",
    "EndpointFetcher",
    "ResultAggregator",
    "Execution",
    "ExecutionState",
    # Configuration
    "ExecutionConfig",
    "FailurePolicy",
    "Ordering",
    # Value types
    "Ticket",
    "FlightEndpoint",
    "FlightInfo",
    "PreparedStatementHandle",
    "StatementQuery",
    "PreparedStatementQuery",
    "EndpointOutcome",
    # Exception hierarchy
    "SqlFlightError",
    "UnreachableError",
    "UnauthorizedError",
    "InvalidStatementError",
    "ParameterSchemaMismatchError",
    "EndpointError",
    "EndpointUnreachableError",
    "EndpointStreamInterruptedError",
    "EndpointRejectedError",
    "SchemaMismatchError",
    "ExecutionCancelledError",
    "ExecutionFailedError",
    "PartialResultError",
]
