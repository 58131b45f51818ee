import logging
from typing import Dict, List, Optional, Set, Tuple

import pyarrow as pa

from sqlflight import metrics, protocol
from sqlflight.codec import deserialize_schema
from sqlflight.exceptions import InvalidStatementError
from sqlflight.models import FlightInfo, PreparedStatementHandle
from sqlflight.planner import StatementPlanner
from sqlflight.transport import FlightTransport

logger = logging.getLogger(__name__)


class PreparedStatementManager:
    """
    Creates, executes and closes server-side prepared statements.

    Handles created here are tracked until closed so that `close_all` can release them on
    client shutdown. Closing is best-effort: the server reclaims idle statements on its own.
    """

    def __init__(self, transport: FlightTransport, planner: Optional[StatementPlanner] = None):
        self.transport = transport
        self.planner = planner or StatementPlanner(transport)
        self._open: Dict[bytes, PreparedStatementHandle] = {}
        self._closed: Set[bytes] = set()

    @property
    def open_handles(self) -> List[PreparedStatementHandle]:
        return list(self._open.values())

    def is_open(self, handle: PreparedStatementHandle) -> bool:
        return self._resolve(handle)[0] is not None

    async def prepare(self, sql: str, transaction_id: Optional[bytes] = None) -> PreparedStatementHandle:
        """
        Create a prepared statement for `sql`.

        Raises:
            InvalidStatementError: If the server rejects the SQL or returns no handle.
        """
        request = protocol.ActionCreatePreparedStatementRequest(query=sql)
        if transaction_id is not None:
            request.transaction_id = transaction_id

        try:
            results = await self.transport.do_action(
                protocol.ACTION_CREATE_PREPARED_STATEMENT, protocol.pack_command(request)
            )
            if not results:
                raise InvalidStatementError("Server returned no prepared statement handle", details={"query": sql})
            result = protocol.unpack(results[0], protocol.ActionCreatePreparedStatementResult)
        except Exception:
            metrics.statements_submitted_total.labels(kind="prepare", status="error").inc()
            raise
        metrics.statements_submitted_total.labels(kind="prepare", status="success").inc()

        handle = PreparedStatementHandle(
            id=result.prepared_statement_handle,
            parameter_schema=deserialize_schema(result.parameter_schema),
            result_schema=deserialize_schema(result.dataset_schema),
            query=sql,
        )
        self._open[handle.id] = handle
        self._closed.discard(handle.id)
        metrics.prepared_statements_open.inc()
        logger.debug("Prepared statement with %s parameter(s)", len(handle.parameter_schema))
        return handle

    def _resolve(self, handle: PreparedStatementHandle) -> Tuple[Optional[bytes], PreparedStatementHandle]:
        """Return the tracking key and the current handle, following any replacement made at bind time."""
        if handle.id in self._open:
            return handle.id, self._open[handle.id]
        for key, current in self._open.items():
            if current.id == handle.id:
                return key, current
        return None, handle

    def _usable(self, handle: PreparedStatementHandle) -> Tuple[Optional[bytes], PreparedStatementHandle]:
        key, current = self._resolve(handle)
        if key is None and handle.id in self._closed:
            raise InvalidStatementError("Prepared statement is closed", details={"query": handle.query})
        return key, current

    async def execute(self, handle: PreparedStatementHandle, params: Optional[pa.RecordBatch] = None) -> FlightInfo:
        """
        Bind `params` and plan the prepared statement.

        If the server replaces the handle when binding, the replacement is used for every later
        bind and for close, whichever of the two handles the caller holds.

        Raises:
            InvalidStatementError: If the handle was already closed.
            ParameterSchemaMismatchError: If `params` does not match the parameter schema.
                Raised before any call reaches the server.
        """
        key, current = self._usable(handle)
        info, bound = await self.planner.submit_prepared(current, params)
        if key is not None and bound.id != current.id:
            self._open[key] = bound
        return info

    async def execute_update(self, handle: PreparedStatementHandle, params: Optional[pa.RecordBatch] = None) -> int:
        _, current = self._usable(handle)
        return await self.planner.execute_prepared_update(current, params)

    async def close(self, handle: PreparedStatementHandle) -> None:
        """
        Release a prepared statement. Failures are logged, never raised.

        Handles prepared by another manager are closed on the server as well; only the
        open-statement gauge is left alone for them.
        """
        key, current = self._resolve(handle)
        if key is None and handle.id in self._closed:
            logger.debug("Prepared statement already closed")
            return
        if key is not None:
            del self._open[key]
            metrics.prepared_statements_open.dec()
            self._closed.add(key)
        self._closed.update((handle.id, current.id))

        request = protocol.ActionClosePreparedStatementRequest(prepared_statement_handle=current.id)
        try:
            await self.transport.do_action(protocol.ACTION_CLOSE_PREPARED_STATEMENT, protocol.pack_command(request))
        except Exception as e:
            logger.warning(f"Error closing prepared statement on {self.transport.location}: {e}")

    async def close_all(self) -> None:
        for handle in self.open_handles:
            await self.close(handle)

    async def __aenter__(self) -> "PreparedStatementManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close_all()
