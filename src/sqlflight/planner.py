"""
Statement planning: the metadata phase of a Flight SQL query.

Each submission performs one GetFlightInfo call on the metadata transport and returns the
resulting FlightInfo. Submissions are never retried here; a statement may have side
effects, so re-running it is left to the caller.
"""

import dataclasses
import logging
from typing import Optional, Sequence, Tuple

import pyarrow as pa
from google.protobuf import message

from sqlflight import metrics, protocol
from sqlflight.exceptions import InvalidStatementError, SqlFlightError
from sqlflight.models import (
    FlightInfo,
    PreparedStatementHandle,
    PreparedStatementQuery,
    SqlCommand,
    StatementQuery,
    check_parameters,
)
from sqlflight.transport import FlightTransport

logger = logging.getLogger(__name__)


def _without_none(**fields):
    return {key: value for key, value in fields.items() if value is not None}


class StatementPlanner:
    def __init__(self, transport: FlightTransport):
        self.transport = transport

    async def _get_flight_info(self, kind: str, command: message.Message) -> FlightInfo:
        name = command.DESCRIPTOR.name
        try:
            info = await self.transport.get_flight_info(protocol.pack_command(command))
        except SqlFlightError as e:
            metrics.statements_submitted_total.labels(kind=kind, status="error").inc()
            logger.error(f"{name} rejected by {self.transport.location}: {e}")
            raise
        metrics.statements_submitted_total.labels(kind=kind, status="success").inc()
        result = FlightInfo.from_flight(info)
        logger.debug("%s planned %s endpoint(s), total_records=%s", name, len(result.endpoints), result.total_records)
        return result

    async def submit(self, command: SqlCommand) -> FlightInfo:
        """
        Plan a statement and return where its result can be fetched.

        Args:
            command: Raw SQL text or a prepared statement with optional bound parameters.

        Returns:
            FlightInfo: Zero or more endpoints. Zero endpoints is an empty result.

        Raises:
            ParameterSchemaMismatchError: If bound parameters do not match the handle; no call is made.
            UnreachableError: If the metadata transport fails.
            InvalidStatementError: If the server rejects the statement.
            UnauthorizedError: If the server rejects the credentials.
        """
        if isinstance(command, StatementQuery):
            request = protocol.CommandStatementQuery(
                **_without_none(query=command.query, transaction_id=command.transaction_id)
            )
            return await self._get_flight_info("statement", request)

        if isinstance(command, PreparedStatementQuery):
            info, _ = await self.submit_prepared(command.handle, command.parameters)
            return info

        raise TypeError(f"Unsupported command type: {type(command).__name__}")

    async def submit_prepared(
        self, handle: PreparedStatementHandle, parameters: Optional[pa.RecordBatch] = None
    ) -> Tuple[FlightInfo, PreparedStatementHandle]:
        """
        Bind `parameters` to a prepared statement and plan it.

        Returns:
            The FlightInfo and the handle in effect after binding. The server may replace the
            handle when parameters are bound; the old id is invalid from then on.
        """
        check_parameters(handle, parameters)
        if parameters is not None:
            handle = await self._bind_parameters(handle, parameters)
        request = protocol.CommandPreparedStatementQuery(prepared_statement_handle=handle.id)
        return await self._get_flight_info("prepared", request), handle

    async def _bind_parameters(
        self, handle: PreparedStatementHandle, parameters: pa.RecordBatch
    ) -> PreparedStatementHandle:
        """Upload the parameter batch; the server may answer with a replacement handle."""
        command = protocol.pack_command(
            protocol.CommandPreparedStatementQuery(prepared_statement_handle=handle.id)
        )
        metadata = await self.transport.do_put(command, parameters.schema, parameters)
        if not metadata:
            return handle
        result = protocol.unpack(metadata, protocol.DoPutPreparedStatementResult)
        if result.HasField("prepared_statement_handle") and result.prepared_statement_handle != handle.id:
            logger.debug("Server replaced the prepared statement handle after binding")
            return dataclasses.replace(handle, id=result.prepared_statement_handle)
        return handle

    async def execute_update(self, query: str, transaction_id: Optional[bytes] = None) -> int:
        """Run a statement that returns no rows and return the affected record count."""
        request = protocol.CommandStatementUpdate(**_without_none(query=query, transaction_id=transaction_id))
        return await self._update("statement_update", request, pa.schema([]))

    async def execute_prepared_update(
        self, handle: PreparedStatementHandle, parameters: Optional[pa.RecordBatch] = None
    ) -> int:
        check_parameters(handle, parameters)
        request = protocol.CommandPreparedStatementUpdate(prepared_statement_handle=handle.id)
        schema = parameters.schema if parameters is not None else handle.parameter_schema
        return await self._update("prepared_update", request, schema, parameters)

    async def _update(
        self,
        kind: str,
        request: message.Message,
        schema: pa.Schema,
        parameters: Optional[pa.RecordBatch] = None,
    ) -> int:
        try:
            metadata = await self.transport.do_put(protocol.pack_command(request), schema, parameters)
            if not metadata:
                raise InvalidStatementError(f"Server returned no update result for {request.DESCRIPTOR.name}")
            record_count = protocol.unpack(metadata, protocol.DoPutUpdateResult).record_count
        except SqlFlightError:
            metrics.statements_submitted_total.labels(kind=kind, status="error").inc()
            raise
        metrics.statements_submitted_total.labels(kind=kind, status="success").inc()
        logger.info("Update affected %s record(s)", record_count)
        return record_count

    # --- Catalog metadata ---

    async def get_catalogs(self) -> FlightInfo:
        return await self._get_flight_info("catalog", protocol.CommandGetCatalogs())

    async def get_db_schemas(
        self, catalog: Optional[str] = None, db_schema_filter_pattern: Optional[str] = None
    ) -> FlightInfo:
        request = protocol.CommandGetDbSchemas(
            **_without_none(catalog=catalog, db_schema_filter_pattern=db_schema_filter_pattern)
        )
        return await self._get_flight_info("catalog", request)

    async def get_tables(
        self,
        catalog: Optional[str] = None,
        db_schema_filter_pattern: Optional[str] = None,
        table_name_filter_pattern: Optional[str] = None,
        table_types: Optional[Sequence[str]] = None,
        include_schema: bool = False,
    ) -> FlightInfo:
        """
        List tables, optionally filtered.

        Filter patterns use SQL LIKE syntax (`%` and `_`). When `include_schema` is set, the
        result carries each table's serialized Arrow schema.
        """
        request = protocol.CommandGetTables(
            **_without_none(
                catalog=catalog,
                db_schema_filter_pattern=db_schema_filter_pattern,
                table_name_filter_pattern=table_name_filter_pattern,
                table_types=list(table_types) if table_types else None,
            ),
            include_schema=include_schema,
        )
        return await self._get_flight_info("catalog", request)

    async def get_table_types(self) -> FlightInfo:
        return await self._get_flight_info("catalog", protocol.CommandGetTableTypes())

    async def get_primary_keys(
        self, table: str, catalog: Optional[str] = None, db_schema: Optional[str] = None
    ) -> FlightInfo:
        request = protocol.CommandGetPrimaryKeys(**_without_none(catalog=catalog, db_schema=db_schema, table=table))
        return await self._get_flight_info("catalog", request)

    async def get_exported_keys(
        self, table: str, catalog: Optional[str] = None, db_schema: Optional[str] = None
    ) -> FlightInfo:
        request = protocol.CommandGetExportedKeys(**_without_none(catalog=catalog, db_schema=db_schema, table=table))
        return await self._get_flight_info("catalog", request)

    async def get_imported_keys(
        self, table: str, catalog: Optional[str] = None, db_schema: Optional[str] = None
    ) -> FlightInfo:
        request = protocol.CommandGetImportedKeys(**_without_none(catalog=catalog, db_schema=db_schema, table=table))
        return await self._get_flight_info("catalog", request)

    async def get_cross_reference(
        self,
        pk_table: str,
        fk_table: str,
        pk_catalog: Optional[str] = None,
        pk_db_schema: Optional[str] = None,
        fk_catalog: Optional[str] = None,
        fk_db_schema: Optional[str] = None,
    ) -> FlightInfo:
        """Foreign keys in `fk_table` that reference the primary key of `pk_table`."""
        request = protocol.CommandGetCrossReference(
            **_without_none(
                pk_catalog=pk_catalog,
                pk_db_schema=pk_db_schema,
                pk_table=pk_table,
                fk_catalog=fk_catalog,
                fk_db_schema=fk_db_schema,
                fk_table=fk_table,
            )
        )
        return await self._get_flight_info("catalog", request)

    async def get_sql_info(
self, info: Optional[Sequence[int]] = None) -> FlightInfo:
        """Server metadata; an empty `info` list asks for every value the server knows."""
        request = protocol.CommandGetSqlInfo(info=list(info or []))
        return await self._get_flight_info("catalog", request)
