import logging
from typing import Iterator, Optional, Sequence

import pandas as pd
import pyarrow as pa

from sqlflight.aggregator import Execution, ResultAggregator
from sqlflight.config import ClientSettings, ExecutionConfig, client_settings
from sqlflight.fetcher import EndpointFetcher
from sqlflight.models import FlightInfo, PreparedStatementHandle, StatementQuery
from sqlflight.planner import StatementPlanner
from sqlflight.prepared import PreparedStatementManager
from sqlflight.transport import Connector, FlightTransport, TransportPool
from sqlflight.utils.stream_utils import AsyncToSyncConverter, syncify_async_iter

logger = logging.getLogger(__name__)


class FlightSqlClient:
    """
    A Flight SQL client.

    Statements are planned on the metadata location; their endpoints are then fetched
    concurrently, reusing one transport per location. Every operation has an async form
    (prefixed with `a`) and most have a blocking form that runs on a background event loop.
    Use either the async or the blocking API for one client instance, not both.

    Example:
        with FlightSqlClient("grpc://localhost:52358") as client:
            table = client.execute_to_table("SELECT * FROM trips")
    """

    def __init__(
        self,
        location: Optional[str] = None,
        settings: Optional[ClientSettings] = None,
        execution_config: Optional[ExecutionConfig] = None,
        connector: Optional[Connector] = None,
        converter: Optional[AsyncToSyncConverter] = None,
    ):
        """
        Args:
            location: Flight URI of the metadata endpoint. Defaults to `settings.location`.
            settings: Connection settings; defaults to the SQLFLIGHT_CLIENT_* environment.
            execution_config: Default concurrency, lookahead, failure policy and ordering;
                defaults to the SQLFLIGHT_EXECUTION_* environment.
            connector: Opens a transport for a location. Defaults to `sqlflight.transport.connect`.
            converter: Event loop used by the blocking API. One is created on first use otherwise.
        """
        self._settings = settings or client_settings
        self.location = location or self._settings.location
        self.execution_config = execution_config or ExecutionConfig.from_settings()
        self._pool = TransportPool(connector, settings=self._settings)
        self._aggregator = ResultAggregator(EndpointFetcher(self._pool), self.execution_config)
        self._converter = converter
        self._owns_converter = converter is None
        self._transport: Optional[FlightTransport] = None
        self._planner: Optional[StatementPlanner] = None
        self._prepared: Optional[PreparedStatementManager] = None
        logger.info(f"Initialized FlightSqlClient for {self.location}")

    # --- Internals ---

    async def _connect(self) -> FlightTransport:
        if self._transport is None:
            transport = await self._pool.acquire(self.location)
            self._planner = StatementPlanner(transport)
            self._prepared = PreparedStatementManager(transport, self._planner)
            self._transport = transport
        return self._transport

    async def _get_planner(self) -> StatementPlanner:
        await self._connect()
        return self._planner

    async def _get_prepared(self) -> PreparedStatementManager:
        await self._connect()
        return self._prepared

    def _get_converter(self) -> AsyncToSyncConverter:
        if self._converter is None:
            self._converter = AsyncToSyncConverter()
        return self._converter

    def _run(self, coro):
        return self._get_converter().run_coroutine(coro)

    # --- Async API ---

    async def aplan(self, sql: str, transaction_id: Optional[bytes] = None) -> FlightInfo:
        """Run the metadata phase only and return the FlightInfo of `sql`."""
        planner = await self._get_planner()
        return await planner.submit(StatementQuery(sql, transaction_id))

    async def afetch(self, info: FlightInfo, config: Optional[ExecutionConfig] = None) -> Execution:
        """Create the lazy result sequence of an already planned FlightInfo."""
        transport = await self._connect()
        return self._aggregator.execute(info, shared=transport, config=config)

    async def aexecute(self, sql: str, config: Optional[ExecutionConfig] = None) -> Execution:
        """
        Plan `sql` and return its lazy result.

        Args:
            sql: The query text.
            config: Overrides the client's execution config for this query.

        Returns:
            Execution: An async iterable of record batches. Endpoints are only fetched
            while it is iterated.

        Raises:
            UnreachableError, UnauthorizedError, InvalidStatementError: From the planning call.
        """
        info = await self.aplan(sql)
        return await self.afetch(info, config)

    async def aexecute_to_table(self, sql: str, config: Optional[ExecutionConfig] = None) -> pa.Table:
        execution = await self.aexecute(sql, config)
        return await execution.to_table()

    async def aexecute_to_pandas(self, sql: str, config: Optional[ExecutionConfig] = None) -> pd.DataFrame:
        table = await self.aexecute_to_table(sql, config)
        return table.to_pandas()

    async def aexecute_update(self, sql: str, transaction_id: Optional[bytes] = None) -> int:
        planner = await self._get_planner()
        return await planner.execute_update(sql, transaction_id)

    async def aprepare(self, sql: str) -> PreparedStatementHandle:
        prepared = await self._get_prepared()
        return await prepared.prepare(sql)

    async def aexecute_prepared(
        self,
        handle: PreparedStatementHandle,
        params: Optional[pa.RecordBatch] = None,
        config: Optional[ExecutionConfig] = None,
    ) -> Execution:
        prepared = await self._get_prepared()
        info = await prepared.execute(handle, params)
        return await self.afetch(info, config)

    async def aexecute_prepared_update(
        self, handle: PreparedStatementHandle, params: Optional[pa.RecordBatch] = None
    ) -> int:
        prepared = await self._get_prepared()
        return await prepared.execute_update(handle, params)

    async def aclose_prepared(self, handle: PreparedStatementHandle) -> None:
        prepared = await self._get_prepared()
        await prepared.close(handle)

    async def aget_catalogs(self) -> FlightInfo:
        return await (await self._get_planner()).get_catalogs()

    async def aget_db_schemas(
        self, catalog: Optional[str] = None, db_schema_filter_pattern: Optional[str] = None
    ) -> FlightInfo:
        return await (await self._get_planner()).get_db_schemas(catalog, db_schema_filter_pattern)

    async def aget_tables(
        self,
        catalog: Optional[str] = None,
        db_schema_filter_pattern: Optional[str] = None,
        table_name_filter_pattern: Optional[str] = None,
        table_types: Optional[Sequence[str]] = None,
        include_schema: bool = False,
    ) -> FlightInfo:
        planner = await self._get_planner()
        return await planner.get_tables(
            catalog, db_schema_filter_pattern, table_name_filter_pattern, table_types, include_schema
        )

    async def aget_table_types(self) -> FlightInfo:
        return await (await self._get_planner()).get_table_types()

    async def aget_primary_keys(
        self, table: str, catalog: Optional[str] = None, db_schema: Optional[str] = None
    ) -> FlightInfo:
        return await (await self._get_planner()).get_primary_keys(table, catalog, db_schema)

    async def aget_exported_keys(
        self, table: str, catalog: Optional[str] = None, db_schema: Optional[str] = None
    ) -> FlightInfo:
        return await (await self._get_planner()).get_exported_keys(table, catalog, db_schema)

    async def aget_imported_keys(
        self, table: str, catalog: Optional[str] = None, db_schema: Optional[str] = None
    ) -> FlightInfo:
        return await (await self._get_planner()).get_imported_keys(table, catalog, db_schema)

    async def aget_cross_reference(
        self,
        pk_table: str,
        fk_table: str,
        pk_catalog: Optional[str] = None,
        pk_db_schema: Optional[str] = None,
        fk_catalog: Optional[str] = None,
        fk_db_schema: Optional[str] = None,
    ) -> FlightInfo:
        planner = await self._get_planner()
        return await planner.get_cross_reference(pk_table, fk_table, pk_catalog, pk_db_schema, fk_catalog, fk_db_schema)

    async def aget_sql_info(
self, info: Optional[Sequence[int]] = None) -> FlightInfo:
        return await (await self._get_planner()).get_sql_info(info)

    async def close_async(self) -> None:
        """Close open prepared statements (best-effort) and every transport."""
        if self._prepared is not None:
            await self._prepared.close_all()
        await self._pool.close_async()
        self._transport = self._planner = self._prepared = None

    async def __aenter__(self) -> "FlightSqlClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close_async()

    # --- Blocking API ---

    def iter_batches(self, sql: str, config: Optional[ExecutionConfig] = None) -> Iterator[pa.RecordBatch]:
        """
        Iterate the batches of `sql` synchronously.

        Batches are fetched as the iterator advances; leaving the loop early cancels the
        remaining endpoints.
        """
        return syncify_async_iter(self.aexecute(sql, config), self._get_converter())

    def iter_prepared_batches(
        self,
        handle: PreparedStatementHandle,
        params: Optional[pa.RecordBatch] = None,
        config: Optional[ExecutionConfig] = None,
    ) -> Iterator[pa.RecordBatch]:
        return syncify_async_iter(self.aexecute_prepared(handle, params, config), self._get_converter())

    def plan(self, sql: str) -> FlightInfo:
        return self._run(self.aplan(sql))

    def fetch_to_table(self, info: FlightInfo, config: Optional[ExecutionConfig] = None) -> pa.Table:
        async def _collect() -> pa.Table:
            execution = await self.afetch(info, config)
            return await execution.to_table()

        return self._run(_collect())

    def execute_to_table(self, sql: str, config: Optional[ExecutionConfig] = None) -> pa.Table:
        """
        Run `sql` and collect the whole result.

        Raises:
            ExecutionFailedError: If endpoints failed (PartialResultError under best effort).
            EndpointError: The first endpoint failure under fail fast.
        """
        return self._run(self.aexecute_to_table(sql, config))

    def execute_to_pandas(self, sql: str, config: Optional[ExecutionConfig] = None) -> pd.DataFrame:
        return self._run(self.aexecute_to_pandas(sql, config))

    def execute_update(self, sql: str, transaction_id: Optional[bytes] = None) -> int:
        return self._run(self.aexecute_update(sql, transaction_id))

    def prepare(self, sql: str) -> PreparedStatementHandle:
        return self._run(self.aprepare(sql))

    def execute_prepared_to_table(
        self,
        handle: PreparedStatementHandle,
        params: Optional[pa.RecordBatch] = None,
        config: Optional[ExecutionConfig] = None,
    ) -> pa.Table:
        async def _collect() -> pa.Table:
            execution = await self.aexecute_prepared(handle, params, config)
            return await execution.to_table()

        return self._run(_collect())

    def execute_prepared_update(self, handle: PreparedStatementHandle, params: Optional[pa.RecordBatch] = None) -> int:
        return self._run(self.aexecute_prepared_update(handle, params))

    def close_prepared(self, handle: PreparedStatementHandle) -> None:
        self._run(self.aclose_prepared(handle))

    def get_catalogs(self) -> FlightInfo:
        return self._run(self.aget_catalogs())

    def get_db_schemas(self, catalog: Optional[str] = None, db_schema_filter_pattern: Optional[str] = None) -> FlightInfo:
        return self._run(self.aget_db_schemas(catalog, db_schema_filter_pattern))

    def get_tables(
        self,
        catalog: Optional[str] = None,
        db_schema_filter_pattern: Optional[str] = None,
        table_name_filter_pattern: Optional[str] = None,
        table_types: Optional[Sequence[str]] = None,
        include_schema: bool = False,
    ) -> FlightInfo:
        return self._run(
            self.aget_tables(catalog, db_schema_filter_pattern, table_name_filter_pattern, table_types, include_schema)
        )

    def get_table_types(self) -> FlightInfo:
        return self._run(self.aget_table_types())

    def get_primary_keys(self, table: str, catalog: Optional[str] = None, db_schema: Optional[str] = None) -> FlightInfo:
        return self._run(self.aget_primary_keys(table, catalog, db_schema))

    def get_exported_keys(self, table: str, catalog: Optional[str] = None, db_schema: Optional[str] = None) -> FlightInfo:
        return self._run(self.aget_exported_keys(table, catalog, db_schema))

    def get_imported_keys(self, table: str, catalog: Optional[str] = None, db_schema: Optional[str] = None) -> FlightInfo:
        return self._run(self.aget_imported_keys(table, catalog, db_schema))

    def get_cross_reference(
        self,
        pk_table: str,
        fk_table: str,
        pk_catalog: Optional[str] = None,
        pk_db_schema: Optional[str] = None,
        fk_catalog: Optional[str] = None,
        fk_db_schema: Optional[str] = None,
    ) -> FlightInfo:
        return self._run(
            self.aget_cross_reference(pk_table, fk_table, pk_catalog, pk_db_schema, fk_catalog, fk_db_schema)
        )

    def get_sql_info(
self, info: Optional[Sequence[int]] = None) -> FlightInfo:
        return self._run(self.aget_sql_info(info))

    def close(self) -> None:
        if self._converter is not None:
            self._run(self.close_async())
            if self._owns_converter:
                self._converter.stop_loop()
                self._converter = None

    def __enter__(self) -> "FlightSqlClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
