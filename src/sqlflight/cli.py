"""
sqlflight CLI module.

Runs Flight SQL statements and catalog queries against a server and prints the result as
a table, or writes it to stdout as an Arrow IPC stream.
"""

import asyncio
import sys
from enum import Enum
from typing import Annotated, AsyncIterator, Awaitable, Callable, Iterable, List, Optional, TypeVar

import pyarrow as pa
import typer

from sqlflight.aggregator import Execution
from sqlflight.client import FlightSqlClient
from sqlflight.codec import read_batches_from_stream, write_batches_to_stream
from sqlflight.config import ExecutionConfig, FailurePolicy, Ordering, client_settings
from sqlflight.exceptions import SqlFlightError
from sqlflight.models import FlightInfo
from sqlflight.utils.custom_logging import setup_logging

setup_logging(log_file=None)

cli = typer.Typer(help="sqlflight - Flight SQL command line client")

T = TypeVar("T")

_READ_CHUNK_SIZE = 64 * 1024


class OutputFormat(str, Enum):
    TABLE = "table"
    ARROW = "arrow"


LocationOption = Annotated[
    Optional[str], typer.Option(help="Flight SQL server location, defaults to SQLFLIGHT_CLIENT_LOCATION")
]
TokenOption = Annotated[Optional[str], typer.Option(help="Bearer token sent with every call")]
ConcurrencyOption = Annotated[Optional[int], typer.Option(min=1, help="Endpoints fetched at once")]
PolicyOption = Annotated[Optional[FailurePolicy], typer.Option(help="Behaviour when an endpoint fails")]
StrictOption = Annotated[bool, typer.Option("--strict", help="Release endpoints in declaration order")]
FormatOption = Annotated[OutputFormat, typer.Option("--format", help="Output format")]
CatalogOption = Annotated[Optional[str], typer.Option(help="Catalog name")]
DbSchemaOption = Annotated[Optional[str], typer.Option(help="Database schema name")]
ParamFileOption = Annotated[
    Optional[str], typer.Option(help="Arrow IPC stream file holding the parameters to bind")
]


def _make_client(location: Optional[str], token: Optional[str]) -> FlightSqlClient:
    settings = client_settings.model_copy(update={"token": token}) if token else client_settings
    return FlightSqlClient(location, settings=settings)


def _make_config(concurrency: Optional[int], policy: Optional[FailurePolicy], strict: bool) -> ExecutionConfig:
    config = ExecutionConfig.from_settings()
    if concurrency:
        config = config.with_concurrency(concurrency)
    if policy:
        config = config.with_failure_policy(policy)
    if strict:
        config = config.with_ordering(Ordering.STRICT)
    return config


def _invoke(location: Optional[str], token: Optional[str], work: Callable[[FlightSqlClient], Awaitable[T]]) -> T:
    async def _main() -> T:
        async with _make_client(location, token) as client:
            return await work(client)

    try:
        return asyncio.run(_main())
    except SqlFlightError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


def read_parameters(path: str) -> pa.RecordBatch:
    """Read an Arrow IPC stream file into a single parameter batch."""
    with open(path, "rb") as f:
        batches = list(read_batches_from_stream(iter(lambda: f.read(_READ_CHUNK_SIZE), b"")))
    if not batches:
        raise typer.BadParameter(f"{path} holds no record batch")
    table = pa.Table.from_batches(batches).combine_chunks()
    combined = table.to_batches()
    return combined[0] if combined else pa.RecordBatch.from_pylist([], schema=table.schema)


async def _conform(batches: AsyncIterator[pa.RecordBatch], schema: pa.Schema) -> AsyncIterator[pa.RecordBatch]:
    async for batch in batches:
        if not batch.schema.equals(schema):
            batch = pa.RecordBatch.from_arrays(batch.columns, schema=schema)
        yield batch


async def _from_iterable(batches: Iterable[pa.RecordBatch]) -> AsyncIterator[pa.RecordBatch]:
    for batch in batches:
        yield batch


async def emit_arrow(execution: Execution, out=None) -> None:
    """Write the result of an execution to `out` (stdout by default) as an Arrow IPC stream."""
    out = out or sys.stdout.buffer
    schema = execution.info.schema
    if schema is None or len(schema) == 0:
        table = await execution.to_table()
        schema, batches = table.schema, _from_iterable(table.to_batches())
    else:
        batches = _conform(execution.__aiter__(), schema)
    async for chunk in write_batches_to_stream(schema, batches):
        out.write(chunk)
    out.flush()


def print_table(table: pa.Table) -> None:
    # pandas cannot convert union columns (SqlInfo values).
    if any(pa.types.is_union(field.type) for field in table.schema):
        text = table.to_string(preview_cols=table.num_columns)
    else:
        text = table.to_pandas().to_string(index=False)
    typer.echo(text)
    typer.echo(f"({table.num_rows} row(s))", err=True)


async def _show(execution: Execution, output_format: OutputFormat) -> None:
    if output_format == OutputFormat.ARROW:
        await emit_arrow(execution)
    else:
        print_table(await execution.to_table())


async def _show_info(
    client: FlightSqlClient, info: FlightInfo, config: ExecutionConfig, output_format: OutputFormat
) -> None:
    await _show(await client.afetch(info, config), output_format)


@cli.command()
def execute(
    sql: Annotated[str, typer.Argument(help="SQL query")],
    location: LocationOption = None,
    token: TokenOption = None,
    concurrency: ConcurrencyOption = None,
    policy: PolicyOption = None,
    strict: StrictOption = False,
    output_format: FormatOption = OutputFormat.TABLE,
    param_file: ParamFileOption = None,
):
    """
    Execute a query and print its result.

    With --param-file the query is prepared and executed with the bound parameters.
    """
    config = _make_config(concurrency, policy, strict)
    params = read_parameters(param_file) if param_file else None

    async def _work(client: FlightSqlClient) -> None:
        if params is None:
            execution = await client.aexecute(sql, config)
        else:
            handle = await client.aprepare(sql)
            execution = await client.aexecute_prepared(handle, params, config)
        await _show(execution, output_format)

    _invoke(location, token, _work)


@cli.command()
def execute_update(
    sql: Annotated[str, typer.Argument(help="SQL statement returning no rows")],
    location: LocationOption = None,
    token: TokenOption = None,
    param_file: ParamFileOption = None,
):
    """Execute an update statement and print the number of affected records."""
    params = read_parameters(param_file) if param_file else None

    async def _work(client: FlightSqlClient) -> int:
        if params is None:
            return await client.aexecute_update(sql)
        handle = await client.aprepare(sql)
        return await client.aexecute_prepared_update(handle, params)

    record_count = _invoke(location, token, _work)
    typer.echo(f"{record_count} record(s) affected")


@cli.command()
def get_catalogs(
    location: LocationOption = None,
    token: TokenOption = None,
    output_format: FormatOption = OutputFormat.TABLE,
):
    """List catalogs."""
    config = _make_config(None, None, False)

    async def _work(client: FlightSqlClient) -> None:
        await _show_info(client, await client.aget_catalogs(), config, output_format)

    _invoke(location, token, _work)


@cli.command()
def get_table_types(
    location: LocationOption = None,
    token: TokenOption = None,
    output_format: FormatOption = OutputFormat.TABLE,
):
    """List the table types the server knows (e.g. TABLE, VIEW)."""
    config = _make_config(None, None, False)

    async def _work(client: FlightSqlClient) -> None:
        await _show_info(client, await client.aget_table_types(), config, output_format)

    _invoke(location, token, _work)


@cli.command()
def get_schemas(
    catalog: CatalogOption = None,
    db_schema_filter: Annotated[Optional[str], typer.Option(help="LIKE pattern for schema names")] = None,
    location: LocationOption = None,
    token: TokenOption = None,
    output_format: FormatOption = OutputFormat.TABLE,
):
    """List database schemas."""
    config = _make_config(None, None, False)

    async def _work(client: FlightSqlClient) -> None:
        await _show_info(client, await client.aget_db_schemas(catalog, db_schema_filter), config, output_format)

    _invoke(location, token, _work)


@cli.command()
def get_tables(
    catalog: CatalogOption = None,
    db_schema_filter: Annotated[Optional[str], typer.Option(help="LIKE pattern for schema names")] = None,
    table_filter: Annotated[Optional[str], typer.Option(help="LIKE pattern for table names")] = None,
    table_type: Annotated[Optional[List[str]], typer.Option(help="Table type to include, repeatable")] = None,
    include_schema: Annotated[bool, typer.Option(help="Include each table's Arrow schema")] = False,
    location: LocationOption = None,
    token: TokenOption = None,
    output_format: FormatOption = OutputFormat.TABLE,
):
    """List tables."""
    config = _make_config(None, None, False)

    async def _work(client: FlightSqlClient) -> None:
        info = await client.aget_tables(catalog, db_schema_filter, table_filter, table_type, include_schema)
        await _show_info(client, info, config, output_format)

    _invoke(location, token, _work)


@cli.command()
def get_primary_keys(
    table: Annotated[str, typer.Argument(help="Table name")],
    catalog: CatalogOption = None,
    db_schema: DbSchemaOption = None,
    location: LocationOption = None,
    token: TokenOption = None,
    output_format: FormatOption = OutputFormat.TABLE,
):
    """List the primary key columns of a table."""
    config = _make_config(None, None, False)

    async def _work(client: FlightSqlClient) -> None:
        await _show_info(client, await client.aget_primary_keys(table, catalog, db_schema), config, output_format)

    _invoke(location, token, _work)


@cli.command()
def get_exported_keys(
    table: Annotated[str, typer.Argument(help="Table name")],
    catalog: CatalogOption = None,
    db_schema: DbSchemaOption = None,
    location: LocationOption = None,
    token: TokenOption = None,
    output_format: FormatOption = OutputFormat.TABLE,
):
    """List the foreign keys that reference the primary key of a table."""
    config = _make_config(None, None, False)

    async def _work(client: FlightSqlClient) -> None:
        await _show_info(client, await client.aget_exported_keys(table, catalog, db_schema), config, output_format)

    _invoke(location, token, _work)


@cli.command()
def get_imported_keys(
    table: Annotated[str, typer.Argument(help="Table name")],
    catalog: CatalogOption = None,
    db_schema: DbSchemaOption = None,
    location: LocationOption = None,
    token: TokenOption = None,
    output_format: FormatOption = OutputFormat.TABLE,
):
    """List the foreign keys of a table."""
    config = _make_config(None, None, False)

    async def _work(client: FlightSqlClient) -> None:
        await _show_info(client, await client.aget_imported_keys(table, catalog, db_schema), config, output_format)

    _invoke(location, token, _work)


@cli.command()
def get_cross_reference(
    pk_table: Annotated[str, typer.Argument(help="Table holding the referenced primary key")],
    fk_table: Annotated[str, typer.Argument(help="Table holding the foreign key")],
    pk_catalog: Annotated[Optional[str], typer.Option(help="Catalog of the primary key table")] = None,
    pk_db_schema: Annotated[Optional[str], typer.Option(help="Schema of the primary key table")] = None,
    fk_catalog: Annotated[Optional[str], typer.Option(help="Catalog of the foreign key table")] = None,
    fk_db_schema: Annotated[Optional[str], typer.Option(help="Schema of the foreign key table")] = None,
    location: LocationOption = None,
    token: TokenOption = None,
    output_format: FormatOption = OutputFormat.TABLE,
):
    """List the foreign keys of one table that reference the primary key of another."""
    config = _make_config(None, None, False)

    async def _work(client: FlightSqlClient) -> None:
        info = await client.aget_cross_reference(pk_table, fk_table, pk_catalog, pk_db_schema, fk_catalog, fk_db_schema)
        await _show_info(client, info, config, output_format)

    _invoke(location, token, _work)


@cli.command()
def get_sql_info(
    info: Annotated[Optional[List[int]], typer.Option(help="SqlInfo id to request, repeatable")] = None,
    location: LocationOption = None,
    token: TokenOption = None,
    output_format: FormatOption = OutputFormat.TABLE,
):
    """Show server metadata values."""
    config = _make_config(None, None, False)

    async def _work(client: FlightSqlClient) -> None:
        await _show_info(client, await client.aget_sql_info(info), config, output_format)

    _invoke(location, token, _work)


if __name__ == "__main__":
    cli()
