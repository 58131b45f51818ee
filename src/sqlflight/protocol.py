"""
Flight SQL protocol messages.

Flight SQL rides on plain Arrow Flight: every command is a protobuf message of the
`arrow.flight.protocol.sql` package, packed into a `google.protobuf.Any` and sent as the
command of a FlightDescriptor, the body of an Action or the descriptor of a DoPut.

The message classes below are created from a descriptor built at import time, so no
generated `_pb2` module has to be shipped. Field numbers follow FlightSql.proto.
"""

import logging
from typing import Type, TypeVar

from google.protobuf import any_pb2, descriptor_pb2, descriptor_pool, message, message_factory

from sqlflight.exceptions import InvalidStatementError

logger = logging.getLogger(__name__)

PACKAGE = "arrow.flight.protocol.sql"

ACTION_CREATE_PREPARED_STATEMENT = "CreatePreparedStatement"
ACTION_CLOSE_PREPARED_STATEMENT = "ClosePreparedStatement"

_Field = descriptor_pb2.FieldDescriptorProto
_STRING = _Field.TYPE_STRING
_BYTES = _Field.TYPE_BYTES
_BOOL = _Field.TYPE_BOOL
_INT64 = _Field.TYPE_INT64
_UINT32 = _Field.TYPE_UINT32

# message name -> [(field name, number, type, repeated)]
_MESSAGES: dict[str, list[tuple[str, int, int, bool]]] = {
    "CommandStatementQuery": [("query", 1, _STRING, False), ("transaction_id", 2, _BYTES, False)],
    "CommandStatementUpdate": [("query", 1, _STRING, False), ("transaction_id", 2, _BYTES, False)],
    "CommandPreparedStatementQuery": [("prepared_statement_handle", 1, _BYTES, False)],
    "CommandPreparedStatementUpdate": [("prepared_statement_handle", 1, _BYTES, False)],
    "ActionCreatePreparedStatementRequest": [("query", 1, _STRING, False), ("transaction_id", 2, _BYTES, False)],
    "ActionCreatePreparedStatementResult": [
        ("prepared_statement_handle", 1, _BYTES, False),
        ("dataset_schema", 2, _BYTES, False),
        ("parameter_schema", 3, _BYTES, False),
    ],
    "ActionClosePreparedStatementRequest": [("prepared_statement_handle", 1, _BYTES, False)],
    "DoPutUpdateResult": [("record_count", 1, _INT64, False)],
    "DoPutPreparedStatementResult": [("prepared_statement_handle", 1, _BYTES, False)],
    "CommandGetCatalogs": [],
    "CommandGetDbSchemas": [("catalog", 1, _STRING, False), ("db_schema_filter_pattern", 2, _STRING, False)],
    "CommandGetTables": [
        ("catalog", 1, _STRING, False),
        ("db_schema_filter_pattern", 2, _STRING, False),
        ("table_name_filter_pattern", 3, _STRING, False),
        ("table_types", 4, _STRING, True),
        ("include_schema", 5, _BOOL, False),
    ],
    "CommandGetTableTypes": [],
    "CommandGetPrimaryKeys": [("catalog", 1, _STRING, False), ("db_schema", 2, _STRING, False), ("table", 3, _STRING, False)],
    "CommandGetExportedKeys": [("catalog", 1, _STRING, False), ("db_schema", 2, _STRING, False), ("table", 3, _STRING, False)],
    "CommandGetImportedKeys": [("catalog", 1, _STRING, False), ("db_schema", 2, _STRING, False), ("table", 3, _STRING, False)],
    "CommandGetCrossReference": [
        ("pk_catalog", 1, _STRING, False),
        ("pk_db_schema", 2, _STRING, False),
        ("pk_table", 3, _STRING, False),
        ("fk_catalog", 4, _STRING, False),
        ("fk_db_schema", 5, _STRING, False),
        ("fk_table", 6, _STRING, False),
    ],
    "CommandGetSqlInfo": [("info", 1, _UINT32, True)],
}


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    # proto2 keeps field presence for the optional filters (unset catalog != empty catalog).
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="sqlflight/flight_sql.proto", package=PACKAGE, syntax="proto2"
    )
    for name, fields in _MESSAGES.items():
        message_proto = file_proto.message_type.add(name=name)
        for field_name, number, field_type, repeated in fields:
            message_proto.field.add(
                name=field_name,
                number=number,
                type=field_type,
                label=_Field.LABEL_REPEATED if repeated else _Field.LABEL_OPTIONAL,
            )
    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file_descriptor().SerializeToString())


def _message_class(name: str) -> Type[message.Message]:
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.{name}"))


CommandStatementQuery = _message_class("CommandStatementQuery")
CommandStatementUpdate = _message_class("CommandStatementUpdate")
CommandPreparedStatementQuery = _message_class("CommandPreparedStatementQuery")
CommandPreparedStatementUpdate = _message_class("CommandPreparedStatementUpdate")
ActionCreatePreparedStatementRequest = _message_class("ActionCreatePreparedStatementRequest")
ActionCreatePreparedStatementResult = _message_class("ActionCreatePreparedStatementResult")
ActionClosePreparedStatementRequest = _message_class("ActionClosePreparedStatementRequest")
DoPutUpdateResult = _message_class("DoPutUpdateResult")
DoPutPreparedStatementResult = _message_class("DoPutPreparedStatementResult")
CommandGetCatalogs = _message_class("CommandGetCatalogs")
CommandGetDbSchemas = _message_class("CommandGetDbSchemas")
CommandGetTables = _message_class("CommandGetTables")
CommandGetTableTypes = _message_class("CommandGetTableTypes")
CommandGetPrimaryKeys = _message_class("CommandGetPrimaryKeys")
CommandGetExportedKeys = _message_class("CommandGetExportedKeys")
CommandGetImportedKeys = _message_class("CommandGetImportedKeys")
CommandGetCrossReference = _message_class("CommandGetCrossReference")
CommandGetSqlInfo = _message_class("CommandGetSqlInfo")

M = TypeVar("M", bound=message.Message)


def pack_command(msg: message.Message) -> bytes:
    """Wrap a Flight SQL message into a serialized `google.protobuf.Any`."""
    wrapper = any_pb2.Any()
    wrapper.Pack(msg)
    return wrapper.SerializeToString()


def unpack(data: bytes, message_cls: Type[M]) -> M:
    """
    Decode a serialized `google.protobuf.Any` holding a `message_cls` message.

    Raises:
        InvalidStatementError: If the payload is not decodable or holds another message type.
    """
    wrapper = any_pb2.Any()
    try:
        wrapper.ParseFromString(data)
    except message.DecodeError as e:
        raise InvalidStatementError(f"Undecodable Flight SQL payload: {e}", details={"original_error": str(e)})

    if not wrapper.Is(message_cls.DESCRIPTOR):
        raise InvalidStatementError(
            f"Unexpected Flight SQL message {wrapper.type_url!r}, expected {message_cls.DESCRIPTOR.full_name}",
            details={"type_url": wrapper.type_url},
        )
    result = message_cls()
    wrapper.Unpack(result)
    return result


def command_name(data: bytes) -> str:
    """Return the short message name of a packed command, for logging and tests."""
    wrapper = any_pb2.Any()
    wrapper.ParseFromString(data)
    return wrapper.type_url.rsplit(".", 1)[-1]
