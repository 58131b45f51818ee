import io
import logging
from typing import AsyncIterable, Iterable, Iterator, Optional

import pyarrow as pa

logger = logging.getLogger(__name__)


def deserialize_schema(data: Optional[bytes]) -> pa.Schema:
    """
    Decode an IPC-encapsulated schema message as found in Flight SQL results.

    Empty payloads stand for an empty schema.
    """
    if not data:
        return pa.schema([])
    return pa.ipc.read_schema(pa.py_buffer(data))


def serialize_schema(schema: pa.Schema) -> bytes:
    """Encode a schema as an IPC-encapsulated schema message."""
    return schema.serialize().to_pybytes()


class IterableBytesIO(io.RawIOBase):
    """A read-only file object over an iterable of byte chunks of arbitrary size."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._buffer = b""

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while not self._buffer:
            try:
                self._buffer = bytes(next(self._chunks))
            except StopIteration:
                return 0
        size = min(len(b), len(self._buffer))
        b[:size] = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return size


def read_batches_from_stream(chunks: Iterable[bytes]) -> Iterator[pa.RecordBatch]:
    """
    Decode an Arrow IPC stream delivered as byte chunks.

    Frames are decoded as soon as their bytes have arrived; chunk boundaries do not need to
    line up with frame boundaries. A truncated trailing frame raises instead of ending the
    iteration cleanly.

    Args:
        chunks: The byte chunks of one IPC stream, in order.

    Yields:
        pa.RecordBatch: The decoded batches in stream order.

    Raises:
        pa.ArrowInvalid: If the stream is malformed or ends inside a frame.
    """
    stream = io.BufferedReader(IterableBytesIO(chunks))
    with pa.ipc.open_stream(stream) as reader:
        for batch in reader:
            yield batch


async def write_batches_to_stream(
    schema: pa.Schema, batches: AsyncIterable[pa.RecordBatch]
) -> AsyncIterable[bytes]:
    """
    Encode batches into one continuous Arrow IPC stream.

    The schema frame comes with the first chunk and the end-of-stream marker with the
    last one, so the concatenated chunks always form a complete stream, even without
    batches.

    Yields:
        bytes: IPC stream bytes.
    """
    sink = io.BytesIO()

    def _drain() -> bytes:
        data = sink.getvalue()
        sink.seek(0)
        sink.truncate()
        return data

    writer = pa.ipc.new_stream(sink, schema)
    try:
        async for batch in batches:
            writer.write_batch(batch)
            chunk = _drain()
            if chunk:
                yield chunk
    finally:
        writer.close()
    yield _drain()
