import asyncio

import pyarrow as pa
import pytest

from sqlflight.codec import deserialize_schema, read_batches_from_stream, serialize_schema, write_batches_to_stream


def ipc_stream_bytes(batches) -> bytes:
    sink = pa.BufferOutputStream()
    with pa.ipc.new_stream(sink, batches[0].schema) as writer:
        for batch in batches:
            writer.write_batch(batch)
    return sink.getvalue().to_pybytes()


def test_empty_schema_payload():
    assert deserialize_schema(b"") == pa.schema([])
    assert deserialize_schema(None) == pa.schema([])


def test_schema_message_round_trip():
    schema = pa.schema([pa.field("id", pa.int64(), nullable=False), pa.field("tags", pa.list_(pa.string()))])
    assert deserialize_schema(serialize_schema(schema)).equals(schema)


class TestReadBatchesFromStream:
    def test_decodes_across_arbitrary_chunk_boundaries(self):
        batches = [pa.record_batch([pa.array(range(i, i + 3))], names=["x"]) for i in range(0, 9, 3)]
        data = ipc_stream_bytes(batches)
        one_byte_chunks = (data[i : i + 1] for i in range(len(data)))

        decoded = list(read_batches_from_stream(one_byte_chunks))

        assert [batch.column(0).to_pylist() for batch in decoded] == [[0, 1, 2], [3, 4, 5], [6, 7, 8]]

    def test_truncated_frame_is_an_error(self):
        data = ipc_stream_bytes([pa.record_batch([pa.array(range(100))], names=["x"])])

        with pytest.raises(pa.ArrowInvalid):
            list(read_batches_from_stream([data[: len(data) - 20]]))


class TestWriteBatchesToStream:
    def test_chunks_form_one_stream(self):
        batches = [pa.record_batch([pa.array([i])], names=["x"]) for i in range(3)]

        async def source():
            for batch in batches:
                yield batch

        async def collect():
            return [chunk async for chunk in write_batches_to_stream(batches[0].schema, source())]

        chunks = asyncio.run(collect())
        table = pa.ipc.open_stream(b"".join(chunks)).read_all()

        assert table.column("x").to_pylist() == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_no_batches_is_a_valid_empty_stream(self):
        async def source():
            return
            yield

        schema = pa.schema([pa.field("x", pa.int64())])
        chunks = [chunk async for chunk in write_batches_to_stream(schema, source())]
        table = pa.ipc.open_stream(b"".join(chunks)).read_all()

        assert table.num_rows == 0
        assert table.schema.equals(schema)
