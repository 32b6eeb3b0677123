"""
Tests for the wire codec (attestlog/wire.py).
"""

import base64
import json

import pytest

from attestlog.builder import RecordBuilder
from attestlog.models import (
    ChunkInfo,
    LoggedRecord,
    MalformedRecordError,
    PayloadTooLargeError,
    RawMessage,
)
from attestlog.wire import (
    chunk_capacity,
    decode_message,
    decode_record_bytes,
    encode_chunk,
    encode_record,
    parse_record,
    split_chunks,
)

GROUP_ID = "7c0f4d8e-2b1a-4c3d-9e8f-0a1b2c3d4e5f"


def _message(data: bytes, seq: int = 1) -> RawMessage:
    return RawMessage(sequence_number=seq, consensus_timestamp=1_000 * seq, data=data)


class TestEncode:
    """Tests for single-part encoding."""

    def test_record_encodes_to_canonical_bytes(self, builder: RecordBuilder):
        record = builder.build("DECISION", "agent-1", {"action": "login"}).record
        assert encode_record(record) == record.canonical_bytes()

    def test_chunk_envelope_shape(self):
        envelope = json.loads(encode_chunk(ChunkInfo(group_id=GROUP_ID, index=0, count=2), b"abc"))
        assert envelope == {
            "chunk": {"count": 2, "groupId": GROUP_ID, "index": 0},
            "data": base64.b64encode(b"abc").decode("ascii"),
        }


class TestSplitChunks:
    """Tests for chunk splitting."""

    def test_every_chunk_fits(self):
        data = b"x" * 5000
        chunks = split_chunks(data, GROUP_ID, max_message_bytes=1024)
        assert len(chunks) > 1
        assert all(len(chunk) <= 1024 for chunk in chunks)

    def test_chunks_rejoin_in_index_order(self):
        data = bytes(range(256)) * 20
        chunks = split_chunks(data, GROUP_ID, max_message_bytes=512)
        parts = [decode_message(_message(c, i + 1)) for i, c in enumerate(chunks)]

        assert [info.index for info, _ in parts] == list(range(len(chunks)))
        assert {info.count for info, _ in parts} == {len(chunks)}
        assert b"".join(part for _, part in parts) == data

    @pytest.mark.parametrize("count", [2, 10])
    def test_exact_chunk_count(self, count: int):
        data = b"y" * (chunk_capacity(GROUP_ID, count, 1024) * count)
        assert len(split_chunks(data, GROUP_ID, 1024)) == count

    def test_too_many_chunks(self):
        data = b"z" * (chunk_capacity(GROUP_ID, 5, 1024) * 5 + 1)
        with pytest.raises(PayloadTooLargeError) as exc_info:
            split_chunks(data, GROUP_ID, 1024, max_chunks=5)
        assert exc_info.value.size == len(data)

    def test_limit_too_small_for_envelope(self):
        with pytest.raises(PayloadTooLargeError, match="no room"):
            split_chunks(b"data", GROUP_ID, max_message_bytes=40)


class TestDecode:
    """Tests for decoding raw log messages."""

    def test_decode_single_part_record(self, builder: RecordBuilder):
        built = builder.build("DECISION", "agent-1", {"action": "login"})
        decoded = decode_message(_message(encode_record(built.record), seq=7))

        assert isinstance(decoded, LoggedRecord)
        assert decoded.sequence_number == 7
        assert decoded.consensus_timestamp == 7_000
        assert decoded.record_hash() == built.record_hash

    def test_decode_chunk(self):
        info = ChunkInfo(group_id=GROUP_ID, index=1, count=3)
        decoded_info, data = decode_message(_message(encode_chunk(info, b"part")))
        assert decoded_info == info
        assert data == b"part"

    def test_invalid_json(self):
        with pytest.raises(MalformedRecordError) as exc_info:
            decode_message(_message(b"not json", seq=3))
        assert exc_info.value.sequence_number == 3

    def test_invalid_utf8(self):
        with pytest.raises(MalformedRecordError):
            decode_message(_message(b"\xff\xfe"))

    def test_not_an_object(self):
        with pytest.raises(MalformedRecordError, match="object"):
            decode_message(_message(b"[1,2,3]"))

    def test_missing_record_fields(self):
        with pytest.raises(MalformedRecordError, match="valid attestation record"):
            decode_message(_message(b'{"kind":"DECISION"}'))

    def test_chunk_index_out_of_range(self):
        envelope = {"chunk": {"groupId": GROUP_ID, "index": 3, "count": 3}, "data": ""}
        with pytest.raises(MalformedRecordError, match="chunk envelope"):
            decode_message(_message(json.dumps(envelope).encode()))

    def test_chunk_bad_base64(self):
        envelope = {"chunk": {"groupId": GROUP_ID, "index": 0, "count": 2}, "data": "!!!"}
        with pytest.raises(MalformedRecordError):
            decode_message(_message(json.dumps(envelope).encode()))

    def test_service_fields_in_payload_are_ignored(self, builder: RecordBuilder):
        wire = builder.build("CUSTOM", "s", {}).record.wire_dict()
        wire["sequenceNumber"] = 999
        record = parse_record(wire, sequence_number=2, consensus_timestamp=5)
        assert record.sequence_number == 2

    def test_decode_reassembled_bytes(self, builder: RecordBuilder):
        built = builder.build("CUSTOM", "s", {"k": "v"})
        record = decode_record_bytes(
            encode_record(built.record), 9, 90, chunk_count=3, group_id=GROUP_ID
        )
        assert record.chunk_count == 3
        assert record.group_id == GROUP_ID
        assert record.record_hash() == built.record_hash
