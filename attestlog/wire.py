"""
Wire codec for messages written to the log.

A record that fits in one message is written as its canonical JSON. A record
that does not is split into ordered byte chunks; each chunk travels inside a
small JSON envelope:

    {"chunk":{"count":3,"groupId":"...","index":0},"data":"<base64>"}

The log service treats all of these as opaque bytes.
"""

import base64
import binascii
import json
from typing import Any, Union

from pydantic import ValidationError as PydanticValidationError

from attestlog.crypto import canonical_bytes
from attestlog.models import (
    AttestationRecord,
    ChunkInfo,
    LoggedRecord,
    MalformedRecordError,
    PayloadTooLargeError,
    RawMessage,
)

DEFAULT_MAX_MESSAGE_BYTES = 1024
DEFAULT_MAX_CHUNKS = 20


def encode_record(record: AttestationRecord) -> bytes:
    """Serialize a record to the bytes submitted to the log."""
    return record.canonical_bytes()


def encode_chunk(info: ChunkInfo, data: bytes) -> bytes:
    """Wrap one chunk in its envelope."""
    return canonical_bytes(
        {
            "chunk": info.model_dump(by_alias=True),
            "data": base64.b64encode(data).decode("ascii"),
        }
    )


def chunk_capacity(group_id: str, count: int, max_message_bytes: int) -> int:
    """Raw bytes one chunk can carry so its envelope fits max_message_bytes."""
    # Worst-case header: the largest index has as many digits as count
    widest = ChunkInfo(group_id=group_id, index=count - 1, count=count)
    overhead = len(encode_chunk(widest, b""))
    room = max_message_bytes - overhead
    return (room // 4) * 3


def split_chunks(
    data: bytes,
    group_id: str,
    max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
) -> list[bytes]:
    """
    Split oversized record bytes into enveloped chunks.

    Args:
        data: Encoded record bytes
        group_id: Identifier shared by every chunk of this record
        max_message_bytes: Per-message size limit of the log service
        max_chunks: Largest group the caller is willing to submit

    Returns:
        Envelope bytes, in index order

    Raises:
        PayloadTooLargeError: If more than max_chunks chunks would be needed
    """
    count = 1
    while True:
        capacity = chunk_capacity(group_id, count, max_message_bytes)
        if capacity <= 0:
            raise PayloadTooLargeError(
                f"max_message_bytes={max_message_bytes} leaves no room for chunk data",
                len(data),
                max_message_bytes,
            )
        needed = max(1, -(-len(data) // capacity))
        if needed <= count:
            break
        count = needed

    if count > max_chunks:
        raise PayloadTooLargeError(
            f"Record of {len(data)} bytes needs {count} chunks (max_chunks={max_chunks})",
            len(data),
            capacity * max_chunks,
        )

    return [
        encode_chunk(
            ChunkInfo(group_id=group_id, index=i, count=count),
            data[i * capacity:(i + 1) * capacity],
        )
        for i in range(count)
    ]


def decode_message(message: RawMessage) -> Union[LoggedRecord, tuple[ChunkInfo, bytes]]:
    """
    Decode one raw log message.

    Returns:
        A LoggedRecord for a single-part record, or (ChunkInfo, chunk bytes)
        for a chunk envelope

    Raises:
        MalformedRecordError: If the message is not a record or an envelope
    """
    seq = message.sequence_number
    try:
        obj = json.loads(message.data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedRecordError(
            f"Message {seq} is not valid JSON", seq, f"json: {e}"
        ) from e

    if not isinstance(obj, dict):
        raise MalformedRecordError(
            f"Message {seq} is not a JSON object", seq, "not an object"
        )

    if "chunk" in obj:
        try:
            info = ChunkInfo.model_validate(obj["chunk"])
            data = base64.b64decode(obj.get("data", ""), validate=True)
        except (PydanticValidationError, binascii.Error, TypeError) as e:
            raise MalformedRecordError(
                f"Message {seq} has an invalid chunk envelope", seq, f"chunk: {e}"
            ) from e
        return info, data

    return parse_record(
        obj,
        sequence_number=seq,
        consensus_timestamp=message.consensus_timestamp,
    )


def decode_record_bytes(
    data: bytes,
    sequence_number: int,
    consensus_timestamp: int,
    chunk_count: int = 1,
    group_id: Any = None,
) -> LoggedRecord:
    """Decode reassembled record bytes into a LoggedRecord."""
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedRecordError(
            f"Reassembled record at {sequence_number} is not valid JSON",
            sequence_number,
            f"json: {e}",
        ) from e
    if not isinstance(obj, dict):
        raise MalformedRecordError(
            f"Reassembled record at {sequence_number} is not a JSON object",
            sequence_number,
            "not an object",
        )
    return parse_record(
        obj,
        sequence_number=sequence_number,
        consensus_timestamp=consensus_timestamp,
        chunk_count=chunk_count,
        group_id=group_id,
    )


def parse_record(obj: dict[str, Any], **service_fields: Any) -> LoggedRecord:
    """Validate a wire-format record dict and attach service-assigned fields."""
    fields = {k: v for k, v in obj.items() if k not in _SERVICE_KEYS}
    fields.update(service_fields)
    try:
        return LoggedRecord.model_validate(fields)
    except PydanticValidationError as e:
        seq = service_fields.get("sequence_number")
        subject = obj.get("subjectId")
        raise MalformedRecordError(
            f"Message {seq} is not a valid attestation record",
            seq,
            str(e),
            subject_id=subject if isinstance(subject, str) else None,
        ) from e


_SERVICE_KEYS = frozenset(
    {
        "sequenceNumber",
        "consensusTimestamp",
        "chunkCount",
        "groupId",
        "sequence_number",
        "consensus_timestamp",
        "chunk_count",
        "group_id",
    }
)
