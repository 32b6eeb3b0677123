"""
Pydantic models and errors for hash-chained attestation logs.

Records travel as canonical JSON using the camelCase wire names declared as
field aliases below; Python code uses the snake_case attribute names.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from attestlog.crypto import GENESIS_HASH, canonical_bytes, hash_bytes

SCHEMA_VERSION = "1.0"

# Names the log service assigns; never allowed inside a record payload
RESERVED_PAYLOAD_KEYS = frozenset(
    {
        "sequenceNumber",
        "consensusTimestamp",
        "sequence_number",
        "consensus_timestamp",
        "recordHash",
        "record_hash",
    }
)

# Fields covered by the record hash (service-assigned fields excluded)
RECORD_FIELDS = frozenset(
    {
        "schema_version",
        "kind",
        "subject_id",
        "payload",
        "produced_at",
        "previous_record_hash",
    }
)

_SCHEMA_VERSION_RE = r"^\d+\.\d+$"
_HEX_DIGEST_RE = r"^[0-9a-f]{64}$"


class RecordKind(str, Enum):
    """Discriminates the payload shape of an attestation record."""

    OUTPUT = "OUTPUT"
    DECISION = "DECISION"
    TRANSACTION = "TRANSACTION"
    TRAINING_DATA = "TRAINING_DATA"
    MODEL_DEPLOYMENT = "MODEL_DEPLOYMENT"
    CUSTOM = "CUSTOM"


# ==============================================================================
# Records
# ==============================================================================


class AttestationRecord(BaseModel):
    """One structured audit entry, chained to its predecessor by hash."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    schema_version: str = Field(
        default=SCHEMA_VERSION, alias="schemaVersion", pattern=_SCHEMA_VERSION_RE
    )
    kind: RecordKind
    subject_id: str = Field(alias="subjectId", min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    produced_at: int = Field(
        alias="producedAt", ge=0, description="Client clock, ms since epoch (advisory)"
    )
    previous_record_hash: str = Field(
        default=GENESIS_HASH, alias="previousRecordHash", pattern=_HEX_DIGEST_RE
    )

    @field_validator("subject_id")
    @classmethod
    def _subject_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("subject_id must not be blank")
        return value

    def wire_dict(self) -> dict[str, Any]:
        """The hashed part of the record, keyed by wire names."""
        return self.model_dump(mode="json", by_alias=True, include=set(RECORD_FIELDS))

    def canonical_bytes(self) -> bytes:
        """Canonical serialization the record hash is computed over."""
        return canonical_bytes(self.wire_dict())

    def record_hash(self) -> str:
        """SHA-256 hex digest of the canonical serialization."""
        return hash_bytes(self.canonical_bytes())

    @property
    def is_genesis(self) -> bool:
        return self.previous_record_hash == GENESIS_HASH


class LoggedRecord(AttestationRecord):
    """A record as read back from the log, with service-assigned ordering."""

    sequence_number: int = Field(alias="sequenceNumber", ge=1)
    consensus_timestamp: int = Field(
        alias="consensusTimestamp", ge=0, description="Nanoseconds since epoch"
    )
    chunk_count: int = Field(default=1, alias="chunkCount", ge=1)
    group_id: Optional[str] = Field(default=None, alias="groupId")

    def to_record(self) -> AttestationRecord:
        """Strip service-assigned fields."""
        return AttestationRecord.model_validate(self.wire_dict())


class BuiltRecord(BaseModel):
    """Output of the record builder: the record and its hash."""

    model_config = ConfigDict(frozen=True)

    record: AttestationRecord
    record_hash: str


# ==============================================================================
# Log Service Models
# ==============================================================================


class LogHandle(BaseModel):
    """Reference to one ordered log, passed explicitly into every call.

    A handle that carries the submit key may append; a handle without it can
    still read.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    log_id: str = Field(alias="logId", min_length=1)
    memo: str = Field(default="")
    admin_key: Optional[str] = Field(default=None, alias="adminKey", repr=False)
    submit_key: Optional[str] = Field(default=None, alias="submitKey", repr=False)

    def read_only(self) -> "LogHandle":
        """Copy of this handle without any capabilities."""
        return LogHandle(log_id=self.log_id, memo=self.memo)


class SubmitAck(BaseModel):
    """Commit confirmation for one single-part submission."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sequence_number: int = Field(alias="sequenceNumber", ge=1)
    consensus_timestamp: int = Field(alias="consensusTimestamp", ge=0)


class RawMessage(BaseModel):
    """One message exactly as stored by the log service."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sequence_number: int = Field(alias="sequenceNumber", ge=1)
    consensus_timestamp: int = Field(alias="consensusTimestamp", ge=0)
    data: bytes


class MalformedEntry(BaseModel):
    """A page entry the service returned but that could not be read as a message."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sequence_number: Optional[int] = Field(default=None, alias="sequenceNumber")
    reason: str


class LogPage(BaseModel):
    """One page of messages in ascending sequence order."""

    model_config = ConfigDict(populate_by_name=True)

    messages: list[RawMessage] = Field(default_factory=list)
    malformed: list[MalformedEntry] = Field(
        default_factory=list,
        description="Entries dropped while reading the page; reported, not fatal",
    )
    next_cursor: Optional[str] = Field(
        default=None,
        alias="nextCursor",
        description="Absent at the end of currently available data",
    )


class ChunkInfo(BaseModel):
    """Position of one fragment inside a chunk group."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    group_id: str = Field(alias="groupId", min_length=1)
    index: int = Field(ge=0)
    count: int = Field(ge=1)

    @model_validator(mode="after")
    def _index_within_count(self) -> "ChunkInfo":
        if self.index >= self.count:
            raise ValueError(f"chunk index {self.index} out of range for count {self.count}")
        return self


# ==============================================================================
# Verification Models
# ==============================================================================


class BreakKind(str, Enum):
    """What kind of discontinuity a chain break describes."""

    HASH_MISMATCH = "HASH_MISMATCH"
    SEQUENCE_ORDER = "SEQUENCE_ORDER"
    SEQUENCE_GAP = "SEQUENCE_GAP"
    TIMESTAMP_REGRESSION = "TIMESTAMP_REGRESSION"
    MALFORMED_RECORD = "MALFORMED_RECORD"


class ChainBreak(BaseModel):
    """A verification finding. Reported, never raised."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kind: BreakKind = Field(default=BreakKind.HASH_MISMATCH)
    at_sequence: int = Field(alias="atSequence")
    expected: Optional[str] = None
    observed: Optional[str] = None
    subject_id: Optional[str] = Field(default=None, alias="subjectId")
    message: str = ""


class VerificationResult(BaseModel):
    """Outcome of walking one subject's chain."""

    model_config = ConfigDict(populate_by_name=True)

    valid: bool
    breaks: list[ChainBreak] = Field(default_factory=list)
    record_count: int = Field(default=0, alias="recordCount")
    subject_id: Optional[str] = Field(default=None, alias="subjectId")
    head_hash: Optional[str] = Field(
        default=None,
        alias="headHash",
        description="Hash of the last record walked; seeds the next append",
    )

    @property
    def first_break(self) -> Optional[ChainBreak]:
        return self.breaks[0] if self.breaks else None

    def summary(self) -> str:
        if self.valid:
            return f"Chain for {self.subject_id!r} is intact ({self.record_count} records)"
        lines = [f"Chain for {self.subject_id!r} is BROKEN ({len(self.breaks)} findings):"]
        for b in self.breaks:
            lines.append(
                f"  seq {b.at_sequence} {b.kind.value}: expected={b.expected} observed={b.observed}"
            )
        return "\n".join(lines)


# ==============================================================================
# Errors
# ==============================================================================


class AttestLogError(Exception):
    """Base class for all attestlog errors."""


class ValidationError(AttestLogError):
    """Malformed record detected before submission. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PayloadTooLargeError(AttestLogError):
    """Serialized record exceeds what one submission (or chunk group) may carry."""

    def __init__(self, message: str, size: int, limit: int):
        super().__init__(message)
        self.size = size
        self.limit = limit


class LogServiceError(AttestLogError):
    """Error reported by the append-only log service."""

    transient = False

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details


class RateLimitError(LogServiceError):
    """The service throttled the caller."""

    transient = True

    def __init__(self, message: str, retry_after_ms: Optional[int] = None):
        super().__init__(message, 429, "RATE_LIMITED")
        self.retry_after_ms = retry_after_ms


class ServiceUnavailableError(LogServiceError):
    """The service is temporarily unreachable or failing."""

    transient = True


class LogServiceTimeout(LogServiceError):
    """A single request ran past its timeout; its outcome is unknown."""

    transient = True

    def __init__(self, message: str = "Request timed out"):
        super().__init__(message, None, "TIMEOUT")


class SubmissionError(AttestLogError):
    """Submission failed definitively (retries exhausted or rejected)."""

    def __init__(
        self,
        message: str,
        log_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        submission_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.log_id = log_id
        self.subject_id = subject_id
        self.submission_id = submission_id
        self.cause = cause


class PartialSubmissionError(SubmissionError):
    """A chunk group was left incomplete: some chunks landed, others did not."""

    def __init__(
        self,
        message: str,
        group_id: str,
        committed: list[int],
        chunk_count: int,
        log_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, log_id, subject_id, group_id, cause)
        self.group_id = group_id
        self.committed = list(committed)
        self.chunk_count = chunk_count

    @property
    def missing(self) -> list[int]:
        return [i for i in range(self.chunk_count) if i not in self.committed]


class AmbiguousSubmissionError(AttestLogError):
    """A submission timed out in flight: it may or may not have committed.

    Re-fetch the log and look for the record before retrying; the service has
    no idempotency key, so a blind retry can duplicate the record.
    """

    def __init__(
        self,
        message: str,
        log_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        submission_id: Optional[str] = None,
        group_id: Optional[str] = None,
        committed: Optional[list[int]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.log_id = log_id
        self.subject_id = subject_id
        self.submission_id = submission_id
        self.group_id = group_id
        self.committed = list(committed or [])
        self.cause = cause


class FetchError(AttestLogError):
    """The log could not be read (operational; retry later)."""

    def __init__(
        self,
        message: str,
        log_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.log_id = log_id
        self.cause = cause


class IncompleteChunkGroupError(AttestLogError):
    """One or more chunk groups had not fully arrived by the caller's deadline."""

    def __init__(
        self,
        message: str,
        log_id: Optional[str] = None,
        groups: Optional[dict[str, dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.log_id = log_id
        # group_id -> {"received": [indexes], "count": n}
        self.groups = groups or {}


class MalformedRecordError(AttestLogError):
    """A message could not be parsed into a record."""

    def __init__(
        self,
        message: str,
        sequence_number: Optional[int] = None,
        reason: Optional[str] = None,
        subject_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.sequence_number = sequence_number
        self.reason = reason or message
        # Set when the broken message still names its subject
        self.subject_id = subject_id


class ChainIntegrityError(AttestLogError):
    """Refusal to extend a chain whose verification found breaks."""

    def __init__(self, message: str, result: VerificationResult):
        super().__init__(message)
        self.result = result
