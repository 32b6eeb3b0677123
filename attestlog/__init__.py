"""
attestlog for Python

Hash-chained attestation records on an append-only, ordered log.
Every record carries the hash of its subject's previous record, so any
rewrite of history shows up as a chain break on verification.

Example:
    >>> from attestlog import AttestationLog, MemoryLogService
    >>> log = AttestationLog(MemoryLogService())
    >>> handle = log.create_log(memo="agent audit trail")
    >>> first = log.attest(handle, "DECISION", "agent-1", {"action": "login"})
    >>> second = log.attest(
    ...     handle, "DECISION", "agent-1", {"action": "transfer", "amount": 10},
    ...     previous_record_hash=first.record_hash(),
    ... )
    >>> result = log.verify(handle, "agent-1")
    >>> result.valid, result.record_count
    (True, 2)

Chain Example:
    >>> chain = log.chain(handle, "model-7")
    >>> chain.append("MODEL_DEPLOYMENT", {"modelId": "m-7", "weightsHash": "9f2c..."})
    >>> chain.append("OUTPUT", {"outputHash": "0b1e..."})

Async Example:
    >>> from attestlog import AsyncAttestationLog
    >>> log = AsyncAttestationLog(SqliteLogService("audit.db"))
    >>> handle = await log.create_log()
    >>> await log.attest(handle, "DECISION", "agent-1", {"action": "login"})

Config Example:
    >>> from attestlog.config import load_config
    >>> log = AttestationLog.from_config(load_config())  # Loads attestlog.yaml
"""

from attestlog.backends import (
    AsyncLogService,
    AsyncLogServiceAdapter,
    JsonlLogService,
    LogService,
    MemoryLogService,
    SqliteLogService,
    create_backend,
)
from attestlog.builder import RecordBuilder, build_record
from attestlog.client import (
    AsyncAttestationLog,
    AsyncSubjectChain,
    AttestationLog,
    SubjectChain,
)
from attestlog.config import AttestLogConfig, load_config
from attestlog.crypto import GENESIS_HASH, canonical_json, hash_payload
from attestlog.fetcher import AsyncFetcher, AsyncRecordStream, Fetcher, RecordStream
from attestlog.models import (
    AmbiguousSubmissionError,
    AttestationRecord,
    AttestLogError,
    BreakKind,
    BuiltRecord,
    ChainBreak,
    ChainIntegrityError,
    FetchError,
    IncompleteChunkGroupError,
    LoggedRecord,
    LogHandle,
    LogServiceError,
    LogServiceTimeout,
    MalformedRecordError,
    PartialSubmissionError,
    PayloadTooLargeError,
    RateLimitError,
    RecordKind,
    ServiceUnavailableError,
    SubmissionError,
    ValidationError,
    VerificationResult,
)
from attestlog.remote import AsyncHttpLogService, HttpLogService
from attestlog.retry import Retrier
from attestlog.submitter import AsyncSubmitter, Submitter
from attestlog.verifier import ChainVerifier, verify_all, verify_chain

__version__ = "0.1.0"

__all__ = [
    # Main classes
    "AttestationLog",
    "AsyncAttestationLog",
    "SubjectChain",
    "AsyncSubjectChain",
    # Components
    "RecordBuilder",
    "build_record",
    "Submitter",
    "AsyncSubmitter",
    "Fetcher",
    "AsyncFetcher",
    "RecordStream",
    "AsyncRecordStream",
    "ChainVerifier",
    "verify_chain",
    "verify_all",
    "Retrier",
    # Log services
    "LogService",
    "AsyncLogService",
    "AsyncLogServiceAdapter",
    "MemoryLogService",
    "SqliteLogService",
    "JsonlLogService",
    "HttpLogService",
    "AsyncHttpLogService",
    "create_backend",
    # Models
    "RecordKind",
    "AttestationRecord",
    "LoggedRecord",
    "BuiltRecord",
    "LogHandle",
    "BreakKind",
    "ChainBreak",
    "VerificationResult",
    # Config
    "AttestLogConfig",
    "load_config",
    # Crypto
    "GENESIS_HASH",
    "canonical_json",
    "hash_payload",
    # Exceptions
    "AttestLogError",
    "ValidationError",
    "PayloadTooLargeError",
    "LogServiceError",
    "RateLimitError",
    "ServiceUnavailableError",
    "LogServiceTimeout",
    "SubmissionError",
    "PartialSubmissionError",
    "AmbiguousSubmissionError",
    "FetchError",
    "IncompleteChunkGroupError",
    "MalformedRecordError",
    "ChainIntegrityError",
]
