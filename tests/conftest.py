"""
Shared test fixtures for attestlog tests.
"""

import tempfile
import uuid
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest

from attestlog.backends import MemoryLogService
from attestlog.builder import RecordBuilder
from attestlog.crypto import GENESIS_HASH
from attestlog.models import BuiltRecord, LoggedRecord, LogHandle, LogPage, SubmitAck
from attestlog.retry import Retrier
from attestlog.wire import DEFAULT_MAX_MESSAGE_BYTES, chunk_capacity, encode_record

FIXED_TIME_MS = 1704110400000  # 2024-01-01T12:00:00Z


async def _no_async_sleep(seconds: float) -> None:
    return None


class FlakyService:
    """Memory log service that raises queued errors before delegating.

    ``submit_errors`` / ``fetch_errors`` are consumed one per call; a None
    entry lets that call through.
    """

    def __init__(self, inner: Optional[MemoryLogService] = None):
        self.inner = inner or MemoryLogService()
        self.max_message_bytes = self.inner.max_message_bytes
        self.submit_errors: list[Optional[Exception]] = []
        self.fetch_errors: list[Optional[Exception]] = []
        self.submit_calls = 0
        self.fetch_calls = 0

    def create_log(self, memo: str = "", admin_key=None, submit_key=None) -> LogHandle:
        return self.inner.create_log(memo, admin_key, submit_key)

    def submit(self, handle: LogHandle, data: bytes, timeout=None) -> SubmitAck:
        self.submit_calls += 1
        if self.submit_errors:
            error = self.submit_errors.pop(0)
            if error is not None:
                raise error
        return self.inner.submit(handle, data, timeout)

    def fetch_page(self, handle: LogHandle, cursor=None, limit=100, subject_id=None,
                   start=None, end=None, timeout=None) -> LogPage:
        self.fetch_calls += 1
        if self.fetch_errors:
            error = self.fetch_errors.pop(0)
            if error is not None:
                raise error
        return self.inner.fetch_page(handle, cursor, limit, subject_id, start, end, timeout)

    def close(self) -> None:
        self.inner.close()


@pytest.fixture
def service() -> MemoryLogService:
    """Fresh in-memory log service."""
    return MemoryLogService()


@pytest.fixture
def handle(service: MemoryLogService) -> LogHandle:
    """A log created on the memory service."""
    return service.create_log(memo="test log")


@pytest.fixture
def flaky_service() -> FlakyService:
    return FlakyService()


@pytest.fixture
def builder() -> RecordBuilder:
    """Builder with a fixed clock for deterministic hashes."""
    return RecordBuilder(clock=lambda: FIXED_TIME_MS)


@pytest.fixture
def retrier() -> Retrier:
    """Retrier that never actually sleeps."""
    return Retrier(
        max_retries=2,
        base_delay=0.0,
        max_delay=0.0,
        sleep=lambda seconds: None,
        async_sleep=_no_async_sleep,
    )


@pytest.fixture
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.db"


@pytest.fixture
def make_chain(builder: RecordBuilder) -> Callable[..., list[LoggedRecord]]:
    """Factory for correctly linked LoggedRecords, without any log service."""

    def _make(
        n: int,
        subject_id: str = "agent-1",
        first_sequence: int = 1,
        step: int = 1,
        anchor: str = GENESIS_HASH,
    ) -> list[LoggedRecord]:
        records: list[LoggedRecord] = []
        previous = anchor
        for i in range(n):
            built = builder.build("DECISION", subject_id, {"step": i}, previous)
            records.append(
                LoggedRecord(
                    **built.record.model_dump(),
                    sequence_number=first_sequence + i * step,
                    consensus_timestamp=1_000_000_000 * (i + 1),
                )
            )
            previous = built.record_hash
        return records

    return _make


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    return {"action": "transfer", "amount": 10, "nested": {"b": [1, 2], "a": None}}


@pytest.fixture
def record_of_chunks(builder: RecordBuilder) -> Callable[..., BuiltRecord]:
    """Factory for a record whose encoding splits into exactly n chunks.

    n=1 yields a record that fits in a single message.
    """

    def _make(n: int, subject_id: str = "agent-1", previous: str = GENESIS_HASH) -> BuiltRecord:
        base = builder.build("CUSTOM", subject_id, {"blob": ""}, previous)
        size = len(encode_record(base.record))
        if n == 1:
            return base
        # Group ids are uuid4 strings, so any uuid gives the same envelope overhead
        target = chunk_capacity(str(uuid.uuid4()), n, DEFAULT_MAX_MESSAGE_BYTES) * n
        return builder.build("CUSTOM", subject_id, {"blob": "a" * (target - size)}, previous)

    return _make
