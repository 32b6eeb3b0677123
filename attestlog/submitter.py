"""
Submitter: hands built records to the log service and waits for commit.

Records that fit in one message are submitted as-is. Larger records are split
into a chunk group and submitted chunk by chunk; commit is reported only once
the final chunk is acknowledged.

Failure semantics:
- Transient service errors are retried with exponential backoff
- Exhausted retries or a rejected request raise SubmissionError
- A chunk group that stops part way raises PartialSubmissionError
- A request timing out in flight raises AmbiguousSubmissionError (never retried)

The Submitter keeps no state between calls.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Iterable
from typing import Optional

from attestlog.backends import AsyncLogService, LogService
from attestlog.models import (
    RECORD_FIELDS,
    AmbiguousSubmissionError,
    AttestationRecord,
    LoggedRecord,
    LogHandle,
    LogServiceError,
    LogServiceTimeout,
    PartialSubmissionError,
    PayloadTooLargeError,
    SubmissionError,
    SubmitAck,
)
from attestlog.retry import Deadline, Retrier, RetryExhausted
from attestlog.wire import DEFAULT_MAX_CHUNKS, encode_record, split_chunks

logger = logging.getLogger("attestlog")


class _SubmitterBase:
    def __init__(
        self,
        max_message_bytes: int,
        chunking: bool = True,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        retrier: Optional[Retrier] = None,
        deadline: Optional[float] = None,
        debug: bool = False,
    ):
        self.max_message_bytes = max_message_bytes
        self.chunking = chunking
        self.max_chunks = max_chunks
        # Timed-out submissions have an unknown outcome and are never retried
        self.retrier = copy.copy(retrier) if retrier else Retrier()
        self.retrier.retry_timeouts = False
        self.deadline = deadline
        self.debug = debug

    def _plan(self, record: AttestationRecord, group_id: str) -> tuple[list[bytes], bool]:
        """Messages to submit for this record, and whether they form a chunk group."""
        data = encode_record(record)
        if len(data) <= self.max_message_bytes:
            return [data], False
        if not self.chunking:
            raise PayloadTooLargeError(
                f"Record for {record.subject_id!r} is {len(data)} bytes; "
                f"limit is {self.max_message_bytes} and chunking is disabled",
                len(data),
                self.max_message_bytes,
            )
        return split_chunks(data, group_id, self.max_message_bytes, self.max_chunks), True

    def _deadline(self, deadline: Optional[float]) -> Deadline:
        return Deadline(deadline if deadline is not None else self.deadline)

    def _logged(
        self,
        record: AttestationRecord,
        ack: SubmitAck,
        chunk_count: int = 1,
        group_id: Optional[str] = None,
    ) -> LoggedRecord:
        return LoggedRecord(
            **record.model_dump(include=set(RECORD_FIELDS)),
            sequence_number=ack.sequence_number,
            consensus_timestamp=ack.consensus_timestamp,
            chunk_count=chunk_count,
            group_id=group_id,
        )

    def _translate(
        self,
        error: BaseException,
        handle: LogHandle,
        record: AttestationRecord,
        submission_id: str,
        group_id: Optional[str] = None,
        committed: Optional[list[int]] = None,
        chunk_count: int = 1,
        index: int = 0,
    ) -> Exception:
        """Map a low-level failure onto the submission error taxonomy."""
        committed = committed or []
        where = f" (chunk {index + 1}/{chunk_count} of group {group_id})" if group_id else ""

        if isinstance(error, LogServiceTimeout):
            return AmbiguousSubmissionError(
                f"Submission to {handle.log_id}{where} timed out; outcome unknown",
                log_id=handle.log_id,
                subject_id=record.subject_id,
                submission_id=submission_id,
                group_id=group_id,
                committed=committed,
                cause=error,
            )

        if isinstance(error, RetryExhausted):
            cause = error.last_error
            reason = "deadline expired" if error.deadline_expired else "retries exhausted"
        else:
            cause = error
            reason = "rejected by the log service"

        if group_id and committed:
            return PartialSubmissionError(
                f"Chunk group {group_id} left incomplete{where}: {reason}; "
                f"committed chunks {committed}",
                group_id=group_id,
                committed=committed,
                chunk_count=chunk_count,
                log_id=handle.log_id,
                subject_id=record.subject_id,
                cause=cause,
            )
        return SubmissionError(
            f"Submission to {handle.log_id}{where} failed: {reason}: {cause}",
            log_id=handle.log_id,
            subject_id=record.subject_id,
            submission_id=submission_id,
            cause=cause,
        )

    def _debug(self, message: str) -> None:
        """Log a debug message."""
        if self.debug:
            logger.debug(f"[attestlog] {message}")


class Submitter(_SubmitterBase):
    """
    Synchronous submitter.

    Args:
        service: The append-only log service
        max_message_bytes: Single-message limit (default: the service's)
        chunking: Split oversized records instead of rejecting them
        max_chunks: Largest chunk group to submit
        retrier: Retry policy for transient failures
        deadline: Default overall deadline in seconds per submission
        debug: Enable debug logging
    """

    def __init__(
        self,
        service: LogService,
        max_message_bytes: Optional[int] = None,
        chunking: bool = True,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        retrier: Optional[Retrier] = None,
        deadline: Optional[float] = None,
        debug: bool = False,
    ):
        super().__init__(
            max_message_bytes or service.max_message_bytes,
            chunking,
            max_chunks,
            retrier,
            deadline,
            debug,
        )
        self.service = service

    def submit(
        self,
        handle: LogHandle,
        record: AttestationRecord,
        deadline: Optional[float] = None,
    ) -> LoggedRecord:
        """
        Submit one record and wait for it to commit.

        Args:
            handle: Log to append to (must carry the submit key if the log has one)
            record: Built record
            deadline: Overall deadline in seconds (default: the submitter's)

        Returns:
            The committed record with its service-assigned ordering

        Raises:
            PayloadTooLargeError: Record cannot be carried (no I/O performed)
            SubmissionError: Retries exhausted or request rejected
            PartialSubmissionError: Chunk group left incomplete
            AmbiguousSubmissionError: Timed out in flight; outcome unknown
        """
        submission_id = str(uuid.uuid4())
        messages, chunked = self._plan(record, submission_id)
        dl = self._deadline(deadline)

        if not chunked:
            self._debug(f"Submitting {submission_id} to {handle.log_id}")
            ack = self._submit_message(handle, record, messages[0], dl, submission_id)
            self._debug(f"Committed {submission_id} at sequence {ack.sequence_number}")
            return self._logged(record, ack)

        self._debug(
            f"Submitting {submission_id} to {handle.log_id} as {len(messages)} chunks"
        )
        return self._submit_group(handle, record, messages, range(len(messages)), [], dl, submission_id)

    def resume_group(
        self,
        handle: LogHandle,
        record: AttestationRecord,
        group_id: str,
        committed: Iterable[int],
        deadline: Optional[float] = None,
    ) -> LoggedRecord:
        """
        Submit the chunks of a partially committed group that did not land.

        Args:
            handle: Log the group was written to
            record: The same record originally submitted
            group_id: Group id from the PartialSubmissionError
            committed: Chunk indexes already committed

        Returns:
            The committed record, positioned at the last chunk submitted
        """
        messages, chunked = self._plan(record, group_id)
        if not chunked:
            raise ValueError("Record fits in one message; there is no chunk group to resume")
        done = sorted(set(committed))
        missing = [i for i in range(len(messages)) if i not in done]
        if not missing:
            raise ValueError(f"Chunk group {group_id} has no missing chunks")
        self._debug(f"Resuming group {group_id}: submitting chunks {missing}")
        return self._submit_group(
            handle, record, messages, missing, done, self._deadline(deadline), group_id
        )

    def _submit_group(
        self,
        handle: LogHandle,
        record: AttestationRecord,
        messages: list[bytes],
        indexes: Iterable[int],
        committed: list[int],
        dl: Deadline,
        group_id: str,
    ) -> LoggedRecord:
        committed = list(committed)
        ack: Optional[SubmitAck] = None
        for index in indexes:
            try:
                ack = self._call(handle, messages[index], dl, f"chunk {index} of {group_id}")
            except (LogServiceError, RetryExhausted) as e:
                raise self._translate(
                    e, handle, record, group_id, group_id, committed, len(messages), index
                ) from (e.last_error if isinstance(e, RetryExhausted) else e)
            committed.append(index)
        if ack is None:
            raise ValueError(f"Chunk group {group_id} has no chunks to submit")
        self._debug(f"Committed group {group_id} at sequence {ack.sequence_number}")
        return self._logged(record, ack, len(messages), group_id)

    def _submit_message(
        self,
        handle: LogHandle,
        record: AttestationRecord,
        data: bytes,
        dl: Deadline,
        submission_id: str,
    ) -> SubmitAck:
        try:
            return self._call(handle, data, dl, f"submission {submission_id}")
        except (LogServiceError, RetryExhausted) as e:
            raise self._translate(e, handle, record, submission_id) from (
                e.last_error if isinstance(e, RetryExhausted) else e
            )

    def _call(self, handle: LogHandle, data: bytes, dl: Deadline, description: str) -> SubmitAck:
        return self.retrier.call(
            lambda timeout: self.service.submit(handle, data, timeout=timeout),
            dl,
            description,
        )


class AsyncSubmitter(_SubmitterBase):
    """Asynchronous submitter. Same arguments and semantics as Submitter."""

    def __init__(
        self,
        service: AsyncLogService,
        max_message_bytes: Optional[int] = None,
        chunking: bool = True,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        retrier: Optional[Retrier] = None,
        deadline: Optional[float] = None,
        debug: bool = False,
    ):
        super().__init__(
            max_message_bytes or service.max_message_bytes,
            chunking,
            max_chunks,
            retrier,
            deadline,
            debug,
        )
        self.service = service

    async def submit(
        self,
        handle: LogHandle,
        record: AttestationRecord,
        deadline: Optional[float] = None,
    ) -> LoggedRecord:
        """Submit one record and wait for it to commit."""
        submission_id = str(uuid.uuid4())
        messages, chunked = self._plan(record, submission_id)
        dl = self._deadline(deadline)

        if not chunked:
            self._debug(f"Submitting {submission_id} to {handle.log_id}")
            try:
                ack = await self._call(handle, messages[0], dl, f"submission {submission_id}")
            except (LogServiceError, RetryExhausted) as e:
                raise self._translate(e, handle, record, submission_id) from (
                    e.last_error if isinstance(e, RetryExhausted) else e
                )
            return self._logged(record, ack)

        return await self._submit_group(
            handle, record, messages, range(len(messages)), [], dl, submission_id
        )

    async def resume_group(
        self,
        handle: LogHandle,
        record: AttestationRecord,
        group_id: str,
        committed: Iterable[int],
        deadline: Optional[float] = None,
    ) -> LoggedRecord:
        """Submit the chunks of a partially committed group that did not land."""
        messages, chunked = self._plan(record, group_id)
        if not chunked:
            raise ValueError("Record fits in one message; there is no chunk group to resume")
        done = sorted(set(committed))
        missing = [i for i in range(len(messages)) if i not in done]
        if not missing:
            raise ValueError(f"Chunk group {group_id} has no missing chunks")
        return await self._submit_group(
            handle, record, messages, missing, done, self._deadline(deadline), group_id
        )

    async def _submit_group(
        self,
        handle: LogHandle,
        record: AttestationRecord,
        messages: list[bytes],
        indexes: Iterable[int],
        committed: list[int],
        dl: Deadline,
        group_id: str,
    ) -> LoggedRecord:
        committed = list(committed)
        ack: Optional[SubmitAck] = None
        for index in indexes:
            try:
                ack = await self._call(handle, messages[index], dl, f"chunk {index} of {group_id}")
            except (LogServiceError, RetryExhausted) as e:
                raise self._translate(
                    e, handle, record, group_id, group_id, committed, len(messages), index
                ) from (e.last_error if isinstance(e, RetryExhausted) else e)
            committed.append(index)
        if ack is None:
            raise ValueError(f"Chunk group {group_id} has no chunks to submit")
        return self._logged(record, ack, len(messages), group_id)

    async def _call(
        self, handle: LogHandle, data: bytes, dl: Deadline, description: str
    ) -> SubmitAck:
        return await self.retrier.call_async(
            lambda timeout: self.service.submit(handle, data, timeout=timeout),
            dl,
            description,
        )
