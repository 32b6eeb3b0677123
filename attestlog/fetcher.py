"""
Fetcher: walks a log page by page and yields its records in order.

Pagination cursors are followed until the service reports no more data.
Chunk envelopes are grouped by group id and joined in index order, so callers
only ever see whole LoggedRecords. Messages that cannot be parsed are skipped
and collected on the stream's ``malformed`` list rather than failing the walk.

Example:
    >>> fetcher = Fetcher(service)
    >>> stream = fetcher.fetch(handle, subject_id="agent-1")
    >>> records = list(stream)
    >>> stream.malformed  # any skipped messages
    []
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Iterator
from typing import Any, Awaitable, Callable, Optional

from attestlog.backends import MAX_PAGE_LIMIT, AsyncLogService, LogService
from attestlog.models import (
    FetchError,
    IncompleteChunkGroupError,
    LoggedRecord,
    LogHandle,
    LogPage,
    LogServiceError,
    MalformedEntry,
    MalformedRecordError,
    RawMessage,
)
from attestlog.retry import Deadline, Retrier, RetryExhausted
from attestlog.wire import decode_message, decode_record_bytes

logger = logging.getLogger("attestlog")

DEFAULT_POLL_INTERVAL = 1.0


class _PendingGroup:
    def __init__(self, count: int):
        self.count = count
        self.parts: dict[int, bytes] = {}


class _Reassembler:
    """Per-walk state: pending chunk groups and the last position seen."""

    def __init__(self, log_id: str, malformed: list[MalformedRecordError]):
        self.log_id = log_id
        self.malformed = malformed
        self.groups: dict[str, _PendingGroup] = {}
        self.completed: set[str] = set()
        self.dropped: set[tuple[Optional[int], str]] = set()
        self.last_sequence = 0
        self.last_timestamp = 0

    @property
    def pending(self) -> bool:
        return bool(self.groups)

    def feed(self, message: RawMessage) -> Optional[LoggedRecord]:
        """Consume one message; return a record when one is complete."""
        self.last_sequence = max(self.last_sequence, message.sequence_number)
        self.last_timestamp = max(self.last_timestamp, message.consensus_timestamp)

        try:
            decoded = decode_message(message)
        except MalformedRecordError as e:
            self._skip(e)
            return None

        if isinstance(decoded, LoggedRecord):
            return decoded

        info, data = decoded
        if info.group_id in self.completed:
            return None

        group = self.groups.setdefault(info.group_id, _PendingGroup(info.count))
        if group.count != info.count:
            self._skip(
                MalformedRecordError(
                    f"Chunk at {message.sequence_number} claims count {info.count} "
                    f"but group {info.group_id} has count {group.count}",
                    message.sequence_number,
                    "inconsistent chunk count",
                )
            )
            return None
        if info.index in group.parts:
            return None
        group.parts[info.index] = data
        if len(group.parts) < group.count:
            return None

        del self.groups[info.group_id]
        self.completed.add(info.group_id)
        joined = b"".join(group.parts[i] for i in range(group.count))
        try:
            return decode_record_bytes(
                joined,
                message.sequence_number,
                message.consensus_timestamp,
                chunk_count=group.count,
                group_id=info.group_id,
            )
        except MalformedRecordError as e:
            self._skip(e)
            return None

    def drop_entries(self, entries: list[MalformedEntry]) -> None:
        """Report page entries the service could not deliver as messages."""
        for entry in entries:
            key = (entry.sequence_number, entry.reason)
            # Polling for late chunks re-reads pages already seen
            if key in self.dropped:
                continue
            self.dropped.add(key)
            self._skip(
                MalformedRecordError(
                    f"Unreadable page entry {entry.sequence_number} in {self.log_id}",
                    entry.sequence_number,
                    entry.reason,
                )
            )

    def incomplete_error(self) -> IncompleteChunkGroupError:
        groups = {
            group_id: {"received": sorted(group.parts), "count": group.count}
            for group_id, group in self.groups.items()
        }
        return IncompleteChunkGroupError(
            f"{len(groups)} chunk group(s) in {self.log_id} incomplete: "
            + ", ".join(f"{gid} ({len(g['received'])}/{g['count']})" for gid, g in groups.items()),
            log_id=self.log_id,
            groups=groups,
        )

    def _skip(self, error: MalformedRecordError) -> None:
        logger.warning(
            f"[attestlog] Skipping malformed message {error.sequence_number} "
            f"in {self.log_id}: {error.reason}"
        )
        self.malformed.append(error)


class _FetcherBase:
    def __init__(
        self,
        page_limit: int = MAX_PAGE_LIMIT,
        retrier: Optional[Retrier] = None,
        request_timeout: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        debug: bool = False,
    ):
        self.page_limit = max(1, min(page_limit, MAX_PAGE_LIMIT))
        self.retrier = retrier or Retrier()
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self.debug = debug

    def _fetch_error(self, handle: LogHandle, error: BaseException) -> FetchError:
        if isinstance(error, RetryExhausted):
            cause = error.last_error
            reason = "deadline expired" if error.deadline_expired else "retries exhausted"
        else:
            cause = error
            reason = "rejected by the log service"
        return FetchError(
            f"Could not read {handle.log_id}: {reason}: {cause}",
            log_id=handle.log_id,
            cause=cause,
        )

    @staticmethod
    def _wanted(record: Optional[LoggedRecord], subject_id: Optional[str]) -> bool:
        return record is not None and (subject_id is None or record.subject_id == subject_id)

    def _debug(self, message: str) -> None:
        """Log a debug message."""
        if self.debug:
            logger.debug(f"[attestlog] {message}")


# ==============================================================================
# Sync
# ==============================================================================


class RecordStream:
    """
    Lazy, restartable sequence of LoggedRecords.

    Every iteration re-issues the full paginated walk from the start and
    resets ``malformed``.
    """

    def __init__(self, fetcher: "Fetcher", handle: LogHandle, **params: Any):
        self._fetcher = fetcher
        self._handle = handle
        self._params = params
        self.malformed: list[MalformedRecordError] = []

    def __iter__(self) -> Iterator[LoggedRecord]:
        self.malformed = []
        return self._fetcher._walk(self._handle, self.malformed, **self._params)


class Fetcher(_FetcherBase):
    """
    Synchronous fetcher.

    Args:
        service: The append-only log service
        page_limit: Messages requested per page (1-100)
        retrier: Retry policy for page requests
        request_timeout: Deadline in seconds for each page request
        poll_interval: Seconds between polls while waiting for chunks
        sleep: Blocking sleep used between polls
        debug: Enable debug logging
    """

    def __init__(
        self,
        service: LogService,
        page_limit: int = MAX_PAGE_LIMIT,
        retrier: Optional[Retrier] = None,
        request_timeout: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], Any] = time.sleep,
        debug: bool = False,
    ):
        super().__init__(page_limit, retrier, request_timeout, poll_interval, debug)
        self.service = service
        self._sleep = sleep

    def fetch(
        self,
        handle: LogHandle,
        subject_id: Optional[str] = None,
        *,
        start: Optional[int] = None,
        end: Optional[int] = None,
        page_limit: Optional[int] = None,
        chunk_wait: Optional[float] = None,
    ) -> RecordStream:
        """
        Fetch a log's records in order.

        Args:
            handle: Log to read (no capabilities required)
            subject_id: Only yield records for this subject
            start: Earliest consensus timestamp (ns, inclusive)
            end: Latest consensus timestamp (ns, inclusive)
            page_limit: Override the page size for this walk
            chunk_wait: Seconds to keep polling for chunks of incomplete groups

        Returns:
            A RecordStream; iterating it performs the I/O

        Iteration raises:
            FetchError: The log could not be read
            IncompleteChunkGroupError: Groups still incomplete at the end
        """
        return RecordStream(
            self,
            handle,
            subject_id=subject_id,
            start=start,
            end=end,
            page_limit=page_limit,
            chunk_wait=chunk_wait,
        )

    def _walk(
        self,
        handle: LogHandle,
        malformed: list[MalformedRecordError],
        subject_id: Optional[str],
        start: Optional[int],
        end: Optional[int],
        page_limit: Optional[int],
        chunk_wait: Optional[float],
    ) -> Iterator[LoggedRecord]:
        limit = max(1, min(page_limit or self.page_limit, MAX_PAGE_LIMIT))
        state = _Reassembler(handle.log_id, malformed)
        self._debug(f"Fetching {handle.log_id} (subject={subject_id}, limit={limit})")

        for message in self._messages(handle, state, subject_id, start, end, limit):
            record = state.feed(message)
            if self._wanted(record, subject_id):
                yield record

        if state.pending and chunk_wait:
            wait = Deadline(chunk_wait)
            while state.pending and not wait.expired:
                self._sleep(min(self.poll_interval, wait.remaining() or 0.0))
                since = state.last_timestamp if start is None else max(start, state.last_timestamp)
                seen = state.last_sequence
                for message in self._messages(handle, state, subject_id, since, end, limit):
                    if message.sequence_number <= seen:
                        continue
                    record = state.feed(message)
                    if self._wanted(record, subject_id):
                        yield record

        if state.pending:
            raise state.incomplete_error()

    def _messages(
        self,
        handle: LogHandle,
        state: _Reassembler,
        subject_id: Optional[str],
        start: Optional[int],
        end: Optional[int],
        limit: int,
    ) -> Iterator[RawMessage]:
        cursor: Optional[str] = None
        while True:
            page = self._fetch_page(handle, cursor, limit, subject_id, start, end)
            state.drop_entries(page.malformed)
            yield from page.messages
            if not page.next_cursor:
                return
            cursor = page.next_cursor

    def _fetch_page(
        self,
        handle: LogHandle,
        cursor: Optional[str],
        limit: int,
        subject_id: Optional[str],
        start: Optional[int],
        end: Optional[int],
    ) -> LogPage:
        try:
            return self.retrier.call(
                lambda timeout: self.service.fetch_page(
                    handle,
                    cursor=cursor,
                    limit=limit,
                    subject_id=subject_id,
                    start=start,
                    end=end,
                    timeout=timeout,
                ),
                Deadline(self.request_timeout),
                f"fetch page of {handle.log_id}",
            )
        except RetryExhausted as e:
            raise self._fetch_error(handle, e) from e.last_error
        except LogServiceError as e:
            raise self._fetch_error(handle, e) from e


# ==============================================================================
# Async
# ==============================================================================


class AsyncRecordStream:
    """Async twin of RecordStream."""

    def __init__(self, fetcher: "AsyncFetcher", handle: LogHandle, **params: Any):
        self._fetcher = fetcher
        self._handle = handle
        self._params = params
        self.malformed: list[MalformedRecordError] = []

    def __aiter__(self) -> AsyncIterator[LoggedRecord]:
        self.malformed = []
        return self._fetcher._walk(self._handle, self.malformed, **self._params)

    async def collect(self) -> list[LoggedRecord]:
        """Run the walk and return every record."""
        return [record async for record in self]


class AsyncFetcher(_FetcherBase):
    """Asynchronous fetcher. Same arguments and semantics as Fetcher."""

    def __init__(
        self,
        service: AsyncLogService,
        page_limit: int = MAX_PAGE_LIMIT,
        retrier: Optional[Retrier] = None,
        request_timeout: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        debug: bool = False,
    ):
        super().__init__(page_limit, retrier, request_timeout, poll_interval, debug)
        self.service = service
        self._sleep = sleep

    def fetch(
        self,
        handle: LogHandle,
        subject_id: Optional[str] = None,
        *,
        start: Optional[int] = None,
        end: Optional[int] = None,
        page_limit: Optional[int] = None,
        chunk_wait: Optional[float] = None,
    ) -> AsyncRecordStream:
        """Fetch a log's records in order; iterate with ``async for``."""
        return AsyncRecordStream(
            self,
            handle,
            subject_id=subject_id,
            start=start,
            end=end,
            page_limit=page_limit,
            chunk_wait=chunk_wait,
        )

    async def _walk(
        self,
        handle: LogHandle,
        malformed: list[MalformedRecordError],
        subject_id: Optional[str],
        start: Optional[int],
        end: Optional[int],
        page_limit: Optional[int],
        chunk_wait: Optional[float],
    ) -> AsyncIterator[LoggedRecord]:
        limit = max(1, min(page_limit or self.page_limit, MAX_PAGE_LIMIT))
        state = _Reassembler(handle.log_id, malformed)
        self._debug(f"Fetching {handle.log_id} (subject={subject_id}, limit={limit})")

        async for message in self._messages(handle, state, subject_id, start, end, limit):
            record = state.feed(message)
            if self._wanted(record, subject_id):
                yield record

        if state.pending and chunk_wait:
            wait = Deadline(chunk_wait)
            while state.pending and not wait.expired:
                await self._sleep(min(self.poll_interval, wait.remaining() or 0.0))
                since = state.last_timestamp if start is None else max(start, state.last_timestamp)
                seen = state.last_sequence
                async for message in self._messages(handle, state, subject_id, since, end, limit):
                    if message.sequence_number <= seen:
                        continue
                    record = state.feed(message)
                    if self._wanted(record, subject_id):
                        yield record

        if state.pending:
            raise state.incomplete_error()

    async def _messages(
        self,
        handle: LogHandle,
        state: _Reassembler,
        subject_id: Optional[str],
        start: Optional[int],
        end: Optional[int],
        limit: int,
    ) -> AsyncIterator[RawMessage]:
        cursor: Optional[str] = None
        while True:
            try:
                page = await self.retrier.call_async(
                    lambda timeout: self.service.fetch_page(
                        handle,
                        cursor=cursor,
                        limit=limit,
                        subject_id=subject_id,
                        start=start,
                        end=end,
                        timeout=timeout,
                    ),
                    Deadline(self.request_timeout),
                    f"fetch page of {handle.log_id}",
                )
            except RetryExhausted as e:
                raise self._fetch_error(handle, e) from e.last_error
            except LogServiceError as e:
                raise self._fetch_error(handle, e) from e
            state.drop_entries(page.malformed)
            for message in page.messages:
                yield message
            if not page.next_cursor:
                return
            cursor = page.next_cursor
