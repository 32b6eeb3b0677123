"""
attestlog client implementations (sync and async).

The AttestationLog client ties the pieces together: it builds records, hands
them to the submitter, reads them back through the fetcher and verifies the
resulting chains. Payloads should carry hashes and references only; values
under configured sensitive keys are replaced by ``sha256:<hex>`` references
before they leave the process.

Example:
    >>> from attestlog import AttestationLog, MemoryLogService
    >>> log = AttestationLog(MemoryLogService())
    >>> handle = log.create_log(memo="agent audit trail")
    >>> chain = log.chain(handle, "agent-1")
    >>> chain.append("DECISION", {"action": "login"})
    >>> chain.append("DECISION", {"action": "transfer", "amount": 10})
    >>> log.verify(handle, "agent-1").valid
    True

Example (resume after restart):
    >>> chain = log.resume(handle, "agent-1")  # raises ChainIntegrityError if broken
    >>> chain.append("OUTPUT", {"outputHash": "ab12..."})
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional, Union

from attestlog.backends import (
    AsyncLogService,
    AsyncLogServiceAdapter,
    LogService,
    create_backend,
)
from attestlog.builder import RecordBuilder
from attestlog.config import AttestLogConfig, BackendConfig, load_config
from attestlog.crypto import GENESIS_HASH
from attestlog.fetcher import AsyncFetcher, AsyncRecordStream, Fetcher, RecordStream
from attestlog.models import (
    BuiltRecord,
    ChainIntegrityError,
    LoggedRecord,
    LogHandle,
    RecordKind,
    VerificationResult,
)
from attestlog.retry import Retrier
from attestlog.submitter import AsyncSubmitter, Submitter
from attestlog.verifier import ChainVerifier

logger = logging.getLogger("attestlog")


def _local_backend(config: BackendConfig) -> LogService:
    path = Path(config.path).expanduser() if config.path else None
    return create_backend(
        config.type,
        path=path,
        max_message_bytes=config.max_message_bytes,
        max_submissions_per_second=config.max_submissions_per_second,
    )


def _http_kwargs(config: BackendConfig, debug: bool) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "api_key": config.api_key,
        "timeout": config.timeout,
        "max_message_bytes": config.max_message_bytes,
        "debug": debug,
    }
    if config.base_url:
        kwargs["base_url"] = config.base_url
    return kwargs


def _resolve_config(config: Union[AttestLogConfig, str, None]) -> AttestLogConfig:
    if isinstance(config, AttestLogConfig):
        return config
    return load_config(config)


class SubjectChain:
    """Tracks the head of one subject's chain and threads it through appends.

    The head only advances after a submission commits, so a failed append
    can be retried with the same call.

    Usage:
        >>> chain = log.chain(handle, "agent-1")
        >>> r1 = chain.append("DECISION", {"action": "login"})
        >>> r2 = chain.append("DECISION", {"action": "logout"})
        >>> r2.previous_record_hash == r1.record_hash()
        True
    """

    def __init__(
        self,
        log: "AttestationLog",
        handle: LogHandle,
        subject_id: str,
        head_hash: str = GENESIS_HASH,
    ):
        self._log = log
        self.handle = handle
        self.subject_id = subject_id
        self.head_hash = head_hash
        self.last_record: Optional[LoggedRecord] = None

    def append(
        self,
        kind: Union[RecordKind, str],
        payload: Mapping[str, Any],
        deadline: Optional[float] = None,
    ) -> LoggedRecord:
        logged = self._log.attest(
            self.handle, kind, self.subject_id, payload, self.head_hash, deadline=deadline
        )
        self.head_hash = logged.record_hash()
        self.last_record = logged
        return logged


class _ClientBase:
    def __init__(
        self,
        config: Optional[AttestLogConfig],
        debug: bool,
        builder: Optional[RecordBuilder],
        retrier: Optional[Retrier],
    ):
        self.config = config or AttestLogConfig()
        self.debug = debug
        cfg = self.config
        self.builder = builder or RecordBuilder(
            schema_version=cfg.builder.schema_version,
            sensitive_keys=cfg.builder.sensitive_keys,
            strict_payloads=cfg.builder.strict_payloads,
        )
        self._retry_kwargs = cfg.retry.model_dump()
        self._retrier = retrier
        self.verifier = ChainVerifier(
            stop_at_first_break=cfg.verification.stop_at_first_break,
            require_contiguous=cfg.verification.require_contiguous,
            debug=debug,
        )

        if debug:
            logging.basicConfig(level=logging.DEBUG)
            logger.setLevel(logging.DEBUG)

    def _new_retrier(self) -> Retrier:
        return self._retrier or Retrier(**self._retry_kwargs)

    def build(
        self,
        kind: Union[RecordKind, str],
        subject_id: str,
        payload: Mapping[str, Any],
        previous_record_hash: str = GENESIS_HASH,
    ) -> BuiltRecord:
        """Build a record without submitting it."""
        return self.builder.build(kind, subject_id, payload, previous_record_hash)

    def _report(self, result: VerificationResult) -> VerificationResult:
        if not result.valid:
            logger.info(f"[attestlog] {result.summary()}")
        return result

    def _debug(self, message: str) -> None:
        """Log a debug message."""
        if self.debug:
            logger.debug(f"[attestlog] {message}")


class AttestationLog(_ClientBase):
    """
    Synchronous attestation log client.

    Args:
        service: Log service backend (default: built from config.backend)
        config: AttestLogConfig (default: all defaults)
        debug: Enable debug logging
        builder: Record builder (default: built from config.builder)
        retrier: Retry policy shared by submissions and fetches
                 (default: built from config.retry)
    """

    def __init__(
        self,
        service: Optional[LogService] = None,
        config: Optional[AttestLogConfig] = None,
        debug: bool = False,
        builder: Optional[RecordBuilder] = None,
        retrier: Optional[Retrier] = None,
    ):
        super().__init__(config, debug, builder, retrier)
        cfg = self.config
        if service is None:
            if cfg.backend.type == "http":
                from attestlog.remote import HttpLogService

                service = HttpLogService(**_http_kwargs(cfg.backend, debug))
            else:
                service = _local_backend(cfg.backend)
        self.service = service
        self.submitter = Submitter(
            service,
            max_message_bytes=cfg.submission.max_message_bytes,
            chunking=cfg.submission.chunking,
            max_chunks=cfg.submission.max_chunks,
            retrier=self._new_retrier(),
            deadline=cfg.submission.deadline,
            debug=debug,
        )
        self.fetcher = Fetcher(
            service,
            page_limit=cfg.fetch.page_limit,
            retrier=self._new_retrier(),
            request_timeout=cfg.fetch.request_timeout,
            poll_interval=cfg.fetch.poll_interval,
            debug=debug,
        )

    @classmethod
    def from_config(
        cls, config: Union[AttestLogConfig, str, None] = None, debug: bool = False
    ) -> "AttestationLog":
        """Create a client from a config object or attestlog.yaml path."""
        return cls(config=_resolve_config(config), debug=debug)

    def __enter__(self) -> "AttestationLog":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying log service."""
        self.service.close()

    def create_log(
        self,
        memo: str = "",
        admin_key: Optional[str] = None,
        submit_key: Optional[str] = None,
    ) -> LogHandle:
        """Create a new log. Keep the returned handle: it carries the keys."""
        handle = self.service.create_log(memo, admin_key=admin_key, submit_key=submit_key)
        self._debug(f"Created log {handle.log_id}")
        return handle

    def attest(
        self,
        handle: LogHandle,
        kind: Union[RecordKind, str],
        subject_id: str,
        payload: Mapping[str, Any],
        previous_record_hash: str = GENESIS_HASH,
        deadline: Optional[float] = None,
    ) -> LoggedRecord:
        """
        Build a record and submit it.

        Args:
            handle: Log to append to
            kind: Record kind
            subject_id: Actor/agent/model the record describes
            payload: Hashes and references describing the event
            previous_record_hash: Hash of the subject's previous record
            deadline: Overall submission deadline in seconds

        Returns:
            The committed LoggedRecord
        """
        built = self.builder.build(kind, subject_id, payload, previous_record_hash)
        self._debug(f"Attesting {built.record.kind.value} for {subject_id}: {built.record_hash[:16]}...")
        return self.submitter.submit(handle, built.record, deadline=deadline)

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
        """Lazily fetch a log's records in order."""
        return self.fetcher.fetch(
            handle,
            subject_id,
            start=start,
            end=end,
            page_limit=page_limit,
            chunk_wait=chunk_wait if chunk_wait is not None else self.config.fetch.chunk_wait,
        )

    def verify(
        self,
        handle: LogHandle,
        subject_id: Optional[str] = None,
        *,
        anchor_hash: str = GENESIS_HASH,
        chunk_wait: Optional[float] = None,
    ) -> VerificationResult:
        """Fetch a subject's chain and verify it. Breaks are reported, not raised."""
        stream = self.fetch(handle, subject_id, chunk_wait=chunk_wait)
        records = list(stream)
        return self._report(
            self.verifier.verify(
                records, subject_id, anchor_hash=anchor_hash, malformed=stream.malformed
            )
        )

    def verify_all(
        self, handle: LogHandle, chunk_wait: Optional[float] = None
    ) -> dict[str, VerificationResult]:
        """Fetch a whole log and verify every subject in it."""
        stream = self.fetch(handle, chunk_wait=chunk_wait)
        records = list(stream)
        results = self.verifier.verify_all(records, malformed=stream.malformed)
        for result in results.values():
            self._report(result)
        return results

    def chain(
        self, handle: LogHandle, subject_id: str, head_hash: str = GENESIS_HASH
    ) -> SubjectChain:
        """Start (or continue from head_hash) a subject's chain."""
        return SubjectChain(self, handle, subject_id, head_hash)

    def resume(
        self, handle: LogHandle, subject_id: str, allow_broken: bool = False
    ) -> SubjectChain:
        """
        Rebuild a subject's chain position from the log.

        Raises:
            ChainIntegrityError: If the chain is broken and allow_broken is False
        """
        result = self.verify(handle, subject_id)
        if not result.valid and not allow_broken:
            raise ChainIntegrityError(
                f"Refusing to extend broken chain for {subject_id!r} in {handle.log_id}",
                result,
            )
        return SubjectChain(self, handle, subject_id, result.head_hash or GENESIS_HASH)


class AsyncSubjectChain:
    """Async twin of SubjectChain."""

    def __init__(
        self,
        log: "AsyncAttestationLog",
        handle: LogHandle,
        subject_id: str,
        head_hash: str = GENESIS_HASH,
    ):
        self._log = log
        self.handle = handle
        self.subject_id = subject_id
        self.head_hash = head_hash
        self.last_record: Optional[LoggedRecord] = None

    async def append(
        self,
        kind: Union[RecordKind, str],
        payload: Mapping[str, Any],
        deadline: Optional[float] = None,
    ) -> LoggedRecord:
        logged = await self._log.attest(
            self.handle, kind, self.subject_id, payload, self.head_hash, deadline=deadline
        )
        self.head_hash = logged.record_hash()
        self.last_record = logged
        return logged


class AsyncAttestationLog(_ClientBase):
    """
    Asynchronous attestation log client.

    Accepts an AsyncLogService, or a synchronous LogService which is then run
    in worker threads through AsyncLogServiceAdapter.
    """

    def __init__(
        self,
        service: Union[AsyncLogService, LogService, None] = None,
        config: Optional[AttestLogConfig] = None,
        debug: bool = False,
        builder: Optional[RecordBuilder] = None,
        retrier: Optional[Retrier] = None,
    ):
        super().__init__(config, debug, builder, retrier)
        cfg = self.config
        if service is None:
            if cfg.backend.type == "http":
                from attestlog.remote import AsyncHttpLogService

                service = AsyncHttpLogService(**_http_kwargs(cfg.backend, debug))
            else:
                service = _local_backend(cfg.backend)
        if not inspect.iscoroutinefunction(service.submit):
            service = AsyncLogServiceAdapter(service)
        self.service: AsyncLogService = service
        self.submitter = AsyncSubmitter(
            self.service,
            max_message_bytes=cfg.submission.max_message_bytes,
            chunking=cfg.submission.chunking,
            max_chunks=cfg.submission.max_chunks,
            retrier=self._new_retrier(),
            deadline=cfg.submission.deadline,
            debug=debug,
        )
        self.fetcher = AsyncFetcher(
            self.service,
            page_limit=cfg.fetch.page_limit,
            retrier=self._new_retrier(),
            request_timeout=cfg.fetch.request_timeout,
            poll_interval=cfg.fetch.poll_interval,
            debug=debug,
        )

    @classmethod
    def from_config(
        cls, config: Union[AttestLogConfig, str, None] = None, debug: bool = False
    ) -> "AsyncAttestationLog":
        """Create a client from a config object or attestlog.yaml path."""
        return cls(config=_resolve_config(config), debug=debug)

    async def __aenter__(self) -> "AsyncAttestationLog":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying log service."""
        await self.service.close()

    async def create_log(
        self,
        memo: str = "",
        admin_key: Optional[str] = None,
        submit_key: Optional[str] = None,
    ) -> LogHandle:
        """Create a new log. Keep the returned handle: it carries the keys."""
        handle = await self.service.create_log(memo, admin_key=admin_key, submit_key=submit_key)
        self._debug(f"Created log {handle.log_id}")
        return handle

    async def attest(
        self,
        handle: LogHandle,
        kind: Union[RecordKind, str],
        subject_id: str,
        payload: Mapping[str, Any],
        previous_record_hash: str = GENESIS_HASH,
        deadline: Optional[float] = None,
    ) -> LoggedRecord:
        """Build a record and submit it."""
        built = self.builder.build(kind, subject_id, payload, previous_record_hash)
        self._debug(f"Attesting {built.record.kind.value} for {subject_id}: {built.record_hash[:16]}...")
        return await self.submitter.submit(handle, built.record, deadline=deadline)

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
        """Lazily fetch a log's records in order; iterate with ``async for``."""
        return self.fetcher.fetch(
            handle,
            subject_id,
            start=start,
            end=end,
            page_limit=page_limit,
            chunk_wait=chunk_wait if chunk_wait is not None else self.config.fetch.chunk_wait,
        )

    async def verify(
        self,
        handle: LogHandle,
        subject_id: Optional[str] = None,
        *,
        anchor_hash: str = GENESIS_HASH,
        chunk_wait: Optional[float] = None,
    ) -> VerificationResult:
        """Fetch a subject's chain and verify it. Breaks are reported, not raised."""
        stream = self.fetch(handle, subject_id, chunk_wait=chunk_wait)
        records = await stream.collect()
        return self._report(
            self.verifier.verify(
                records, subject_id, anchor_hash=anchor_hash, malformed=stream.malformed
            )
        )

    async def verify_all(
        self, handle: LogHandle, chunk_wait: Optional[float] = None
    ) -> dict[str, VerificationResult]:
        """Fetch a whole log and verify every subject in it."""
        stream = self.fetch(handle, chunk_wait=chunk_wait)
        records = await stream.collect()
        results = self.verifier.verify_all(records, malformed=stream.malformed)
        for result in results.values():
            self._report(result)
        return results

    def chain(
        self, handle: LogHandle, subject_id: str, head_hash: str = GENESIS_HASH
    ) -> AsyncSubjectChain:
        """Start (or continue from head_hash) a subject's chain."""
        return AsyncSubjectChain(self, handle, subject_id, head_hash)

    async def resume(
        self, handle: LogHandle, subject_id: str, allow_broken: bool = False
    ) -> AsyncSubjectChain:
        """Rebuild a subject's chain position from the log."""
        result = await self.verify(handle, subject_id)
        if not result.valid and not allow_broken:
            raise ChainIntegrityError(
                f"Refusing to extend broken chain for {subject_id!r} in {handle.log_id}",
                result,
            )
        return AsyncSubjectChain(self, handle, subject_id, result.head_hash or GENESIS_HASH)
