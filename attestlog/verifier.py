"""
Chain verification.

Walks one subject's records in log order and checks that every record links
to the hash of its predecessor, that sequence numbers strictly increase and
that consensus timestamps never go backwards. Discontinuities are collected
as ChainBreak findings; a broken chain is a normal result, never an exception.

Example:
    >>> from attestlog.verifier import verify_chain
    >>> result = verify_chain(records, subject_id="agent-1")
    >>> if not result.valid:
    ...     print(result.summary())
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from attestlog.crypto import GENESIS_HASH
from attestlog.models import (
    BreakKind,
    ChainBreak,
    LoggedRecord,
    MalformedRecordError,
    VerificationResult,
)

logger = logging.getLogger("attestlog")

RecordLike = Union[LoggedRecord, Mapping[str, Any]]


def _coerce(record: RecordLike) -> LoggedRecord:
    if isinstance(record, LoggedRecord):
        return record
    if not isinstance(record, Mapping):
        raise MalformedRecordError(
            f"Expected a LoggedRecord or mapping, got {type(record).__name__}",
            reason="not a record",
        )
    try:
        return LoggedRecord.model_validate(dict(record))
    except PydanticValidationError as e:
        seq = record.get("sequenceNumber", record.get("sequence_number"))
        raise MalformedRecordError(
            f"Record {seq} is not a valid attestation record", seq, str(e)
        ) from e


def _hash(record: LoggedRecord) -> str:
    try:
        return record.record_hash()
    except ValueError as e:
        raise MalformedRecordError(
            f"Record {record.sequence_number} cannot be canonicalized",
            record.sequence_number,
            str(e),
        ) from e


def _malformed_breaks(
    malformed: Iterable[MalformedRecordError], subject_id: Optional[str]
) -> list[ChainBreak]:
    found = []
    for error in malformed:
        if subject_id is not None and error.subject_id not in (None, subject_id):
            continue
        found.append(
            ChainBreak(
                kind=BreakKind.MALFORMED_RECORD,
                at_sequence=error.sequence_number or 0,
                observed=error.reason,
                subject_id=subject_id,
                message="message could not be parsed into a record",
            )
        )
    return found


class ChainVerifier:
    """
    Verifies hash chains.

    Args:
        stop_at_first_break: Return as soon as one finding is recorded
        require_contiguous: Also report gaps in the subject's sequence numbers.
                            Only meaningful for logs that carry one subject.
        debug: Enable debug logging
    """

    def __init__(
        self,
        stop_at_first_break: bool = False,
        require_contiguous: bool = False,
        debug: bool = False,
    ):
        self.stop_at_first_break = stop_at_first_break
        self.require_contiguous = require_contiguous
        self.debug = debug

    def verify(
        self,
        records: Iterable[RecordLike],
        subject_id: Optional[str] = None,
        *,
        anchor_hash: str = GENESIS_HASH,
        stop_at_first_break: Optional[bool] = None,
        require_contiguous: Optional[bool] = None,
        malformed: Iterable[MalformedRecordError] = (),
    ) -> VerificationResult:
        """
        Verify one subject's chain.

        Args:
            records: Records in log order (LoggedRecords or wire-format dicts)
            subject_id: Subject to verify; required when records mix subjects
            anchor_hash: Expected previousRecordHash of the first record
            stop_at_first_break: Override the verifier default
            require_contiguous: Override the verifier default
            malformed: Messages the fetch skipped. Those naming another
                       subject are ignored; the rest become findings.

        Returns:
            VerificationResult with every finding

        Raises:
            MalformedRecordError: If an input record cannot be parsed
            ValueError: If subject_id is None and records span several subjects
        """
        stop = self.stop_at_first_break if stop_at_first_break is None else stop_at_first_break
        contiguous = self.require_contiguous if require_contiguous is None else require_contiguous

        chain = [_coerce(r) for r in records]
        if subject_id is None:
            subjects = {r.subject_id for r in chain}
            if len(subjects) > 1:
                raise ValueError(
                    f"Records span {len(subjects)} subjects; pass subject_id or use verify_all()"
                )
            subject_id = next(iter(subjects), None)
        else:
            chain = [r for r in chain if r.subject_id == subject_id]

        breaks: list[ChainBreak] = []
        # Hashes the next record may link to; more than one after a mismatch
        accepted = (anchor_hash,)
        head_hash = anchor_hash
        previous: Optional[LoggedRecord] = None

        for record in chain:
            record_hash = _hash(record)

            if record.previous_record_hash not in accepted:
                breaks.append(
                    ChainBreak(
                        kind=BreakKind.HASH_MISMATCH,
                        at_sequence=record.sequence_number,
                        expected=accepted[0],
                        observed=record.previous_record_hash,
                        subject_id=subject_id,
                        message="previousRecordHash does not match the preceding record",
                    )
                )
                # Resync: the successor may link to this record as stored or
                # as it was before its link was rewritten
                restored = record.model_copy(
                    update={"previous_record_hash": accepted[0]}
                ).record_hash()
                accepted = (record_hash, restored)
            else:
                accepted = (record_hash,)

            if previous is not None:
                breaks.extend(self._ordering_breaks(previous, record, subject_id, contiguous))

            head_hash = record_hash
            previous = record
            if stop and breaks:
                break

        breaks.extend(_malformed_breaks(malformed, subject_id))
        breaks.sort(key=lambda b: b.at_sequence)
        if stop:
            breaks = breaks[:1]

        result = VerificationResult(
            valid=not breaks,
            breaks=breaks,
            record_count=len(chain),
            subject_id=subject_id,
            head_hash=head_hash,
        )
        self._debug(result.summary())
        return result

    def verify_all(
        self,
        records: Iterable[RecordLike],
        *,
        stop_at_first_break: Optional[bool] = None,
        require_contiguous: Optional[bool] = None,
        malformed: Iterable[MalformedRecordError] = (),
    ) -> dict[str, VerificationResult]:
        """
        Verify every subject found in records; results keyed by subject id.

        A skipped message that names its subject counts against that subject,
        even when none of its records parsed. One that names no subject counts
        against every subject, and against the empty key "" when there are none.
        """
        by_subject: dict[str, list[LoggedRecord]] = {}
        for record in records:
            parsed = _coerce(record)
            by_subject.setdefault(parsed.subject_id, []).append(parsed)
        skipped = list(malformed)
        for error in skipped:
            if error.subject_id is not None:
                by_subject.setdefault(error.subject_id, [])
        if not by_subject and skipped:
            by_subject[""] = []
        return {
            subject: self.verify(
                chain,
                subject,
                stop_at_first_break=stop_at_first_break,
                require_contiguous=require_contiguous,
                malformed=skipped,
            )
            for subject, chain in by_subject.items()
        }

    def _ordering_breaks(
        self,
        previous: LoggedRecord,
        record: LoggedRecord,
        subject_id: Optional[str],
        contiguous: bool,
    ) -> list[ChainBreak]:
        found: list[ChainBreak] = []
        seq = record.sequence_number

        if seq <= previous.sequence_number:
            found.append(
                ChainBreak(
                    kind=BreakKind.SEQUENCE_ORDER,
                    at_sequence=seq,
                    expected=f">{previous.sequence_number}",
                    observed=str(seq),
                    subject_id=subject_id,
                    message="sequenceNumber is not strictly increasing",
                )
            )
        elif contiguous and seq - previous.sequence_number != record.chunk_count:
            found.append(
                ChainBreak(
                    kind=BreakKind.SEQUENCE_GAP,
                    at_sequence=seq,
                    expected=str(previous.sequence_number + record.chunk_count),
                    observed=str(seq),
                    subject_id=subject_id,
                    message="sequenceNumber skips records of this subject",
                )
            )

        if record.consensus_timestamp < previous.consensus_timestamp:
            found.append(
                ChainBreak(
                    kind=BreakKind.TIMESTAMP_REGRESSION,
                    at_sequence=seq,
                    expected=f">={previous.consensus_timestamp}",
                    observed=str(record.consensus_timestamp),
                    subject_id=subject_id,
                    message="consensusTimestamp went backwards",
                )
            )
        return found

    def _debug(self, message: str) -> None:
        """Log a debug message."""
        if self.debug:
            logger.debug(f"[attestlog] {message}")


def verify_chain(
    records: Iterable[RecordLike],
    subject_id: Optional[str] = None,
    *,
    anchor_hash: str = GENESIS_HASH,
    stop_at_first_break: bool = False,
    require_contiguous: bool = False,
    malformed: Iterable[MalformedRecordError] = (),
) -> VerificationResult:
    """Verify one subject's chain with a default ChainVerifier."""
    return ChainVerifier(stop_at_first_break, require_contiguous).verify(
        records, subject_id, anchor_hash=anchor_hash, malformed=malformed
    )


def verify_all(
    records: Iterable[RecordLike],
    *,
    stop_at_first_break: bool = False,
    require_contiguous: bool = False,
    malformed: Iterable[MalformedRecordError] = (),
) -> dict[str, VerificationResult]:
    """Verify every subject in records with a default ChainVerifier."""
    return ChainVerifier(stop_at_first_break, require_contiguous).verify_all(
        records, malformed=malformed
    )
