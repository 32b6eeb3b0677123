"""
Record builder.

Turns (kind, subject, payload, previous hash) into a well-formed
AttestationRecord plus its record hash. Pure and I/O free: the caller owns
the previous hash of its subject's chain and passes it in.

Example:
    >>> from attestlog.builder import build_record
    >>> first = build_record("DECISION", "agent-1", {"action": "login"})
    >>> second = build_record(
    ...     "DECISION", "agent-1", {"action": "transfer", "amount": 10},
    ...     previous_record_hash=first.record_hash,
    ... )
"""

import time
from collections.abc import Iterable, Mapping
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from attestlog.crypto import GENESIS_HASH, canonical_bytes, is_hex_digest, reference_hash
from attestlog.models import (
    RESERVED_PAYLOAD_KEYS,
    SCHEMA_VERSION,
    AttestationRecord,
    BuiltRecord,
    RecordKind,
    ValidationError,
)

# Minimum payload keys per kind, enforced only by strict builders
REQUIRED_PAYLOAD_KEYS: dict[RecordKind, frozenset[str]] = {
    RecordKind.OUTPUT: frozenset({"outputHash"}),
    RecordKind.DECISION: frozenset({"decision"}),
    RecordKind.TRANSACTION: frozenset({"transactionId"}),
    RecordKind.TRAINING_DATA: frozenset({"datasetHash"}),
    RecordKind.MODEL_DEPLOYMENT: frozenset({"modelId"}),
    RecordKind.CUSTOM: frozenset(),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def coerce_kind(kind: Union[RecordKind, str]) -> RecordKind:
    """Resolve a kind given as enum member, value or name."""
    if isinstance(kind, RecordKind):
        return kind
    if isinstance(kind, str):
        try:
            return RecordKind(kind.upper())
        except ValueError:
            pass
    raise ValidationError(f"Unrecognized record kind: {kind!r}", field="kind")


class RecordBuilder:
    """
    Builds attestation records.

    Args:
        schema_version: Version string stamped on every record
        sensitive_keys: Top-level payload keys whose values are replaced by
                        ``sha256:<hex>`` references before building
        strict_payloads: Enforce the minimum payload keys for each kind
        clock: Callable returning the current time in ms (for producedAt)
    """

    def __init__(
        self,
        schema_version: str = SCHEMA_VERSION,
        sensitive_keys: Optional[Iterable[str]] = None,
        strict_payloads: bool = False,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.schema_version = schema_version
        self.sensitive_keys = frozenset(sensitive_keys or ())
        self.strict_payloads = strict_payloads
        self._clock = clock or _now_ms

    def build(
        self,
        kind: Union[RecordKind, str],
        subject_id: str,
        payload: Mapping[str, Any],
        previous_record_hash: str = GENESIS_HASH,
        produced_at: Optional[int] = None,
    ) -> BuiltRecord:
        """
        Build one record.

        Args:
            kind: Record kind (enum member or its string value)
            subject_id: Actor/agent/model the record describes
            payload: JSON-shaped mapping; hashes/references only, never secrets
            previous_record_hash: Hash of the subject's previous record, or the
                                  genesis sentinel for the first record
            produced_at: Client timestamp in ms (default: now)

        Returns:
            BuiltRecord with the record and its record hash

        Raises:
            ValidationError: On any malformed input
        """
        record_kind = coerce_kind(kind)

        if not isinstance(subject_id, str) or not subject_id.strip():
            raise ValidationError("subject_id must be a non-empty string", field="subject_id")
        try:
            subject_id.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ValidationError(
                f"subject_id is not valid Unicode text: {e}", field="subject_id"
            ) from e

        if not is_hex_digest(previous_record_hash):
            raise ValidationError(
                "previous_record_hash must be 64 lowercase hex characters",
                field="previous_record_hash",
            )

        body = self._prepare_payload(record_kind, payload)

        try:
            record = AttestationRecord(
                schema_version=self.schema_version,
                kind=record_kind,
                subject_id=subject_id,
                payload=body,
                produced_at=produced_at if produced_at is not None else self._clock(),
                previous_record_hash=previous_record_hash,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid record: {e}") from e

        return BuiltRecord(record=record, record_hash=record.record_hash())

    def _prepare_payload(self, kind: RecordKind, payload: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(payload, Mapping):
            raise ValidationError("payload must be a mapping", field="payload")

        body: dict[str, Any] = {}
        for key, value in payload.items():
            if not isinstance(key, str):
                raise ValidationError(
                    f"payload keys must be strings, got {type(key).__name__}", field="payload"
                )
            if key in RESERVED_PAYLOAD_KEYS:
                raise ValidationError(
                    f"payload key {key!r} is reserved for the log service", field="payload"
                )
            if key in self.sensitive_keys:
                try:
                    value = reference_hash(value)
                except ValueError as e:
                    raise ValidationError(
                        f"sensitive value {key!r} cannot be hashed: {e}", field="payload"
                    ) from e
            body[key] = value

        if self.strict_payloads:
            missing = sorted(REQUIRED_PAYLOAD_KEYS[kind] - body.keys())
            if missing:
                raise ValidationError(
                    f"{kind.value} payload is missing required keys: {', '.join(missing)}",
                    field="payload",
                )

        # Must round-trip through canonical JSON for the hash to be reproducible
        try:
            canonical_bytes(body)
        except ValueError as e:
            raise ValidationError(f"payload is not canonically serializable: {e}", field="payload") from e

        return body


_default_builder = RecordBuilder()


def build_record(
    kind: Union[RecordKind, str],
    subject_id: str,
    payload: Mapping[str, Any],
    previous_record_hash: str = GENESIS_HASH,
    produced_at: Optional[int] = None,
) -> BuiltRecord:
    """Build a record with default builder settings."""
    return _default_builder.build(
        kind, subject_id, payload, previous_record_hash, produced_at
    )
