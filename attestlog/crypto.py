"""
RFC 8785 Canonical JSON and SHA-256 Hashing

This module provides the deterministic serialization that every record hash
in an attestation chain is computed over. Two logically equal records always
serialize to the same bytes, regardless of in-memory key insertion order.

The canonical JSON format follows RFC 8785:
- Object keys are sorted by their UTF-16 code units
- No whitespace between elements
- Floats in ECMAScript shortest round-trip form (100, 1.5e-7, 1e+21)
- Python ints are written exactly, even beyond 2**53
- Recursive canonicalization of nested structures

Example:
    >>> from attestlog.crypto import hash_payload
    >>> hash1 = hash_payload({"b": 2, "a": 1})
    >>> hash2 = hash_payload({"a": 1, "b": 2})
    >>> assert hash1 == hash2  # Keys are sorted
"""

import hashlib
import json
import re
from decimal import Decimal
from typing import Any

# Previous-record hash carried by the first record of every chain
GENESIS_HASH = "0" * 64

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def canonical_json(data: Any) -> str:
    """
    Serialize data to RFC 8785 canonical JSON.

    Args:
        data: Any JSON-serializable value

    Returns:
        Canonical JSON string

    Raises:
        ValueError: If data contains non-serializable values (NaN, Infinity,
            non-string object keys, or unsupported types)

    Example:
        >>> canonical_json({"b": 2, "a": 1})
        '{"a":1,"b":2}'
    """
    return _canonicalize_value(data)


def canonical_bytes(data: Any) -> bytes:
    """
    Canonical JSON encoded as UTF-8.

    Raises:
        ValueError: As canonical_json, and for lone surrogates that have no
            UTF-8 encoding (UnicodeEncodeError is a ValueError)
    """
    return canonical_json(data).encode("utf-8")


def _canonicalize_value(value: Any) -> str:
    """Recursively canonicalize a value."""
    if value is None:
        return "null"

    if isinstance(value, bool):
        return "true" if value else "false"

    if isinstance(value, (int, float)):
        if isinstance(value, float):
            if value != value:  # NaN check
                raise ValueError("Cannot canonicalize NaN")
            if value == float("inf") or value == float("-inf"):
                raise ValueError("Cannot canonicalize Infinity")
            return _format_float(value)
        return json.dumps(value)

    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)

    if isinstance(value, (list, tuple)):
        elements = [_canonicalize_value(item) for item in value]
        return "[" + ",".join(elements) + "]"

    if isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise ValueError(
                    f"Cannot canonicalize object key of type: {type(key).__name__}"
                )
        pairs = [
            f"{json.dumps(key, ensure_ascii=False)}:{_canonicalize_value(value[key])}"
            for key in sorted(value.keys(), key=_utf16_key)
        ]
        return "{" + ",".join(pairs) + "}"

    raise ValueError(f"Cannot canonicalize value of type: {type(value).__name__}")


def _utf16_key(key: str) -> bytes:
    # Big-endian bytes compare in the same order as UTF-16 code units
    return key.encode("utf-16-be", errors="surrogatepass")


def _format_float(value: float) -> str:
    """Format a finite float the way ECMAScript Number.prototype.toString does."""
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    # repr() gives the shortest digits that round-trip
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(str(d) for d in digit_tuple).rstrip("0")
    exponent += len(digit_tuple) - len(digits)
    k = len(digits)
    n = k + exponent  # position of the decimal point relative to digits

    if k <= n <= 21:
        return sign + digits + "0" * (n - k)
    if 0 < n <= 21:
        return sign + digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return sign + "0." + "0" * (-n) + digits
    e = n - 1
    mantissa = digits if k == 1 else digits[0] + "." + digits[1:]
    return f"{sign}{mantissa}e{'+' if e > 0 else '-'}{abs(e)}"


def hash_payload(data: Any) -> str:
    """
    Hash data using RFC 8785 canonical JSON + SHA-256.

    Args:
        data: Any JSON-serializable value

    Returns:
        Hex-encoded SHA-256 hash (64 characters)
    """
    return hashlib.sha256(canonical_bytes(data)).hexdigest()


def hash_bytes(data: bytes) -> str:
    """
    Hash raw bytes using SHA-256.

    Args:
        data: Raw bytes to hash

    Returns:
        Hex-encoded SHA-256 hash (64 characters)
    """
    return hashlib.sha256(data).hexdigest()


def is_hex_digest(value: Any) -> bool:
    """True if value is a 64-character lowercase hex SHA-256 digest."""
    return isinstance(value, str) and bool(_HEX_DIGEST.match(value))


def reference_hash(value: Any) -> str:
    """Reference string for sensitive material: ``sha256:<hex>``."""
    return f"sha256:{hash_payload(value)}"
