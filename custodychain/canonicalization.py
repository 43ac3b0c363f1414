"""
Canonical Record Encoding

Turns a structured record (nested mappings, sequences, scalars) into one
deterministic byte sequence. Semantically identical records produce identical
bytes regardless of the order their fields were inserted in, and regardless of
platform or locale.

Rules:
- Mapping keys MUST be strings, sorted by the byte order of their UTF-8 form
- Compact form: no whitespace between tokens
- Entries whose value is ABSENT are omitted; None is encoded as null
- Sequences preserve order exactly as provided
- Strings use minimal JSON escaping; non-ASCII is emitted as UTF-8
- Numbers follow the ECMAScript Number-to-String algorithm (RFC 8785 §3.2.2.3)
- NaN, Infinity, cycles and types with no canonical form raise EncodingError
"""

import json
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Set

from .errors import EncodingError


class _Absent:
    """Marker for a field that was never supplied (as opposed to set to None)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


def canonicalize(obj: Any) -> bytes:
    """
    Encode a record into its canonical UTF-8 byte form.

    Returns:
        UTF-8 encoded bytes of the canonical encoding

    Raises:
        EncodingError: if any value reachable from obj has no canonical form
    """
    parts: List[str] = []
    _encode(obj, parts, set(), "$")
    try:
        return "".join(parts).encode("utf-8")
    except UnicodeEncodeError as e:
        raise EncodingError(f"String is not valid Unicode ({e.reason})")


def canonicalize_str(obj: Any) -> str:
    """Return the canonical encoding as a string."""
    return canonicalize(obj).decode("utf-8")


def omit_none(mapping: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn None values into ABSENT so they are left out of the encoding."""
    return {k: (ABSENT if v is None else v) for k, v in mapping.items()}


def format_datetime(value: datetime) -> str:
    """
    Render a datetime as ISO-8601 UTC with millisecond precision.

    Naive datetimes are taken to be UTC. Example: 2026-03-01T09:30:00.000Z
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_number(value: Any, path: str = "$") -> str:
    """
    Render an int or float in its canonical textual form.

    Integers are written exactly. Floats use the shortest round-trip digits,
    laid out the way ECMAScript's Number.prototype.toString does, so 25.0
    becomes "25", 1e-7 becomes "1e-7" and 1e21 becomes "1e+21".
    """
    if isinstance(value, int):
        return str(value)

    if math.isnan(value) or math.isinf(value):
        raise EncodingError(f"Non-finite number {value!r} has no canonical form", path)

    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    mantissa, _, exp_text = repr(abs(value)).partition("e")
    exponent = int(exp_text) if exp_text else 0
    int_part, _, frac_part = mantissa.partition(".")

    digits = int_part + frac_part
    point = len(int_part) + exponent
    stripped = digits.lstrip("0")
    point -= len(digits) - len(stripped)
    digits = stripped.rstrip("0")

    k = len(digits)
    n = point
    if k <= n <= 21:
        text = digits + "0" * (n - k)
    elif 0 < n <= 21:
        text = digits[:n] + "." + digits[n:]
    elif -6 < n <= 0:
        text = "0." + "0" * (-n) + digits
    else:
        e = n - 1
        exp = ("+" if e >= 0 else "-") + str(abs(e))
        if k == 1:
            text = digits + "e" + exp
        else:
            text = digits[0] + "." + digits[1:] + "e" + exp

    return sign + text


def _encode(value: Any, out: List[str], active: Set[int], path: str) -> None:
    """Recursively encode a value, tracking open containers to catch cycles."""
    if value is ABSENT:
        raise EncodingError("ABSENT is only meaningful as a mapping value", path)
    if value is None:
        out.append("null")
    elif isinstance(value, bool):
        out.append("true" if value else "false")
    elif isinstance(value, Enum):
        _encode(value.value, out, active, path)
    elif isinstance(value, (int, float)):
        out.append(format_number(value, path))
    elif isinstance(value, str):
        out.append(json.dumps(value, ensure_ascii=False))
    elif isinstance(value, datetime):
        out.append(json.dumps(format_datetime(value)))
    elif isinstance(value, Mapping):
        _encode_mapping(value, out, active, path)
    elif isinstance(value, (list, tuple)):
        _encode_sequence(value, out, active, path)
    else:
        raise EncodingError(f"Cannot canonicalize type {type(value).__name__}", path)


def _encode_mapping(obj: Mapping, out: List[str], active: Set[int], path: str) -> None:
    """
    Encode a mapping with keys in UTF-8 byte order.

    ABSENT values are skipped entirely; they do not leave an empty slot.
    """
    marker = id(obj)
    if marker in active:
        raise EncodingError("Cyclic structure", path)
    active.add(marker)

    for key in obj.keys():
        if not isinstance(key, str):
            raise EncodingError(f"Mapping key {key!r} is not a string", path)

    out.append("{")
    first = True
    for key in sorted(obj.keys(), key=lambda k: k.encode("utf-8", "surrogatepass")):
        item = obj[key]
        if item is ABSENT:
            continue
        if not first:
            out.append(",")
        first = False
        out.append(json.dumps(key, ensure_ascii=False))
        out.append(":")
        _encode(item, out, active, f"{path}.{key}")
    out.append("}")

    active.discard(marker)


def _encode_sequence(arr, out: List[str], active: Set[int], path: str) -> None:
    """Encode a sequence, preserving order."""
    marker = id(arr)
    if marker in active:
        raise EncodingError("Cyclic structure", path)
    active.add(marker)

    out.append("[")
    for i, item in enumerate(arr):
        if i:
            out.append(",")
        _encode(item, out, active, f"{path}[{i}]")
    out.append("]")

    active.discard(marker)
