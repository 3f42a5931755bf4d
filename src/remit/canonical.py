"""Deterministic JSON serialization used for signing payloads and request hashing."""

from __future__ import annotations

import hashlib
import json
import math
from decimal import Decimal
from typing import Any, Mapping


def canonicalize(value: Any) -> str:
    """Serialize JSON using code-point key ordering and no insignificant whitespace.

    Numbers render the way ECMAScript ``Number#toString`` does (``1.0`` ->
    ``1``, ``1e21`` -> ``1e+21``, ``1e-7`` -> ``1e-7``) and non-finite
    floats become ``null``.
    """
    return _encode(value)


def canonical_hash(value: Any) -> str:
    """Return sha256 hex digest of the canonical serialization."""
    return hashlib.sha256(canonicalize(value).encode("utf-8")).hexdigest()


def _encode(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return _string(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return format_number(value)
    if isinstance(value, Mapping):
        for k in value:
            if not isinstance(k, str):
                raise ValueError(f"Canonical JSON object keys must be strings, got {type(k).__name__}")
        return "{" + ",".join(f"{_string(k)}:{_encode(value[k])}" for k in sorted(value)) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(item) for item in value) + "]"
    raise ValueError(f"Unsupported JSON canonicalization value type: {type(value).__name__}")


def _string(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def format_number(value: float) -> str:
    """Render a float as ECMAScript ``Number#toString`` would; NaN/inf -> ``null``."""
    if not math.isfinite(value):
        return "null"
    if value == 0:
        return "0"

    # repr() yields the shortest round-tripping digits, as ECMAScript does.
    sign, digit_tuple, exponent = Decimal(repr(value)).as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    point = len(digits) + exponent
    digits = digits.rstrip("0")
    k = len(digits)
    prefix = "-" if sign else ""

    if k <= point <= 21:
        return prefix + digits + "0" * (point - k)
    if 0 < point <= 21:
        return prefix + digits[:point] + "." + digits[point:]
    if -6 < point <= 0:
        return prefix + "0." + "0" * -point + digits

    e = point - 1
    mantissa = digits if k == 1 else digits[0] + "." + digits[1:]
    return f"{prefix}{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"
