"""Deterministic content hashes for fixture and interaction deduplication.

The digest is SHA-256 over the compact JSON the JavaScript SDKs produce with
``JSON.stringify``, so hashes computed here match rows they already stored.
That means JavaScript key order (integer-like keys first, numerically, then
the remaining keys sorted by UTF-16 code unit) and JavaScript number
formatting (``10`` rather than ``10.0``, ``1e+21``, ``1.5e-7``). Volatile fields
(timestamps, transport headers) are dropped before hashing because they vary
between otherwise identical runs.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

_VOLATILE_FIELDS = [
    re.compile(r"timestamp", re.IGNORECASE),
    re.compile(r"created_?at", re.IGNORECASE),
    re.compile(r"updated_?at", re.IGNORECASE),
    re.compile(r"date", re.IGNORECASE),
    re.compile(r"time", re.IGNORECASE),
    re.compile(r"^host$", re.IGNORECASE),
    re.compile(r"^user-agent$", re.IGNORECASE),
    re.compile(r"^connection$", re.IGNORECASE),
    re.compile(r"^accept-encoding$", re.IGNORECASE),
    re.compile(r"^content-length$", re.IGNORECASE),
]

_ARRAY_INDEX = re.compile(r"^(0|[1-9][0-9]*)$")
_MAX_ARRAY_INDEX = 2**32 - 2
_MAX_SAFE_INTEGER = 2**53


def is_volatile_field(key: str) -> bool:
    return any(pattern.search(key) for pattern in _VOLATILE_FIELDS)


def _array_index(key: str) -> int | None:
    if _ARRAY_INDEX.match(key) and int(key) <= _MAX_ARRAY_INDEX:
        return int(key)
    return None


def _js_key_order(keys) -> list[str]:
    """Order in which a JavaScript object built from sorted keys enumerates them."""
    indexed = []
    named = []
    for key in keys:
        index = _array_index(key)
        if index is None:
            named.append(key)
        else:
            indexed.append((index, key))
    named.sort(key=lambda k: k.encode("utf-16-be"))
    return [key for _, key in sorted(indexed)] + named


def normalize_for_hashing(data: Any) -> Any:
    if data is None:
        return None
    if isinstance(data, (list, tuple)):
        return [normalize_for_hashing(item) for item in data]
    if isinstance(data, dict):
        keys = {str(key): key for key in data}
        return {
            key: normalize_for_hashing(data[keys[key]])
            for key in _js_key_order(keys)
            if not is_volatile_field(key)
        }
    return data


def js_number(value: int | float) -> str:
    """Format a number the way ``Number.prototype.toString`` does."""
    if isinstance(value, int):
        if abs(value) < _MAX_SAFE_INTEGER:
            return str(value)
        value = float(value)
    if value != value or value in (float("inf"), float("-inf")):
        return "null"
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    mantissa, _, exponent = repr(abs(value)).partition("e")
    whole, _, fraction = mantissa.partition(".")
    raw = whole + fraction
    digits = raw.lstrip("0")
    # value == 0.<digits> * 10**point
    point = len(whole) + int(exponent or 0) - (len(raw) - len(digits))
    digits = digits.rstrip("0")
    k = len(digits)

    if k <= point <= 21:
        return sign + digits + "0" * (point - k)
    if 0 < point <= 21:
        return sign + digits[:point] + "." + digits[point:]
    if -6 < point <= 0:
        return sign + "0." + "0" * -point + digits
    e = point - 1
    e_sign = "+" if e >= 0 else "-"
    head = digits[0] if k == 1 else digits[0] + "." + digits[1:]
    return f"{sign}{head}e{e_sign}{abs(e)}"


def _stringify(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (int, float)):
        return js_number(value)
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_stringify(item) for item in value) + "]"
    if isinstance(value, dict):
        members = (
            json.dumps(str(key), ensure_ascii=False) + ":" + _stringify(item)
            for key, item in value.items()
        )
        return "{" + ",".join(members) + "}"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _digest(payload: dict) -> str:
    return hashlib.sha256(_stringify(payload).encode("utf-8")).hexdigest()


def fixture_hash(operation: str, data: dict) -> str:
    """Hash of a fixture's operation plus its normalized request/response."""
    return _digest(
        {
            "operation": operation,
            "request": normalize_for_hashing(data.get("request")),
            "response": normalize_for_hashing(data.get("response")),
        }
    )


def interaction_hash(
    service: str,
    consumer: str,
    consumer_version: str,
    operation: str,
    request: Any,
    response: Any,
) -> str:
    return _digest(
        {
            "service": service,
            "consumer": consumer,
            "consumerVersion": consumer_version,
            "operation": operation,
            "request": normalize_for_hashing(request),
            "response": normalize_for_hashing(response),
        }
    )
