"""Helpers for safe debug logging.

Source requests carry an access token and responses can hold thousands of
event records. This module trims both before they reach DEBUG logs.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "accesstoken",
        "token",
        "authorization",
        "cookie",
        "password",
        "wft",
    }
)


def _normalize_key(key: str) -> str:
    return key.lower().replace("-", "").replace("_", "")


def redact_for_log(
    value: Any,
    *,
    max_string: int = 256,
    max_items: int = 5,
    _depth: int = 0,
) -> Any:
    """Return a redacted copy of *value* suitable for debug logs.

    Long sequences (e.g. a ``dataList`` page) are cut to *max_items* entries
    plus a marker holding the original length.
    """
    if _depth > 20:
        return "<max-depth>"

    if value is None:
        return None

    if isinstance(value, str):
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, bytes):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            if _normalize_key(key) in _SENSITIVE_VALUE_KEYS:
                redacted[key] = "<redacted>"
            else:
                redacted[key] = redact_for_log(v, max_string=max_string, max_items=max_items, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        items = [
            redact_for_log(v, max_string=max_string, max_items=max_items, _depth=_depth + 1)
            for v in list(value)[:max_items]
        ]
        if len(value) > max_items:
            items.append(f"<+{len(value) - max_items} more>")
        return items

    return repr(value)
