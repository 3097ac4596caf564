"""Masking of credentials before they reach a DEBUG log.

Supabase requests carry the project key twice (``apikey`` header and the
bearer ``Authorization`` header) and the MQTT feed logs its broker settings
including the password.  :func:`redact_for_log` walks such structures and
replaces every credential-looking field.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

MASK = "<redacted>"

# Matched against lower-cased keys with ``-`` folded to ``_``.
_CREDENTIAL_MARKERS = ("apikey", "api_key", "authorization", "password", "secret", "token", "cookie")

_MAX_DEPTH = 10


def _is_credential(key: str) -> bool:
    folded = key.lower().replace("-", "_")
    return any(marker in folded for marker in _CREDENTIAL_MARKERS)


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}...<truncated>"


def redact_for_log(value: Any, *, max_string: int = 256, _depth: int = 0) -> Any:
    """Copy of *value* safe to log.

    Credential fields that hold a value are replaced by ``<redacted>``
    (an unset credential stays ``None`` so misconfiguration remains
    visible), strings are clipped to *max_string* characters and raw
    bytes are summarized by length.
    """
    if _depth > _MAX_DEPTH:
        return "<max-depth>"
    match value:
        case None | bool() | int() | float():
            return value
        case str():
            return _clip(value, max_string)
        case bytes() | bytearray():
            return f"<bytes:{len(value)}b>"
        case Mapping():
            return {
                str(k): MASK
                if v is not None and _is_credential(str(k))
                else redact_for_log(v, max_string=max_string, _depth=_depth + 1)
                for k, v in value.items()
            }
        case list() | tuple() | set() | frozenset():
            return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]
    return _clip(repr(value), max_string)
