"""Miscellaneous helper functions."""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import json
import re
from typing import Optional, Tuple


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def ensure_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert others."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def parse_iso_datetime(value: str | None) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into a :class:`datetime` object.

    The standard ``datetime.fromisoformat`` helper does not accept a lowercase
    ``z`` as the UTC designator on every interpreter. Some clients send
    timestamps that end with ``z`` instead of the canonical ``Z``. This
    function normalises that case and returns ``None`` if the value cannot be
    parsed.
    """
    if not value:
        return None
    try:
        if value.endswith("z") or value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return dt.datetime.fromisoformat(value)
    except ValueError:
        return None


def sanitize_string(value: Optional[str]) -> Optional[str]:
    """Strip whitespace and control characters from free-text input."""
    if value is None:
        return None
    value = value.strip()
    return re.sub(r"[\x00-\x1F\x7F]", "", value)


def encode_cursor(created_at: dt.datetime, claim_id: str) -> str:
    """Return an opaque cursor for the (created_at, id) sort key."""
    payload = json.dumps(
        {"c": ensure_utc(created_at).isoformat(), "i": claim_id},
        separators=(",", ":"),
    )
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> Tuple[dt.datetime, str]:
    """Decode a cursor produced by :func:`encode_cursor`.

    Raises ValueError when the cursor is malformed.
    """
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        created_at = parse_iso_datetime(data["c"])
        claim_id = data["i"]
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as exc:
        raise ValueError(f"malformed cursor: {exc}") from exc
    if created_at is None or not isinstance(claim_id, str) or not claim_id:
        raise ValueError("malformed cursor")
    return ensure_utc(created_at), claim_id
