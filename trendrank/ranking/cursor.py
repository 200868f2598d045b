"""
Opaque, versioned pagination cursor.

Wire format: unpadded base64url over compact JSON

  {"v": 1, "asOf": "...", "score": 9.44, "createdAt": "...", "id": "..."}

Timestamps are ISO-8601 naive UTC with microseconds. A token that fails any
check decodes to None and the caller serves the first page; a client can
never turn a bad cursor into an error.
"""
import base64
import binascii
import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

CURSOR_VERSION = 1
SUPPORTED_VERSIONS = frozenset({CURSOR_VERSION})


@dataclass(frozen=True)
class Cursor:
    as_of: datetime
    score: float
    created_at: datetime
    post_id: str
    version: int = CURSOR_VERSION

    @property
    def sort_key(self) -> tuple[float, datetime, str]:
        return (self.score, self.created_at, self.post_id)


def format_ts(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def parse_ts(value) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def finite_number(value) -> Optional[float]:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def pack_token(payload: dict) -> str:
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def unpack_token(token: Optional[str]) -> Optional[dict]:
    """Inverse of pack_token(); None for anything that is not a JSON object."""
    if not token:
        return None
    try:
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError):
        return None
    return payload if isinstance(payload, dict) else None


def encode(cursor: Cursor) -> str:
    return pack_token({
        "v": cursor.version,
        "asOf": format_ts(cursor.as_of),
        "score": cursor.score,
        "createdAt": format_ts(cursor.created_at),
        "id": cursor.post_id,
    })


def decode(token: Optional[str]) -> Optional[Cursor]:
    payload = unpack_token(token)
    if payload is None:
        return None

    version = payload.get("v", CURSOR_VERSION)
    if isinstance(version, bool) or not isinstance(version, int):
        return None
    if version not in SUPPORTED_VERSIONS:
        return None

    score = finite_number(payload.get("score"))
    if score is None:
        return None

    post_id = payload.get("id")
    if not isinstance(post_id, str) or not post_id:
        return None

    as_of = parse_ts(payload.get("asOf"))
    created_at = parse_ts(payload.get("createdAt"))
    if as_of is None or created_at is None:
        return None

    return Cursor(
        as_of=as_of,
        score=score,
        created_at=created_at,
        post_id=post_id,
        version=version,
    )
