from __future__ import annotations

import datetime as dt
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from uuid6 import uuid7

# Crockford base32 without I, L, O, U
CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

ULID_RE = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$", re.IGNORECASE)

ACTOR_RE = re.compile(r"^(human|agent):[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")
LABEL_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,31}$")

DISPLAY_PREFIX = "TK"


# Time helpers


def now_utc() -> dt.datetime:
    """Current time, pinned by SOURCE_DATE_EPOCH when it is set."""
    epoch = os.environ.get("SOURCE_DATE_EPOCH")
    if epoch:
        try:
            return dt.datetime.fromtimestamp(int(epoch), tz=dt.timezone.utc)
        except ValueError:
            pass
    return dt.datetime.now(dt.timezone.utc)


def iso8601(ts: dt.datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    return ts.astimezone(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> dt.datetime | None:
    try:
        parsed = dt.datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def normalize_iso(value: str) -> str | None:
    parsed = parse_iso(value)
    if parsed is None:
        return None
    return iso8601(parsed)


# ULID helpers


def encode_ulid(value: int) -> str:
    chars = []
    for _ in range(26):
        chars.append(CROCKFORD_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def new_ulid() -> str:
    # UUIDv7 carries the unix millisecond timestamp in its top 48 bits; those
    # are replaced with now_utc() so SOURCE_DATE_EPOCH pins the time part.
    millis = int(now_utc().timestamp() * 1000) & ((1 << 48) - 1)
    return encode_ulid((millis << 80) | (uuid7().int & ((1 << 80) - 1)))


def is_ulid(value: str) -> bool:
    """Crockford base32, 26 characters, either case."""
    return isinstance(value, str) and bool(ULID_RE.match(value))


def short_id(ticket_id: str) -> str:
    return ticket_id[:8]


def display_id(ticket_id: str) -> str:
    return f"{DISPLAY_PREFIX}-{short_id(ticket_id)}"


# Normalization


def unique_preserve(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def normalize_labels(values: Iterable[str]) -> list[str]:
    return unique_preserve(v for v in (str(value).strip().lower() for value in values) if v)


def is_valid_actor(value: Any) -> bool:
    return isinstance(value, str) and bool(ACTOR_RE.match(value))


# File helpers


def read_text(path: Path) -> str:
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


def write_text(path: Path, content: str) -> None:
    with open(path, "w", encoding="utf-8", newline="\n") as handle:
        handle.write(content)


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


@dataclass
class Issue:
    issue_id: str
    severity: str
    code: str
    message: str
    ticket_path: str | None = None
    category: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.issue_id,
            "severity": self.severity,
            "code": self.code,
            "message": self.message,
        }
        if self.ticket_path is not None:
            payload["ticket_path"] = self.ticket_path
        if self.category:
            payload["category"] = self.category
        if self.details:
            payload["details"] = self.details
        return payload
