"""Parsing and rendering of ticket documents (YAML front matter + Markdown body).

Parsing runs in two phases. Structural problems with the envelope (missing
delimiters, tabs, YAML syntax) raise :class:`TicketLoadError` immediately.
Everything else is a schema check; all schema failures for one document are
collected and raised together as a single :class:`SchemaError`.
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any

import yaml

from ticketproto.constants import (
    FRONTMATTER_KEY_ORDER,
    PRIORITY_ORDER,
    QA_STATUS_ORDER,
    REQUIRED_KEYS,
    STATE_ORDER,
)
from ticketproto.errors import SchemaError, TicketLoadError
from ticketproto.util import is_ulid, is_valid_actor, normalize_iso, normalize_labels

ENVELOPE_START_RE = re.compile(r"\A\ufeff?---\r?\n")
ENVELOPE_RE = re.compile(r"\A\ufeff?---\r?\n(?:(.*?)\r?\n)??---(?:\r?\n|\Z)", re.DOTALL)
# A top-level mapping key at column 0, plain or quoted.
TOP_KEY_RE = re.compile(r"""^("(?:[^"\\]|\\.)*"|'(?:[^']|'')*'|[^\s#'"\-?:{}\[\],&*!|>%@`][^:#]*?)\s*:(?:\s|$)""")


class NoTimestampLoader(yaml.SafeLoader):
    pass


for ch, patterns in list(NoTimestampLoader.yaml_implicit_resolvers.items()):
    NoTimestampLoader.yaml_implicit_resolvers[ch] = [
        (tag, regexp) for tag, regexp in patterns if tag != "tag:yaml.org,2002:timestamp"
    ]


@dataclass
class QaInfo:
    required: bool | None = None
    status: str | None = None
    status_reason: str | None = None
    environment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class TicketDocument:
    """Validated view of one ticket file.

    ``front_matter`` is the mapping that gets rendered back to disk; the typed
    attributes are normalized copies of its known keys.
    """

    id: str
    title: str
    state: str
    priority: str
    labels: list[str]
    front_matter: dict[str, Any]
    body: str
    created: str | None = None
    updated: str | None = None
    assignee: str | None = None
    reviewer: str | None = None
    qa: QaInfo | None = None
    filename: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)
    source: str | None = field(default=None, repr=False)
    source_front_matter: dict[str, Any] | None = field(default=None, repr=False)


def split_front_matter(content: str, file: str = "<ticket>") -> tuple[dict[str, Any], str]:
    if not ENVELOPE_START_RE.match(content):
        raise TicketLoadError(
            f"{file}: frontmatter must begin on line 1 with an exact '---' line",
            code="frontmatter_missing",
            details={"file": file},
        )
    match = ENVELOPE_RE.match(content)
    if not match:
        raise TicketLoadError(
            f"{file}: frontmatter closing delimiter '---' not found",
            code="frontmatter_missing",
            details={"file": file},
        )
    yaml_text = match.group(1) or ""
    body = content[match.end():]
    if "\t" in yaml_text:
        raise TicketLoadError(
            f"{file}: YAML frontmatter must not contain tab characters",
            code="frontmatter_invalid_yaml",
            details={"file": file},
        )
    try:
        front_matter = yaml.load(yaml_text, Loader=NoTimestampLoader)
    except yaml.YAMLError as exc:
        raise TicketLoadError(
            f"{file}: invalid YAML frontmatter ({exc})",
            code="frontmatter_invalid_yaml",
            details={"file": file},
        ) from exc
    if front_matter is None:
        front_matter = {}
    if not isinstance(front_matter, dict):
        raise TicketLoadError(
            f"{file}: frontmatter must be a mapping",
            code="frontmatter_invalid_yaml",
            details={"file": file},
        )
    return front_matter, body


def _non_empty_string(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return ""


def _check_enum(front: dict[str, Any], key: str, allowed: tuple[str, ...], file: str, errors: list[str]) -> str:
    if key not in front:
        return ""
    raw = _non_empty_string(front[key])
    if not raw:
        errors.append(f"{file}: {key} must be a non-empty string")
        return ""
    if raw not in allowed:
        errors.append(f"{file}: invalid {key} '{raw}' (allowed: {', '.join(allowed)})")
        return ""
    return raw


def _check_actor(front: dict[str, Any], key: str, file: str, errors: list[str]) -> str | None:
    if key not in front:
        return None
    value = front[key].strip() if isinstance(front[key], str) else ""
    if not is_valid_actor(value):
        errors.append(f"{file}: {key} must match 'human:<slug>' or 'agent:<slug>'")
        return None
    return value


def _check_timestamp(front: dict[str, Any], key: str, file: str, errors: list[str]) -> str | None:
    value = front.get(key)
    if value is None:
        return None
    normalized = normalize_iso(value) if isinstance(value, str) and value.strip() else None
    if normalized is None:
        errors.append(f"{file}: {key} must be an ISO-8601 timestamp")
    return normalized


def _check_qa(front: dict[str, Any], state: str, file: str, errors: list[str]) -> QaInfo | None:
    if "x_ticket" not in front:
        return None
    x_ticket = front["x_ticket"]
    if not isinstance(x_ticket, dict):
        errors.append(f"{file}: x_ticket must be a mapping when present")
        return None
    if "qa" not in x_ticket:
        return None
    raw = x_ticket["qa"]
    if not isinstance(raw, dict):
        errors.append(f"{file}: x_ticket.qa must be a mapping when present")
        return None

    qa = QaInfo()
    if "required" in raw:
        if isinstance(raw["required"], bool):
            qa.required = raw["required"]
        else:
            errors.append(f"{file}: x_ticket.qa.required must be a boolean")
    if "status" in raw:
        status = _non_empty_string(raw["status"])
        if status in QA_STATUS_ORDER:
            qa.status = status
        else:
            errors.append(f"{file}: x_ticket.qa.status must be one of {', '.join(QA_STATUS_ORDER)}")
    for key in ("status_reason", "environment"):
        if key in raw:
            value = _non_empty_string(raw[key])
            if value:
                setattr(qa, key, value)
            else:
                errors.append(f"{file}: x_ticket.qa.{key} must be a non-empty string when present")

    if qa.required is True:
        if not qa.status:
            errors.append(f"{file}: x_ticket.qa.status is required when x_ticket.qa.required=true")
        if qa.status == "qa_failed" and not qa.status_reason:
            errors.append(f"{file}: x_ticket.qa.status_reason is required when x_ticket.qa.status=qa_failed")
        if qa.status in ("ready_for_qa", "qa_passed") and not qa.environment:
            errors.append(f"{file}: x_ticket.qa.environment is required when x_ticket.qa.status={qa.status}")
        if state == "done" and qa.status != "qa_passed":
            errors.append(f"{file}: state 'done' requires x_ticket.qa.status=qa_passed when x_ticket.qa.required=true")

    return qa if qa.to_dict() else None


def parse_ticket(markdown: str, filename: str = "<ticket>", expected_id: str | None = None) -> TicketDocument:
    front, body = split_front_matter(markdown, filename)
    errors: list[str] = []

    for key in REQUIRED_KEYS:
        if key not in front:
            errors.append(f"{filename}: missing required key '{key}'")

    ticket_id = _non_empty_string(front.get("id"))
    if "id" in front and not ticket_id:
        errors.append(f"{filename}: id must be a non-empty string")
    elif ticket_id and not is_ulid(ticket_id):
        errors.append(f"{filename}: id '{ticket_id}' must be a 26-character ULID")

    title = _non_empty_string(front.get("title"))
    if "title" in front and not title:
        errors.append(f"{filename}: title must be a non-empty string")

    state = _check_enum(front, "state", STATE_ORDER, filename, errors)
    priority = _check_enum(front, "priority", PRIORITY_ORDER, filename, errors)

    labels: list[str] = []
    if "labels" in front:
        raw_labels = front["labels"]
        if not isinstance(raw_labels, list) or any(not isinstance(entry, str) for entry in raw_labels):
            errors.append(f"{filename}: labels must be an array of strings")
        else:
            labels = normalize_labels(raw_labels)

    if expected_id and ticket_id and ticket_id.upper() != expected_id.upper():
        errors.append(f"{filename}: id '{ticket_id}' must match filename '{expected_id}'")

    created = _check_timestamp(front, "created", filename, errors)
    updated = _check_timestamp(front, "updated", filename, errors)
    assignee = _check_actor(front, "assignee", filename, errors)
    reviewer = _check_actor(front, "reviewer", filename, errors)
    qa = _check_qa(front, state, filename, errors)

    if errors:
        raise SchemaError(errors, file=filename)

    extras = {k: v for k, v in front.items() if k not in FRONTMATTER_KEY_ORDER}
    return TicketDocument(
        id=ticket_id.upper(),
        title=title,
        state=state,
        priority=priority,
        labels=labels,
        front_matter=front,
        body=body,
        created=created,
        updated=updated,
        assignee=assignee,
        reviewer=reviewer,
        qa=qa,
        filename=filename,
        extras=extras,
        source=markdown,
        source_front_matter=copy.deepcopy(front),
    )


def order_front_matter(front_matter: dict[str, Any]) -> dict[str, Any]:
    ordered = {key: front_matter[key] for key in FRONTMATTER_KEY_ORDER if key in front_matter}
    for key in sorted(k for k in front_matter if k not in FRONTMATTER_KEY_ORDER):
        ordered[key] = front_matter[key]
    return ordered


def dump_front_matter(front_matter: dict[str, Any]) -> str:
    return yaml.safe_dump(
        order_front_matter(front_matter),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=4096,
    )


def render_front_matter(front_matter: dict[str, Any], body: str, bom: bool = False) -> str:
    return ("\ufeff" if bom else "") + "---\n" + dump_front_matter(front_matter) + "---\n" + body


def _key_blocks(lines: list[str]) -> tuple[list[str], list[tuple[Any, list[str]]]] | None:
    """Group YAML lines under the top-level key that owns them."""
    prefix: list[str] = []
    blocks: list[tuple[Any, list[str]]] = []
    for line in lines:
        match = TOP_KEY_RE.match(line)
        if match is None:
            (blocks[-1][1] if blocks else prefix).append(line)
            continue
        try:
            key = yaml.load(match.group(1), Loader=NoTimestampLoader)
        except yaml.YAMLError:
            return None
        blocks.append((key, [line]))
    return prefix, blocks


def _trailing_trivia(lines: list[str]) -> list[str]:
    end = len(lines)
    while end > 1 and (not lines[end - 1].strip() or lines[end - 1].startswith("#")):
        end -= 1
    return lines[end:]


def _dump_key(key: Any, value: Any) -> list[str]:
    return dump_front_matter({key: value}).rstrip("\n").split("\n")


def _insert_position(blocks: list[tuple[Any, list[str]]], key: Any) -> int:
    if key not in FRONTMATTER_KEY_ORDER:
        return len(blocks)
    rank = FRONTMATTER_KEY_ORDER.index(key)
    position = 0
    for index, (existing, _) in enumerate(blocks):
        if existing in FRONTMATTER_KEY_ORDER and FRONTMATTER_KEY_ORDER.index(existing) < rank:
            position = index + 1
    return position


def splice_front_matter(source: str, before: dict[str, Any], after: dict[str, Any], body: str) -> str:
    """Rewrite only the keys whose values differ between ``before`` and ``after``.

    Every other line of ``source`` (untouched keys, comments, quoting, the BOM
    and line endings) is copied through. New keys land at their canonical
    position relative to the known keys already present. When the YAML block
    cannot be split into top-level keys, the canonical rendering is used.
    """
    bom = source.startswith("\ufeff")
    match = ENVELOPE_RE.match(source)
    if match is None or match.group(1) is None:
        return render_front_matter(after, body, bom=bom)
    if after == before and source[match.end():] == body:
        return source

    opening = source[: match.start(1)]
    closing = source[match.end(1): match.end()]
    newline = "\r\n" if opening.endswith("\r\n") else "\n"
    grouped = _key_blocks(match.group(1).split(newline))
    if grouped is None:
        return render_front_matter(after, body, bom=bom)
    prefix, blocks = grouped
    keys = [key for key, _ in blocks]
    if len(set(keys)) != len(keys) or set(keys) != set(before):
        return render_front_matter(after, body, bom=bom)

    spliced: list[tuple[Any, list[str]]] = []
    for key, lines in blocks:
        if key not in after:
            continue
        if after[key] != before[key]:
            lines = _dump_key(key, after[key]) + _trailing_trivia(lines)
        spliced.append((key, lines))
    for key in after:
        if key not in before:
            spliced.insert(_insert_position(spliced, key), (key, _dump_key(key, after[key])))

    yaml_text = newline.join(prefix + [line for _, lines in spliced for line in lines])
    try:
        reloaded = yaml.load(yaml_text, Loader=NoTimestampLoader)
    except yaml.YAMLError:
        reloaded = None
    if reloaded != after:
        return render_front_matter(after, body, bom=bom)
    if body and not closing.endswith("\n"):
        closing += newline
    return opening + yaml_text + closing + body


def render_ticket(document: TicketDocument) -> str:
    """Render ``document``; a parsed document keeps the source text of every key left unchanged."""
    if document.source is None or document.source_front_matter is None:
        return render_front_matter(document.front_matter, document.body)
    return splice_front_matter(document.source, document.source_front_matter, document.front_matter, document.body)
