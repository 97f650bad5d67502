"""Typed ticket changes applied to raw ticket text and raw ``index.json`` text.

Both entry points route every field edit through :func:`apply_patch_fields`,
and the index is re-sorted with the comparator the index builder uses, so a
change made by editing the ticket file and rebuilding converges with the same
change applied to the index directly.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from ticketproto.constants import INDEX_FORMAT_VERSION
from ticketproto.errors import NotFound, PatchError
from ticketproto.frontmatter import parse_ticket, render_ticket
from ticketproto.index import entry_sort_key, serialize_index
from ticketproto.util import LABEL_RE, is_valid_actor, iso8601, normalize_labels, now_utc, unique_preserve
from ticketproto.workflow import assert_transition, normalize_priority, normalize_state

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

PATCH_FIELDS = (
    "state",
    "priority",
    "title",
    "labels_add",
    "labels_remove",
    "labels_replace",
    "clear_labels",
    "assignee",
    "reviewer",
)


@dataclass
class TicketChangePatch:
    state: str | None = None
    priority: str | None = None
    title: str | None = None
    labels_add: list[str] | None = None
    labels_remove: list[str] | None = None
    labels_replace: list[str] | None = None
    clear_labels: bool = False
    # UNSET leaves the key alone, None deletes it, a string sets it.
    assignee: Any = UNSET
    reviewer: Any = UNSET

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TicketChangePatch":
        if not isinstance(payload, Mapping):
            raise PatchError("Patch must be a JSON object")
        unknown = sorted(set(payload) - set(PATCH_FIELDS))
        if unknown:
            raise PatchError(f"Unknown patch fields: {', '.join(unknown)}", details={"fields": unknown})

        kwargs: dict[str, Any] = {}
        for key in ("state", "priority", "title"):
            value = payload.get(key)
            if value is not None and not isinstance(value, str):
                raise PatchError(f"{key} must be a string", details={"field": key})
            kwargs[key] = value
        for key in ("labels_add", "labels_remove", "labels_replace"):
            value = payload.get(key)
            if value is not None and (not isinstance(value, list) or any(not isinstance(v, str) for v in value)):
                raise PatchError(f"{key} must be an array of strings", code="invalid_labels_patch", details={"field": key})
            kwargs[key] = value
        clear = payload.get("clear_labels", False)
        if not isinstance(clear, bool):
            raise PatchError("clear_labels must be a boolean", code="invalid_labels_patch")
        kwargs["clear_labels"] = clear
        for key in ("assignee", "reviewer"):
            if key in payload:
                value = payload[key]
                if value is not None and not isinstance(value, str):
                    raise PatchError(f"{key} must be a string or null", code="invalid_actor", details={"field": key})
                kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key in ("state", "priority", "title", "labels_add", "labels_remove", "labels_replace"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.clear_labels:
            payload["clear_labels"] = True
        for key in ("assignee", "reviewer"):
            value = getattr(self, key)
            if value is not UNSET:
                payload[key] = value
        return payload

    def label_modes(self) -> list[str]:
        modes = []
        if self.labels_replace is not None:
            modes.append("replace")
        if self.labels_add is not None or self.labels_remove is not None:
            modes.append("add/remove")
        if self.clear_labels:
            modes.append("clear")
        return modes

    def is_empty(self) -> bool:
        return not self.to_dict()


def normalize_patch_labels(values: list[str]) -> list[str]:
    labels = []
    for raw in values:
        value = str(raw).strip().lower()
        if not value:
            continue
        if not LABEL_RE.match(value):
            raise PatchError(f"Label invalid: {raw}", code="invalid_label", details={"label": raw})
        labels.append(value)
    return unique_preserve(labels)


def normalize_actor(value: str, key: str) -> str:
    normalized = value.strip().lower()
    if not is_valid_actor(normalized):
        raise PatchError(
            f"Invalid {key}: {value} (expected 'human:<slug>' or 'agent:<slug>')",
            code="invalid_actor",
            details={"field": key, "value": value},
        )
    return normalized


def _next_labels(current: list[str], patch: TicketChangePatch) -> list[str] | None:
    modes = patch.label_modes()
    if not modes:
        return None
    if len(modes) > 1:
        raise PatchError(
            f"Label patch modes are mutually exclusive (got: {', '.join(modes)})",
            code="invalid_labels_patch",
            details={"modes": modes},
        )
    if patch.clear_labels:
        return []
    if patch.labels_replace is not None:
        return normalize_patch_labels(patch.labels_replace)
    # Remove runs before add, so a label named in both lists ends up present.
    remove = set(normalize_patch_labels(patch.labels_remove or []))
    labels = [label for label in current if label not in remove]
    for label in normalize_patch_labels(patch.labels_add or []):
        if label not in labels:
            labels.append(label)
    return labels


def apply_patch_fields(fields: dict[str, Any], patch: TicketChangePatch) -> list[str]:
    """Apply ``patch`` to a front matter mapping or an index entry in place.

    Returns the names of the keys that actually changed.
    """
    changed: list[str] = []

    if patch.state is not None:
        target = normalize_state(patch.state)
        current = normalize_state(fields.get("state", ""))
        assert_transition(current, target)
        if fields.get("state") != target:
            fields["state"] = target
            changed.append("state")

    if patch.priority is not None:
        priority = normalize_priority(patch.priority)
        if fields.get("priority") != priority:
            fields["priority"] = priority
            changed.append("priority")

    if patch.title is not None:
        title = patch.title.strip()
        if not title:
            raise PatchError("title must be non-empty", code="invalid_title")
        if fields.get("title") != title:
            fields["title"] = title
            changed.append("title")

    raw_labels = fields.get("labels")
    current_labels = normalize_labels(v for v in raw_labels if isinstance(v, str)) if isinstance(raw_labels, list) else []
    labels = _next_labels(current_labels, patch)
    if labels is not None and labels != raw_labels:
        fields["labels"] = labels
        changed.append("labels")

    for key in ("assignee", "reviewer"):
        value = getattr(patch, key)
        if value is UNSET:
            continue
        if value is None:
            if key in fields:
                del fields[key]
                changed.append(key)
            continue
        actor = normalize_actor(value, key)
        if fields.get(key) != actor:
            fields[key] = actor
            changed.append(key)

    return changed


def patch_ticket_text(
    raw_text: str,
    patch: TicketChangePatch,
    filename: str = "<ticket>",
    expected_id: str | None = None,
    updated_at: str | None = None,
) -> str:
    """Return the new ticket text; the input is returned untouched when nothing changes."""
    document = parse_ticket(raw_text, filename, expected_id)
    changed = apply_patch_fields(document.front_matter, patch)
    if not changed:
        return raw_text
    if updated_at:
        document.front_matter["updated"] = updated_at
    output = render_ticket(document)
    # The patched ticket has to satisfy the same schema as any other ticket.
    parse_ticket(output, filename, expected_id)
    logger.debug("patched %s: %s", filename, ", ".join(changed))
    return output


def _parse_index_envelope(raw_index_text: str) -> dict[str, Any]:
    try:
        data = json.loads(raw_index_text)
    except json.JSONDecodeError as exc:
        raise PatchError(f"JSON parse error: {exc}", code="index_invalid_format") from exc
    if not isinstance(data, dict):
        raise PatchError("index.json must be an object", code="index_invalid_format")
    if data.get("format_version") != INDEX_FORMAT_VERSION:
        raise PatchError(
            f"Unsupported format_version: {data.get('format_version')}",
            code="index_invalid_format",
        )
    if not isinstance(data.get("tickets"), list):
        raise PatchError("index.json must have a tickets array", code="index_invalid_format")
    return data


def patch_index_text(
    raw_index_text: str,
    ticket_id: str,
    patch: TicketChangePatch,
    generated_at: str | None = None,
) -> str:
    """Apply ``patch`` to one entry of ``index.json`` and re-sort the tickets.

    Index entries carry no QA data, so a ``state: done`` patch is only checked
    against the workflow here. The QA gate on ``done`` is enforced by
    :func:`patch_ticket_text`, which has to run against the ticket file first.
    """
    data = _parse_index_envelope(raw_index_text)
    wanted = ticket_id.strip().upper()
    entry = next(
        (e for e in data["tickets"] if isinstance(e, dict) and str(e.get("id", "")).upper() == wanted),
        None,
    )
    if entry is None:
        raise NotFound(
            f"Ticket {ticket_id} not found in index.json. Run `ticket rebuild-index`.",
            code="index_missing_ticket_entry",
            details={"id": ticket_id},
        )
    apply_patch_fields(entry, patch)
    data["generated_at"] = generated_at or iso8601(now_utc())
    data["tickets"].sort(key=entry_sort_key)
    return serialize_index(data)


def summarize_patch(patch: TicketChangePatch, from_state: str | None = None) -> str:
    if patch.state and from_state:
        return f"{from_state} -> {patch.state}"
    if patch.state:
        return f"state -> {patch.state}"
    if patch.priority:
        return f"priority -> {patch.priority}"
    if patch.label_modes():
        return "labels updated"
    if patch.assignee is not UNSET:
        return "assignee updated"
    if patch.reviewer is not UNSET:
        return "reviewer updated"
    if patch.title:
        return "title updated"
    return "metadata updated"
