"""Derivation of ``index.json`` from the set of ticket documents.

The index is disposable: it can always be regenerated from the ticket files,
and the files win whenever the two disagree.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from ticketproto.constants import INDEX_FORMAT_VERSION, PRIORITY_RANK, STATE_RANK, TICKETS_DIR, WORKFLOW_NAME
from ticketproto.errors import SchemaError, TicketError
from ticketproto.frontmatter import TicketDocument, parse_ticket
from ticketproto.util import display_id, iso8601, now_utc, short_id

logger = logging.getLogger(__name__)

UNKNOWN_RANK = 99


@dataclass
class TicketIndexEntry:
    id: str
    short_id: str
    display_id: str
    title: str
    state: str
    priority: str
    labels: list[str]
    path: str
    created: str | None = None
    assignee: str | None = None
    reviewer: str | None = None

    @property
    def sort_key(self) -> tuple[int, int, str]:
        return ticket_sort_key(self.state, self.priority, self.id)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "short_id": self.short_id,
            "display_id": self.display_id,
            "title": self.title,
            "state": self.state,
            "priority": self.priority,
            "labels": list(self.labels),
        }
        for key in ("created", "assignee", "reviewer"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        payload["path"] = self.path
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TicketIndexEntry":
        return cls(
            id=data["id"],
            short_id=data.get("short_id") or short_id(data["id"]),
            display_id=data.get("display_id") or display_id(data["id"]),
            title=data.get("title", ""),
            state=data.get("state", ""),
            priority=data.get("priority", ""),
            labels=list(data.get("labels") or []),
            path=data.get("path", ""),
            created=data.get("created"),
            assignee=data.get("assignee"),
            reviewer=data.get("reviewer"),
        )


@dataclass
class TicketsIndex:
    generated_at: str
    tickets: list[TicketIndexEntry] = field(default_factory=list)
    format_version: int = INDEX_FORMAT_VERSION
    workflow: str = WORKFLOW_NAME

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": self.format_version,
            "generated_at": self.generated_at,
            "workflow": self.workflow,
            "tickets": [entry.to_dict() for entry in self.tickets],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TicketsIndex":
        return cls(
            generated_at=data.get("generated_at", ""),
            tickets=[TicketIndexEntry.from_dict(entry) for entry in data.get("tickets", [])],
            format_version=data.get("format_version", INDEX_FORMAT_VERSION),
            workflow=data.get("workflow", WORKFLOW_NAME),
        )


def ticket_sort_key(state: str, priority: str, ticket_id: str) -> tuple[int, int, str]:
    """The one ordering used for every index, whether rebuilt or patched."""
    return (STATE_RANK.get(state, UNKNOWN_RANK), PRIORITY_RANK.get(priority, UNKNOWN_RANK), ticket_id)


def entry_sort_key(entry: Mapping[str, Any]) -> tuple[int, int, str]:
    return ticket_sort_key(entry.get("state", ""), entry.get("priority", ""), entry.get("id", ""))


def sort_entries(entries: Iterable[TicketIndexEntry]) -> list[TicketIndexEntry]:
    return sorted(entries, key=lambda entry: entry.sort_key)


def ticket_path(filename: str) -> str:
    return f"{TICKETS_DIR}/{filename}"


def build_entry(document: TicketDocument, path: str | None = None) -> TicketIndexEntry:
    return TicketIndexEntry(
        id=document.id,
        short_id=short_id(document.id),
        display_id=display_id(document.id),
        title=document.title,
        state=document.state,
        priority=document.priority,
        labels=list(document.labels),
        path=path or ticket_path(document.filename or f"{document.id}.md"),
        created=document.created,
        assignee=document.assignee,
        reviewer=document.reviewer,
    )


def generate_index(documents: Iterable[TicketDocument], now: str | None = None) -> TicketsIndex:
    entries = [build_entry(document) for document in documents]
    return TicketsIndex(generated_at=now or iso8601(now_utc()), tickets=sort_entries(entries))


def parse_documents(files: Iterable[tuple[str, str]]) -> tuple[list[TicketDocument], list[TicketError]]:
    """Parse ``(filename, text)`` pairs in filename order, keeping every failure."""
    documents: list[TicketDocument] = []
    failures: list[TicketError] = []
    for filename, text in sorted(files, key=lambda item: item[0]):
        stem = filename[:-3] if filename.endswith(".md") else filename
        try:
            documents.append(parse_ticket(text, filename, stem))
        except TicketError as exc:
            failures.append(exc)
    return documents, failures


def error_messages(failures: Iterable[TicketError]) -> list[str]:
    messages: list[str] = []
    for failure in failures:
        if isinstance(failure, SchemaError):
            messages.extend(failure.errors)
        else:
            messages.append(failure.message)
    return messages


def index_from_files(files: Iterable[tuple[str, str]], now: str | None = None) -> TicketsIndex:
    documents, failures = parse_documents(files)
    if failures:
        raise SchemaError(error_messages(failures))
    logger.debug("indexed %d tickets", len(documents))
    return generate_index(documents, now=now)


def serialize_index(index: TicketsIndex | Mapping[str, Any]) -> str:
    payload = index.to_dict() if isinstance(index, TicketsIndex) else index
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def load_index_text(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("tickets"), list):
        return None
    return data


def is_stale(persisted: Any, computed: TicketsIndex | Mapping[str, Any]) -> bool:
    """True unless ``persisted`` matches ``computed`` apart from ``generated_at``."""
    expected = computed.to_dict() if isinstance(computed, TicketsIndex) else computed
    if not isinstance(persisted, Mapping):
        return True
    if persisted.get("format_version") != expected.get("format_version"):
        return True
    if persisted.get("workflow") != expected.get("workflow"):
        return True
    return persisted.get("tickets") != expected.get("tickets")
