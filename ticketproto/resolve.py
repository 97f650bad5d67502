from __future__ import annotations

from typing import Any, Mapping

from ticketproto.errors import AmbiguousId, NotFound, UsageError
from ticketproto.index import TicketIndexEntry, TicketsIndex
from ticketproto.util import DISPLAY_PREFIX


def _entries(index: TicketsIndex | Mapping[str, Any]) -> list[TicketIndexEntry]:
    if isinstance(index, TicketsIndex):
        return list(index.tickets)
    return [TicketIndexEntry.from_dict(entry) for entry in index.get("tickets", [])]


def _pick(query: str, matches: list[TicketIndexEntry]) -> TicketIndexEntry | None:
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        candidates = sorted(matches, key=lambda entry: entry.id)
        raise AmbiguousId(
            query,
            [{"id": e.id, "short_id": e.short_id, "display_id": e.display_id, "title": e.title} for e in candidates],
        )
    return None


def resolve_ticket(index: TicketsIndex | Mapping[str, Any], raw: str, ci: bool = False) -> TicketIndexEntry:
    """Resolve ``raw`` to exactly one index entry.

    In CI mode only an exact id matches. Interactively the lookup falls back to
    a unique id prefix and then to a unique title substring.
    """
    query = (raw or "").strip()
    if not query:
        raise UsageError("Ticket id is required")
    entries = _entries(index)
    wanted = query.upper()

    exact = _pick(query, [e for e in entries if e.id.upper() == wanted])
    if exact:
        return exact

    if not ci:
        prefixes = [wanted]
        if wanted.startswith(f"{DISPLAY_PREFIX}-"):
            prefixes.append(wanted[len(DISPLAY_PREFIX) + 1:])
        prefixed = _pick(
            query,
            [e for e in entries if any(p and e.id.upper().startswith(p) for p in prefixes)],
        )
        if prefixed:
            return prefixed

        needle = query.lower()
        titled = _pick(query, [e for e in entries if needle in e.title.lower()])
        if titled:
            return titled

    raise NotFound(f"Ticket not found: {query}", details={"query": query, "ci": ci})
