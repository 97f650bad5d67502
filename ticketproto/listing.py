from __future__ import annotations

from typing import Iterable, Mapping

from ticketproto.constants import STATE_ORDER
from ticketproto.index import TicketIndexEntry, sort_entries
from ticketproto.qa import qa_indicator
from ticketproto.workflow import normalize_state


def filter_entries(
    entries: Iterable[TicketIndexEntry],
    state: str | None = None,
    label: str | None = None,
) -> list[TicketIndexEntry]:
    wanted_state = normalize_state(state) if state else None
    wanted_label = label.strip().lower() if label else None
    rows = []
    for entry in sort_entries(entries):
        if wanted_state and entry.state != wanted_state:
            continue
        if wanted_label and wanted_label not in entry.labels:
            continue
        rows.append(entry)
    return rows


def _qa_signal(status: str | None) -> str:
    return qa_indicator(status) or "QA_NONE"


def render_table(entries: list[TicketIndexEntry], qa_statuses: Mapping[str, str] | None = None) -> str:
    if not entries:
        return "No tickets found."
    qa_statuses = qa_statuses or {}
    headers = ["ID", "STATE", "QA_SIGNAL", "PRIORITY", "TITLE", "LABELS"]
    rows = [
        [
            entry.display_id,
            entry.state,
            _qa_signal(qa_statuses.get(entry.id)),
            entry.priority,
            entry.title,
            ",".join(entry.labels),
        ]
        for entry in entries
    ]
    widths = [max(len(headers[i]), *(len(row[i]) for row in rows)) for i in range(len(headers) - 1)]

    def fmt(row: list[str]) -> str:
        cells = [cell.ljust(width) for cell, width in zip(row, widths)]
        return "  ".join(cells + [row[-1]]).rstrip()

    return "\n".join([fmt(headers)] + [fmt(row) for row in rows])


def render_kanban(entries: list[TicketIndexEntry], qa_statuses: Mapping[str, str] | None = None) -> str:
    qa_statuses = qa_statuses or {}
    lines = []
    for state in STATE_ORDER:
        column = [entry for entry in entries if entry.state == state]
        lines.append(f"{state} ({len(column)})")
        if not column:
            lines.append("  (empty)")
            continue
        for entry in column:
            labels = f" [{','.join(entry.labels)}]" if entry.labels else ""
            status = qa_statuses.get(entry.id)
            qa = f" {{{_qa_signal(status)}|{status or '-'}}}"
            lines.append(f"  - {entry.display_id} ({entry.priority}) {entry.title}{qa}{labels}")
    return "\n".join(lines)
