import itertools
import json

import pytest

from ticketproto.errors import SchemaError
from ticketproto.index import (
    TicketIndexEntry,
    TicketsIndex,
    index_from_files,
    is_stale,
    load_index_text,
    serialize_index,
    ticket_sort_key,
)

NOW = "2024-05-01T12:00:00.000Z"


def ticket(ticket_id, state="ready", priority="p1", labels="[]", title="Some ticket", extra=""):
    text = (
        f"---\nid: {ticket_id}\ntitle: {title}\nstate: {state}\npriority: {priority}\n"
        f"labels: {labels}\n{extra}---\nBody\n"
    )
    return (f"{ticket_id}.md", text)


FILES = [
    ticket("01ARZ3NDEKTSV4RRFFQ69G5FAV", state="ready", priority="p1", labels="[bug]"),
    ticket("01ARZ3NDEKTSV4RRFFQ69G5FAW", state="backlog", priority="p2"),
    ticket("01BX5ZZKBKACTAV9WEVGEMMVRZ", state="ready", priority="p0"),
    ticket("01BX5ZZKBKACTAV9WEVGEMMVS0", state="done", priority="p0"),
    ticket("01BX5ZZKBKACTAV9WEVGEMMVS1", state="ready", priority="p1"),
]


def test_ids_are_indexed_uppercase():
    lower = "01ARZ3NDEKTSV4RRFFQ69G5FAV".lower()
    entry = index_from_files([ticket(lower)], now=NOW).tickets[0]
    assert entry.id == "01ARZ3NDEKTSV4RRFFQ69G5FAV"
    assert entry.display_id == "TK-01ARZ3ND"
    assert entry.path == f".tickets/tickets/{lower}.md"


def test_non_ulid_ids_are_rejected():
    with pytest.raises(SchemaError) as exc:
        index_from_files([ticket("abc")], now=NOW)
    assert exc.value.errors == ["abc.md: id 'abc' must be a 26-character ULID"]


def test_entry_fields():
    index = index_from_files([FILES[0]], now=NOW)
    entry = index.tickets[0]
    assert entry.id == "01ARZ3NDEKTSV4RRFFQ69G5FAV"
    assert entry.short_id == "01ARZ3ND"
    assert entry.display_id == "TK-01ARZ3ND"
    assert entry.state == "ready"
    assert entry.priority == "p1"
    assert entry.labels == ["bug"]
    assert entry.path == ".tickets/tickets/01ARZ3NDEKTSV4RRFFQ69G5FAV.md"
    assert list(entry.to_dict()) == ["id", "short_id", "display_id", "title", "state", "priority", "labels", "path"]


def test_optional_fields_included_when_set():
    files = [ticket(
        "01ARZ3NDEKTSV4RRFFQ69G5FAV",
        extra="created: '2024-01-02T03:04:05Z'\nassignee: human:alice\n",
    )]
    entry = index_from_files(files, now=NOW).tickets[0].to_dict()
    assert entry["created"] == "2024-01-02T03:04:05.000Z"
    assert entry["assignee"] == "human:alice"
    assert "reviewer" not in entry
    assert list(entry)[-1] == "path"


def test_sort_order():
    index = index_from_files(FILES, now=NOW)
    assert [e.id for e in index.tickets] == [
        "01ARZ3NDEKTSV4RRFFQ69G5FAW",
        "01BX5ZZKBKACTAV9WEVGEMMVRZ",
        "01ARZ3NDEKTSV4RRFFQ69G5FAV",
        "01BX5ZZKBKACTAV9WEVGEMMVS1",
        "01BX5ZZKBKACTAV9WEVGEMMVS0",
    ]


def test_sort_is_independent_of_input_order():
    expected = serialize_index(index_from_files(FILES, now=NOW))
    for files in itertools.permutations(FILES):
        assert serialize_index(index_from_files(list(files), now=NOW)) == expected


def test_unknown_rank_sorts_last():
    assert ticket_sort_key("mystery", "p0", "A") > ticket_sort_key("done", "p3", "Z")


def test_rebuild_is_idempotent_apart_from_timestamp():
    first = index_from_files(FILES, now=NOW)
    second = index_from_files(FILES, now="2030-01-01T00:00:00.000Z")
    assert serialize_index(first) == serialize_index(index_from_files(FILES, now=NOW))
    assert first.tickets == second.tickets
    assert first.generated_at != second.generated_at


def test_serialize_index_format():
    text = serialize_index(index_from_files(FILES[:1], now=NOW))
    assert text.endswith("}\n")
    data = json.loads(text)
    assert list(data) == ["format_version", "generated_at", "workflow", "tickets"]
    assert data["format_version"] == 1
    assert data["workflow"] == "simple-v1"
    assert text.startswith('{\n  "format_version": 1,')


def test_failures_are_aggregated_across_files():
    bad_state = ticket("01ARZ3NDEKTSV4RRFFQ69G5FAV", state="Ready")
    no_frontmatter = ("01BX5ZZKBKACTAV9WEVGEMMVRZ.md", "just text\n")
    with pytest.raises(SchemaError) as exc:
        index_from_files([no_frontmatter, bad_state, FILES[4]], now=NOW)
    errors = exc.value.errors
    assert len(errors) == 2
    assert errors[0].startswith("01ARZ3NDEKTSV4RRFFQ69G5FAV.md")
    assert errors[1].startswith("01BX5ZZKBKACTAV9WEVGEMMVRZ.md")


def test_is_stale():
    computed = index_from_files(FILES, now=NOW)
    persisted = json.loads(serialize_index(computed))
    assert not is_stale(persisted, computed)

    persisted["generated_at"] = "1999-01-01T00:00:00.000Z"
    assert not is_stale(persisted, computed)

    persisted["tickets"][0]["title"] = "Edited by hand"
    assert is_stale(persisted, computed)
    assert is_stale(None, computed)


def test_load_index_text():
    assert load_index_text("not json") is None
    assert load_index_text('{"tickets": {}}') is None
    assert load_index_text(None) is None
    assert load_index_text('{"tickets": []}') == {"tickets": []}


def test_index_round_trips_through_dict():
    index = index_from_files(FILES, now=NOW)
    again = TicketsIndex.from_dict(json.loads(serialize_index(index)))
    assert again == index
    assert TicketIndexEntry.from_dict({"id": "01ARZ3NDEKTSV4RRFFQ69G5FAV"}).display_id == "TK-01ARZ3ND"
