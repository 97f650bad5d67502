import pytest

from ticketproto.errors import AmbiguousId, NotFound, UsageError
from ticketproto.index import index_from_files
from ticketproto.resolve import resolve_ticket


def ticket(ticket_id, title):
    return (f"{ticket_id}.md", f"---\nid: {ticket_id}\ntitle: {title}\nstate: ready\npriority: p1\nlabels: []\n---\n")


@pytest.fixture
def index():
    return index_from_files(
        [
            ticket("01ARZ3NDEKTSV4RRFFQ69G5FAW", "Fix logout"),
            ticket("01ARZ3NDEKTSV4RRFFQ69G5FAV", "Fix login"),
            ticket("01BX5ZZKBKACTAV9WEVGEMMVRZ", "Add metrics"),
        ],
        now="2024-05-01T12:00:00.000Z",
    )


def test_exact_id_any_case(index):
    assert resolve_ticket(index, "01bx5zzkbkactav9wevgemmvrz").title == "Add metrics"
    assert resolve_ticket(index, "01ARZ3NDEKTSV4RRFFQ69G5FAV", ci=True).title == "Fix login"


def test_unique_prefix(index):
    assert resolve_ticket(index, "01BX").id == "01BX5ZZKBKACTAV9WEVGEMMVRZ"


def test_display_id(index):
    assert resolve_ticket(index, "TK-01BX5ZZK").id == "01BX5ZZKBKACTAV9WEVGEMMVRZ"
    assert resolve_ticket(index, "tk-01bx").id == "01BX5ZZKBKACTAV9WEVGEMMVRZ"


def test_ambiguous_prefix(index):
    with pytest.raises(AmbiguousId) as exc:
        resolve_ticket(index, "01ARZ3")
    assert exc.value.exit_code == 5
    assert [c["id"] for c in exc.value.candidates] == ["01ARZ3NDEKTSV4RRFFQ69G5FAV", "01ARZ3NDEKTSV4RRFFQ69G5FAW"]
    assert "TK-01ARZ3ND (01ARZ3NDEKTSV4RRFFQ69G5FAV)" in exc.value.message


def test_title_substring(index):
    assert resolve_ticket(index, "METRICS").id == "01BX5ZZKBKACTAV9WEVGEMMVRZ"
    assert resolve_ticket(index, "fix logi").id == "01ARZ3NDEKTSV4RRFFQ69G5FAV"
    with pytest.raises(AmbiguousId):
        resolve_ticket(index, "fix log")


def test_ci_mode_requires_exact_id(index):
    with pytest.raises(NotFound):
        resolve_ticket(index, "01BX", ci=True)
    with pytest.raises(NotFound):
        resolve_ticket(index, "metrics", ci=True)


def test_not_found(index):
    with pytest.raises(NotFound) as exc:
        resolve_ticket(index, "nothing like this")
    assert exc.value.code == "ticket_not_found"
    assert exc.value.exit_code == 4


def test_empty_query(index):
    with pytest.raises(UsageError):
        resolve_ticket(index, "  ")


def test_accepts_index_mapping(index):
    assert resolve_ticket(index.to_dict(), "01BX").title == "Add metrics"
