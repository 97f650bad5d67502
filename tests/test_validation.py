import json

from ticketproto.index import index_from_files, serialize_index
from ticketproto.policy import get_profile
from ticketproto.templates import TICKET_TEMPLATE, render_template
from ticketproto.validation import has_checklist_in_section, section_content_length, validate_repository

NOW = "2024-05-01T12:00:00.000Z"
TICKET_ID = "01ARZ3NDEKTSV4RRFFQ69G5FAV"
OTHER_ID = "01BX5ZZKBKACTAV9WEVGEMMVRZ"

WEAK_BODY = "\n## Problem\n\nshort\n"


def from_template(ticket_id, extra=""):
    text = render_template(TICKET_TEMPLATE, {"id": ticket_id, "title": "Good ticket", "state": "ready", "priority": "p1"})
    if extra:
        text = text.replace("labels: []\n", "labels: []\n" + extra, 1)
    return (f"{ticket_id}.md", text)


def bare(ticket_id, body=WEAK_BODY, state="ready", priority="p1"):
    return (f"{ticket_id}.md", f"---\nid: {ticket_id}\ntitle: Bare\nstate: {state}\npriority: {priority}\nlabels: []\n---\n{body}")


def persisted(files):
    return json.loads(serialize_index(index_from_files(files, now=NOW)))


def codes(report):
    return [issue.code for issue in report.issues]


def test_clean_repository():
    files = [from_template(TICKET_ID), bare(OTHER_ID)]
    report = validate_repository(files, persisted(files), get_profile("integrity"), now=NOW)
    assert report.ok
    assert report.issues == []
    assert not report.index_stale


def test_missing_index_is_reported():
    files = [from_template(TICKET_ID)]
    report = validate_repository(files, None, get_profile("integrity"), now=NOW)
    assert not report.ok
    assert codes(report) == ["INDEX_OUT_OF_SYNC"]
    assert report.can_fix_index
    report.mark_index_fixed()
    assert report.ok


def test_stale_index_is_reported():
    files = [from_template(TICKET_ID)]
    index = persisted(files)
    index["tickets"][0]["priority"] = "p0"
    report = validate_repository(files, index, get_profile("integrity"), now=NOW)
    assert codes(report) == ["INDEX_OUT_OF_SYNC"]


def test_filename_must_be_ulid():
    files = [("not-a-ulid.md", "---\nid: not-a-ulid\ntitle: T\nstate: ready\npriority: p1\nlabels: []\n---\n")]
    report = validate_repository(files, None, get_profile("integrity"), now=NOW)
    assert codes(report) == ["TICKET_FILENAME_INVALID", "TICKET_SCHEMA_INVALID", "INDEX_OUT_OF_SYNC"]
    assert report.expected_index is None


def test_lowercase_filename_is_accepted():
    lower = TICKET_ID.lower()
    files = [(f"{lower}.md", f"---\nid: {lower}\ntitle: T\nstate: ready\npriority: p1\nlabels: []\n---\n")]
    report = validate_repository(files, None, get_profile("integrity"), now=NOW)
    assert codes(report) == ["INDEX_OUT_OF_SYNC"]
    entry = report.expected_index.tickets[0]
    assert entry.id == TICKET_ID
    assert entry.path == f".tickets/tickets/{lower}.md"

    report = validate_repository(files, persisted(files), get_profile("integrity"), now=NOW)
    assert report.ok


def test_each_schema_message_is_an_issue():
    files = [bare(TICKET_ID, state="Ready", priority="urgent"), from_template(OTHER_ID)]
    report = validate_repository(files, persisted([from_template(OTHER_ID)]), get_profile("integrity"), now=NOW)
    schema = [issue for issue in report.issues if issue.code == "TICKET_SCHEMA_INVALID"]
    assert len(schema) == 2
    assert all(issue.ticket_path == f".tickets/tickets/{TICKET_ID}.md" for issue in schema)
    # the index cannot be compared while a ticket fails to parse
    assert report.expected_index is None
    assert not report.index_stale
    assert not report.can_fix_index


def test_structural_failure_is_an_issue():
    files = [(f"{TICKET_ID}.md", "no front matter\n")]
    report = validate_repository(files, None, get_profile("integrity"), now=NOW)
    load = [issue for issue in report.issues if issue.code == "TICKET_LOAD_FAILED"]
    assert len(load) == 1
    assert load[0].details == {"code": "frontmatter_missing"}
    assert "INDEX_OUT_OF_SYNC" in codes(report)


def test_quality_checks_follow_the_profile():
    files = [bare(TICKET_ID)]
    index = persisted(files)

    assert validate_repository(files, index, get_profile("integrity"), now=NOW).issues == []

    warned = validate_repository(files, index, get_profile("warn"), now=NOW)
    assert warned.ok
    assert sorted(codes(warned)) == [
        "QUALITY_ACCEPTANCE_CHECKLIST_MISSING",
        "QUALITY_PROBLEM_WEAK",
        "QUALITY_SPEC_WEAK",
    ]
    assert all(issue.severity == "warning" for issue in warned.issues)

    failed = validate_repository(files, index, get_profile("quality"), now=NOW)
    assert not failed.ok
    assert len(failed.errors) == 3


def test_template_ticket_passes_quality():
    files = [from_template(TICKET_ID)]
    report = validate_repository(files, persisted(files), get_profile("quality"), now=NOW)
    assert report.ok


def test_strict_requires_actors():
    files = [from_template(TICKET_ID)]
    report = validate_repository(files, persisted(files), get_profile("strict"), now=NOW)
    assert codes(report) == ["STRICT_ASSIGNEE_MISSING", "STRICT_REVIEWER_MISSING"]

    files = [from_template(TICKET_ID, extra="assignee: human:alice\nreviewer: agent:review-bot\n")]
    report = validate_repository(files, persisted(files), get_profile("strict"), now=NOW)
    assert report.ok


def test_opt_in_only_warns():
    files = [bare(TICKET_ID)]
    report = validate_repository(files, persisted(files), get_profile("opt-in"), now=NOW)
    assert report.ok
    assert len(report.warnings) == 5


def test_issue_ids_are_sequential():
    files = [bare(TICKET_ID, state="Ready", priority="urgent")]
    report = validate_repository(files, None, get_profile("integrity"), now=NOW)
    assert [issue.issue_id for issue in report.issues] == ["I0001", "I0002", "I0003"]
    payload = report.to_dict()
    assert payload["valid"] is False
    assert payload["policy_tier"] == "integrity"
    assert payload["issues"][0]["id"] == "I0001"


def test_section_helpers():
    body = "## Problem\n\nA sufficiently long problem statement.\n\n## Acceptance Criteria\n\n- [x] done\n"
    assert has_checklist_in_section(body, "Acceptance Criteria")
    assert not has_checklist_in_section(body, "Problem")
    assert section_content_length(body, "Problem") == len("A sufficiently long problem statement.")
    assert section_content_length(body, "Spec") == 0
