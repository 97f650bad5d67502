import pytest

from ticketproto.errors import SchemaError
from ticketproto.frontmatter import parse_ticket, render_ticket
from ticketproto.qa import (
    assert_qa_checklist_present,
    qa_checklist_missing_sections,
    qa_indicator,
    set_qa_status,
    transition_qa,
)
from ticketproto.templates import QA_SECTION_TEMPLATE

TICKET_ID = "01ARZ3NDEKTSV4RRFFQ69G5FAV"
FILENAME = f"{TICKET_ID}.md"


def in_progress_ticket(body):
    text = (
        f"---\nid: {TICKET_ID}\ntitle: Ship it\nstate: in_progress\npriority: p1\nlabels: []\n---\n"
        f"\n## Problem\n\nNeeds QA.\n{body}"
    )
    return parse_ticket(text, FILENAME, TICKET_ID)


def step(doc, target, **kwargs):
    transition_qa(doc, target, **kwargs)
    return parse_ticket(render_ticket(doc), FILENAME, TICKET_ID)


def test_template_section_is_complete():
    assert qa_checklist_missing_sections(QA_SECTION_TEMPLATE) == []


def test_missing_qa_section():
    assert qa_checklist_missing_sections("## Problem\n\nNo QA here.\n") == ["QA"]
    with pytest.raises(SchemaError) as exc:
        assert_qa_checklist_present("## Problem\n", FILENAME)
    assert "missing required `## QA` section" in exc.value.errors[0]


def test_missing_qa_headings():
    body = "## QA\n\n### Test Steps\n\n### Expected Results\n"
    missing = qa_checklist_missing_sections(body)
    assert missing == ["Risk Notes", "Rollback Notes", "Observed Results", "Environment", "Pass/Fail Decision"]


def test_ready_for_qa_requires_checklist():
    doc = in_progress_ticket("")
    with pytest.raises(SchemaError):
        transition_qa(doc, "ready_for_qa", environment="staging")


def test_full_qa_cycle():
    doc = in_progress_ticket(QA_SECTION_TEMPLATE)
    doc = step(doc, "ready_for_qa", environment="staging")
    assert doc.front_matter["x_ticket"]["qa"] == {"status": "ready_for_qa", "required": True, "environment": "staging"}

    doc = step(doc, "qa_failed", reason="login button missing")
    assert doc.qa.status == "qa_failed"
    assert doc.qa.status_reason == "login button missing"

    doc = step(doc, "pending_impl")
    assert doc.qa.status == "pending_impl"
    assert doc.qa.status_reason is None

    doc = step(doc, "ready_for_qa", environment="staging")
    doc = step(doc, "qa_passed", environment="prod")
    assert doc.qa.status == "qa_passed"
    assert doc.qa.environment == "prod"


def test_set_qa_status_preserves_other_x_ticket_keys():
    front = {"x_ticket": {"source": "import", "qa": {"status": "qa_failed", "status_reason": "x"}}}
    set_qa_status(front, "pending_impl", required=True)
    assert front["x_ticket"]["source"] == "import"
    assert front["x_ticket"]["qa"] == {"status": "pending_impl", "required": True}


def test_qa_indicator():
    assert qa_indicator("qa_passed") == "QA_PASS"
    assert qa_indicator(None) == ""
