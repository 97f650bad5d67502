from __future__ import annotations

import re
from typing import Any

from ticketproto.errors import SchemaError
from ticketproto.frontmatter import TicketDocument
from ticketproto.workflow import assert_qa_transition

QA_CHECKLIST_HEADINGS = [
    "Test Steps",
    "Expected Results",
    "Risk Notes",
    "Rollback Notes",
    "Observed Results",
    "Environment",
    "Pass/Fail Decision",
]

QA_SECTION_RE = re.compile(r"(?:^|\n)##\s+QA\s*[\r\n]+(.*?)(?=\n##\s+|\Z)", re.IGNORECASE | re.DOTALL)

QA_INDICATORS = {
    "ready_for_qa": "QA_READY",
    "qa_failed": "QA_FAIL",
    "qa_passed": "QA_PASS",
    "pending_impl": "QA_PENDING",
}


def qa_checklist_missing_sections(body: str) -> list[str]:
    section = QA_SECTION_RE.search(body)
    if not section:
        return ["QA"]
    missing = []
    for heading in QA_CHECKLIST_HEADINGS:
        pattern = re.compile(r"(?:^|\n)###\s+" + re.escape(heading) + r"\s*(?:\n|$)", re.IGNORECASE)
        if not pattern.search(section.group(1)):
            missing.append(heading)
    return missing


def assert_qa_checklist_present(body: str, file: str) -> None:
    missing = qa_checklist_missing_sections(body)
    if not missing:
        return
    if "QA" in missing:
        detail = "missing required `## QA` section"
    else:
        detail = f"missing QA checklist headings: {', '.join(missing)}"
    raise SchemaError([f"{file}: {detail}"], file=file)


def ensure_qa_envelope(front_matter: dict[str, Any]) -> dict[str, Any]:
    x_ticket = front_matter.get("x_ticket")
    x_ticket = dict(x_ticket) if isinstance(x_ticket, dict) else {}
    qa = x_ticket.get("qa")
    qa = dict(qa) if isinstance(qa, dict) else {}
    x_ticket["qa"] = qa
    front_matter["x_ticket"] = x_ticket
    return qa


def set_qa_status(
    front_matter: dict[str, Any],
    status: str,
    required: bool | None = None,
    environment: str | None = None,
    reason: str | None = None,
) -> None:
    qa = ensure_qa_envelope(front_matter)
    qa["status"] = status
    if isinstance(required, bool):
        qa["required"] = required
    if environment:
        qa["environment"] = environment
    if reason:
        qa["status_reason"] = reason
    elif status != "qa_failed":
        qa.pop("status_reason", None)


def transition_qa(
    document: TicketDocument,
    target: str,
    environment: str | None = None,
    reason: str | None = None,
) -> None:
    """Move a parsed ticket to a new QA status, mutating its front matter."""
    current = document.qa.status if document.qa else None
    companion = assert_qa_transition(document.state, current, target, environment=environment, reason=reason)
    if target == "ready_for_qa":
        assert_qa_checklist_present(document.body, document.filename or document.id)
    set_qa_status(
        document.front_matter,
        target,
        required=True,
        environment=companion.get("environment"),
        reason=companion.get("reason"),
    )


def qa_indicator(status: str | None) -> str:
    return QA_INDICATORS.get(status or "", "")
