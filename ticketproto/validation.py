from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from ticketproto.constants import INDEX_PATH
from ticketproto.errors import SchemaError
from ticketproto.frontmatter import TicketDocument
from ticketproto.index import TicketsIndex, generate_index, is_stale, parse_documents, ticket_path
from ticketproto.policy import PolicyTierProfile
from ticketproto.util import Issue, is_ulid

MIN_SECTION_LENGTH = 24
CHECKLIST_RE = re.compile(r"(?:^|\n)\s*-\s*\[(?: |x|X)\]")


@dataclass
class Finding:
    code: str
    message: str
    ticket_path: str | None = None


@dataclass
class ValidationReport:
    profile: PolicyTierProfile
    issues: list[Issue] = field(default_factory=list)
    documents: list[TicketDocument] = field(default_factory=list)
    expected_index: TicketsIndex | None = None
    index_stale: bool = False

    @property
    def errors(self) -> list[Issue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def warnings(self) -> list[Issue]:
        return [issue for issue in self.issues if issue.severity == "warning"]

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def can_fix_index(self) -> bool:
        integrity = [i for i in self.errors if i.category == "integrity" and i.code != "INDEX_OUT_OF_SYNC"]
        return self.index_stale and self.expected_index is not None and not integrity

    def mark_index_fixed(self) -> None:
        self.issues = [issue for issue in self.issues if issue.code != "INDEX_OUT_OF_SYNC"]
        self.index_stale = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.ok,
            "policy_tier": self.profile.tier,
            "checks": {
                "integrity": self.profile.integrity,
                "quality": self.profile.quality,
                "strict": self.profile.strict,
            },
            "index_stale": self.index_stale,
            "issues": [issue.to_dict() for issue in self.issues],
        }


def _section(body: str, heading: str) -> str | None:
    pattern = re.compile(
        r"(?:^|\n)##\s+" + re.escape(heading) + r"\s*[\r\n]+(.*?)(?=\n##\s+|\Z)",
        re.IGNORECASE | re.DOTALL,
    )
    match = pattern.search(body)
    return match.group(1) if match else None


def has_checklist_in_section(body: str, heading: str) -> bool:
    section = _section(body, heading)
    return bool(section and CHECKLIST_RE.search(section))


def section_content_length(body: str, heading: str) -> int:
    section = _section(body, heading)
    if section is None:
        return 0
    return len(re.sub(r"\s+", " ", section).strip())


def quality_findings(documents: Iterable[TicketDocument]) -> list[Finding]:
    findings: list[Finding] = []
    for doc in documents:
        path = ticket_path(doc.filename or f"{doc.id}.md")
        if not has_checklist_in_section(doc.body, "Acceptance Criteria"):
            findings.append(Finding("QUALITY_ACCEPTANCE_CHECKLIST_MISSING", f"{doc.filename}: missing checklist items under 'Acceptance Criteria'", path))
        if section_content_length(doc.body, "Problem") < MIN_SECTION_LENGTH:
            findings.append(Finding("QUALITY_PROBLEM_WEAK", f"{doc.filename}: weak or missing 'Problem' section content", path))
        if section_content_length(doc.body, "Spec") < MIN_SECTION_LENGTH:
            findings.append(Finding("QUALITY_SPEC_WEAK", f"{doc.filename}: weak or missing 'Spec' section content", path))
    return findings


def strict_findings(documents: Iterable[TicketDocument]) -> list[Finding]:
    findings: list[Finding] = []
    for doc in documents:
        path = ticket_path(doc.filename or f"{doc.id}.md")
        if not doc.assignee:
            findings.append(Finding("STRICT_ASSIGNEE_MISSING", f"{doc.filename}: strict tier requires assignee", path))
        if not doc.reviewer:
            findings.append(Finding("STRICT_REVIEWER_MISSING", f"{doc.filename}: strict tier requires reviewer", path))
    return findings


def validate_repository(
    files: Iterable[tuple[str, str]],
    persisted_index: Any,
    profile: PolicyTierProfile,
    now: str | None = None,
) -> ValidationReport:
    """Collect every per-file and cross-file defect for a ticket directory."""
    files = sorted(files, key=lambda item: item[0])
    report = ValidationReport(profile=profile)

    def add_issue(severity: str, code: str, message: str, category: str, path: str | None = None, details: dict[str, Any] | None = None) -> None:
        report.issues.append(
            Issue(
                issue_id=f"I{len(report.issues) + 1:04d}",
                severity=severity,
                code=code,
                message=message,
                ticket_path=path,
                category=category,
                details=details,
            )
        )

    for filename, _ in files:
        stem = filename[:-3] if filename.endswith(".md") else filename
        if not is_ulid(stem):
            add_issue("error", "TICKET_FILENAME_INVALID", f"{filename}: filename must be a valid ULID", "integrity", ticket_path(filename))

    documents, failures = parse_documents(files)
    for failure in failures:
        path = ticket_path(failure.details["file"]) if failure.details.get("file") else None
        if isinstance(failure, SchemaError):
            for message in failure.errors:
                add_issue("error", "TICKET_SCHEMA_INVALID", message, "integrity", path)
        else:
            add_issue("error", "TICKET_LOAD_FAILED", failure.message, "integrity", path, {"code": failure.code})
    report.documents = documents

    if not failures:
        report.expected_index = generate_index(documents, now=now)
        report.index_stale = is_stale(persisted_index, report.expected_index)
    else:
        report.index_stale = persisted_index is None
    if report.index_stale:
        add_issue("error", "INDEX_OUT_OF_SYNC", f"{INDEX_PATH} is missing, invalid, or stale", "integrity", INDEX_PATH)

    for category, level, findings in (
        ("quality", profile.quality, quality_findings(documents) if profile.quality != "off" else []),
        ("strict", profile.strict, strict_findings(documents) if profile.strict != "off" else []),
    ):
        severity = "error" if level == "fail" else "warning"
        for finding in findings:
            add_issue(severity, finding.code, finding.message, category, finding.ticket_path)

    return report
