from __future__ import annotations

from ticketproto.constants import PRIORITY_ORDER, QA_STATUS_ORDER, STATE_ORDER
from ticketproto.errors import InvalidTransition, InvalidValue, MissingField

WORKFLOW_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "backlog": ("ready", "blocked"),
    "ready": ("in_progress", "blocked"),
    "in_progress": ("done", "blocked"),
    "blocked": ("ready", "in_progress"),
    "done": (),
}

# Allowed predecessors per QA target; None stands for "no status yet".
QA_PREDECESSORS: dict[str, tuple[str | None, ...]] = {
    "ready_for_qa": (None, "pending_impl", "qa_failed"),
    "qa_failed": ("ready_for_qa",),
    "qa_passed": ("ready_for_qa",),
    "pending_impl": ("ready_for_qa", "qa_failed", "qa_passed"),
}

QA_COMPANION_FIELDS: dict[str, str] = {
    "ready_for_qa": "environment",
    "qa_passed": "environment",
    "qa_failed": "reason",
}


def normalize_state(value: str) -> str:
    normalized = str(value).strip().lower()
    if normalized not in STATE_ORDER:
        raise InvalidValue(
            f"Invalid state '{value}'. Allowed: {', '.join(STATE_ORDER)}",
            code="invalid_state",
            details={"value": value, "allowed": list(STATE_ORDER)},
        )
    return normalized


def normalize_priority(value: str) -> str:
    normalized = str(value).strip().lower()
    if normalized not in PRIORITY_ORDER:
        raise InvalidValue(
            f"Invalid priority '{value}'. Allowed: {', '.join(PRIORITY_ORDER)}",
            code="invalid_priority",
            details={"value": value, "allowed": list(PRIORITY_ORDER)},
        )
    return normalized


def normalize_qa_status(value: str) -> str:
    normalized = str(value).strip().lower()
    if normalized not in QA_STATUS_ORDER:
        raise InvalidValue(
            f"Invalid QA status '{value}'. Allowed: {', '.join(QA_STATUS_ORDER)}",
            code="invalid_qa_status",
            details={"value": value, "allowed": list(QA_STATUS_ORDER)},
        )
    return normalized


def allowed_transitions(state: str) -> list[str]:
    return list(WORKFLOW_TRANSITIONS[normalize_state(state)])


def can_transition(current: str, target: str) -> bool:
    # A same-state request is a no-op rather than an edge.
    if current == target:
        return True
    return target in WORKFLOW_TRANSITIONS.get(current, ())


def assert_transition(current: str, target: str) -> None:
    current = normalize_state(current)
    target = normalize_state(target)
    if can_transition(current, target):
        return
    allowed = allowed_transitions(current)
    raise InvalidTransition(
        f"Invalid transition: {current} -> {target} (allowed: {', '.join(allowed) or 'none'})",
        current=current,
        target=target,
        allowed=allowed,
    )


def _status_label(status: str | None) -> str:
    return status or "unset"


def assert_qa_transition(
    state: str,
    current: str | None,
    target: str,
    environment: str | None = None,
    reason: str | None = None,
) -> dict[str, str]:
    """Check a QA status change and return its normalized companion data.

    Checks run in order: workflow state, predecessor legality, companion fields.
    """
    target = normalize_qa_status(target)
    if state != "in_progress":
        raise InvalidTransition(
            f"QA transitions require state 'in_progress' (current state: {state})",
            current=_status_label(current),
            target=target,
            allowed=[],
            details={"state": state},
        )

    predecessors = QA_PREDECESSORS[target]
    if current not in predecessors:
        allowed_from = [_status_label(status) for status in predecessors]
        raise InvalidTransition(
            f"Invalid QA transition {_status_label(current)} -> {target} "
            f"(allowed from: {', '.join(allowed_from)})",
            current=_status_label(current),
            target=target,
            allowed=[t for t, preds in QA_PREDECESSORS.items() if current in preds],
            details={"allowed_from": allowed_from},
        )

    companion: dict[str, str] = {}
    field_name = QA_COMPANION_FIELDS.get(target)
    if field_name:
        value = environment if field_name == "environment" else reason
        value = (value or "").strip()
        if not value:
            raise MissingField(
                f"QA status {target} requires {field_name}",
                details={"field": field_name, "target": target},
            )
        companion[field_name] = value
    return companion
