import itertools

import pytest

from ticketproto.constants import STATE_ORDER
from ticketproto.errors import InvalidTransition, InvalidValue, MissingField
from ticketproto.workflow import (
    WORKFLOW_TRANSITIONS,
    allowed_transitions,
    assert_qa_transition,
    assert_transition,
    can_transition,
    normalize_priority,
    normalize_state,
)

EDGES = {
    ("backlog", "ready"),
    ("backlog", "blocked"),
    ("ready", "in_progress"),
    ("ready", "blocked"),
    ("in_progress", "done"),
    ("in_progress", "blocked"),
    ("blocked", "ready"),
    ("blocked", "in_progress"),
}


@pytest.mark.parametrize("current,target", list(itertools.permutations(STATE_ORDER, 2)))
def test_transition_table(current, target):
    assert can_transition(current, target) == ((current, target) in EDGES)


def test_same_state_is_a_no_op():
    for state in STATE_ORDER:
        assert can_transition(state, state)
        assert_transition(state, state)


def test_done_is_terminal():
    with pytest.raises(InvalidTransition) as exc:
        assert_transition("done", "ready")
    assert exc.value.allowed == []
    assert exc.value.exit_code == 6
    assert exc.value.details["from"] == "done"
    assert exc.value.details["to"] == "ready"
    assert "allowed: none" in exc.value.message


def test_invalid_transition_lists_allowed_targets():
    with pytest.raises(InvalidTransition) as exc:
        assert_transition("backlog", "done")
    assert exc.value.allowed == ["ready", "blocked"]
    assert exc.value.code == "invalid_transition"


def test_allowed_transitions_match_table():
    for state, targets in WORKFLOW_TRANSITIONS.items():
        assert allowed_transitions(state) == list(targets)


def test_normalize_state():
    assert normalize_state(" In_Progress ") == "in_progress"
    with pytest.raises(InvalidValue) as exc:
        normalize_state("doing")
    assert exc.value.code == "invalid_state"
    assert exc.value.exit_code == 2


def test_normalize_priority():
    assert normalize_priority("P0") == "p0"
    with pytest.raises(InvalidValue) as exc:
        normalize_priority("urgent")
    assert exc.value.code == "invalid_priority"


def test_qa_pass_requires_environment():
    with pytest.raises(MissingField) as exc:
        assert_qa_transition("in_progress", "ready_for_qa", "qa_passed")
    assert exc.value.details["field"] == "environment"
    assert assert_qa_transition("in_progress", "ready_for_qa", "qa_passed", environment="staging") == {
        "environment": "staging"
    }


def test_qa_fail_requires_reason():
    with pytest.raises(MissingField):
        assert_qa_transition("in_progress", "ready_for_qa", "qa_failed", reason="  ")
    assert assert_qa_transition("in_progress", "ready_for_qa", "qa_failed", reason=" flaky ") == {"reason": "flaky"}


def test_qa_only_while_in_progress():
    with pytest.raises(InvalidTransition) as exc:
        assert_qa_transition("ready", None, "ready_for_qa", environment="staging")
    assert exc.value.details["state"] == "ready"


def test_qa_predecessors():
    with pytest.raises(InvalidTransition) as exc:
        assert_qa_transition("in_progress", None, "qa_passed", environment="staging")
    assert exc.value.details["allowed_from"] == ["ready_for_qa"]
    assert "unset -> qa_passed" in exc.value.message

    assert assert_qa_transition("in_progress", None, "ready_for_qa", environment="ci") == {"environment": "ci"}
    assert assert_qa_transition("in_progress", "qa_failed", "ready_for_qa", environment="ci") == {"environment": "ci"}
    assert assert_qa_transition("in_progress", "qa_passed", "pending_impl") == {}


def test_qa_unknown_status():
    with pytest.raises(InvalidValue) as exc:
        assert_qa_transition("in_progress", None, "approved")
    assert exc.value.code == "invalid_qa_status"
