"""
Pure transition engine tests (no database).

Covers manual transition checks and their order, idempotent application,
automatic progression determinism, and strictly increasing timestamps.
"""

from datetime import UTC, datetime, timedelta

import pytest

from admissions.engine.transition_engine import (
    apply_manual_transition,
    evaluate_automatic_transitions,
    legal_transitions,
)
from admissions.engine.types import (
    SYSTEM,
    Actor,
    HistoryEntry,
    Human,
    RejectionCode,
    Stage,
    Transition,
    WorkflowDefinition,
)

T0 = datetime(2026, 9, 1, 12, 0, tzinfo=UTC)


def _workflow(*transitions, stages=None):
    stages = stages or (
        Stage(id="submitted", name="Submitted", sequence=1),
        Stage(id="review", name="Review", sequence=2),
        Stage(id="decided", name="Decided", sequence=3),
    )
    return WorkflowDefinition(
        id=1, name="Test", application_type="undergraduate",
        stages=tuple(stages), transitions=tuple(transitions), is_active=True,
    )


def _history(*stage_ids):
    return [
        HistoryEntry(application_id=7, stage_id=sid, entered_at=T0 + timedelta(minutes=i), entered_by=SYSTEM)
        for i, sid in enumerate(stage_ids)
    ]


LINEAR = (
    Transition(id="t1", source_stage_id="submitted", target_stage_id="review", name="Start Review"),
    Transition(id="t2", source_stage_id="review", target_stage_id="decided", name="Decide"),
)


class TestManualTransition:
    def test_linear_happy_path(self):
        wf = _workflow(*LINEAR)
        history = _history("submitted")
        actor = Actor("officer")

        entry, rejection = apply_manual_transition(wf, history, "t1", actor, {})
        assert rejection is None
        history.append(entry)
        entry, rejection = apply_manual_transition(wf, history, "t2", actor, {})
        assert rejection is None
        history.append(entry)

        assert [h.stage_id for h in history] == ["submitted", "review", "decided"]
        assert entry.entered_by == Human("officer")
        assert entry.transition_id == "t2"
        assert entry.application_id == 7
        assert legal_transitions(wf, history, {}) == []

    def test_unknown_transition_is_not_found(self):
        _, rejection = apply_manual_transition(_workflow(*LINEAR), _history("submitted"), "nope", Actor("a"), {})
        assert rejection.code is RejectionCode.NOT_FOUND

    def test_wrong_source_is_illegal(self):
        _, rejection = apply_manual_transition(_workflow(*LINEAR), _history("submitted"), "t2", Actor("a"), {})
        assert rejection.code is RejectionCode.ILLEGAL_TRANSITION
        assert rejection.current_stage_id == "submitted"

    def test_terminal_stage_reports_already_terminal(self):
        wf = _workflow(*LINEAR)
        _, rejection = apply_manual_transition(wf, _history("submitted", "review", "decided"), "t1", Actor("a"), {})
        assert rejection.code is RejectionCode.ALREADY_TERMINAL

    def test_idempotent_application(self):
        """The same request against the moved-on history is rejected; one entry only."""
        wf = _workflow(*LINEAR)
        history = _history("submitted")

        first, rejection = apply_manual_transition(wf, history, "t1", Actor("a"), {})
        assert rejection is None
        history.append(first)
        second, rejection = apply_manual_transition(wf, history, "t1", Actor("a"), {})

        assert second is None
        assert rejection.code is RejectionCode.ILLEGAL_TRANSITION
        assert len(history) == 2

    def test_blocked_by_condition_then_succeeds(self):
        wf = _workflow(
            LINEAR[0],
            Transition(id="t2", source_stage_id="review", target_stage_id="decided", name="Decide",
                       conditions=("decision_recorded",)),
        )
        history = _history("submitted", "review")

        _, rejection = apply_manual_transition(wf, history, "t2", Actor("a"), {})
        assert rejection.code is RejectionCode.CONDITION_NOT_MET
        assert rejection.failed_conditions == ("decision_recorded",)

        entry, rejection = apply_manual_transition(wf, history, "t2", Actor("a"), {"decision_recorded": True})
        assert rejection is None
        assert entry.stage_id == "decided"

    def test_permission_denied_lists_missing(self):
        wf = _workflow(
            LINEAR[0],
            Transition(id="t2", source_stage_id="review", target_stage_id="decided", name="Decide",
                       required_permissions=frozenset({"committee", "dean"})),
        )
        history = _history("submitted", "review")

        entry, rejection = apply_manual_transition(wf, history, "t2", Actor("a", frozenset({"dean"})), {})

        assert entry is None
        assert rejection.code is RejectionCode.PERMISSION_DENIED
        assert rejection.missing_permissions == ("committee",)

    def test_conditions_checked_before_permissions(self):
        wf = _workflow(
            LINEAR[0],
            Transition(id="t2", source_stage_id="review", target_stage_id="decided", name="Decide",
                       conditions=("decision_recorded",), required_permissions=frozenset({"committee"})),
        )
        _, rejection = apply_manual_transition(wf, _history("submitted", "review"), "t2", Actor("a"), {})
        assert rejection.code is RejectionCode.CONDITION_NOT_MET

    def test_timestamps_strictly_increase(self):
        wf = _workflow(*LINEAR)
        history = _history("submitted")
        entry, _ = apply_manual_transition(wf, history, "t1", Actor("a"), {}, now=history[-1].entered_at)
        assert entry.entered_at > history[-1].entered_at

    def test_rejection_to_dict(self):
        _, rejection = apply_manual_transition(_workflow(*LINEAR), _history("submitted"), "t2", Actor("a"), {})
        data = rejection.to_dict()
        assert data["reason"] == "illegal_transition"
        assert data["transition_id"] == "t2"


class TestAutomaticTransitions:
    def _ambiguous(self):
        return _workflow(
            Transition(id="t-b", source_stage_id="submitted", target_stage_id="decided", name="B", is_automatic=True),
            Transition(id="t-a", source_stage_id="submitted", target_stage_id="review", name="A", is_automatic=True),
        )

    def test_nothing_eligible_returns_none(self):
        assert evaluate_automatic_transitions(_workflow(*LINEAR), _history("submitted"), {}) is None

    def test_lowest_id_wins_every_time(self):
        wf = self._ambiguous()
        history = _history("submitted")

        outcomes = [evaluate_automatic_transitions(wf, history, {}) for _ in range(5)]

        assert {o.transition.id for o in outcomes} == {"t-a"}
        assert outcomes[0].ambiguous
        assert outcomes[0].ambiguous_candidates == ("t-a", "t-b")
        assert "t-a" in outcomes[0].entry.notes
        assert outcomes[0].entry.entered_by is SYSTEM

    def test_conditions_gate_automatic_edges(self):
        wf = _workflow(
            Transition(id="t1", source_stage_id="submitted", target_stage_id="review", name="Screened",
                       is_automatic=True, conditions=({"field": "fee_paid", "operator": "=", "value": True},)),
        )
        assert evaluate_automatic_transitions(wf, _history("submitted"), {"fee_paid": False}) is None
        outcome = evaluate_automatic_transitions(wf, _history("submitted"), {"fee_paid": True})
        assert outcome.entry.stage_id == "review"
        assert not outcome.ambiguous

    def test_no_oscillation_when_chained(self):
        wf = _workflow(
            Transition(id="t1", source_stage_id="submitted", target_stage_id="review", name="A", is_automatic=True),
            Transition(id="t2", source_stage_id="review", target_stage_id="decided", name="B", is_automatic=True),
        )
        history = _history("submitted")
        for _ in range(len(wf.stages)):
            outcome = evaluate_automatic_transitions(wf, history, {})
            if outcome is None:
                break
            history.append(outcome.entry)

        assert [h.stage_id for h in history] == ["submitted", "review", "decided"]
        assert evaluate_automatic_transitions(wf, history, {}) is None


@pytest.mark.parametrize("history,expected", [
    ([], []),
    (_history("review"), ["t2"]),
    (_history("review", "decided"), []),
])
def test_legal_transitions_follow_current_stage(history, expected):
    assert [t.id for t in legal_transitions(_workflow(*LINEAR), history, {})] == expected
