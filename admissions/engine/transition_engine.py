"""
TransitionEngine — per-application finite-state machine over a workflow graph.

All functions are pure: they read a WorkflowDefinition, the application's
status history and a fact snapshot, and return either a new HistoryEntry
(not yet persisted) or a typed rejection. Persisting the entry, locking and
notifying are the caller's job (see services/workflow_service.py).

Manual transition checks run in a fixed order and stop at the first failure:

    1. NOT_FOUND           transition id is not part of the workflow
    2. ILLEGAL_TRANSITION  source is not the current stage
                           (ALREADY_TERMINAL when the current stage has no exits)
    3. CONDITION_NOT_MET   lists every failing condition
    4. PERMISSION_DENIED   lists every missing capability tag
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta

from admissions.engine.conditions import evaluate_condition, failing_conditions
from admissions.engine.types import (
    SYSTEM,
    Actor,
    AutomaticOutcome,
    HistoryEntry,
    Human,
    RejectionCode,
    Transition,
    TransitionRejection,
    WorkflowDefinition,
    current_stage_id,
)

_TICK = timedelta(microseconds=1)


def _entry_time(history: Sequence[HistoryEntry], now: datetime | None) -> datetime:
    """Return a timestamp strictly after the last entry's."""
    ts = now or datetime.now(UTC)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    if history:
        last = history[-1].entered_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=UTC)
        if ts <= last:
            ts = last + _TICK
    return ts


def _conditions_hold(transition: Transition, facts: Mapping) -> bool:
    return all(evaluate_condition(c, facts) for c in transition.conditions)


def legal_transitions(
    workflow: WorkflowDefinition,
    history: Sequence[HistoryEntry],
    facts: Mapping,
) -> list[Transition]:
    """Outgoing transitions of the current stage whose conditions all hold."""
    current = current_stage_id(history)
    if current is None:
        return []
    return [t for t in workflow.outgoing(current) if _conditions_hold(t, facts)]


def apply_manual_transition(
    workflow: WorkflowDefinition,
    history: Sequence[HistoryEntry],
    transition_id: str,
    actor: Actor,
    facts: Mapping,
    now: datetime | None = None,
) -> tuple[HistoryEntry | None, TransitionRejection | None]:
    """Check and build the history entry for a human-requested transition.

    Returns:
        (entry, None) on success, (None, TransitionRejection) otherwise.
    """
    current = current_stage_id(history)
    transition = workflow.transition(transition_id)

    if transition is None:
        return None, TransitionRejection(
            code=RejectionCode.NOT_FOUND,
            message=f"Transition '{transition_id}' is not part of workflow '{workflow.name}'.",
            current_stage_id=current,
            transition_id=transition_id,
        )

    if transition.source_stage_id != current:
        if current is not None and workflow.is_terminal(current):
            return None, TransitionRejection(
                code=RejectionCode.ALREADY_TERMINAL,
                message="The application has reached a terminal stage; no further transitions apply.",
                current_stage_id=current,
                transition_id=transition_id,
            )
        return None, TransitionRejection(
            code=RejectionCode.ILLEGAL_TRANSITION,
            message=(
                f"Transition '{transition.name}' starts at stage '{transition.source_stage_id}', "
                f"but the application is at '{current}'."
            ),
            current_stage_id=current,
            transition_id=transition_id,
        )

    failed = failing_conditions(transition.conditions, facts)
    if failed:
        return None, TransitionRejection(
            code=RejectionCode.CONDITION_NOT_MET,
            message=f"Conditions not met: {', '.join(failed)}.",
            current_stage_id=current,
            transition_id=transition_id,
            failed_conditions=tuple(failed),
        )

    missing = sorted(transition.required_permissions - frozenset(actor.permissions))
    if missing:
        return None, TransitionRejection(
            code=RejectionCode.PERMISSION_DENIED,
            message=f"Actor '{actor.actor_id}' lacks required permissions: {', '.join(missing)}.",
            current_stage_id=current,
            transition_id=transition_id,
            missing_permissions=tuple(missing),
        )

    entry = HistoryEntry(
        application_id=history[-1].application_id if history else None,
        stage_id=transition.target_stage_id,
        entered_at=_entry_time(history, now),
        entered_by=Human(actor.actor_id),
        transition_id=transition.id,
    )
    return entry, None


def evaluate_automatic_transitions(
    workflow: WorkflowDefinition,
    history: Sequence[HistoryEntry],
    facts: Mapping,
    now: datetime | None = None,
) -> AutomaticOutcome | None:
    """Pick the automatic transition to apply from the current stage, if any.

    When several automatic transitions qualify, the lowest id wins and the
    outcome lists every candidate so the caller can audit the ambiguity.
    """
    eligible = [t for t in legal_transitions(workflow, history, facts) if t.is_automatic]
    if not eligible:
        return None

    chosen = eligible[0]
    candidates: tuple[str, ...] = ()
    notes = None
    if len(eligible) > 1:
        candidates = tuple(t.id for t in eligible)
        notes = (
            f"Ambiguous automatic transitions from stage '{chosen.source_stage_id}': "
            f"{', '.join(candidates)}; applied '{chosen.id}'."
        )

    entry = HistoryEntry(
        application_id=history[-1].application_id if history else None,
        stage_id=chosen.target_stage_id,
        entered_at=_entry_time(history, now),
        entered_by=SYSTEM,
        transition_id=chosen.id,
        notes=notes,
    )
    return AutomaticOutcome(entry=entry, transition=chosen, ambiguous_candidates=candidates)
