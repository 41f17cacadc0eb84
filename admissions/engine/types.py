"""
Immutable domain types shared by the validator and the transition engine.

These carriers hold no database state: the persistence layer converts its
SQLAlchemy rows into them (``Workflow.to_definition()``,
``ApplicationStatus.to_entry()``) before calling into the engine.

Types:
    - Stage, Transition, WorkflowDefinition: the validated graph
    - Human / System: who entered a stage (tagged variant)
    - Actor: a principal requesting a manual transition, with capabilities
    - HistoryEntry: one row of an application's status history
    - ValidationIssue / ValidationResult: GraphValidator output
    - TransitionRejection / AutomaticOutcome: TransitionEngine output
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union


# ── Graph ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Stage:
    id: str
    name: str
    sequence: Any
    description: str | None = None
    required_document_types: tuple = ()
    required_actions: tuple = ()
    notification_triggers: tuple = ()
    assigned_role_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sequence": self.sequence,
            "description": self.description,
            "required_document_types": list(self.required_document_types),
            "required_actions": list(self.required_actions),
            "notification_triggers": list(self.notification_triggers),
            "assigned_role_id": self.assigned_role_id,
        }


@dataclass(frozen=True)
class Transition:
    id: str
    source_stage_id: str
    target_stage_id: str
    name: str
    conditions: tuple = ()
    required_permissions: frozenset = frozenset()
    is_automatic: bool = False
    description: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_stage_id": self.source_stage_id,
            "target_stage_id": self.target_stage_id,
            "name": self.name,
            "description": self.description,
            "conditions": list(self.conditions),
            "required_permissions": sorted(self.required_permissions),
            "is_automatic": self.is_automatic,
        }


@dataclass(frozen=True)
class WorkflowDefinition:
    """A validated stage graph. Stages keep submission order."""

    id: int | None
    name: str
    application_type: str
    stages: tuple[Stage, ...]
    transitions: tuple[Transition, ...]
    is_active: bool = False

    def stage(self, stage_id: str) -> Stage | None:
        for s in self.stages:
            if s.id == stage_id:
                return s
        return None

    def transition(self, transition_id: str) -> Transition | None:
        for t in self.transitions:
            if t.id == transition_id:
                return t
        return None

    def outgoing(self, stage_id: str) -> list[Transition]:
        """Transitions leaving *stage_id*, ordered by id."""
        return sorted(
            (t for t in self.transitions if t.source_stage_id == stage_id),
            key=lambda t: t.id,
        )

    def is_terminal(self, stage_id: str) -> bool:
        return not any(t.source_stage_id == stage_id for t in self.transitions)

    def initial_stage(self) -> Stage | None:
        """Lowest-sequence stage among those with no incoming edge or sequence 1."""
        targets = {t.target_stage_id for t in self.transitions}
        eligible = [s for s in self.stages if s.id not in targets or s.sequence == 1]
        if not eligible:
            return None
        return min(eligible, key=lambda s: s.sequence)


# ── Actors & history ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Human:
    actor_id: str
    kind: str = field(default="human", init=False)


@dataclass(frozen=True)
class System:
    kind: str = field(default="system", init=False)


EnteredBy = Union[Human, System]

SYSTEM = System()


@dataclass(frozen=True)
class Actor:
    """A principal requesting a manual transition."""

    actor_id: str
    permissions: frozenset = frozenset()


@dataclass(frozen=True)
class HistoryEntry:
    application_id: int | None
    stage_id: str
    entered_at: datetime
    entered_by: EnteredBy
    transition_id: str | None = None
    notes: str | None = None


def current_stage_id(history: list[HistoryEntry] | tuple[HistoryEntry, ...]) -> str | None:
    """Stage of the most recent entry, or None for an empty history."""
    if not history:
        return None
    return history[-1].stage_id


# ── Validation results ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str
    field: str | None = None
    stage_ids: tuple[str, ...] = ()
    transition_id: str | None = None
    cycle: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        out: dict = {"code": self.code, "message": self.message, "field": self.field}
        if self.stage_ids:
            out["stage_ids"] = list(self.stage_ids)
        if self.transition_id is not None:
            out["transition_id"] = self.transition_id
        if self.cycle:
            out["cycle"] = list(self.cycle)
        return out


@dataclass(frozen=True)
class ValidationResult:
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors

    def codes(self) -> list[str]:
        return [e.code for e in self.errors]

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


# ── Engine results ───────────────────────────────────────────────────────────


class RejectionCode(Enum):
    NOT_FOUND = "not_found"
    ILLEGAL_TRANSITION = "illegal_transition"
    CONDITION_NOT_MET = "condition_not_met"
    PERMISSION_DENIED = "permission_denied"
    ALREADY_TERMINAL = "already_terminal"


@dataclass(frozen=True)
class TransitionRejection:
    code: RejectionCode
    message: str
    current_stage_id: str | None = None
    transition_id: str | None = None
    failed_conditions: tuple[str, ...] = ()
    missing_permissions: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "reason": self.code.value,
            "current_stage_id": self.current_stage_id,
            "transition_id": self.transition_id,
            "failed_conditions": list(self.failed_conditions),
            "missing_permissions": list(self.missing_permissions),
        }


@dataclass(frozen=True)
class AutomaticOutcome:
    entry: HistoryEntry
    transition: Transition
    # Ids of every eligible automatic transition when more than one qualified.
    ambiguous_candidates: tuple[str, ...] = ()

    @property
    def ambiguous(self) -> bool:
        return len(self.ambiguous_candidates) > 1
