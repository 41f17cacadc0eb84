"""
Workflow Service — orchestrates definitions, applications and the engine.

Definition operations:
    define_workflow, update_workflow, list_workflows, get_workflow,
    activate_workflow, deactivate_workflow, duplicate_workflow,
    delete_workflow, validate_payload

Application operations:
    start_application, get_application, get_legal_next_steps,
    advance_application, tick_automatic, update_facts, get_status_history

Design decisions:
    - Expected rejections are values: every public method returns
      ``(result, None)`` or ``(None, ServiceError)``. Only infrastructure
      failure raises (StorageError, after rollback).
    - Workflow graphs are submitted whole. The submission is resolved
      (client tokens -> engine ids), validated, and only then persisted,
      all-or-nothing.
    - ApplicationStatus is APPEND-ONLY. A transition is applied under a
      process-local lock keyed by application id, on a row re-read with
      SELECT ... FOR UPDATE, inside one transaction. The unique
      (application_id, position) constraint catches any writer that slipped
      past both; the loser gets ERR_CONFLICT_STATE and appends nothing.
    - StatusChanged facts are published to the sinks after commit. A failing
      sink is logged and never fails the operation.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from flask import current_app, has_app_context
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from admissions.core.exceptions import StorageError
from admissions.engine.conditions import canonical, condition_name, failing_conditions
from admissions.engine.graph_validator import validate
from admissions.engine.resolver import resolve_submission
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
    TransitionRejection,
    ValidationResult,
    WorkflowDefinition,
    current_stage_id,
)
from admissions.models import db
from admissions.models.application import Application, ApplicationStatus
from admissions.models.audit import write_audit
from admissions.models.workflow import (
    APPLICATION_TYPES,
    NAME_MAX_LENGTH,
    Workflow,
    WorkflowStage,
    WorkflowTransition,
)
from admissions.services.collaborators import (
    ApplicationFactProvider,
    AuditSink,
    NotificationSink,
    RolePermissionProvider,
    StatusChanged,
)
from admissions.utils.errors import E

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceError:
    code: str
    message: str
    details: dict = field(default_factory=dict)


_REJECTION_CODES = {
    RejectionCode.NOT_FOUND: E.NOT_FOUND,
    RejectionCode.ILLEGAL_TRANSITION: E.ILLEGAL_TRANSITION,
    RejectionCode.CONDITION_NOT_MET: E.CONDITION_NOT_MET,
    RejectionCode.PERMISSION_DENIED: E.PERMISSION_DENIED,
    RejectionCode.ALREADY_TERMINAL: E.ALREADY_TERMINAL,
}


def _rejection_error(rejection: TransitionRejection) -> ServiceError:
    return ServiceError(_REJECTION_CODES[rejection.code], rejection.message, rejection.to_dict())


def _not_found(label: str, pk) -> ServiceError:
    return ServiceError(E.NOT_FOUND, f"{label} not found", {"id": pk})


# ── Per-application locks ──────────────────────────────────────────────────────

# application id -> [lock, number of holders and waiters]
_application_locks: dict[int, list] = {}
_locks_guard = threading.Lock()


@contextmanager
def _application_lock(application_id: int):
    """Serialise writers per application; the entry is dropped with its last user."""
    with _locks_guard:
        entry = _application_locks.setdefault(application_id, [threading.RLock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                _application_locks.pop(application_id, None)


# ── Payload helpers ────────────────────────────────────────────────────────────


def _check_name(name) -> ServiceError | None:
    if not isinstance(name, str) or not name.strip():
        return ServiceError(E.VALIDATION_REQUIRED, "Field 'name' is required.", {"field": "name"})
    if len(name.strip()) > NAME_MAX_LENGTH:
        return ServiceError(
            E.VALIDATION_INVALID,
            f"Workflow name must be at most {NAME_MAX_LENGTH} characters.",
            {"field": "name"},
        )
    return None


def _check_application_type(value) -> ServiceError | None:
    if not value:
        return ServiceError(
            E.VALIDATION_REQUIRED, "Field 'application_type' is required.", {"field": "application_type"},
        )
    if not isinstance(value, str) or value not in APPLICATION_TYPES:
        return ServiceError(
            E.VALIDATION_INVALID,
            f"Invalid application_type '{value}'. Must be one of: {', '.join(sorted(APPLICATION_TYPES))}",
            {"field": "application_type"},
        )
    return None


def _check_graph_fields(payload: dict) -> ServiceError | None:
    for key in ("stages", "transitions"):
        value = payload.get(key)
        if value is not None and not isinstance(value, list):
            return ServiceError(E.VALIDATION_INVALID, f"Field '{key}' must be a list.", {"field": key})
    return None


def _name_taken(name: str, exclude_id: int | None = None) -> bool:
    stmt = select(Workflow.id).where(func.lower(Workflow.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Workflow.id != exclude_id)
    return db.session.execute(stmt).first() is not None


def _validate_submission(submission) -> ValidationResult:
    """Resolver issues first, then the graph checks."""
    result = validate(submission.stages, submission.transitions)
    if not submission.issues:
        return result
    return ValidationResult(errors=tuple(submission.issues) + result.errors, warnings=result.warnings)


def _invalid(result) -> ServiceError:
    return ServiceError(E.WORKFLOW_INVALID, "Workflow definition is invalid.", result.to_dict())


def _incompatible_transitions(rows: dict[str, WorkflowTransition], submitted) -> list[dict]:
    """Reused transition ids must keep their endpoints and may only drop conditions."""
    problems = []
    for t in submitted:
        old = rows.get(t.id)
        if old is None:
            continue
        if (old.source_stage_id, old.target_stage_id) != (t.source_stage_id, t.target_stage_id):
            problems.append({
                "transition_id": t.id,
                "reason": "endpoints_changed",
                "message": "A reused transition must keep its source and target stage.",
            })
            continue
        old_conditions = {canonical(c) for c in old.conditions or []}
        added = [condition_name(c) for c in t.conditions if canonical(c) not in old_conditions]
        if added:
            problems.append({
                "transition_id": t.id,
                "reason": "conditions_narrowed",
                "message": "A reused transition may keep or remove conditions, not add new ones.",
                "added_conditions": added,
            })
    return problems


def _occupied_stages(stage_rows: dict[str, WorkflowStage], stage_ids: set[str]) -> list[dict]:
    if not stage_ids:
        return []
    rows = db.session.execute(
        select(Application.current_stage_id, func.count(Application.id))
        .where(Application.current_stage_id.in_(stage_ids))
        .group_by(Application.current_stage_id)
    ).all()
    return [
        {"stage_id": stage_id, "name": stage_rows[stage_id].name, "applications": count}
        for stage_id, count in sorted(rows)
    ]


def _history_references(workflow_id: int) -> tuple[set[str], set[str]]:
    rows = db.session.execute(
        select(ApplicationStatus.stage_id, ApplicationStatus.transition_id)
        .join(Application, Application.id == ApplicationStatus.application_id)
        .where(Application.workflow_id == workflow_id)
    ).all()
    return {r[0] for r in rows}, {r[1] for r in rows if r[1]}


def _add_graph(wf: Workflow, submission) -> None:
    for position, stage in enumerate(submission.stages):
        row = WorkflowStage(id=stage.id)
        row.apply(stage, position)
        wf.stages.append(row)
    for position, transition in enumerate(submission.transitions):
        row = WorkflowTransition(id=transition.id)
        row.apply(transition, position)
        wf.transitions.append(row)


def _replace_graph(
    wf: Workflow,
    submission,
    stage_rows: dict[str, WorkflowStage],
    transition_rows: dict[str, WorkflowTransition],
) -> dict:
    """Upsert the submitted graph; retire or delete rows it no longer contains."""
    summary = {"retired_stages": [], "deleted_stages": [], "retired_transitions": [], "deleted_transitions": []}
    kept_stage_ids = {s.id for s in submission.stages}
    kept_transition_ids = {t.id for t in submission.transitions}

    for position, stage in enumerate(submission.stages):
        row = stage_rows.get(stage.id)
        if row is None:
            row = WorkflowStage(id=stage.id)
            wf.stages.append(row)
        row.apply(stage, position)
    for position, transition in enumerate(submission.transitions):
        row = transition_rows.get(transition.id)
        if row is None:
            row = WorkflowTransition(id=transition.id)
            wf.transitions.append(row)
        row.apply(transition, position)

    history_stages, history_transitions = _history_references(wf.id)

    for tid, row in transition_rows.items():
        if tid in kept_transition_ids:
            continue
        if tid in history_transitions:
            row.is_retired = True
            summary["retired_transitions"].append(tid)
        else:
            wf.transitions.remove(row)
            summary["deleted_transitions"].append(tid)

    # Stages still named by a remaining (live or retired) transition stay too
    edge_refs = set()
    for row in wf.transitions:
        edge_refs.update((row.source_stage_id, row.target_stage_id))

    for sid, row in stage_rows.items():
        if sid in kept_stage_ids:
            continue
        if sid in history_stages or sid in edge_refs:
            row.is_retired = True
            summary["retired_stages"].append(sid)
        else:
            wf.stages.remove(row)
            summary["deleted_stages"].append(sid)

    return summary


def _deactivate_others(wf: Workflow) -> list[int]:
    others = db.session.execute(
        select(Workflow.id).where(
            Workflow.application_type == wf.application_type,
            Workflow.is_active.is_(True),
            Workflow.id != wf.id,
        )
    ).scalars().all()
    if others:
        db.session.execute(
            update(Workflow).where(Workflow.id.in_(others)).values(is_active=False)
        )
    return list(others)


# ── Service ────────────────────────────────────────────────────────────────────


class WorkflowService:
    """Coordinates persistence, the pure engine and the collaborators.

    Args:
        fact_provider: Supplies the fact snapshot for an application.
        permission_provider: Supplies an actor's capability tags.
        sinks: StatusChanged consumers, called after commit.
        auto_advance: Chain automatic transitions after a manual one.
            None reads WORKFLOW_AUTO_ADVANCE from the app config per call.
    """

    def __init__(self, fact_provider=None, permission_provider=None, sinks=None, auto_advance=None):
        self.fact_provider = fact_provider or ApplicationFactProvider()
        self.permission_provider = permission_provider or RolePermissionProvider()
        self.sinks = list(sinks) if sinks is not None else [AuditSink(), NotificationSink()]
        self._auto_advance = auto_advance

    @property
    def auto_advance(self) -> bool:
        if self._auto_advance is not None:
            return self._auto_advance
        if has_app_context():
            return bool(current_app.config.get("WORKFLOW_AUTO_ADVANCE", True))
        return True

    # ── Workflow definitions ──────────────────────────────────────────────────

    def validate_payload(self, payload: dict):
        """Dry run: resolve and validate a graph without persisting anything."""
        if not isinstance(payload, dict):
            return None, ServiceError(E.VALIDATION_INVALID, "Request body must be a JSON object.")
        err = _check_graph_fields(payload)
        if err:
            return None, err
        submission = resolve_submission(payload.get("stages"), payload.get("transitions"))
        return _validate_submission(submission).to_dict(), None

    def define_workflow(self, payload: dict, actor_id: str | None = None):
        """Create a workflow from a complete stage + transition submission."""
        return self._create_workflow(payload, actor_id)

    def _create_workflow(self, payload: dict, actor_id: str | None, duplicated_from: int | None = None):
        if not isinstance(payload, dict):
            return None, ServiceError(E.VALIDATION_INVALID, "Request body must be a JSON object.")
        err = (
            _check_name(payload.get("name"))
            or _check_application_type(payload.get("application_type"))
            or _check_graph_fields(payload)
        )
        if err:
            return None, err

        name = payload["name"].strip()
        if _name_taken(name):
            return None, ServiceError(
                E.CONFLICT_DUPLICATE, f"Workflow with name '{name}' already exists.", {"field": "name"},
            )

        submission = resolve_submission(payload.get("stages"), payload.get("transitions"))
        result = _validate_submission(submission)
        if not result.ok:
            logger.info("Workflow definition rejected: %s", result.codes(), extra={"actor": actor_id})
            return None, _invalid(result)

        try:
            wf = Workflow(
                name=name,
                description=payload.get("description"),
                application_type=payload["application_type"],
                is_active=False,
                created_by=actor_id,
            )
            db.session.add(wf)
            _add_graph(wf, submission)
            db.session.flush()
            deactivated = []
            if payload.get("is_active"):
                deactivated = _deactivate_others(wf)
                wf.is_active = True
            write_audit(
                entity_type="workflow", entity_id=wf.id, action="workflow.create", actor=actor_id,
                diff={
                    "name": name,
                    "stages": len(submission.stages),
                    "transitions": len(submission.transitions),
                    "deactivated": deactivated,
                },
            )
            if duplicated_from is not None:
                write_audit(
                    entity_type="workflow", entity_id=wf.id, action="workflow.duplicate", actor=actor_id,
                    diff={"source_workflow_id": duplicated_from},
                )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return None, ServiceError(
                E.CONFLICT_DUPLICATE, f"Workflow with name '{name}' already exists.", {"field": "name"},
            )
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("define_workflow failed")
            raise StorageError("define_workflow") from exc

        logger.info("Workflow created", extra={"workflow_id": wf.id, "actor": actor_id})
        out = wf.to_dict()
        out["warnings"] = [w.to_dict() for w in result.warnings]
        return out, None

    def update_workflow(self, workflow_id: int, payload: dict, actor_id: str | None = None):
        """Replace a workflow's graph, keeping history-referenced ids resolvable."""
        wf = db.session.get(Workflow, workflow_id)
        if wf is None:
            return None, _not_found("Workflow", workflow_id)
        if not isinstance(payload, dict):
            return None, ServiceError(E.VALIDATION_INVALID, "Request body must be a JSON object.")
        if "stages" not in payload:
            return None, ServiceError(
                E.VALIDATION_REQUIRED,
                "Field 'stages' is required; an update replaces the full graph.",
                {"field": "stages"},
            )

        name = payload.get("name", wf.name)
        application_type = payload.get("application_type", wf.application_type)
        err = _check_name(name) or _check_application_type(application_type) or _check_graph_fields(payload)
        if err:
            return None, err
        name = name.strip()
        if _name_taken(name, exclude_id=wf.id):
            return None, ServiceError(
                E.CONFLICT_DUPLICATE, f"Workflow with name '{name}' already exists.", {"field": "name"},
            )

        stage_rows = {s.id: s for s in wf.stages}
        transition_rows = {t.id: t for t in wf.transitions}
        submission = resolve_submission(
            payload.get("stages"),
            payload.get("transitions"),
            existing_stage_ids=stage_rows.keys(),
            existing_transition_ids=transition_rows.keys(),
        )
        result = _validate_submission(submission)
        if not result.ok:
            return None, _invalid(result)

        incompatible = _incompatible_transitions(transition_rows, submission.transitions)
        if incompatible:
            return None, ServiceError(
                E.CONFLICT_INCOMPATIBLE,
                "Reused transitions must keep compatible semantics.",
                {"transitions": incompatible},
            )

        live_ids = {sid for sid, row in stage_rows.items() if not row.is_retired}
        occupied = _occupied_stages(stage_rows, live_ids - {s.id for s in submission.stages})
        if occupied:
            return None, ServiceError(
                E.CONFLICT_ORPHANED,
                "Removed stages are still occupied by applications.",
                {"stages": occupied},
            )

        if application_type != wf.application_type:
            in_use = db.session.execute(
                select(func.count(Application.id)).where(Application.workflow_id == wf.id)
            ).scalar_one()
            if in_use:
                return None, ServiceError(
                    E.CONFLICT_STATE,
                    "application_type cannot change once applications exist.",
                    {"field": "application_type", "applications": in_use},
                )

        try:
            summary = _replace_graph(wf, submission, stage_rows, transition_rows)
            wf.name = name
            wf.application_type = application_type
            if "description" in payload:
                wf.description = payload.get("description")
            if wf.is_active:
                summary["deactivated"] = _deactivate_others(wf)
            write_audit(
                entity_type="workflow", entity_id=wf.id, action="workflow.update", actor=actor_id,
                diff={
                    "stages": len(submission.stages),
                    "transitions": len(submission.transitions),
                    **summary,
                },
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return None, ServiceError(
                E.CONFLICT_STATE, "Workflow changed concurrently; reload and retry.", {"workflow_id": workflow_id},
            )
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("update_workflow failed", extra={"workflow_id": workflow_id})
            raise StorageError("update_workflow", workflow_id=workflow_id) from exc

        logger.info("Workflow updated", extra={"workflow_id": wf.id, "actor": actor_id})
        out = wf.to_dict()
        out["warnings"] = [w.to_dict() for w in result.warnings]
        return out, None

    def list_workflows(self, application_type=None, is_active=None, search=None, page=1, per_page=20):
        if application_type:
            err = _check_application_type(application_type)
            if err:
                return None, err
        page = max(int(page or 1), 1)
        per_page = min(max(int(per_page or 20), 1), 100)

        stmt = select(Workflow)
        if application_type:
            stmt = stmt.where(Workflow.application_type == application_type)
        if is_active is not None:
            stmt = stmt.where(Workflow.is_active.is_(bool(is_active)))
        if search:
            like = f"%{search.strip()}%"
            stmt = stmt.where(Workflow.name.ilike(like) | Workflow.description.ilike(like))

        total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        items = db.session.execute(
            stmt.order_by(Workflow.application_type, Workflow.name)
            .offset((page - 1) * per_page).limit(per_page)
        ).scalars().all()
        return {
            "items": [w.to_dict(include_graph=False) for w in items],
            "total": total,
            "page": page,
            "per_page": per_page,
        }, None

    def get_workflow(self, workflow_id: int):
        wf = db.session.get(Workflow, workflow_id)
        if wf is None:
            return None, _not_found("Workflow", workflow_id)
        return wf.to_dict(), None

    def activate_workflow(self, workflow_id: int, actor_id: str | None = None):
        """Activate; the previously active workflow of the same type is deactivated."""
        wf = db.session.get(Workflow, workflow_id)
        if wf is None:
            return None, _not_found("Workflow", workflow_id)
        if wf.is_active:
            return wf.to_dict(), None
        try:
            deactivated = _deactivate_others(wf)
            wf.is_active = True
            write_audit(
                entity_type="workflow", entity_id=wf.id, action="workflow.activate", actor=actor_id,
                diff={"deactivated": deactivated},
            )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageError("activate_workflow", workflow_id=workflow_id) from exc
        logger.info("Workflow activated", extra={"workflow_id": wf.id, "actor": actor_id})
        return wf.to_dict(), None

    def deactivate_workflow(self, workflow_id: int, actor_id: str | None = None):
        wf = db.session.get(Workflow, workflow_id)
        if wf is None:
            return None, _not_found("Workflow", workflow_id)
        if not wf.is_active:
            return wf.to_dict(), None
        try:
            wf.is_active = False
            write_audit(entity_type="workflow", entity_id=wf.id, action="workflow.deactivate", actor=actor_id)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageError("deactivate_workflow", workflow_id=workflow_id) from exc
        return wf.to_dict(), None

    def duplicate_workflow(self, workflow_id: int, new_name: str | None = None, actor_id: str | None = None):
        """Copy the live graph under fresh ids; the copy starts inactive."""
        wf = db.session.get(Workflow, workflow_id)
        if wf is None:
            return None, _not_found("Workflow", workflow_id)
        definition = wf.to_definition()
        payload = {
            "name": new_name if new_name is not None else f"{wf.name} (Copy)",
            "description": wf.description,
            "application_type": wf.application_type,
            # Old ids act as correlation tokens; the resolver assigns new ones
            "stages": [s.to_dict() for s in definition.stages],
            "transitions": [t.to_dict() for t in definition.transitions],
        }
        return self._create_workflow(payload, actor_id, duplicated_from=workflow_id)

    def delete_workflow(self, workflow_id: int, actor_id: str | None = None):
        wf = db.session.get(Workflow, workflow_id)
        if wf is None:
            return None, _not_found("Workflow", workflow_id)
        if wf.is_active:
            return None, ServiceError(
                E.CONFLICT_STATE, "Cannot delete an active workflow. Deactivate it first.",
                {"workflow_id": workflow_id},
            )
        in_use = db.session.execute(
            select(func.count(Application.id)).where(Application.workflow_id == wf.id)
        ).scalar_one()
        if in_use:
            return None, ServiceError(
                E.CONFLICT_STATE, "Cannot delete a workflow that has applications.",
                {"workflow_id": workflow_id, "applications": in_use},
            )
        try:
            write_audit(
                entity_type="workflow", entity_id=wf.id, action="workflow.delete", actor=actor_id,
                diff={"name": wf.name},
            )
            db.session.delete(wf)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageError("delete_workflow", workflow_id=workflow_id) from exc
        logger.info("Workflow deleted", extra={"workflow_id": workflow_id, "actor": actor_id})
        return {"deleted": workflow_id}, None

    # ── Applications ──────────────────────────────────────────────────────────

    def start_application(
        self,
        application_type: str,
        applicant_ref: str | None = None,
        facts: dict | None = None,
        actor_id: str | None = None,
    ):
        """Create an application on the active workflow at its initial stage."""
        if isinstance(application_type, str):
            application_type = application_type.strip()
        err = _check_application_type(application_type)
        if err:
            return None, err
        if facts is not None and not isinstance(facts, dict):
            return None, ServiceError(E.VALIDATION_INVALID, "Field 'facts' must be an object.", {"field": "facts"})
        if applicant_ref is not None and not isinstance(applicant_ref, str):
            return None, ServiceError(
                E.VALIDATION_INVALID, "Field 'applicant_ref' must be a string.", {"field": "applicant_ref"},
            )

        wf = db.session.execute(
            select(Workflow).where(
                Workflow.application_type == application_type, Workflow.is_active.is_(True),
            )
        ).scalars().first()
        if wf is None:
            return None, ServiceError(
                E.NOT_FOUND, f"No active workflow for application type '{application_type}'.",
                {"application_type": application_type},
            )
        definition = wf.to_definition()
        initial = definition.initial_stage()
        if initial is None:
            return None, ServiceError(
                E.CONFLICT_STATE, "Active workflow has no initial stage.", {"workflow_id": wf.id},
            )

        try:
            app_row = Application(
                workflow_id=wf.id,
                application_type=application_type,
                applicant_ref=applicant_ref,
                facts=dict(facts or {}),
                created_by=actor_id,
            )
            db.session.add(app_row)
            db.session.flush()

            history: list[HistoryEntry] = []
            first = HistoryEntry(
                application_id=app_row.id,
                stage_id=initial.id,
                entered_at=datetime.now(UTC),
                entered_by=Human(actor_id) if actor_id else SYSTEM,
            )
            appended = [self._append(app_row, history, first, automatic=False)]
            appended += self._run_automatic(app_row, definition, history, self.fact_provider.facts_for(app_row))
            write_audit(
                entity_type="application", entity_id=app_row.id, action="application.start", actor=actor_id,
                diff={"workflow_id": wf.id, "initial_stage_id": initial.id},
            )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("start_application failed", extra={"workflow_id": wf.id})
            raise StorageError("start_application", workflow_id=wf.id) from exc

        logger.info(
            "Application started", extra={"application_id": app_row.id, "workflow_id": wf.id, "actor": actor_id},
        )
        return self._finish(app_row, appended), None

    def get_application(self, application_id: int):
        app_row = db.session.get(Application, application_id)
        if app_row is None:
            return None, _not_found("Application", application_id)
        return app_row.to_dict(), None

    def get_status_history(self, application_id: int):
        app_row = db.session.get(Application, application_id)
        if app_row is None:
            return None, _not_found("Application", application_id)
        rows = self._status_rows(application_id)
        return {"application_id": application_id, "history": [r.to_dict() for r in rows]}, None

    def get_legal_next_steps(self, application_id: int, actor_id: str | None = None):
        """Legal transitions from the current stage, with per-actor permission info."""
        app_row = db.session.get(Application, application_id)
        if app_row is None:
            return None, _not_found("Application", application_id)

        definition = app_row.workflow.to_definition()
        history = [r.to_entry() for r in self._status_rows(application_id)]
        facts = self.fact_provider.facts_for(app_row)
        current = current_stage_id(history)
        legal = legal_transitions(definition, history, facts)
        perms = frozenset(self.permission_provider.permissions_for(actor_id)) if actor_id else None

        steps = []
        for t in legal:
            target = definition.stage(t.target_stage_id)
            step = {
                "transition": t.to_dict(),
                "target_stage": target.to_dict() if target else None,
            }
            if perms is not None:
                missing = sorted(t.required_permissions - perms)
                step["allowed"] = not missing
                step["missing_permissions"] = missing
            steps.append(step)

        legal_ids = {t.id for t in legal}
        blocked = [
            {
                "transition_id": t.id,
                "name": t.name,
                "failed_conditions": failing_conditions(t.conditions, facts),
            }
            for t in definition.outgoing(current or "")
            if t.id not in legal_ids
        ]
        stage = definition.stage(current) if current else None
        return {
            "application_id": application_id,
            "current_stage": stage.to_dict() if stage else None,
            "is_terminal": bool(current) and definition.is_terminal(current),
            "next_steps": steps,
            "blocked": blocked,
        }, None

    def advance_application(self, application_id: int, transition_id: str, actor_id: str | None):
        """Apply a manual transition, then chain automatic ones when enabled."""
        if transition_id is not None and not isinstance(transition_id, str):
            return None, ServiceError(
                E.VALIDATION_INVALID, "Field 'transition_id' must be a string.", {"field": "transition_id"},
            )
        transition_id = (transition_id or "").strip()
        if not transition_id:
            return None, ServiceError(
                E.VALIDATION_REQUIRED, "Field 'transition_id' is required.", {"field": "transition_id"},
            )
        if not actor_id:
            return None, ServiceError(
                E.VALIDATION_REQUIRED, "An acting user is required (X-User header).", {"field": "actor"},
            )

        log_extra = {"application_id": application_id, "transition_id": transition_id, "actor": actor_id}
        with _application_lock(application_id):
            try:
                app_row = self._load_for_update(application_id)
                if app_row is None:
                    return None, _not_found("Application", application_id)

                definition = app_row.workflow.to_definition()
                history = [r.to_entry() for r in self._status_rows(application_id)]
                facts = self.fact_provider.facts_for(app_row)
                actor = Actor(actor_id, frozenset(self.permission_provider.permissions_for(actor_id)))

                entry, rejection = apply_manual_transition(definition, history, transition_id, actor, facts)
                if rejection is not None:
                    db.session.rollback()
                    logger.info("Transition rejected: %s", rejection.code.value, extra=log_extra)
                    return None, _rejection_error(rejection)

                appended = [self._append(app_row, history, entry, automatic=False)]
                if self.auto_advance:
                    appended += self._run_automatic(app_row, definition, history, facts)
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                logger.warning("Concurrent advance detected", extra=log_extra)
                return None, ServiceError(
                    E.CONFLICT_STATE,
                    "The application was advanced concurrently; reload and retry.",
                    {"application_id": application_id},
                )
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.exception("advance_application failed", extra=log_extra)
                raise StorageError("advance_application", application_id=application_id) from exc

        logger.info("Application advanced", extra=log_extra)
        return self._finish(app_row, appended), None

    def tick_automatic(self, application_id: int):
        """Apply eligible automatic transitions until none qualifies."""
        with _application_lock(application_id):
            try:
                app_row = self._load_for_update(application_id)
                if app_row is None:
                    return None, _not_found("Application", application_id)
                definition = app_row.workflow.to_definition()
                history = [r.to_entry() for r in self._status_rows(application_id)]
                appended = self._run_automatic(
                    app_row, definition, history, self.fact_provider.facts_for(app_row),
                )
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                return None, ServiceError(
                    E.CONFLICT_STATE,
                    "The application was advanced concurrently; reload and retry.",
                    {"application_id": application_id},
                )
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.exception("tick_automatic failed", extra={"application_id": application_id})
                raise StorageError("tick_automatic", application_id=application_id) from exc

        return self._finish(app_row, appended), None

    def update_facts(self, application_id: int, facts: dict, actor_id: str | None = None):
        """Merge new facts into the application, then re-run automatic evaluation."""
        if not isinstance(facts, dict):
            return None, ServiceError(E.VALIDATION_INVALID, "Field 'facts' must be an object.", {"field": "facts"})

        with _application_lock(application_id):
            try:
                app_row = self._load_for_update(application_id)
                if app_row is None:
                    return None, _not_found("Application", application_id)
                merged = dict(app_row.facts or {})
                merged.update(facts)
                app_row.facts = merged
                write_audit(
                    entity_type="application", entity_id=app_row.id, action="application.facts_updated",
                    actor=actor_id, diff={"facts": facts},
                )
                db.session.flush()

                definition = app_row.workflow.to_definition()
                history = [r.to_entry() for r in self._status_rows(application_id)]
                appended = self._run_automatic(
                    app_row, definition, history, self.fact_provider.facts_for(app_row),
                )
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                return None, ServiceError(
                    E.CONFLICT_STATE,
                    "The application was advanced concurrently; reload and retry.",
                    {"application_id": application_id},
                )
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.exception("update_facts failed", extra={"application_id": application_id})
                raise StorageError("update_facts", application_id=application_id) from exc

        return self._finish(app_row, appended), None

    # ── Internals ─────────────────────────────────────────────────────────────

    @staticmethod
    def _load_for_update(application_id: int) -> Application | None:
        stmt = (
            select(Application)
            .where(Application.id == application_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _status_rows(application_id: int) -> list[ApplicationStatus]:
        return list(db.session.execute(
            select(ApplicationStatus)
            .where(ApplicationStatus.application_id == application_id)
            .order_by(ApplicationStatus.position)
        ).scalars().all())

    @staticmethod
    def _append(
        app_row: Application,
        history: list[HistoryEntry],
        entry: HistoryEntry,
        automatic: bool,
    ) -> tuple[ApplicationStatus, StatusChanged]:
        """Persist *entry* as the next history row (flush only) and extend *history*."""
        previous = current_stage_id(history)
        row = ApplicationStatus.from_entry(app_row.id, len(history), entry)
        db.session.add(row)
        app_row.current_stage_id = entry.stage_id
        db.session.flush()
        history.append(entry)
        fact = StatusChanged(
            application_id=app_row.id,
            previous_stage_id=previous,
            new_stage_id=entry.stage_id,
            transition_id=entry.transition_id,
            occurred_at=entry.entered_at,
            entered_by=entry.entered_by,
            automatic=automatic,
            applicant_ref=app_row.applicant_ref,
        )
        return row, fact

    def _run_automatic(
        self,
        app_row: Application,
        definition: WorkflowDefinition,
        history: list[HistoryEntry],
        facts,
    ) -> list[tuple[ApplicationStatus, StatusChanged]]:
        appended = []
        # An acyclic graph cannot take more automatic steps than it has stages
        for _ in range(len(definition.stages)):
            outcome = evaluate_automatic_transitions(definition, history, facts)
            if outcome is None:
                break
            if outcome.ambiguous:
                logger.warning(
                    "Ambiguous automatic transitions %s; applied %s",
                    list(outcome.ambiguous_candidates), outcome.transition.id,
                    extra={
                        "application_id": app_row.id,
                        "workflow_id": definition.id,
                        "stage_id": outcome.transition.source_stage_id,
                        "transition_id": outcome.transition.id,
                    },
                )
                write_audit(
                    entity_type="application",
                    entity_id=app_row.id,
                    action="workflow.automatic_ambiguity",
                    diff={
                        "workflow_id": definition.id,
                        "stage_id": outcome.transition.source_stage_id,
                        "candidates": list(outcome.ambiguous_candidates),
                        "chosen": outcome.transition.id,
                    },
                )
            appended.append(self._append(app_row, history, outcome.entry, automatic=True))
        return appended

    def _publish(self, facts: list[StatusChanged]) -> None:
        for fact in facts:
            for sink in self.sinks:
                try:
                    sink.publish(fact)
                except Exception:
                    db.session.rollback()
                    logger.exception(
                        "Status change sink %s failed", type(sink).__name__,
                        extra={"application_id": fact.application_id},
                    )

    def _finish(self, app_row: Application, appended) -> dict:
        """Publish after commit and build the operation result."""
        self._publish([fact for _, fact in appended])
        return {
            "application": app_row.to_dict(),
            "entries": [row.to_dict() for row, _ in appended],
            "changes": [fact.to_dict() for _, fact in appended],
        }


def get_workflow_service() -> WorkflowService:
    """Service instance registered on the current app by create_app()."""
    return current_app.extensions["workflow_service"]
