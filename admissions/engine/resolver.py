"""
Submission resolver — maps client correlation tokens to engine stage ids.

A workflow is submitted as one payload of stages and transitions. Stages
that do not exist yet have no engine id, so transitions reference them by a
client-local token:

    - the stage's ``temp_id`` (editor-assigned),
    - the stage's array index as a string ("0", "1", ...),
    - or, on update, the stage's stable ``id``.

Resolution runs *before* graph validation and is kept out of the validator:
every stage receives an engine id, and transition endpoints are rewritten to
those ids. Tokens that match nothing are passed through untouched so the
validator reports them as dangling references. A token claimed by more than
one stage is reported as ``duplicate_stage_token`` and left unresolved.

Only ids already owned by the workflow being updated are reused; any other
submitted ``id`` is treated as a correlation token and a fresh id is
generated, so one workflow can never claim another workflow's rows.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from admissions.engine.types import Stage, Transition, ValidationIssue


def _new_id() -> str:
    return str(uuid.uuid4())


def _as_tuple(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def _as_sequence(value: Any) -> Any:
    """Coerce digit strings to int; anything else is left for the validator."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return value


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _role_id(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Submission:
    stages: list[Stage] = field(default_factory=list)
    transitions: list[Transition] = field(default_factory=list)
    # client token -> engine stage id
    token_map: dict[str, str] = field(default_factory=dict)
    # Resolution problems reported ahead of graph validation
    issues: list[ValidationIssue] = field(default_factory=list)


def resolve_submission(
    stages_payload: Iterable[dict] | None,
    transitions_payload: Iterable[dict] | None,
    existing_stage_ids: Iterable[str] = (),
    existing_transition_ids: Iterable[str] = (),
    id_factory: Callable[[], str] = _new_id,
) -> Submission:
    """Assign engine ids and rewrite transition endpoints.

    Args:
        stages_payload: Raw stage dicts as submitted.
        transitions_payload: Raw transition dicts as submitted.
        existing_stage_ids: Stage ids owned by the workflow being updated
            (empty on create).
        existing_transition_ids: Transition ids owned by that workflow.
        id_factory: Generates new engine ids.

    Returns:
        Submission with typed Stage / Transition objects, the token map and
        any ``duplicate_stage_token`` issues.
    """
    reusable_stages = {str(i) for i in existing_stage_ids}
    reusable_transitions = {str(i) for i in existing_transition_ids}
    submission = Submission()
    claimed: set[str] = set()
    # explicit token -> [(stage index, payload key)]
    owners: dict[str, list[tuple[int, str]]] = {}

    for index, raw in enumerate(stages_payload or []):
        raw = raw if isinstance(raw, dict) else {}
        submitted_id = _text(raw.get("id"))
        if submitted_id and submitted_id in reusable_stages and submitted_id not in claimed:
            stage_id = submitted_id
        else:
            stage_id = id_factory()
        claimed.add(stage_id)

        # Index first so explicit tokens win on collisions.
        submission.token_map.setdefault(str(index), stage_id)
        for key, token in (("id", submitted_id), ("temp_id", _text(raw.get("temp_id")))):
            if token:
                submission.token_map[token] = stage_id
                claims = owners.setdefault(token, [])
                if all(i != index for i, _ in claims):
                    claims.append((index, key))

        submission.stages.append(Stage(
            id=stage_id,
            name=_text(raw.get("name")),
            sequence=_as_sequence(raw.get("sequence")),
            description=raw.get("description"),
            required_document_types=_as_tuple(
                raw.get("required_document_types", raw.get("required_documents"))
            ),
            required_actions=_as_tuple(raw.get("required_actions")),
            notification_triggers=_as_tuple(raw.get("notification_triggers")),
            assigned_role_id=_role_id(raw.get("assigned_role_id")),
        ))

    for token, claims in owners.items():
        if len(claims) < 2:
            continue
        # Ambiguous tokens resolve to nothing; transitions using them dangle
        submission.token_map.pop(token, None)
        for index, key in claims[1:]:
            submission.issues.append(ValidationIssue(
                code="duplicate_stage_token",
                message=f"Stage reference '{token}' is used by more than one stage.",
                field=f"stages.{index}.{key}",
                stage_ids=tuple(submission.stages[i].id for i, _ in claims),
            ))

    used_transition_ids: set[str] = set()
    for raw in transitions_payload or []:
        raw = raw if isinstance(raw, dict) else {}
        submitted_id = _text(raw.get("id"))
        if submitted_id and submitted_id in reusable_transitions and submitted_id not in used_transition_ids:
            transition_id = submitted_id
        else:
            transition_id = id_factory()
        used_transition_ids.add(transition_id)

        source = _text(raw.get("source_stage_id"))
        target = _text(raw.get("target_stage_id"))
        submission.transitions.append(Transition(
            id=transition_id,
            source_stage_id=submission.token_map.get(source, source),
            target_stage_id=submission.token_map.get(target, target),
            name=_text(raw.get("name")),
            description=raw.get("description"),
            conditions=_as_tuple(raw.get("conditions", raw.get("transition_conditions"))),
            required_permissions=frozenset(
                str(p) for p in _as_tuple(raw.get("required_permissions")) if p
            ),
            is_automatic=_as_bool(raw.get("is_automatic", False)),
        ))

    return submission
