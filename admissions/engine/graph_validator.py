"""
GraphValidator — structural checks for a submitted workflow graph.

``validate(stages, transitions)`` runs every check and returns one
ValidationResult holding the complete error list, so an editor can fix all
issues in a single round trip. Malformed input is expected traffic: the
validator never raises for it.

Errors:
    empty_workflow           no stages submitted
    stage_name_required      blank stage name
    stage_name_too_long      stage name longer than MAX_NAME_LENGTH
    duplicate_stage_name     same name on two or more stages
    invalid_sequence         sequence is not a positive integer
    duplicate_sequence       same sequence on two or more stages
    transition_name_required / transition_name_too_long
    unknown_stage_reference  transition endpoint not in the stage set
    self_loop                source == target
    invalid_condition        malformed condition entry
    cycle                    a stage is reachable from itself
    no_initial_stage         every stage has an incoming edge and none has sequence 1

Warnings (never affect ``ok``):
    ambiguous_automatic      two or more unconditional automatic edges leave one stage
    unreachable_stage        stage cannot be reached from the designated initial stage

The graph is held in flat indexed containers: stages are addressed by
their index in the submitted list and DFS colours live in a parallel list.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence

from admissions.engine.conditions import is_valid_condition
from admissions.engine.types import Stage, Transition, ValidationIssue, ValidationResult

MAX_NAME_LENGTH = 100

UNVISITED = 0
IN_PROGRESS = 1
DONE = 2


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


# ── Individual checks ────────────────────────────────────────────────────────


def _check_stage_fields(stages: Sequence[Stage]) -> list[ValidationIssue]:
    errors: list[ValidationIssue] = []
    by_name: dict[str, list[int]] = defaultdict(list)

    for i, stage in enumerate(stages):
        name = (stage.name or "").strip()
        if not name:
            errors.append(ValidationIssue(
                code="stage_name_required",
                message="Each stage must have a name.",
                field=f"stages.{i}.name",
                stage_ids=(stage.id,),
            ))
        elif len(name) > MAX_NAME_LENGTH:
            errors.append(ValidationIssue(
                code="stage_name_too_long",
                message=f"Stage name must be at most {MAX_NAME_LENGTH} characters.",
                field=f"stages.{i}.name",
                stage_ids=(stage.id,),
            ))
        if name:
            by_name[name.lower()].append(i)

    for indexes in by_name.values():
        if len(indexes) > 1:
            errors.append(ValidationIssue(
                code="duplicate_stage_name",
                message=f"Stage name '{stages[indexes[0]].name}' is used by {len(indexes)} stages.",
                field=f"stages.{indexes[1]}.name",
                stage_ids=tuple(stages[i].id for i in indexes),
            ))
    return errors


def _check_sequences(stages: Sequence[Stage]) -> list[ValidationIssue]:
    errors: list[ValidationIssue] = []
    by_sequence: dict[int, list[int]] = defaultdict(list)

    for i, stage in enumerate(stages):
        if not _is_positive_int(stage.sequence):
            errors.append(ValidationIssue(
                code="invalid_sequence",
                message="Stage sequence must be an integer of 1 or greater.",
                field=f"stages.{i}.sequence",
                stage_ids=(stage.id,),
            ))
            continue
        by_sequence[stage.sequence].append(i)

    for sequence, indexes in sorted(by_sequence.items()):
        if len(indexes) > 1:
            names = ", ".join(repr(stages[i].name) for i in indexes)
            errors.append(ValidationIssue(
                code="duplicate_sequence",
                message=f"Sequence {sequence} is shared by stages {names}; sequence numbers must be unique.",
                field=f"stages.{indexes[1]}.sequence",
                stage_ids=tuple(stages[i].id for i in indexes),
            ))
    return errors


def _check_transitions(
    transitions: Sequence[Transition],
    index_of: dict[str, int],
) -> tuple[list[ValidationIssue], list[tuple[int, int]]]:
    """Reference, self-loop, name and condition checks.

    Returns the errors and the edge list (as stage index pairs) of every
    transition whose endpoints both resolved and differ.
    """
    errors: list[ValidationIssue] = []
    edges: list[tuple[int, int]] = []

    for i, t in enumerate(transitions):
        name = (t.name or "").strip()
        if not name:
            errors.append(ValidationIssue(
                code="transition_name_required",
                message="Each transition must have a name.",
                field=f"transitions.{i}.name",
                transition_id=t.id,
            ))
        elif len(name) > MAX_NAME_LENGTH:
            errors.append(ValidationIssue(
                code="transition_name_too_long",
                message=f"Transition name must be at most {MAX_NAME_LENGTH} characters.",
                field=f"transitions.{i}.name",
                transition_id=t.id,
            ))

        resolved = True
        for end in ("source_stage_id", "target_stage_id"):
            ref = getattr(t, end)
            if ref not in index_of:
                resolved = False
                label = "source" if end == "source_stage_id" else "target"
                errors.append(ValidationIssue(
                    code="unknown_stage_reference",
                    message=f"The {label} stage '{ref}' does not exist in the stages array.",
                    field=f"transitions.{i}.{end}",
                    transition_id=t.id,
                ))

        if t.source_stage_id == t.target_stage_id:
            errors.append(ValidationIssue(
                code="self_loop",
                message="Source and target stages must be different.",
                field=f"transitions.{i}.target_stage_id",
                stage_ids=(t.source_stage_id,),
                transition_id=t.id,
            ))
        elif resolved:
            edges.append((index_of[t.source_stage_id], index_of[t.target_stage_id]))

        for j, condition in enumerate(t.conditions):
            if not is_valid_condition(condition):
                errors.append(ValidationIssue(
                    code="invalid_condition",
                    message="Condition must be a name or an object with field, operator and value.",
                    field=f"transitions.{i}.conditions.{j}",
                    transition_id=t.id,
                ))

    return errors, edges


def find_cycles(node_count: int, adjacency: list[list[int]]) -> list[list[int]]:
    """Iterative three-colour DFS.

    Returns one stage-index path per back edge found; each path starts and
    ends at the same node (``[a, b, c, a]``).
    """
    colour = [UNVISITED] * node_count
    cycles: list[list[int]] = []

    for root in range(node_count):
        if colour[root] != UNVISITED:
            continue
        # Frames are (node, index of next neighbour to visit).
        stack: list[list[int]] = [[root, 0]]
        path: list[int] = [root]
        colour[root] = IN_PROGRESS

        while stack:
            frame = stack[-1]
            node, next_i = frame
            if next_i < len(adjacency[node]):
                frame[1] += 1
                neighbour = adjacency[node][next_i]
                if colour[neighbour] == UNVISITED:
                    colour[neighbour] = IN_PROGRESS
                    stack.append([neighbour, 0])
                    path.append(neighbour)
                elif colour[neighbour] == IN_PROGRESS:
                    start = path.index(neighbour)
                    cycles.append(path[start:] + [neighbour])
            else:
                colour[node] = DONE
                stack.pop()
                path.pop()

    return cycles


def _check_cycles(stages: Sequence[Stage], edges: list[tuple[int, int]]) -> list[ValidationIssue]:
    adjacency: list[list[int]] = [[] for _ in stages]
    for source, target in edges:
        adjacency[source].append(target)

    errors = []
    for cycle in find_cycles(len(stages), adjacency):
        names = " -> ".join(stages[i].name or stages[i].id for i in cycle)
        errors.append(ValidationIssue(
            code="cycle",
            message=f"Circular transitions detected: {names}. Transitions cannot form loops.",
            field="transitions",
            stage_ids=tuple(dict.fromkeys(stages[i].id for i in cycle)),
            cycle=tuple(stages[i].id for i in cycle),
        ))
    return errors


def _initial_candidates(stages: Sequence[Stage], edges: list[tuple[int, int]]) -> list[int]:
    has_incoming = [False] * len(stages)
    for _, target in edges:
        has_incoming[target] = True
    return [i for i, s in enumerate(stages) if not has_incoming[i] or s.sequence == 1]


def _designated_initial(stages: Sequence[Stage], candidates: list[int]) -> int | None:
    ranked = [i for i in candidates if _is_positive_int(stages[i].sequence)]
    if not ranked:
        return candidates[0] if candidates else None
    return min(ranked, key=lambda i: stages[i].sequence)


# ── Warnings ─────────────────────────────────────────────────────────────────


def _ambiguous_automatic(stages: Sequence[Stage], transitions: Sequence[Transition]) -> list[ValidationIssue]:
    by_source: dict[str, list[Transition]] = defaultdict(list)
    for t in transitions:
        if t.is_automatic and not t.conditions and t.source_stage_id != t.target_stage_id:
            by_source[t.source_stage_id].append(t)

    names = {s.id: s.name for s in stages}
    warnings = []
    for source, group in by_source.items():
        if len(group) > 1:
            warnings.append(ValidationIssue(
                code="ambiguous_automatic",
                message=(
                    f"Stage '{names.get(source, source)}' has {len(group)} unconditional automatic "
                    "transitions; the lowest transition id will always be taken."
                ),
                field="transitions",
                stage_ids=(source,),
                transition_id=min(t.id for t in group),
            ))
    return warnings


def _unreachable(stages: Sequence[Stage], edges: list[tuple[int, int]], start: int) -> list[ValidationIssue]:
    adjacency: list[list[int]] = [[] for _ in stages]
    for source, target in edges:
        adjacency[source].append(target)

    seen = [False] * len(stages)
    seen[start] = True
    stack = [start]
    while stack:
        node = stack.pop()
        for neighbour in adjacency[node]:
            if not seen[neighbour]:
                seen[neighbour] = True
                stack.append(neighbour)

    return [
        ValidationIssue(
            code="unreachable_stage",
            message=f"Stage '{stages[i].name}' cannot be reached from the initial stage '{stages[start].name}'.",
            field=f"stages.{i}",
            stage_ids=(stages[i].id,),
        )
        for i in range(len(stages))
        if not seen[i]
    ]


# ── Entry point ──────────────────────────────────────────────────────────────


def validate(stages: Sequence[Stage], transitions: Sequence[Transition]) -> ValidationResult:
    """Validate a complete candidate graph. Pure; safe to call concurrently."""
    stages = list(stages or ())
    transitions = list(transitions or ())

    if not stages:
        return ValidationResult(errors=(ValidationIssue(
            code="empty_workflow",
            message="At least one stage is required for the workflow.",
            field="stages",
        ),))

    index_of: dict[str, int] = {}
    for i, stage in enumerate(stages):
        index_of.setdefault(stage.id, i)

    errors: list[ValidationIssue] = []
    errors += _check_stage_fields(stages)
    errors += _check_sequences(stages)
    transition_errors, edges = _check_transitions(transitions, index_of)
    errors += transition_errors
    errors += _check_cycles(stages, edges)

    candidates = _initial_candidates(stages, edges)
    if not candidates:
        errors.append(ValidationIssue(
            code="no_initial_stage",
            message=(
                "The workflow must have at least one initial stage with no incoming "
                "transitions or with sequence 1."
            ),
            field="stages",
        ))

    warnings = _ambiguous_automatic(stages, transitions)
    initial = _designated_initial(stages, candidates)
    if initial is not None and not any(e.code == "cycle" for e in errors):
        warnings += _unreachable(stages, edges, initial)

    return ValidationResult(errors=tuple(errors), warnings=tuple(warnings))
