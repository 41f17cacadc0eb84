"""
Structural validation of workflow graphs.

Covers cycle rejection, sequence uniqueness, the initial-stage guarantee,
reference and field checks, and the non-blocking warnings.
"""

import pytest

from admissions.engine.graph_validator import find_cycles, validate
from admissions.engine.types import Stage, Transition


def _stages(*entries):
    """entries: (id, sequence) or (id, sequence, name)."""
    out = []
    for entry in entries:
        sid, seq = entry[0], entry[1]
        name = entry[2] if len(entry) > 2 else sid.upper()
        out.append(Stage(id=sid, name=name, sequence=seq))
    return out


def _edge(tid, source, target, **kw):
    return Transition(id=tid, source_stage_id=source, target_stage_id=target, name=kw.pop("name", tid), **kw)


def _codes(issues):
    return [i.code for i in issues]


class TestCycleRejection:
    @pytest.mark.parametrize("length", [2, 3, 5])
    def test_cycle_of_any_length_is_rejected(self, length):
        ids = [f"s{i}" for i in range(length)]
        stages = _stages(*[(sid, i + 1) for i, sid in enumerate(ids)])
        edges = [_edge(f"t{i}", ids[i], ids[(i + 1) % length]) for i in range(length)]

        result = validate(stages, edges)

        assert not result.ok
        cycles = [e for e in result.errors if e.code == "cycle"]
        assert len(cycles) == 1
        assert cycles[0].cycle[0] == cycles[0].cycle[-1]
        assert set(cycles[0].stage_ids) == set(ids)

    def test_acyclic_diamond_has_no_cycle_errors(self):
        stages = _stages(("a", 1), ("b", 2), ("c", 3), ("d", 4))
        edges = [_edge("t1", "a", "b"), _edge("t2", "a", "c"), _edge("t3", "b", "d"), _edge("t4", "c", "d")]

        result = validate(stages, edges)

        assert result.ok
        assert "cycle" not in _codes(result.errors)

    def test_cycle_behind_acyclic_prefix(self):
        stages = _stages(("a", 1), ("b", 2), ("c", 3))
        edges = [_edge("t1", "a", "b"), _edge("t2", "b", "c"), _edge("t3", "c", "b")]

        result = validate(stages, edges)

        cycle = next(e for e in result.errors if e.code == "cycle")
        assert list(cycle.cycle) == ["b", "c", "b"]

    def test_find_cycles_on_indexed_adjacency(self):
        assert find_cycles(3, [[1], [2], []]) == []
        assert find_cycles(2, [[1], [0]]) == [[0, 1, 0]]


class TestLongChains:
    LENGTH = 5000

    def _chain(self):
        ids = [f"s{i}" for i in range(self.LENGTH)]
        stages = _stages(*[(sid, i + 1) for i, sid in enumerate(ids)])
        edges = [_edge(f"t{i}", ids[i], ids[i + 1]) for i in range(self.LENGTH - 1)]
        return ids, stages, edges

    def test_long_chain_validates(self):
        _, stages, edges = self._chain()

        result = validate(stages, edges)

        assert result.ok
        assert result.warnings == ()

    def test_back_edge_on_long_chain_is_a_single_cycle(self):
        ids, stages, edges = self._chain()
        edges.append(_edge("back", ids[-1], ids[0]))

        result = validate(stages, edges)

        assert _codes(result.errors) == ["cycle"]
        assert len(result.errors[0].cycle) == self.LENGTH + 1
        assert result.errors[0].cycle[0] == result.errors[0].cycle[-1] == "s0"


class TestSequences:
    def test_duplicate_sequence_reported_regardless_of_other_errors(self):
        stages = [Stage(id="a", name="", sequence=1), Stage(id="b", name="B", sequence=1)]
        edges = [_edge("t1", "a", "ghost")]

        result = validate(stages, edges)

        assert _codes(result.errors).count("duplicate_sequence") == 1
        dup = next(e for e in result.errors if e.code == "duplicate_sequence")
        assert set(dup.stage_ids) == {"a", "b"}

    @pytest.mark.parametrize("sequence", [0, -1, "one", None, 1.5, True])
    def test_invalid_sequence(self, sequence):
        result = validate([Stage(id="a", name="A", sequence=sequence)], [])
        assert "invalid_sequence" in _codes(result.errors)

    def test_rejected_submission_scenario(self):
        """Duplicate sequence plus a valid edge: one sequence error, no cycle error."""
        stages = _stages(("a", 1, "A"), ("b", 1, "B"))
        result = validate(stages, [_edge("t1", "a", "b")])

        assert not result.ok
        assert _codes(result.errors).count("duplicate_sequence") == 1
        assert "cycle" not in _codes(result.errors)


class TestInitialStage:
    def test_no_initial_stage_when_all_have_incoming_and_none_is_sequence_one(self):
        stages = _stages(("a", 2), ("b", 3), ("c", 4))
        edges = [_edge("t1", "a", "b"), _edge("t2", "b", "c"), _edge("t3", "c", "a")]

        result = validate(stages, edges)

        assert "no_initial_stage" in _codes(result.errors)

    def test_sequence_one_counts_as_initial_even_with_incoming_edge(self):
        stages = _stages(("a", 1), ("b", 2))
        result = validate(stages, [_edge("t1", "b", "a")])

        assert "no_initial_stage" not in _codes(result.errors)

    def test_empty_workflow(self):
        result = validate([], [])
        assert _codes(result.errors) == ["empty_workflow"]


class TestFieldAndReferenceChecks:
    def test_complete_issue_list_in_one_pass(self):
        stages = [
            Stage(id="a", name="Same", sequence=1),
            Stage(id="b", name="same", sequence=2),
            Stage(id="c", name="x" * 101, sequence=3),
        ]
        edges = [
            _edge("t1", "a", "missing"),
            _edge("t2", "b", "b"),
            _edge("t3", "a", "c", conditions=({"field": "gpa", "operator": "??", "value": 1},)),
            _edge("t4", "a", "b", name=""),
        ]

        codes = _codes(validate(stages, edges).errors)

        for expected in (
            "duplicate_stage_name",
            "stage_name_too_long",
            "unknown_stage_reference",
            "self_loop",
            "invalid_condition",
            "transition_name_required",
        ):
            assert expected in codes

    def test_issue_carries_field_path(self):
        result = validate(_stages(("a", 1)), [_edge("t1", "a", "nowhere")])
        issue = result.errors[0]
        assert issue.field == "transitions.0.target_stage_id"
        assert issue.transition_id == "t1"


class TestWarnings:
    def test_ambiguous_unconditional_automatic_edges(self):
        stages = _stages(("a", 1), ("b", 2), ("c", 3))
        edges = [_edge("t2", "a", "b", is_automatic=True), _edge("t1", "a", "c", is_automatic=True)]

        result = validate(stages, edges)

        assert result.ok
        warning = next(w for w in result.warnings if w.code == "ambiguous_automatic")
        assert warning.transition_id == "t1"

    def test_unreachable_stage_warning(self):
        stages = _stages(("a", 1), ("b", 2), ("island", 3))
        result = validate(stages, [_edge("t1", "a", "b"), _edge("t2", "island", "b")])

        assert result.ok
        assert [w.stage_ids for w in result.warnings if w.code == "unreachable_stage"] == [("island",)]

    def test_to_dict_shape(self):
        data = validate(_stages(("a", 1), ("b", 1)), []).to_dict()
        assert data["ok"] is False
        assert data["errors"][0]["code"] == "duplicate_sequence"
        assert data["errors"][0]["stage_ids"] == ["a", "b"]
        assert [w["code"] for w in data["warnings"]] == ["unreachable_stage"]
