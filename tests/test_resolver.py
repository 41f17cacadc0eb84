"""Client token resolution ahead of graph validation."""

import itertools

from admissions.engine.graph_validator import validate
from admissions.engine.resolver import resolve_submission


def _ids():
    counter = itertools.count(1)
    return lambda: f"gen-{next(counter)}"


class TestResolveSubmission:
    def test_temp_ids_are_rewritten_to_engine_ids(self):
        sub = resolve_submission(
            [{"temp_id": "a", "name": "A", "sequence": 1}, {"temp_id": "b", "name": "B", "sequence": 2}],
            [{"source_stage_id": "a", "target_stage_id": "b", "name": "Go"}],
            id_factory=_ids(),
        )
        assert [s.id for s in sub.stages] == ["gen-1", "gen-2"]
        t = sub.transitions[0]
        assert (t.source_stage_id, t.target_stage_id) == ("gen-1", "gen-2")
        assert t.id == "gen-3"

    def test_array_index_tokens_resolve(self):
        sub = resolve_submission(
            [{"name": "A", "sequence": 1}, {"name": "B", "sequence": 2}],
            [{"source_stage_id": "0", "target_stage_id": "1", "name": "Go"}],
            id_factory=_ids(),
        )
        assert sub.transitions[0].source_stage_id == sub.stages[0].id
        assert sub.transitions[0].target_stage_id == sub.stages[1].id

    def test_existing_ids_are_reused_on_update(self):
        sub = resolve_submission(
            [{"id": "stage-1", "name": "A", "sequence": 1}, {"temp_id": "new", "name": "B", "sequence": 2}],
            [{"id": "tr-1", "source_stage_id": "stage-1", "target_stage_id": "new", "name": "Go"}],
            existing_stage_ids=["stage-1"],
            existing_transition_ids=["tr-1"],
            id_factory=_ids(),
        )
        assert sub.stages[0].id == "stage-1"
        assert sub.stages[1].id == "gen-1"
        assert sub.transitions[0].id == "tr-1"

    def test_foreign_ids_are_not_claimed(self):
        sub = resolve_submission(
            [{"id": "someone-elses", "name": "A", "sequence": 1}],
            [],
            existing_stage_ids=["mine"],
            id_factory=_ids(),
        )
        assert sub.stages[0].id == "gen-1"
        assert sub.token_map["someone-elses"] == "gen-1"

    def test_unknown_tokens_pass_through_for_the_validator(self):
        sub = resolve_submission(
            [{"temp_id": "a", "name": "A", "sequence": 1}],
            [{"source_stage_id": "a", "target_stage_id": "ghost", "name": "Go"}],
            id_factory=_ids(),
        )
        assert sub.transitions[0].target_stage_id == "ghost"

    def test_field_coercion(self):
        sub = resolve_submission(
            [{"name": " A ", "sequence": "2", "required_documents": ["transcript"]}],
            [{"source_stage_id": "0", "target_stage_id": "0", "name": "x",
              "is_automatic": "true", "required_permissions": "committee"}],
            id_factory=_ids(),
        )
        stage = sub.stages[0]
        assert stage.name == "A"
        assert stage.sequence == 2
        assert stage.required_document_types == ("transcript",)
        t = sub.transitions[0]
        assert t.is_automatic is True
        assert t.required_permissions == frozenset({"committee"})

    def test_duplicate_tokens_are_reported_and_left_unresolved(self):
        sub = resolve_submission(
            [
                {"temp_id": "x", "name": "A", "sequence": 1},
                {"temp_id": "x", "name": "B", "sequence": 2},
                {"temp_id": "c", "name": "C", "sequence": 3},
            ],
            [{"source_stage_id": "x", "target_stage_id": "c", "name": "Go"}],
            id_factory=_ids(),
        )

        assert [i.code for i in sub.issues] == ["duplicate_stage_token"]
        issue = sub.issues[0]
        assert issue.field == "stages.1.temp_id"
        assert issue.stage_ids == ("gen-1", "gen-2")
        assert "x" not in sub.token_map
        assert sub.transitions[0].source_stage_id == "x"
        assert sub.transitions[0].target_stage_id == "gen-3"

        result = validate(sub.stages, sub.transitions)
        assert "unknown_stage_reference" in result.codes()

    def test_id_and_temp_id_collisions_across_stages(self):
        sub = resolve_submission(
            [
                {"id": "shared", "name": "A", "sequence": 1},
                {"temp_id": "shared", "name": "B", "sequence": 2},
            ],
            [],
            id_factory=_ids(),
        )
        assert [(i.code, i.field) for i in sub.issues] == [("duplicate_stage_token", "stages.1.temp_id")]

    def test_same_stage_may_repeat_its_own_token(self):
        sub = resolve_submission(
            [{"id": "s1", "temp_id": "s1", "name": "A", "sequence": 1}],
            [],
            existing_stage_ids=["s1"],
            id_factory=_ids(),
        )
        assert sub.issues == []
        assert sub.token_map["s1"] == "s1"
