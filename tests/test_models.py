import pytest

from examflow.models import (
    Actor,
    Capability,
    ExamRecord,
    Role,
    Stage,
    StageSubmission,
    next_stage,
)
from tests.support import exam_document


def test_stage_parse_accepts_value_name_and_member():
    assert Stage.parse("Recording") is Stage.RECORDING
    assert Stage.parse("recording") is Stage.RECORDING
    assert Stage.parse(Stage.ANALYSIS) is Stage.ANALYSIS
    with pytest.raises(ValueError):
        Stage.parse("Archived")


def test_next_stage_walks_the_fixed_order():
    assert next_stage(Stage.PENDING) is Stage.OBSERVATION
    assert next_stage(Stage.INTERPRETATION) is Stage.COMPLETED
    assert next_stage(Stage.COMPLETED) is None


def test_actor_document_round_trip_ignores_unknown_capabilities():
    doc = {
        "id": "u1",
        "displayName": "Uma",
        "role": "technician",
        "capabilities": {"record": True, "observe": False, "teleport": True},
    }
    actor = Actor.from_document(doc)
    assert actor.role is Role.TECHNICIAN
    assert actor.capabilities == frozenset({Capability.RECORD})
    assert Actor.from_document(actor.to_document()) == actor


def test_actor_with_unknown_role_is_rejected():
    with pytest.raises(ValueError):
        Actor.from_document({"id": "u2", "role": "janitor"})


def test_exam_record_latest_submission_wins():
    record = ExamRecord.from_document(exam_document(stage=Stage.OBSERVATION))
    first = StageSubmission("exam-1", Stage.OBSERVATION, {"id": "a"}, "t1", {"reason": "a"}, id="s1")
    second = StageSubmission("exam-1", Stage.OBSERVATION, {"id": "a"}, "t2", {"reason": "b"}, id="s2")
    record.submissions.extend([first, second])

    assert record.submission_for(Stage.OBSERVATION) is second
    assert record.submission_for(Stage.RECORDING) is None

    restored = ExamRecord.from_document(record.to_document())
    assert [item.id for item in restored.submissions] == ["s1", "s2"]
    assert restored.submissions[0].record_id == "exam-1"
