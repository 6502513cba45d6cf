import pytest

from examflow.models import EXAMS, SUBMISSIONS, Stage
from examflow.reconcile import find_orphan_submissions, repair_orphans
from examflow.workflow import WorkflowEngine
from tests.support import NURSE, STAGE_PAYLOADS, TECHNICIAN, exam_document, run


def _orphan(store, monkeypatch, record_id="exam-1", stage=Stage.PENDING):
    run(store.create(EXAMS, exam_document(record_id, stage)))
    engine = WorkflowEngine(store)
    record = run(engine.load(record_id))
    original = store.update

    async def broken(collection, doc_id, partial):
        raise RuntimeError("lost connection")

    monkeypatch.setattr(store, "update", broken)
    with pytest.raises(Exception):
        run(engine.transition(record, NURSE, Stage.OBSERVATION, STAGE_PAYLOADS[Stage.OBSERVATION]))
    monkeypatch.setattr(store, "update", original)


def test_attached_submissions_are_not_orphans(store):
    run(store.create(EXAMS, exam_document()))
    engine = WorkflowEngine(store)
    record = run(engine.load("exam-1"))
    run(engine.transition(record, NURSE, Stage.OBSERVATION, STAGE_PAYLOADS[Stage.OBSERVATION]))
    assert run(find_orphan_submissions(store)) == []


def test_orphan_is_found_and_repaired(store, monkeypatch):
    _orphan(store, monkeypatch)

    orphans = run(find_orphan_submissions(store))
    assert len(orphans) == 1
    assert orphans[0].repairable
    assert orphans[0].to_dict()["recordStage"] == "Pending"

    repaired = run(repair_orphans(store, orphans, clock=lambda: "2024-04-04T00:00:00.000Z"))
    assert repaired == [orphans[0].submission.id]
    doc = run(store.get_by_id(EXAMS, "exam-1"))
    assert doc["currentStage"] == "Observation"
    assert doc["lastUpdatedBy"] == NURSE.id
    assert [item["id"] for item in doc["submissions"]] == repaired
    assert run(find_orphan_submissions(store)) == []


def test_orphan_made_stale_by_later_progress_is_not_repaired(store, monkeypatch):
    _orphan(store, monkeypatch)
    orphans = run(find_orphan_submissions(store))
    run(store.update(EXAMS, "exam-1", {"currentStage": "Recording"}))

    assert run(repair_orphans(store, orphans)) == []
    refreshed = run(find_orphan_submissions(store, "exam-1"))
    assert len(refreshed) == 1
    assert not refreshed[0].repairable


def test_submission_for_deleted_record(store):
    run(
        store.create(
            SUBMISSIONS,
            {
                "recordId": "gone",
                "stage": "Recording",
                "submittedBy": {"id": TECHNICIAN.id},
                "submittedAt": "2024-01-01T00:00:00.000Z",
                "payload": STAGE_PAYLOADS[Stage.RECORDING],
            },
        )
    )
    orphans = run(find_orphan_submissions(store))
    assert len(orphans) == 1
    assert orphans[0].record_stage is None
    assert not orphans[0].repairable
