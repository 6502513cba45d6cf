import pytest

from examflow.errors import (
    OutOfOrderError,
    PermissionDeniedError,
    RecordNotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from examflow.models import EXAMS, STAGE_ORDER, SUBMISSIONS, Actor, Capability, Role, Stage, next_stage
from examflow.workflow import WorkflowEngine, missing_fields
from tests.support import ADMIN, NURSE, PHYSICIAN, STAGE_PAYLOADS, TECHNICIAN, exam_document, run


def _engine(store):
    return WorkflowEngine(store, clock=lambda: "2024-02-02T10:00:00.000Z")


def _seed(store, stage=Stage.PENDING, record_id="exam-1"):
    run(store.create(EXAMS, exam_document(record_id, stage)))
    return run(_engine(store).load(record_id))


def test_recording_submission_then_permission_denied_for_analysis(store):
    engine = _engine(store)
    record = _seed(store, Stage.OBSERVATION)

    updated = run(engine.transition(record, TECHNICIAN, Stage.RECORDING, {"montage": "10-20", "filters": "0.5-70Hz"}))

    assert updated.current_stage is Stage.RECORDING
    assert record.current_stage is Stage.OBSERVATION
    assert len(updated.submissions) == 1
    submission = updated.submissions[0]
    assert submission.stage is Stage.RECORDING
    assert submission.payload == {"montage": "10-20", "filters": "0.5-70Hz"}
    assert submission.submitted_by["id"] == TECHNICIAN.id
    assert len(run(store.query(SUBMISSIONS))) == 1

    with pytest.raises(PermissionDeniedError):
        run(engine.transition(updated, TECHNICIAN, Stage.ANALYSIS, STAGE_PAYLOADS[Stage.ANALYSIS]))
    assert run(engine.load("exam-1")).current_stage is Stage.RECORDING


def test_transition_persists_record_fields(store):
    engine = _engine(store)
    record = _seed(store)

    run(engine.transition(record, NURSE, Stage.OBSERVATION, STAGE_PAYLOADS[Stage.OBSERVATION], attachment_ref="files/obs.pdf"))

    doc = run(store.get_by_id(EXAMS, "exam-1"))
    assert doc["currentStage"] == "Observation"
    assert doc["lastUpdatedAt"] == "2024-02-02T10:00:00.000Z"
    assert doc["lastUpdatedBy"] == NURSE.id
    assert doc["submissions"][0]["attachmentRef"] == "files/obs.pdf"
    stored = run(store.get_by_id(SUBMISSIONS, doc["submissions"][0]["id"]))
    assert stored["recordId"] == "exam-1"
    assert stored["stage"] == "Observation"


def test_skipping_a_stage_is_out_of_order(store):
    record = _seed(store)
    with pytest.raises(OutOfOrderError) as excinfo:
        run(_engine(store).transition(record, TECHNICIAN, Stage.RECORDING, STAGE_PAYLOADS[Stage.RECORDING]))
    assert excinfo.value.details["expectedStage"] == "Observation"
    assert run(store.query(SUBMISSIONS)) == []


def test_order_is_checked_before_permission(store):
    record = _seed(store)
    with pytest.raises(OutOfOrderError):
        run(_engine(store).transition(record, NURSE, Stage.ANALYSIS, {}))


def test_permission_is_checked_before_fields(store):
    record = _seed(store)
    with pytest.raises(PermissionDeniedError):
        run(_engine(store).transition(record, TECHNICIAN, Stage.OBSERVATION, {}))


def test_missing_fields_are_reported(store):
    record = _seed(store)
    with pytest.raises(ValidationError) as excinfo:
        run(_engine(store).transition(record, NURSE, Stage.OBSERVATION, {"reason": "x", "artifacts": "  "}))
    assert excinfo.value.fields == ["recordingConditions", "artifacts"]
    assert run(store.query(SUBMISSIONS)) == []


def test_unknown_stage_is_rejected(store):
    record = _seed(store)
    with pytest.raises(OutOfOrderError):
        run(_engine(store).transition(record, ADMIN, "Archived", {}))


def test_interpreting_physician_closes_the_exam(store):
    engine = _engine(store)
    record = _seed(store, Stage.INTERPRETATION)
    with pytest.raises(PermissionDeniedError):
        run(engine.transition(record, TECHNICIAN, Stage.COMPLETED, {}))
    done = run(engine.transition(record, PHYSICIAN, Stage.COMPLETED, {}))
    assert done.current_stage is Stage.COMPLETED
    assert run(engine.load("exam-1")).current_stage is Stage.COMPLETED
    with pytest.raises(OutOfOrderError):
        run(engine.transition(done, PHYSICIAN, Stage.INTERPRETATION, STAGE_PAYLOADS[Stage.INTERPRETATION]))
    with pytest.raises(OutOfOrderError):
        run(engine.transition(done, PHYSICIAN, Stage.COMPLETED, {}))


def test_administrator_may_override_stage_order(store):
    engine = _engine(store)
    record = _seed(store, Stage.ANALYSIS)
    rewound = run(engine.transition(record, ADMIN, Stage.OBSERVATION, STAGE_PAYLOADS[Stage.OBSERVATION]))
    assert rewound.current_stage is Stage.OBSERVATION
    assert run(engine.load("exam-1")).current_stage is Stage.OBSERVATION


def test_full_walk_through_every_stage(store):
    engine = _engine(store)
    record = _seed(store)
    for actor, stage in (
        (NURSE, Stage.OBSERVATION),
        (TECHNICIAN, Stage.RECORDING),
        (PHYSICIAN, Stage.ANALYSIS),
        (PHYSICIAN, Stage.INTERPRETATION),
        (PHYSICIAN, Stage.COMPLETED),
    ):
        record = run(engine.transition(record, actor, stage, STAGE_PAYLOADS.get(stage, {})))
    loaded = run(engine.load("exam-1"))
    assert loaded.current_stage is Stage.COMPLETED
    assert [item.stage for item in loaded.submissions] == [
        Stage.OBSERVATION,
        Stage.RECORDING,
        Stage.ANALYSIS,
        Stage.INTERPRETATION,
        Stage.COMPLETED,
    ]
    assert loaded.submission_for(Stage.RECORDING).payload == STAGE_PAYLOADS[Stage.RECORDING]


def test_load_missing_record(store):
    with pytest.raises(RecordNotFoundError):
        run(_engine(store).load("nope"))


def test_record_update_failure_leaves_orphan_submission(store, monkeypatch):
    engine = _engine(store)
    record = _seed(store)

    async def broken_update(collection, doc_id, partial):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(store, "update", broken_update)
    with pytest.raises(StoreUnavailableError) as excinfo:
        run(engine.transition(record, NURSE, Stage.OBSERVATION, STAGE_PAYLOADS[Stage.OBSERVATION]))

    submissions = run(store.query(SUBMISSIONS))
    assert len(submissions) == 1
    assert excinfo.value.details["submissionId"] == submissions[0]["id"]
    assert run(store.get_by_id(EXAMS, "exam-1"))["currentStage"] == "Pending"


def test_missing_fields_helper():
    assert missing_fields(Stage.RECORDING, {"montage": "10-20", "filters": []}) == ["filters"]
    assert missing_fields(Stage.COMPLETED, {}) == []


def test_transition_through_session_context(store):
    from examflow.errors import SessionClosedError
    from examflow.permissions import SessionContext

    engine = _engine(store)
    record = _seed(store)
    session = SessionContext.login(NURSE, "token")
    updated = run(engine.transition(record, session, Stage.OBSERVATION, STAGE_PAYLOADS[Stage.OBSERVATION]))
    assert updated.last_updated_by == NURSE.id

    session.logout()
    with pytest.raises(SessionClosedError):
        run(engine.transition(updated, session, Stage.RECORDING, STAGE_PAYLOADS[Stage.RECORDING]))


ALL_CAPABILITIES = Actor("senior-1", "Sam Senior", Role.PHYSICIAN, frozenset(Capability))

WRONG_ORDER_PAIRS = [
    (current, target)
    for current in STAGE_ORDER
    if current is not Stage.COMPLETED
    for target in STAGE_ORDER
    if target is not next_stage(current)
]


@pytest.mark.parametrize("current,target", WRONG_ORDER_PAIRS)
def test_any_target_but_the_next_stage_is_out_of_order(store, current, target):
    record = _seed(store, current)
    with pytest.raises(OutOfOrderError):
        run(_engine(store).transition(record, ALL_CAPABILITIES, target, STAGE_PAYLOADS.get(target, {})))
    assert run(store.query(SUBMISSIONS)) == []


def test_submission_write_failure_leaves_record_untouched(store, monkeypatch):
    engine = _engine(store)
    record = _seed(store)
    updates = []

    async def broken_create(collection, data):
        raise RuntimeError("disk full")

    async def recording_update(collection, doc_id, partial):
        updates.append((collection, doc_id))

    monkeypatch.setattr(store, "create", broken_create)
    monkeypatch.setattr(store, "update", recording_update)
    with pytest.raises(StoreUnavailableError) as excinfo:
        run(engine.transition(record, NURSE, Stage.OBSERVATION, STAGE_PAYLOADS[Stage.OBSERVATION]))

    assert excinfo.value.details["operation"] == "create_submission"
    assert updates == []
    assert run(store.get_by_id(EXAMS, "exam-1"))["currentStage"] == "Pending"
    assert record.current_stage is Stage.PENDING
