"""Stage state machine for exam records.

``WorkflowEngine.transition`` validates a stage submission and persists it in
two writes: the submission document first, then the record's stage.  The
writes are not atomic; when the second one fails the submission is left in
place as an orphan (see :mod:`examflow.reconcile`) and the record keeps its
previous stage.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Callable, List, Mapping, Optional

import structlog
from prometheus_client import Counter

from examflow.errors import (
    OutOfOrderError,
    PermissionDeniedError,
    RecordNotFoundError,
    StoreUnavailableError,
    ValidationError,
    WorkflowError,
)
from examflow.models import (
    EXAMS,
    REQUIRED_FIELDS,
    SUBMISSIONS,
    Actor,
    ExamRecord,
    Stage,
    StageSubmission,
    next_stage,
)
from examflow.permissions import SessionContext, can_submit
from examflow.store import DocumentStore
from examflow.time_utils import now_iso

logger = structlog.get_logger(__name__)

TRANSITIONS_TOTAL = Counter(
    "examflow_stage_transitions_total",
    "Stage transition attempts by outcome",
    ("outcome",),
)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def missing_fields(stage: Stage, payload: Mapping[str, Any]) -> List[str]:
    """Return the required fields for ``stage`` that ``payload`` leaves empty."""

    return [name for name in REQUIRED_FIELDS.get(stage, ()) if _is_empty(payload.get(name))]


def check_order(record: ExamRecord, actor: Optional[Actor], target: Stage) -> None:
    """Raise :class:`OutOfOrderError` unless ``target`` directly follows the record's stage.

    Administrators may move a record to any stage.
    """

    if actor is not None and actor.is_administrator:
        return
    expected = next_stage(record.current_stage)
    if target is expected:
        return
    if expected is None:
        message = f"Exam is already {record.current_stage.value}; no further stage can be submitted."
    else:
        message = (
            f"Exam is at stage {record.current_stage.value}; "
            f"only {expected.value} can be submitted next."
        )
    raise OutOfOrderError(
        message,
        details={
            "currentStage": record.current_stage.value,
            "requestedStage": target.value,
            "expectedStage": expected.value if expected else None,
        },
    )


class WorkflowEngine:
    """Validates and applies stage transitions against a document store."""

    def __init__(self, store: DocumentStore, *, clock: Callable[[], str] = now_iso) -> None:
        self._store = store
        self._clock = clock

    async def load(self, record_id: str) -> ExamRecord:
        doc = await self._call("get_by_id", self._store.get_by_id(EXAMS, record_id))
        if doc is None:
            raise RecordNotFoundError(f"Exam {record_id} was not found", details={"recordId": record_id})
        return ExamRecord.from_document(doc)

    async def transition(
        self,
        record: ExamRecord,
        actor: Actor | SessionContext | None,
        target_stage: Stage | str,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        attachment_ref: Optional[str] = None,
    ) -> ExamRecord:
        """Submit ``payload`` for ``target_stage`` and advance ``record`` to it.

        Checks run in order and the first failure is raised: stage order,
        then permission, then required fields.  Returns the updated record;
        the ``record`` argument itself is not modified.  A session context may
        be passed in place of the actor; a logged-out session raises
        :class:`~examflow.errors.SessionClosedError`.
        """

        if isinstance(actor, SessionContext):
            actor = actor.actor
        data = dict(payload or {})
        log = logger.bind(record_id=record.id, actor_id=actor.id if actor else None)
        try:
            target = Stage.parse(target_stage)
        except ValueError:
            TRANSITIONS_TOTAL.labels(outcome="out_of_order").inc()
            raise OutOfOrderError(
                f"Unknown stage {target_stage!r}",
                details={"currentStage": record.current_stage.value, "requestedStage": str(target_stage)},
            ) from None

        try:
            check_order(record, actor, target)
            if not can_submit(actor, target):
                raise PermissionDeniedError(
                    f"You are not allowed to submit the {target.value} stage.",
                    details={"stage": target.value, "role": actor.role.value if actor else None},
                )
            missing = missing_fields(target, data)
            if missing:
                raise ValidationError(missing, stage=target.value)
        except WorkflowError as exc:
            TRANSITIONS_TOTAL.labels(outcome=exc.code).inc()
            log.info("workflow_transition_rejected", target=target.value, reason=exc.code)
            raise

        assert actor is not None
        now = self._clock()
        submission = StageSubmission(
            record_id=record.id,
            stage=target,
            submitted_by=actor.summary(),
            submitted_at=now,
            payload=data,
            attachment_ref=attachment_ref,
        )
        submission_id = await self._call(
            "create_submission", self._store.create(SUBMISSIONS, submission.to_document())
        )
        submission = dataclasses.replace(submission, id=submission_id)

        updated = dataclasses.replace(
            record,
            current_stage=target,
            last_updated_at=now,
            last_updated_by=actor.id,
            submissions=[*record.submissions, submission],
        )
        try:
            await self._call(
                "update_record",
                self._store.update(
                    EXAMS,
                    record.id,
                    {
                        "currentStage": updated.current_stage.value,
                        "lastUpdatedAt": updated.last_updated_at,
                        "lastUpdatedBy": updated.last_updated_by,
                        "submissions": [item.to_entry() for item in updated.submissions],
                    },
                ),
            )
        except WorkflowError as exc:
            TRANSITIONS_TOTAL.labels(outcome="partial_failure").inc()
            log.error(
                "workflow_record_update_failed",
                submission_id=submission_id,
                target=target.value,
                error=str(exc),
            )
            exc.details.setdefault("submissionId", submission_id)
            raise

        TRANSITIONS_TOTAL.labels(outcome="applied").inc()
        log.info(
            "workflow_transition_applied",
            source=record.current_stage.value,
            target=target.value,
            submission_id=submission_id,
            override=next_stage(record.current_stage) is not target,
        )
        return updated

    async def _call(self, operation: str, awaitable):
        try:
            return await awaitable
        except WorkflowError:
            raise
        except Exception as exc:
            raise StoreUnavailableError(
                "The record store is unavailable; please retry.",
                details={"operation": operation},
            ) from exc


__all__ = ["WorkflowEngine", "TRANSITIONS_TOTAL", "check_order", "missing_fields"]
