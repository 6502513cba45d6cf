"""Detection and repair of orphaned stage submissions.

A transition writes the submission before updating the record, so an
interrupted transition leaves a submission that the record never references.
``find_orphan_submissions`` lists them; ``repair_orphans`` completes the
advancement for orphans that target the stage right after the record's
current one and reports the rest untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from examflow.models import EXAMS, SUBMISSIONS, ExamRecord, Stage, StageSubmission, next_stage
from examflow.store import DocumentStore
from examflow.time_utils import now_iso

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OrphanSubmission:
    submission: StageSubmission
    record_stage: Optional[Stage]
    repairable: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "submissionId": self.submission.id,
            "recordId": self.submission.record_id,
            "stage": self.submission.stage.value,
            "recordStage": self.record_stage.value if self.record_stage else None,
            "repairable": self.repairable,
        }


def _attached_ids(record: ExamRecord) -> set:
    return {item.id for item in record.submissions if item.id}


async def find_orphan_submissions(
    store: DocumentStore, record_id: Optional[str] = None
) -> List[OrphanSubmission]:
    """Return submissions that no exam record references."""

    criteria = {"recordId": record_id} if record_id else None
    records: Dict[str, Optional[ExamRecord]] = {}
    orphans: List[OrphanSubmission] = []
    for doc in await store.query(SUBMISSIONS, criteria):
        submission = StageSubmission.from_document(doc)
        if submission.record_id not in records:
            record_doc = await store.get_by_id(EXAMS, submission.record_id)
            records[submission.record_id] = (
                ExamRecord.from_document(record_doc) if record_doc else None
            )
        record = records[submission.record_id]
        if record is not None and submission.id in _attached_ids(record):
            continue
        repairable = record is not None and next_stage(record.current_stage) is submission.stage
        orphans.append(
            OrphanSubmission(
                submission=submission,
                record_stage=record.current_stage if record else None,
                repairable=repairable,
            )
        )
    if orphans:
        logger.warning("orphan_submissions_found", count=len(orphans), record_id=record_id)
    return orphans


async def repair_orphans(
    store: DocumentStore,
    orphans: Sequence[OrphanSubmission],
    *,
    clock: Callable[[], str] = now_iso,
) -> List[str]:
    """Attach repairable orphans to their records and advance the stage.

    Each record is re-read before it is touched, so an orphan that stopped
    being repairable since detection is skipped.  Returns the ids of the
    submissions that were attached.
    """

    repaired: List[str] = []
    for orphan in orphans:
        if not orphan.repairable:
            continue
        submission = orphan.submission
        doc = await store.get_by_id(EXAMS, submission.record_id)
        if doc is None:
            continue
        record = ExamRecord.from_document(doc)
        if submission.id in _attached_ids(record):
            continue
        if next_stage(record.current_stage) is not submission.stage:
            logger.info(
                "orphan_submission_skipped",
                submission_id=submission.id,
                record_stage=record.current_stage.value,
            )
            continue
        entries = [item.to_entry() for item in record.submissions] + [submission.to_entry()]
        await store.update(
            EXAMS,
            record.id,
            {
                "currentStage": submission.stage.value,
                "lastUpdatedAt": clock(),
                "lastUpdatedBy": submission.submitted_by.get("id"),
                "submissions": entries,
            },
        )
        repaired.append(str(submission.id))
        logger.info(
            "orphan_submission_repaired",
            submission_id=submission.id,
            record_id=record.id,
            stage=submission.stage.value,
        )
    return repaired


__all__ = ["OrphanSubmission", "find_orphan_submissions", "repair_orphans"]
