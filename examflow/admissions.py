"""Patient registration and exam opening."""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from examflow.errors import (
    DuplicateAdmissionError,
    PermissionDeniedError,
    RecordNotFoundError,
    StoreUnavailableError,
    ValidationError,
    WorkflowError,
)
from examflow.models import EXAMS, PATIENTS, Actor, Capability, ExamRecord, Stage
from examflow.permissions import has_capability
from examflow.store import DocumentStore
from examflow.time_utils import now_iso

logger = structlog.get_logger(__name__)

PATIENT_REQUIRED_FIELDS = ("lastName", "firstName")


def _require(actor: Optional[Actor], capability: Capability, action: str) -> Actor:
    if not has_capability(actor, capability):
        raise PermissionDeniedError(
            f"You are not allowed to {action}.",
            details={"capability": capability.value},
        )
    assert actor is not None
    return actor


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class AdmissionService:
    """Creates patients and the single exam record of each admission."""

    def __init__(self, store: DocumentStore, *, clock: Callable[[], str] = now_iso) -> None:
        self._store = store
        self._clock = clock

    async def register_patient(self, actor: Optional[Actor], data: Mapping[str, Any]) -> Dict[str, Any]:
        actor = _require(actor, Capability.CREATE_PATIENT, "register patients")
        missing = [name for name in PATIENT_REQUIRED_FIELDS if _blank(data.get(name))]
        if missing:
            raise ValidationError(missing)
        doc = {key: value for key, value in data.items() if key != "id"}
        doc.update({"createdAt": self._clock(), "createdBy": actor.id})
        patient_id = await self._guard(self._store.create(PATIENTS, doc))
        logger.info("patient_registered", patient_id=patient_id, actor_id=actor.id)
        return {**doc, "id": patient_id}

    async def open_exam(
        self,
        actor: Optional[Actor],
        *,
        patient_id: str,
        admission_id: str,
        admission_type: str,
    ) -> ExamRecord:
        """Create the exam record for ``admission_id`` in the ``Pending`` stage."""

        actor = _require(actor, Capability.CREATE_EXAM, "open exams")
        missing = [
            name
            for name, value in (
                ("patientId", patient_id),
                ("admissionId", admission_id),
                ("admissionType", admission_type),
            )
            if _blank(value)
        ]
        if missing:
            raise ValidationError(missing)

        patient = await self._guard(self._store.get_by_id(PATIENTS, patient_id))
        if patient is None:
            raise RecordNotFoundError(
                f"Patient {patient_id} was not found", details={"patientId": patient_id}
            )
        existing = await self._guard(self._store.query(EXAMS, {"admissionId": admission_id}))
        if existing:
            raise DuplicateAdmissionError(
                f"Admission {admission_id} already has an exam record.",
                details={"admissionId": admission_id, "recordId": existing[0].get("id")},
            )

        now = self._clock()
        record = ExamRecord(
            id="",
            patient_id=patient_id,
            admission_id=admission_id,
            admission_type=admission_type,
            current_stage=Stage.PENDING,
            created_at=now,
            last_updated_at=now,
            last_updated_by=actor.id,
        )
        doc = record.to_document()
        doc.pop("id")
        doc["patientFirstName"] = patient.get("firstName") or ""
        doc["patientLastName"] = patient.get("lastName") or ""
        record.id = await self._guard(self._store.create(EXAMS, doc))
        logger.info(
            "exam_opened",
            record_id=record.id,
            admission_id=admission_id,
            actor_id=actor.id,
        )
        return record

    async def _guard(self, awaitable):
        try:
            return await awaitable
        except WorkflowError:
            raise
        except Exception as exc:
            raise StoreUnavailableError("The record store is unavailable; please retry.") from exc


__all__ = ["AdmissionService", "PATIENT_REQUIRED_FIELDS"]
