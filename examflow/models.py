"""Domain types for exam records, stage submissions and actors.

Documents are stored with camelCase keys; the dataclasses below convert to and
from that shape so the rest of the package never handles raw stage or role
strings.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

EXAMS = "exams"
SUBMISSIONS = "submissions"
ACTORS = "actors"
PATIENTS = "patients"


class Stage(str, enum.Enum):
    PENDING = "Pending"
    OBSERVATION = "Observation"
    RECORDING = "Recording"
    ANALYSIS = "Analysis"
    INTERPRETATION = "Interpretation"
    COMPLETED = "Completed"

    @classmethod
    def parse(cls, value: Any) -> "Stage":
        """Return the stage named by ``value`` (enum member, value or name)."""

        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        for stage in cls:
            if text == stage.value or text.upper() == stage.name:
                return stage
        raise ValueError(f"Unknown stage: {value!r}")


STAGE_ORDER: Tuple[Stage, ...] = tuple(Stage)


def next_stage(stage: Stage) -> Optional[Stage]:
    """Return the stage after ``stage``, or ``None`` for the terminal stage."""

    index = STAGE_ORDER.index(stage)
    if index + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[index + 1]


class Role(str, enum.Enum):
    ADMINISTRATOR = "administrator"
    PHYSICIAN = "physician"
    NURSE = "nurse"
    TECHNICIAN = "technician"
    RECEPTIONIST = "receptionist"


class Capability(str, enum.Enum):
    OBSERVE = "observe"
    RECORD = "record"
    ANALYZE = "analyze"
    INTERPRET = "interpret"
    CREATE_EXAM = "createExam"
    CREATE_PATIENT = "createPatient"


class ChangeType(str, enum.Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


# Fields a stage form must fill in before the record may enter that stage.
REQUIRED_FIELDS: Dict[Stage, Tuple[str, ...]] = {
    Stage.PENDING: (),
    Stage.OBSERVATION: ("reason", "recordingConditions", "artifacts"),
    Stage.RECORDING: ("montage", "filters"),
    Stage.ANALYSIS: ("backgroundRhythm", "conclusion"),
    Stage.INTERPRETATION: ("diagnosis", "eegAnomalies", "recommendations"),
    Stage.COMPLETED: (),
}


@dataclass(frozen=True)
class Actor:
    """A staff member with a role and a set of capability flags."""

    id: str
    display_name: str
    role: Role
    capabilities: FrozenSet[Capability] = frozenset()

    @property
    def is_administrator(self) -> bool:
        return self.role is Role.ADMINISTRATOR

    def summary(self) -> Dict[str, str]:
        return {"id": self.id, "displayName": self.display_name, "role": self.role.value}

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "role": self.role.value,
            "capabilities": {cap.value: cap in self.capabilities for cap in Capability},
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Actor":
        raw_caps = doc.get("capabilities") or {}
        granted = set()
        if isinstance(raw_caps, Mapping):
            items = [name for name, flag in raw_caps.items() if flag is True]
        else:
            items = list(raw_caps)
        for name in items:
            try:
                granted.add(Capability(name))
            except ValueError:
                continue
        return cls(
            id=str(doc["id"]),
            display_name=str(doc.get("displayName") or doc["id"]),
            role=Role(doc.get("role")),
            capabilities=frozenset(granted),
        )


@dataclass(frozen=True)
class StageSubmission:
    """Immutable evidence of the data entered for one stage by one actor."""

    record_id: str
    stage: Stage
    submitted_by: Dict[str, str]
    submitted_at: str
    payload: Dict[str, Any]
    attachment_ref: Optional[str] = None
    id: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "recordId": self.record_id,
            "stage": self.stage.value,
            "submittedBy": dict(self.submitted_by),
            "submittedAt": self.submitted_at,
            "payload": dict(self.payload),
            "attachmentRef": self.attachment_ref,
        }
        if self.id is not None:
            doc["id"] = self.id
        return doc

    def to_entry(self) -> Dict[str, Any]:
        """Return the compact form embedded in the record document."""

        return {
            "id": self.id,
            "stage": self.stage.value,
            "submittedBy": dict(self.submitted_by),
            "submittedAt": self.submitted_at,
            "payload": dict(self.payload),
            "attachmentRef": self.attachment_ref,
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any], *, record_id: Optional[str] = None) -> "StageSubmission":
        return cls(
            record_id=str(doc.get("recordId") or record_id or ""),
            stage=Stage.parse(doc.get("stage")),
            submitted_by=dict(doc.get("submittedBy") or {}),
            submitted_at=str(doc.get("submittedAt") or ""),
            payload=dict(doc.get("payload") or {}),
            attachment_ref=doc.get("attachmentRef"),
            id=doc.get("id"),
        )


@dataclass
class ExamRecord:
    id: str
    patient_id: str
    admission_id: str
    admission_type: str
    current_stage: Stage
    created_at: str
    last_updated_at: str
    last_updated_by: Optional[str] = None
    submissions: List[StageSubmission] = field(default_factory=list)

    def submission_for(self, stage: Stage) -> Optional[StageSubmission]:
        """Return the latest submission recorded for ``stage``."""

        for submission in reversed(self.submissions):
            if submission.stage is stage:
                return submission
        return None

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "admissionId": self.admission_id,
            "admissionType": self.admission_type,
            "currentStage": self.current_stage.value,
            "createdAt": self.created_at,
            "lastUpdatedAt": self.last_updated_at,
            "lastUpdatedBy": self.last_updated_by,
            "submissions": [item.to_entry() for item in self.submissions],
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "ExamRecord":
        record_id = str(doc["id"])
        return cls(
            id=record_id,
            patient_id=str(doc.get("patientId") or ""),
            admission_id=str(doc.get("admissionId") or ""),
            admission_type=str(doc.get("admissionType") or ""),
            current_stage=Stage.parse(doc.get("currentStage") or Stage.PENDING),
            created_at=str(doc.get("createdAt") or ""),
            last_updated_at=str(doc.get("lastUpdatedAt") or ""),
            last_updated_by=doc.get("lastUpdatedBy"),
            submissions=[
                StageSubmission.from_document(item, record_id=record_id)
                for item in doc.get("submissions") or []
                if isinstance(item, Mapping)
            ],
        )


__all__ = [
    "EXAMS",
    "SUBMISSIONS",
    "ACTORS",
    "PATIENTS",
    "Stage",
    "STAGE_ORDER",
    "next_stage",
    "Role",
    "Capability",
    "ChangeType",
    "REQUIRED_FIELDS",
    "Actor",
    "StageSubmission",
    "ExamRecord",
]
