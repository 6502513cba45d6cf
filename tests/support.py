"""Shared actors, payloads and helpers for the test suite."""

import asyncio
from typing import Dict

import jwt

from examflow.models import Actor, Capability, Role, Stage

TEST_SECRET = "test-secret"

ADMIN = Actor("admin-1", "Ada Admin", Role.ADMINISTRATOR)
NURSE = Actor("nurse-1", "Nina Nurse", Role.NURSE, frozenset({Capability.OBSERVE}))
TECHNICIAN = Actor("tech-1", "Theo Tech", Role.TECHNICIAN, frozenset({Capability.RECORD}))
PHYSICIAN = Actor(
    "doc-1",
    "Dana Doctor",
    Role.PHYSICIAN,
    frozenset({Capability.ANALYZE, Capability.INTERPRET}),
)
RECEPTIONIST = Actor(
    "desk-1",
    "Remy Desk",
    Role.RECEPTIONIST,
    frozenset({Capability.CREATE_PATIENT, Capability.CREATE_EXAM}),
)
ALL_ACTORS = (ADMIN, NURSE, TECHNICIAN, PHYSICIAN, RECEPTIONIST)

STAGE_PAYLOADS: Dict[Stage, Dict[str, str]] = {
    Stage.OBSERVATION: {
        "reason": "Recurrent syncope",
        "recordingConditions": "Awake, eyes closed",
        "artifacts": "None noted",
    },
    Stage.RECORDING: {"montage": "10-20", "filters": "0.5-70Hz"},
    Stage.ANALYSIS: {"backgroundRhythm": "Alpha 9Hz", "conclusion": "Normal"},
    Stage.INTERPRETATION: {
        "diagnosis": "Normal EEG",
        "eegAnomalies": "None",
        "recommendations": "No follow-up",
    },
}


def run(coro):
    return asyncio.run(coro)


def exam_document(record_id: str = "exam-1", stage: Stage = Stage.PENDING, **extra) -> dict:
    doc = {
        "id": record_id,
        "patientId": "patient-1",
        "admissionId": f"adm-{record_id}",
        "admissionType": "outpatient",
        "currentStage": stage.value,
        "createdAt": "2024-01-01T08:00:00.000Z",
        "lastUpdatedAt": "2024-01-01T08:00:00.000Z",
        "lastUpdatedBy": None,
        "submissions": [],
        "patientFirstName": "Jane",
        "patientLastName": "Dupont",
    }
    doc.update(extra)
    return doc


def make_token(actor_id: str, secret: str = TEST_SECRET) -> str:
    return jwt.encode({"sub": actor_id}, secret, algorithm="HS256")


def auth_headers(actor: Actor) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(actor.id)}"}
