import pytest
from starlette.websockets import WebSocketDisconnect

from examflow.models import ACTORS, Stage
from tests.support import NURSE, STAGE_PAYLOADS, auth_headers, make_token, run


def test_ws_exams_requires_authentication(api_client):
    with pytest.raises(WebSocketDisconnect):
        with api_client.websocket_connect("/ws/exams/exam-1"):
            pass
    with pytest.raises(WebSocketDisconnect):
        with api_client.websocket_connect(f"/ws/exams/exam-1?token={make_token('ghost')}"):
            pass


def test_ws_record_stream_sends_snapshot_then_changes(api_client):
    with api_client.websocket_connect("/ws/exams/exam-1", headers=auth_headers(NURSE)) as ws:
        assert ws.receive_json() == {"event": "connected", "topic": "exams/exam-1"}
        snapshot = ws.receive_json()
        assert snapshot["type"] == "snapshot"
        assert snapshot["docs"][0]["currentStage"] == "Pending"
        assert ws.receive_json() == {"type": "status", "live": True}

        resp = api_client.post(
            "/api/exams/exam-1/transition",
            json={"targetStage": "Observation", "payload": STAGE_PAYLOADS[Stage.OBSERVATION]},
            headers=auth_headers(NURSE),
        )
        assert resp.status_code == 200

        update = ws.receive_json()
        assert update["type"] == "changes"
        assert update["topic"] == "exams/exam-1"
        change = update["changes"][0]
        assert change["docId"] == "exam-1"
        assert change["changeType"] == "modified"
        assert change["doc"]["currentStage"] == "Observation"


def test_ws_stage_view_reports_records_entering(api_client):
    url = f"/ws/exams?stage=Observation&token={make_token(NURSE.id)}"
    with api_client.websocket_connect(url) as ws:
        assert ws.receive_json()["topic"] == "exams?currentStage=Observation"
        assert ws.receive_json() == {"type": "snapshot", "docs": []}
        assert ws.receive_json()["live"] is True

        api_client.post(
            "/api/exams/exam-1/transition",
            json={"targetStage": "Observation", "payload": STAGE_PAYLOADS[Stage.OBSERVATION]},
            headers=auth_headers(NURSE),
        )
        update = ws.receive_json()
        assert update["changes"][0]["changeType"] == "added"


def test_ws_unknown_stage_filter_is_rejected(api_client):
    with pytest.raises(WebSocketDisconnect):
        with api_client.websocket_connect(f"/ws/exams?stage=Archived&token={make_token(NURSE.id)}"):
            pass


def test_ws_actor_with_unknown_role_is_rejected(api_client, seeded_store):
    run(seeded_store.create(ACTORS, {"id": "intern-1", "role": "intern"}))
    with pytest.raises(WebSocketDisconnect):
        with api_client.websocket_connect(f"/ws/exams/exam-1?token={make_token('intern-1')}"):
            pass
