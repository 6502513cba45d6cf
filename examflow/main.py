"""FastAPI surface over the workflow engine, broadcaster and search router.

Bearer tokens are issued elsewhere; this service only verifies them and
resolves the ``sub`` claim to an actor document on every request, so a
capability change or a deleted actor takes effect on the next call.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Tuple

import jwt
import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.websockets import WebSocketDisconnect
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field

from examflow.admissions import AdmissionService
from examflow.config import Settings, get_settings
from examflow.errors import StoreUnavailableError, WorkflowError
from examflow.log_config import configure_logging
from examflow.models import ACTORS, EXAMS, Actor, Stage
from examflow.permissions import SessionContext, can_submit
from examflow.search import SEARCH_COLLECTIONS, SEARCHABLE_FIELDS, IndexedSearch, SearchRouter
from examflow.search_service import HttpSearchService
from examflow.store import DocumentStore, SqlDocumentStore
from examflow.sync import SyncBroadcaster
from examflow.workflow import WorkflowEngine
from examflow.ws_exams import ExamWebSocketManager

configure_logging(get_settings().log_level)
logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Process-wide collaborators shared by the request handlers."""

    settings: Settings
    store: DocumentStore
    engine: WorkflowEngine
    admissions: AdmissionService
    exams_broadcaster: SyncBroadcaster
    exams_ws: ExamWebSocketManager
    search_service: Optional[Any] = None
    search_routers: Dict[Tuple[str, str], SearchRouter] = field(default_factory=dict)

    def router_for(self, actor_id: str, kind: str) -> SearchRouter:
        key = (actor_id, kind)
        router = self.search_routers.get(key)
        if router is None:
            router = SearchRouter(
                kind=kind,
                debounce_ms=self.settings.search_debounce_ms,
                timeout_ms=self.settings.search_timeout_ms,
            )
            self.search_routers[key] = router
        return router


_services: Optional[Services] = None


def configure_services(
    *,
    store: Optional[DocumentStore] = None,
    search_service: Optional[Any] = None,
    settings: Optional[Settings] = None,
) -> Services:
    """(Re)build the shared services; tests pass an in-memory store here."""

    global _services
    resolved = settings or get_settings()
    if store is None:
        store = SqlDocumentStore.from_settings(resolved)
    if search_service is None and resolved.search_api_url:
        search_service = HttpSearchService.from_settings(resolved)
    broadcaster = SyncBroadcaster(store, EXAMS)
    _services = Services(
        settings=resolved,
        store=store,
        engine=WorkflowEngine(store),
        admissions=AdmissionService(store),
        exams_broadcaster=broadcaster,
        exams_ws=ExamWebSocketManager(broadcaster, store),
        search_service=search_service,
    )
    return _services


def get_services() -> Services:
    if _services is None:
        return configure_services()
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("lifespan_startup")
    try:
        yield
    finally:
        if _services is not None:
            await _services.exams_broadcaster.aclose()
        logger.info("lifespan_shutdown_complete")


app = FastAPI(title="Examflow", lifespan=lifespan)
security = HTTPBearer(auto_error=False)


class SuccessResponse(BaseModel):
    """Standard successful response envelope."""

    success: Literal[True] = True
    data: Any | None = None


class ErrorDetail(BaseModel):
    code: int | str | None = None
    message: str
    details: Any | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


class TransitionModel(BaseModel):
    targetStage: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attachmentRef: Optional[str] = None


class ExamCreateModel(BaseModel):
    patientId: str
    admissionId: str
    admissionType: str


class PatientCreateModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    lastName: str
    firstName: str
    gender: Optional[str] = None
    dateOfBirth: Optional[str] = None
    profession: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


def _success(data: Any) -> Dict[str, Any]:
    return SuccessResponse(data=data).model_dump()


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    payload = ErrorResponse(error=ErrorDetail(**exc.to_dict()))
    return JSONResponse(status_code=exc.status_code, content=payload.model_dump())


# ----------------------------------------------------------------------
# Authentication
# ----------------------------------------------------------------------
def decode_token(token: str, settings: Settings) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


async def resolve_actor(services: Services, token: str) -> Actor:
    claims = decode_token(token, services.settings)
    actor_id = claims.get("sub")
    if not actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    doc = await services.store.get_by_id(ACTORS, str(actor_id))
    if doc is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown actor")
    try:
        return Actor.from_document(doc)
    except (KeyError, ValueError):
        logger.warning("actor_document_invalid", actor_id=str(actor_id), role=doc.get("role"))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Actor record is not usable")


async def current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: Services = Depends(get_services),
) -> AsyncIterator[SessionContext]:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    actor = await resolve_actor(services, credentials.credentials)
    session = SessionContext.login(actor, credentials.credentials)
    structlog.contextvars.bind_contextvars(actor_id=actor.id)
    try:
        yield session
    finally:
        session.logout()
        structlog.contextvars.unbind_contextvars("actor_id")


async def ws_session(websocket: WebSocket, services: Services) -> SessionContext:
    """Authenticate a websocket from its Authorization header or ``token`` query."""

    token: Optional[str] = None
    header = websocket.headers.get("Authorization")
    if header and header.lower().startswith("bearer "):
        token = header.split(" ", 1)[1].strip()
    if not token:
        token = (websocket.query_params.get("token") or "").strip() or None
    if not token:
        await websocket.close(code=1008)
        raise WebSocketDisconnect(code=1008)
    try:
        actor = await resolve_actor(services, token)
    except HTTPException:
        await websocket.close(code=1008)
        raise WebSocketDisconnect(code=1008)
    return SessionContext.login(actor, token)


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------
@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/api/patients", status_code=201)
async def create_patient(
    model: PatientCreateModel,
    session: SessionContext = Depends(current_session),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    patient = await services.admissions.register_patient(
        session.actor, model.model_dump(exclude_none=True)
    )
    return _success(patient)


@app.post("/api/exams", status_code=201)
async def create_exam(
    model: ExamCreateModel,
    session: SessionContext = Depends(current_session),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = await services.admissions.open_exam(
        session.actor,
        patient_id=model.patientId,
        admission_id=model.admissionId,
        admission_type=model.admissionType,
    )
    return _success(record.to_document())


@app.get("/api/exams/{record_id}")
async def get_exam(
    record_id: str,
    session: SessionContext = Depends(current_session),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = await services.engine.load(record_id)
    return _success(record.to_document())


@app.get("/api/exams/{record_id}/can-submit")
async def can_submit_stage(
    record_id: str,
    stage: str = Query(...),
    session: SessionContext = Depends(current_session),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    await services.engine.load(record_id)
    try:
        target = Stage.parse(stage)
    except ValueError:
        return _success({"stage": stage, "allowed": False})
    return _success({"stage": target.value, "allowed": can_submit(session.actor, target)})


@app.post("/api/exams/{record_id}/transition")
async def transition_exam(
    record_id: str,
    model: TransitionModel,
    session: SessionContext = Depends(current_session),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = await services.engine.load(record_id)
    updated = await services.engine.transition(
        record,
        session,
        model.targetStage,
        model.payload,
        attachment_ref=model.attachmentRef,
    )
    return _success(updated.to_document())


@app.get("/api/search")
async def search(
    q: str = Query(""),
    kind: str = Query("patients"),
    session: SessionContext = Depends(current_session),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    if kind not in SEARCHABLE_FIELDS:
        raise HTTPException(status_code=400, detail=f"Unsupported search kind: {kind}")
    try:
        snapshot: List[Dict[str, Any]] = await services.store.query(SEARCH_COLLECTIONS[kind])
    except StoreUnavailableError:
        logger.warning("search_snapshot_unavailable", kind=kind)
        snapshot = []
    remote = IndexedSearch(services.search_service, kind) if services.search_service else None
    router = services.router_for(session.actor.id, kind)
    result = await router.search(q, remote_search_fn=remote, local_snapshot=snapshot)
    return _success(result.to_dict())


@app.websocket("/ws/exams/{record_id}")
async def exam_record_ws(websocket: WebSocket, record_id: str) -> None:
    services = get_services()
    session = await ws_session(websocket, services)
    topic = services.exams_broadcaster.topic(record_id)
    await services.exams_ws.handle(websocket, topic, session)


@app.websocket("/ws/exams")
async def exam_list_ws(websocket: WebSocket) -> None:
    services = get_services()
    session = await ws_session(websocket, services)
    criteria: Dict[str, Any] = {}
    stage = websocket.query_params.get("stage")
    if stage:
        try:
            criteria["currentStage"] = Stage.parse(stage).value
        except ValueError:
            session.logout()
            await websocket.close(code=1008)
            return
    topic = services.exams_broadcaster.topic(criteria)
    await services.exams_ws.handle(websocket, topic, session)


__all__ = ["app", "configure_services", "get_services", "Services"]
