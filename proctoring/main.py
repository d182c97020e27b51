import json
import logging
import math
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from .broadcaster import WebSocketObserver
from .config import Settings, settings as default_settings
from .errors import NotFoundError, ProctorError, ValidationError
from .logger import configure_logging
from .models import DetectionSignal, EventKind, FocusStatus, utcnow
from .pipeline import ProctorService
from .report import (
    ReportEncoding,
    ReportSummary,
    build_csv_report_content,
    build_html_report_content,
    build_summary,
    render_text,
)
from .repositories import build_stores
from .schemas import (
    DetectionFrame,
    EndSessionRequest,
    EventPage,
    EventResponse,
    ObjectDetectedMessage,
    Pagination,
    SessionResponse,
    SessionWithEventsResponse,
    SignalRequest,
    StartSessionRequest,
)
from .storage import get_storage

logger = logging.getLogger(__name__)

# Socket rejection reasons keyed by the message field that failed validation
_MESSAGE_REASONS = {
    "focused": "invalid_focus",
    "timestamp": "invalid_timestamp",
    "object": "invalid_label",
    "label": "invalid_label",
    "confidence": "invalid_confidence",
}


def _message_reason(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    field = str(errors[0]["loc"][0]) if errors and errors[0].get("loc") else ""
    return _MESSAGE_REASONS.get(field, "invalid_payload")


def build_service(settings: Settings = default_settings) -> ProctorService:
    session_store, event_store = build_stores(settings)
    return ProctorService(session_store, event_store, settings=settings)


def create_app(service: Optional[ProctorService] = None, settings: Settings = default_settings) -> FastAPI:
    configure_logging(settings.log_level)
    service = service or build_service(settings)
    storage = get_storage(settings.report_dir, settings.storage_backend)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.store_backend == "mongo":
            from .database import close_database, ensure_indexes

            ensure_indexes(settings)
        try:
            yield
        finally:
            await service.close()
            if settings.store_backend == "mongo":
                close_database()

    app = FastAPI(title="Interview Proctoring", version="1.0.0", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ProctorError)
    async def proctor_error_handler(request: Request, exc: ProctorError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.post("/sessions", response_model=SessionResponse, status_code=201)
    async def start_session(payload: StartSessionRequest):
        session = await service.start_session(
            payload.candidate_name,
            candidate_email=payload.candidate_email,
            interviewer_id=payload.interviewer_id,
            notes=payload.notes,
        )
        return SessionResponse.from_session(session)

    @app.get("/sessions", response_model=List[SessionResponse])
    async def list_sessions():
        return [SessionResponse.from_session(s) for s in await service.sessions.list_sessions()]

    @app.get("/sessions/active/current")
    async def current_session(interviewer_id: Optional[str] = Query(default=None, alias="interviewerId")):
        session = await service.active_session(interviewer_id)
        return {
            "success": True,
            "session": SessionResponse.from_session(session).model_dump(mode="json") if session else None,
        }

    @app.get("/sessions/{session_id}", response_model=SessionWithEventsResponse)
    async def get_session(session_id: str):
        session = await service.get_session(session_id)
        events = await service.sessions.list_events(session_id)
        return SessionWithEventsResponse(
            **SessionResponse.from_session(session).model_dump(),
            events=[EventResponse.from_record(e) for e in events],
        )

    @app.post("/sessions/{session_id}/end", response_model=SessionResponse)
    async def end_session(session_id: str, payload: Optional[EndSessionRequest] = None):
        payload = payload or EndSessionRequest()
        session = await service.end_session(session_id, status=payload.status, notes=payload.notes)
        return SessionResponse.from_session(session)

    @app.post("/sessions/{session_id}/events", status_code=201)
    async def log_event(session_id: str, request: Request):
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            raise ValidationError("Event body must be a JSON object", reason="invalid_payload")
        record = await service.ingest(session_id, payload)
        if record is None:
            return JSONResponse(status_code=202, content={"success": True, "dropped": True})
        return {"success": True, "dropped": False, "event": EventResponse.from_record(record).model_dump(mode="json")}

    @app.get("/sessions/{session_id}/events", response_model=EventPage)
    async def list_events(
        session_id: str,
        event_kind: Optional[EventKind] = Query(default=None, alias="eventKind"),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=50, ge=1, le=500),
    ):
        events, total = await service.list_events(session_id, event_kind=event_kind, page=page, limit=limit)
        return EventPage(
            events=[EventResponse.from_record(e) for e in events],
            pagination=Pagination(total=total, page=page, limit=limit, pages=math.ceil(total / limit)),
        )

    @app.get("/sessions/{session_id}/events/recent", response_model=List[EventResponse])
    async def recent_events(session_id: str):
        return [EventResponse.from_record(e) for e in await service.recent(session_id)]

    @app.get("/sessions/{session_id}/events/stats")
    async def event_stats(session_id: str):
        return (await service.stats(session_id)).model_dump(mode="json")

    @app.post("/sessions/{session_id}/signals")
    async def submit_signal(session_id: str, payload: SignalRequest):
        signal = DetectionSignal(
            session_id=session_id,
            kind=payload.kind,
            active=payload.active,
            confidence=payload.confidence,
            timestamp=payload.timestamp or utcnow(),
            metadata=payload.metadata,
        )
        transition = await service.submit_signal(signal)
        return {"success": True, "emitted": transition is not None}

    @app.post("/sessions/{session_id}/detections")
    async def submit_detections(session_id: str, payload: DetectionFrame):
        emitted = await service.submit_detections(session_id, payload.detections)
        return {"success": True, "emitted": [t.kind.value for t in emitted]}

    @app.get("/sessions/{session_id}/report")
    async def get_report(session_id: str, format: ReportEncoding = Query(default=ReportEncoding.STRUCTURED)):
        result = await service.report(session_id, format)
        if isinstance(result, ReportSummary):
            return result.model_dump(mode="json")
        if format == ReportEncoding.NARRATIVE:
            return {
                "sections": [s.model_dump() for s in result],
                "text": render_text(result),
            }
        return result

    @app.get("/sessions/{session_id}/report.csv")
    async def download_report_csv(session_id: str):
        events = await service.events_for_export(session_id)
        csv_content = build_csv_report_content(events)
        storage.save_report_bytes(f"report_{session_id}.csv", csv_content.encode("utf-8"), "text/csv")
        return StreamingResponse(
            iter([csv_content.encode("utf-8")]),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename=report_{session_id}.csv"},
        )

    @app.get("/sessions/{session_id}/report.html", response_class=HTMLResponse)
    async def download_report_html(session_id: str):
        session = await service.get_session(session_id)
        events = await service.events_for_export(session_id)
        html = build_html_report_content(build_summary(session, events), events)
        storage.save_report_bytes(f"report_{session_id}.html", html.encode("utf-8"), "text/html")
        return HTMLResponse(content=html)

    @app.get("/reports/{name}")
    async def get_report_file(name: str):
        try:
            data = storage.open_bytes(f"reports/{name}")
        except FileNotFoundError:
            raise NotFoundError(f"Report {name} not found", reason="report_not_found")
        except ValueError:
            raise ValidationError(f"Invalid report name: {name}", reason="invalid_report_name")
        media = "text/html" if name.endswith(".html") else "text/csv"
        return StreamingResponse(iter([data]), media_type=media)

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket):
        await websocket.accept()
        observer = WebSocketObserver(websocket)

        async def reject(reason: str) -> None:
            await websocket.send_json({"channel": "error", "data": {"reason": reason}})

        try:
            while True:
                try:
                    message = json.loads(await websocket.receive_text())
                    if not isinstance(message, dict):
                        raise ValueError("expected an object")
                except ValueError:
                    await reject("invalid_json")
                    continue
                action = message.get("action")
                session_id = message.get("sessionId")
                if not session_id:
                    await reject("invalid_session_id")
                    continue
                exclude = observer.observer_id if settings.exclude_originator else None
                if action == "join":
                    service.broadcaster.subscribe(session_id, observer)
                    await websocket.send_json({"channel": "joined", "data": {"sessionId": session_id}})
                elif action == "leave":
                    service.broadcaster.unsubscribe(session_id, observer)
                    await websocket.send_json({"channel": "left", "data": {"sessionId": session_id}})
                elif action == "focus-update":
                    try:
                        status = FocusStatus(
                            session_id=session_id,
                            focused=message.get("focused", True),
                            timestamp=message.get("timestamp") or utcnow(),
                        )
                    except PydanticValidationError as exc:
                        await reject(_message_reason(exc))
                        continue
                    await service.publish_focus(status, exclude=exclude)
                elif action == "object-detected":
                    try:
                        detection = ObjectDetectedMessage.model_validate(message)
                    except PydanticValidationError as exc:
                        await reject(_message_reason(exc))
                        continue
                    service.publish_object_detection(
                        session_id,
                        detection.label,
                        detection.confidence,
                        detection.timestamp,
                        exclude=exclude,
                    )
                else:
                    await reject("unknown_action")
        except WebSocketDisconnect:
            pass
        finally:
            service.broadcaster.disconnect(observer)

    @app.get("/")
    def root():
        return {"status": "ok", "message": "Proctoring backend running"}

    return app


app = create_app()
