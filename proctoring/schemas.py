from pydantic import BaseModel, ConfigDict, Field, field_validator  # type: ignore
from typing import Any, Dict, List, Optional
from datetime import datetime

from .models import EventKind, EventRecord, Session, SessionStatus, ensure_utc, utcnow


class StartSessionRequest(BaseModel):
    candidate_name: str = Field(min_length=2, max_length=100)
    candidate_email: Optional[str] = None
    interviewer_id: Optional[str] = None
    notes: Optional[str] = None


class EndSessionRequest(BaseModel):
    status: SessionStatus = SessionStatus.COMPLETED
    notes: Optional[str] = None


class IngestEventRequest(BaseModel):
    """Detector adapter payload, one per event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    session_id: Optional[str] = Field(default=None, alias="sessionId", min_length=1)
    event_kind: EventKind = Field(alias="eventKind")
    description: str = Field(min_length=5, max_length=500)
    timestamp: datetime
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("description", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class SignalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: EventKind
    active: bool
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    timestamp: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionResponse(BaseModel):
    id: str
    candidate_name: str
    candidate_email: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    status: SessionStatus
    total_events: int
    focus_lost_count: int
    suspicious_events_count: int
    integrity_score: Optional[int] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            candidate_name=session.candidate_name,
            candidate_email=session.candidate_email,
            start_time=session.start_time,
            end_time=session.end_time,
            duration_seconds=session.duration_seconds,
            status=session.status,
            total_events=session.total_events,
            focus_lost_count=session.focus_lost_count,
            suspicious_events_count=session.suspicious_events_count,
            integrity_score=session.integrity_score,
        )


class EventResponse(BaseModel):
    id: str
    event_kind: EventKind
    description: str
    severity: str
    confidence: float
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record: EventRecord) -> "EventResponse":
        return cls(
            id=record.id,
            event_kind=record.kind,
            description=record.description,
            severity=record.severity.value,
            confidence=record.confidence,
            timestamp=record.timestamp,
            metadata=record.metadata,
        )


class SessionWithEventsResponse(SessionResponse):
    events: List[EventResponse]


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class EventPage(BaseModel):
    events: List[EventResponse]
    pagination: Pagination


class DetectionFrame(BaseModel):
    """One frame of object detector output, ``{"class": ..., "confidence": ...}`` per box."""

    detections: List[Dict[str, Any]] = Field(default_factory=list)


class ObjectDetectedMessage(BaseModel):
    """Client-side object detection relayed over the socket."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    label: str = Field(alias="object", min_length=1)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)
