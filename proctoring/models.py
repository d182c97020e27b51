from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventKind(str, Enum):
    FOCUS_LOST = "focus_lost"
    FACE_MISSING = "face_missing"
    MULTIPLE_FACES = "multiple_faces"
    PHONE_DETECTED = "phone_detected"
    BOOK_DETECTED = "book_detected"
    DEVICE_DETECTED = "device_detected"
    DROWSINESS_DETECTED = "drowsiness_detected"
    AUDIO_ANOMALY = "audio_anomaly"
    SCREEN_SHARE = "screen_share"
    TAB_SWITCH = "tab_switch"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    TERMINATED = "terminated"


class Session(BaseModel):
    id: str
    candidate_name: str
    candidate_email: Optional[str] = None
    interviewer_id: Optional[str] = None
    notes: Optional[str] = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    status: SessionStatus = SessionStatus.ACTIVE
    total_events: int = 0
    focus_lost_count: int = 0
    suspicious_events_count: int = 0
    integrity_score: Optional[int] = None
    clock_error: bool = False

    @field_validator("start_time", "end_time")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.ACTIVE


class DetectionSignal(BaseModel):
    """Raw detector output; consumed by the debounce filter and discarded."""

    session_id: str
    kind: EventKind
    active: bool
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class StabilizedTransition(BaseModel):
    session_id: str
    kind: EventKind
    timestamp: datetime
    confidence: Optional[float] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EventRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    kind: EventKind
    description: str
    severity: Severity
    confidence: float
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
    sequence: Optional[int] = None

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def to_payload(self) -> Dict[str, Any]:
        """Shape published on the real-time event channel."""
        return {
            "sessionId": self.session_id,
            "eventKind": self.kind.value,
            "description": self.description,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "confidence": self.confidence,
        }


class FocusStatus(BaseModel):
    session_id: str
    focused: bool
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "focused": self.focused,
            "timestamp": self.timestamp.isoformat(),
        }
