import uuid
from typing import Dict, Optional

from .config import settings
from .logger import log_proctor_event
from .models import EventKind, EventRecord, Severity, StabilizedTransition


SEVERITY_BY_KIND: Dict[EventKind, Severity] = {
    EventKind.MULTIPLE_FACES: Severity.HIGH,
    EventKind.FACE_MISSING: Severity.HIGH,
    EventKind.FOCUS_LOST: Severity.LOW,
    EventKind.DROWSINESS_DETECTED: Severity.LOW,
    EventKind.PHONE_DETECTED: Severity.CRITICAL,
    EventKind.BOOK_DETECTED: Severity.CRITICAL,
    EventKind.DEVICE_DETECTED: Severity.CRITICAL,
}

DESCRIPTIONS: Dict[EventKind, str] = {
    EventKind.FOCUS_LOST: "Candidate lost focus - looking away from screen",
    EventKind.FACE_MISSING: "No face detected - candidate left the frame",
    EventKind.MULTIPLE_FACES: "Multiple faces detected - unauthorized person present",
    EventKind.PHONE_DETECTED: "Mobile phone detected in frame",
    EventKind.BOOK_DETECTED: "Books or notes detected",
    EventKind.DEVICE_DETECTED: "Electronic device detected",
    EventKind.DROWSINESS_DETECTED: "Drowsiness detected - candidate appears sleepy",
    EventKind.AUDIO_ANOMALY: "Audio anomaly detected - background noise or voices",
    EventKind.SCREEN_SHARE: "Screen sharing activity detected",
    EventKind.TAB_SWITCH: "Candidate switched away from the interview tab",
}


def severity_for(kind: EventKind) -> Severity:
    return SEVERITY_BY_KIND.get(EventKind(kind), Severity.MEDIUM)


def describe(kind: EventKind) -> str:
    return DESCRIPTIONS[EventKind(kind)]


def classify(
    transition: StabilizedTransition,
    default_confidence: Optional[float] = None,
) -> EventRecord:
    """Turn a stabilized transition into an immutable, typed event record."""
    if default_confidence is None:
        default_confidence = settings.default_confidence
    confidence = transition.confidence if transition.confidence is not None else default_confidence
    record = EventRecord(
        id=str(uuid.uuid4()),
        session_id=transition.session_id,
        kind=transition.kind,
        description=transition.description or describe(transition.kind),
        severity=severity_for(transition.kind),
        confidence=confidence,
        timestamp=transition.timestamp,
        metadata=dict(transition.metadata),
    )
    log_proctor_event(
        record.session_id,
        "event_classified",
        level="debug",
        kind=record.kind.value,
        severity=record.severity.value,
    )
    return record
