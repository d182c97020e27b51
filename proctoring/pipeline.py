"""
Proctoring pipeline - detector signals in, classified events out.

    Detector -> SignalFilter -> classify -> SessionManager (counters, event log)
                                         -> Broadcaster (live fan-out)

Recording and broadcasting are independent: a failure in one is logged and
never blocks or undoes the other.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from .broadcaster import FOCUS_STATUS, NEW_EVENT, SESSION_ENDED, SUSPICIOUS_ACTIVITY, Broadcaster
from .classifier import classify
from .config import Settings, settings as default_settings
from .debounce import Scheduler, SignalFilter
from .detectors import Detector, map_object_label, object_signals
from .errors import PersistenceError, ValidationError
from .logger import log_proctor_event
from .models import (
    DetectionSignal,
    EventKind,
    EventRecord,
    FocusStatus,
    Session,
    SessionStatus,
    Severity,
    StabilizedTransition,
)
from .report import (
    EventStats,
    ReportEncoding,
    ReportSection,
    ReportSummary,
    TABLE_COLUMNS,
    build_narrative,
    build_stats,
    build_summary,
    build_table,
    recent_events,
)
from .repositories import EventStore, SessionStore
from .schemas import IngestEventRequest
from .session import SessionManager

logger = logging.getLogger(__name__)

# Rejection reasons keyed by the payload field that failed validation
_FIELD_REASONS = {
    "eventKind": "invalid_event_kind",
    "event_kind": "invalid_event_kind",
    "description": "invalid_description",
    "timestamp": "invalid_timestamp",
    "confidence": "invalid_confidence",
    "sessionId": "invalid_session_id",
    "session_id": "invalid_session_id",
    "metadata": "invalid_metadata",
}

ALERT_KINDS = frozenset({
    EventKind.PHONE_DETECTED,
    EventKind.BOOK_DETECTED,
    EventKind.DEVICE_DETECTED,
    EventKind.MULTIPLE_FACES,
})


def parse_ingestion(payload: Mapping[str, Any]) -> IngestEventRequest:
    """Validate an adapter payload, mapping the first failure to a reason code."""
    try:
        return IngestEventRequest.model_validate(dict(payload))
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else ""
        reason = _FIELD_REASONS.get(field, "invalid_payload")
        raise ValidationError(f"{field or 'payload'}: {first['msg']}", reason=reason) from exc


class ProctorService:
    def __init__(
        self,
        session_store: SessionStore,
        event_store: EventStore,
        broadcaster: Optional[Broadcaster] = None,
        scheduler: Optional[Scheduler] = None,
        settings: Settings = default_settings,
    ) -> None:
        self.settings = settings
        self.broadcaster = broadcaster or Broadcaster(queue_size=settings.observer_queue_size)
        self.signal_filter = SignalFilter(
            on_transition=self.handle_transition,
            scheduler=scheduler,
            settings=settings,
            on_focus_change=self.publish_focus,
        )
        self.sessions = SessionManager(session_store, event_store, signal_filter=self.signal_filter)
        self._monitors: Dict[str, List[asyncio.Task]] = {}

    # Session lifecycle

    async def start_session(self, candidate_name: str, **kwargs: Any) -> Session:
        return await self.sessions.start_session(candidate_name, **kwargs)

    async def get_session(self, session_id: str) -> Session:
        return await self.sessions.get_session(session_id)

    async def end_session(
        self,
        session_id: str,
        status: SessionStatus = SessionStatus.COMPLETED,
        end_time: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> Session:
        await self.sessions.get_session(session_id)
        await self.stop_monitoring(session_id)
        session = await self.sessions.end_session(session_id, status=status, end_time=end_time, notes=notes)
        self._broadcast(session_id, SESSION_ENDED, {
            "sessionId": session.id,
            "status": session.status.value,
            "integrityScore": session.integrity_score,
            "totalEvents": session.total_events,
        })
        return session

    # Ingestion

    async def ingest(self, session_id: Optional[str], payload: Mapping[str, Any]) -> Optional[EventRecord]:
        """
        Accept one adapter event.

        ``session_id`` from the URL wins over ``sessionId`` in the body. Returns
        the stored record, or None if the session had already ended.
        """
        request = parse_ingestion(payload)
        session_id = session_id or request.session_id
        if not session_id:
            raise ValidationError("sessionId is required", reason="invalid_session_id")
        await self.sessions.get_session(session_id)

        transition = StabilizedTransition(
            session_id=session_id,
            kind=request.event_kind,
            timestamp=request.timestamp,
            confidence=request.confidence,
            description=request.description,
            metadata=request.metadata or {},
        )
        return await self.handle_transition(transition)

    async def submit_signal(self, signal: DetectionSignal) -> Optional[StabilizedTransition]:
        await self.sessions.get_session(signal.session_id)
        return await self.signal_filter.submit(signal)

    async def submit_detections(self, session_id: str, detections: Iterable[Dict[str, Any]]) -> List[StabilizedTransition]:
        """Feed one frame of object detections through the filter; returns the edges it produced."""
        await self.sessions.get_session(session_id)
        emitted = []
        for signal in object_signals(session_id, detections):
            transition = await self.signal_filter.submit(signal)
            if transition is not None:
                emitted.append(transition)
        return emitted

    def publish_object_detection(
        self,
        session_id: str,
        label: str,
        confidence: Optional[float],
        timestamp: datetime,
        exclude: Optional[str] = None,
    ) -> int:
        """Relay a client-side detection to the session's suspicious-activity channel."""
        kind = map_object_label(label)
        return self._broadcast(session_id, SUSPICIOUS_ACTIVITY, {
            "sessionId": session_id,
            "type": kind.value if kind is not None else label,
            "label": label,
            "confidence": confidence,
            "timestamp": timestamp.isoformat(),
        }, exclude=exclude)

    async def handle_transition(self, transition: StabilizedTransition) -> Optional[EventRecord]:
        """
        Classify, record and broadcast one transition.

        Recording and broadcasting fail independently: if the session cannot
        be written the event is still broadcast, then ``PersistenceError`` is
        re-raised for the caller.
        """
        record = classify(transition, default_confidence=self.settings.default_confidence)
        try:
            stored = await self.sessions.record_event(record)
        except PersistenceError as exc:
            logger.error("Recording %s failed for session %s: %s", record.kind.value, record.session_id, exc)
            self._publish_record(record)
            raise
        if stored is None:
            return None
        self._publish_record(record)
        return stored

    def _publish_record(self, record: EventRecord) -> None:
        self._broadcast(record.session_id, NEW_EVENT, record.to_payload())
        if record.kind in ALERT_KINDS and record.severity in (Severity.CRITICAL, Severity.HIGH):
            self._broadcast(record.session_id, SUSPICIOUS_ACTIVITY, {
                "sessionId": record.session_id,
                "type": record.kind.value,
                "confidence": record.confidence,
                "timestamp": record.timestamp.isoformat(),
            })

    async def publish_focus(self, status: FocusStatus, exclude: Optional[str] = None) -> int:
        return self._broadcast(status.session_id, FOCUS_STATUS, status.to_payload(), exclude=exclude)

    def _broadcast(self, session_id: str, channel: str, payload: Dict[str, Any], exclude: Optional[str] = None) -> int:
        try:
            return self.broadcaster.publish(session_id, channel, payload, exclude=exclude)
        except Exception:
            logger.exception("Broadcast of %s failed for session %s", channel, session_id)
            return 0

    # Detector monitoring

    async def start_monitoring(self, session_id: str, detectors: Iterable[Detector]) -> int:
        session = await self.sessions.get_session(session_id)
        if session.is_terminal:
            return 0
        tasks = self._monitors.setdefault(session_id, [])
        for detector in detectors:
            tasks.append(asyncio.get_running_loop().create_task(self._poll(session_id, detector)))
        log_proctor_event(session_id, "monitoring_started", detectors=len(tasks))
        return len(tasks)

    async def _poll(self, session_id: str, detector: Detector) -> None:
        interval = 1.0 / detector.rate_hz if detector.rate_hz > 0 else 1.0
        try:
            while not self.signal_filter.is_closed(session_id):
                try:
                    for signal in await detector.poll():
                        await self.signal_filter.submit(signal)
                except Exception:
                    logger.exception("Detector poll failed for session %s", session_id)
                await asyncio.sleep(interval)
        finally:
            await detector.close()

    async def stop_monitoring(self, session_id: str) -> None:
        tasks = self._monitors.pop(session_id, [])
        for task in tasks:
            task.cancel()
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                    logger.error("Detector task for session %s failed: %s", session_id, result)
            log_proctor_event(session_id, "monitoring_stopped", detectors=len(tasks))

    # Reports

    async def summary(self, session_id: str) -> ReportSummary:
        session = await self.sessions.get_session(session_id)
        events = await self.sessions.list_events(session_id)
        return build_summary(session, events)

    async def report(
        self,
        session_id: str,
        encoding: Union[ReportEncoding, str] = ReportEncoding.STRUCTURED,
    ) -> Union[ReportSummary, Dict[str, Any], List[ReportSection]]:
        try:
            encoding = ReportEncoding(encoding)
        except ValueError:
            raise ValidationError(f"Unknown report encoding: {encoding}", reason="invalid_report_format")

        session = await self.sessions.get_session(session_id)
        events = await self.sessions.list_events(session_id)
        if encoding == ReportEncoding.TABULAR:
            return {"columns": list(TABLE_COLUMNS), "rows": [list(r) for r in build_table(events)]}
        summary = build_summary(session, events)
        if encoding == ReportEncoding.NARRATIVE:
            return build_narrative(summary, events)
        return summary

    async def active_session(self, interviewer_id: Optional[str] = None) -> Optional[Session]:
        return await self.sessions.active_session(interviewer_id)

    async def list_events(
        self,
        session_id: str,
        event_kind: Optional[EventKind] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[EventRecord], int]:
        """One page of the session's event log in log order, plus the filtered total."""
        events = await self.sessions.list_events(session_id)
        if event_kind is not None:
            events = [e for e in events if e.kind == event_kind]
        offset = (page - 1) * limit
        return events[offset:offset + limit], len(events)

    async def stats(self, session_id: str) -> EventStats:
        return build_stats(await self.sessions.list_events(session_id))

    async def recent(self, session_id: str, now: Optional[datetime] = None) -> List[EventRecord]:
        return recent_events(await self.sessions.list_events(session_id), now=now)

    async def events_for_export(self, session_id: str) -> Sequence[EventRecord]:
        return await self.sessions.list_events(session_id)

    async def close(self) -> None:
        for session_id in list(self._monitors):
            await self.stop_monitoring(session_id)
        await self.broadcaster.close()
