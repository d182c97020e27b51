"""
Session state machine - lifecycle, counters and the final integrity score.

It is the only writer of session statistics. Writes for one session are
serialized through a per-session asyncio lock; separate sessions never share
a lock.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from .debounce import SignalFilter
from .errors import ClockError, NotFoundError, PersistenceError, StateError
from .logger import log_proctor_event
from .models import EventKind, EventRecord, Session, SessionStatus, ensure_utc, utcnow
from .repositories import EventStore, SessionStore
from .scoring import is_suspicious, score_events

logger = logging.getLogger(__name__)


class _SessionLock:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class SessionManager:
    def __init__(
        self,
        session_store: SessionStore,
        event_store: EventStore,
        signal_filter: Optional[SignalFilter] = None,
    ) -> None:
        self.session_store = session_store
        self.event_store = event_store
        self.signal_filter = signal_filter
        self._locks: Dict[str, _SessionLock] = {}

    @asynccontextmanager
    async def _locked(self, session_id: str) -> AsyncIterator[None]:
        # Entries live only while someone holds or waits on them
        entry = self._locks.get(session_id)
        if entry is None:
            entry = self._locks[session_id] = _SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(session_id) is entry:
                del self._locks[session_id]

    async def start_session(
        self,
        candidate_name: str,
        candidate_email: Optional[str] = None,
        interviewer_id: Optional[str] = None,
        notes: Optional[str] = None,
        start_time: Optional[datetime] = None,
    ) -> Session:
        session = Session(
            id=str(uuid.uuid4()),
            candidate_name=candidate_name,
            candidate_email=candidate_email,
            interviewer_id=interviewer_id,
            notes=notes,
            start_time=start_time or utcnow(),
        )
        await self.session_store.put(session)
        log_proctor_event(session.id, "session_start", candidate=candidate_name)
        return session

    async def get_session(self, session_id: str) -> Session:
        session = await self.session_store.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    async def list_sessions(self) -> List[Session]:
        return await self.session_store.list()

    async def active_session(self, interviewer_id: Optional[str] = None) -> Optional[Session]:
        """Most recently started active session, optionally for one interviewer."""
        for session in await self.session_store.list():
            if session.is_terminal:
                continue
            if interviewer_id is not None and session.interviewer_id != interviewer_id:
                continue
            return session
        return None

    async def list_events(self, session_id: str) -> List[EventRecord]:
        await self.get_session(session_id)
        return await self.event_store.list_by_session(session_id)

    async def record_event(self, record: EventRecord) -> Optional[EventRecord]:
        """
        Apply a classified event to its session.

        Returns the stored record, or None when the session is already
        terminal and the event was dropped. Raises ``PersistenceError`` when
        the session itself cannot be written; the event is then not counted.
        """
        async with self._locked(record.session_id):
            session = await self.get_session(record.session_id)
            if session.is_terminal:
                log_proctor_event(
                    session.id,
                    "late_event_dropped",
                    level="warning",
                    kind=record.kind.value,
                    status=session.status.value,
                )
                return None

            session.total_events += 1
            if record.kind == EventKind.FOCUS_LOST:
                session.focus_lost_count += 1
            if is_suspicious(record.kind):
                session.suspicious_events_count += 1
            try:
                await self.session_store.put(session)
            except Exception as exc:
                raise PersistenceError(
                    f"Could not update session {session.id}: {exc}",
                ) from exc

            stored = record
            try:
                stored = await self.event_store.append(record)
            except Exception:
                # Counters stay authoritative even if the event log write fails
                logger.exception("Event store append failed for session %s", session.id)

            log_proctor_event(
                session.id,
                "event_recorded",
                kind=record.kind.value,
                severity=record.severity.value,
                total=session.total_events,
            )
            return stored

    async def end_session(
        self,
        session_id: str,
        status: SessionStatus = SessionStatus.COMPLETED,
        end_time: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> Session:
        if status == SessionStatus.ACTIVE:
            raise StateError("A session can only end as completed or terminated", reason="invalid_end_status")

        # Unknown sessions must fail before anything is cancelled
        await self.get_session(session_id)
        if self.signal_filter is not None:
            self.signal_filter.cancel_session(session_id)

        async with self._locked(session_id):
            session = await self.get_session(session_id)
            if session.is_terminal:
                raise StateError(
                    f"Session {session_id} already {session.status.value}",
                    reason="session_already_ended",
                )

            end_time = ensure_utc(end_time) if end_time is not None else utcnow()
            events = await self.event_store.list_by_session(session_id)
            duration = (end_time - session.start_time).total_seconds()

            session.end_time = end_time
            session.integrity_score = score_events(events)
            if notes:
                session.notes = notes

            if duration < 0:
                session.status = SessionStatus.TERMINATED
                session.duration_seconds = None
                session.clock_error = True
                await self.session_store.put(session)
                log_proctor_event(session_id, "clock_error", level="error", duration=duration)
                raise ClockError(
                    f"Session {session_id} ends {-duration:.3f}s before it started",
                )

            session.status = status
            session.duration_seconds = int(duration)
            await self.session_store.put(session)

        log_proctor_event(
            session_id,
            "session_end",
            status=session.status.value,
            integrity_score=session.integrity_score,
            total_events=session.total_events,
            duration=session.duration_seconds,
        )
        return session
