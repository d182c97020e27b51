"""
Repositories for sessions and the append-only event log.

The core only talks to ``EventStore`` and ``SessionStore``; the in-memory
implementations back tests and single-process runs, the Mongo ones sit on the
motor collections from ``database.py``.
"""

import itertools
from typing import Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument  # type: ignore

from .config import Settings
from .models import EventRecord, Session


class EventStore:
    backend: str = "base"

    async def append(self, record: EventRecord) -> EventRecord:
        raise NotImplementedError

    async def list_by_session(self, session_id: str) -> List[EventRecord]:
        raise NotImplementedError


class SessionStore:
    backend: str = "base"

    async def get(self, session_id: str) -> Optional[Session]:
        raise NotImplementedError

    async def put(self, session: Session) -> None:
        raise NotImplementedError

    async def list(self) -> List[Session]:
        raise NotImplementedError


class InMemoryEventStore(EventStore):
    backend: str = "memory"

    def __init__(self) -> None:
        self._events: Dict[str, List[EventRecord]] = {}
        self._sequence = itertools.count(1)

    async def append(self, record: EventRecord) -> EventRecord:
        stored = record.model_copy(update={"sequence": next(self._sequence)})
        self._events.setdefault(stored.session_id, []).append(stored)
        return stored

    async def list_by_session(self, session_id: str) -> List[EventRecord]:
        events = self._events.get(session_id, [])
        return sorted(events, key=lambda e: (e.timestamp, e.sequence))


class InMemorySessionStore(SessionStore):
    backend: str = "memory"

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    async def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.model_copy() if session is not None else None

    async def put(self, session: Session) -> None:
        self._sessions[session.id] = session.model_copy()

    async def list(self) -> List[Session]:
        return sorted(
            (s.model_copy() for s in self._sessions.values()),
            key=lambda s: s.start_time,
            reverse=True,
        )


class MongoEventStore(EventStore):
    backend: str = "mongo"

    def __init__(self, database) -> None:
        self.collection = database.events
        self.counters = database.counters

    async def _next_sequence(self, session_id: str) -> int:
        doc = await self.counters.find_one_and_update(
            {"_id": f"events:{session_id}"},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["value"])

    async def append(self, record: EventRecord) -> EventRecord:
        stored = record.model_copy(update={"sequence": await self._next_sequence(record.session_id)})
        event_doc = {
            "_id": stored.id,
            "session_id": stored.session_id,
            "kind": stored.kind.value,
            "description": stored.description,
            "severity": stored.severity.value,
            "confidence": stored.confidence,
            "timestamp": stored.timestamp,
            "metadata": stored.metadata,
            "sequence": stored.sequence,
        }
        await self.collection.insert_one(event_doc)
        return stored

    async def list_by_session(self, session_id: str) -> List[EventRecord]:
        cursor = self.collection.find({"session_id": session_id}).sort(
            [("timestamp", ASCENDING), ("sequence", ASCENDING)]
        )
        events = []
        async for doc in cursor:
            events.append(EventRecord(
                id=str(doc["_id"]),
                session_id=doc["session_id"],
                kind=doc["kind"],
                description=doc["description"],
                severity=doc["severity"],
                confidence=doc["confidence"],
                timestamp=doc["timestamp"],
                metadata=doc.get("metadata") or {},
                sequence=doc.get("sequence"),
            ))
        return events


class MongoSessionStore(SessionStore):
    backend: str = "mongo"

    def __init__(self, database) -> None:
        self.collection = database.sessions

    @staticmethod
    def _to_session(doc: dict) -> Session:
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return Session.model_validate(data)

    async def get(self, session_id: str) -> Optional[Session]:
        doc = await self.collection.find_one({"_id": session_id})
        return self._to_session(doc) if doc else None

    async def put(self, session: Session) -> None:
        session_doc = session.model_dump(mode="python", exclude={"id"})
        session_doc["status"] = session.status.value
        await self.collection.replace_one({"_id": session.id}, session_doc, upsert=True)

    async def list(self) -> List[Session]:
        cursor = self.collection.find().sort("start_time", DESCENDING)
        return [self._to_session(doc) async for doc in cursor]


def build_stores(settings: Settings) -> Tuple[SessionStore, EventStore]:
    if settings.store_backend == "mongo":
        from .database import get_database

        database = get_database(settings)
        return MongoSessionStore(database), MongoEventStore(database)
    return InMemorySessionStore(), InMemoryEventStore()
