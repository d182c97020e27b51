"""
Shared fixtures: a virtual-clock scheduler, in-memory and fake Mongo stores, and a service.
"""
import copy
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from pymongo import DESCENDING  # type: ignore
from pymongo.errors import DuplicateKeyError  # type: ignore

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from proctoring.broadcaster import Observer
from proctoring.classifier import classify
from proctoring.config import Settings
from proctoring.debounce import Scheduler
from proctoring.models import EventKind, EventRecord, StabilizedTransition
from proctoring.pipeline import ProctorService
from proctoring.repositories import InMemoryEventStore, InMemorySessionStore


BASE_TIME = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


class _Handle:
    def __init__(self, due: float, callback) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Deterministic clock; timers only run inside ``advance``/``advance_to``."""

    def __init__(self) -> None:
        self._now = 0.0
        self._handles: List[_Handle] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback) -> _Handle:
        handle = _Handle(self._now + delay, callback)
        self._handles.append(handle)
        return handle

    @property
    def pending(self) -> List[_Handle]:
        return [h for h in self._handles if not h.cancelled]

    async def advance_to(self, target: float) -> None:
        while True:
            due = [h for h in self._handles if not h.cancelled and h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.due)
            self._handles.remove(handle)
            self._now = max(self._now, handle.due)
            await handle.callback()
        self._now = max(self._now, target)

    async def advance(self, seconds: float) -> None:
        await self.advance_to(self._now + seconds)


class RecordingObserver(Observer):
    def __init__(self, observer_id: Optional[str] = None, fail: bool = False) -> None:
        super().__init__(observer_id)
        self.messages: List[Dict[str, Any]] = []
        self.fail = fail

    async def send(self, message: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(message)

    def channel(self, name: str) -> List[Dict[str, Any]]:
        return [m["data"] for m in self.messages if m["channel"] == name]


class FakeCursor:
    """The slice of motor's cursor the repositories use: ``sort`` and ``async for``."""

    def __init__(self, docs: List[dict]) -> None:
        self._docs = docs

    def sort(self, key, direction=None) -> "FakeCursor":
        keys = [(key, direction)] if isinstance(key, str) else list(key)
        for field, order in reversed(keys):
            self._docs.sort(key=lambda d: d[field], reverse=order == DESCENDING)
        return self

    async def __aiter__(self):
        for doc in self._docs:
            yield copy.deepcopy(doc)


class FakeCollection:
    def __init__(self) -> None:
        self.docs: Dict[Any, dict] = {}

    @staticmethod
    def _matches(doc: dict, query: dict) -> bool:
        return all(doc.get(k) == v for k, v in query.items())

    async def insert_one(self, doc: dict) -> None:
        if doc["_id"] in self.docs:
            raise DuplicateKeyError(f"duplicate _id {doc['_id']}")
        self.docs[doc["_id"]] = copy.deepcopy(doc)

    async def find_one(self, query: dict) -> Optional[dict]:
        for doc in self.docs.values():
            if self._matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query: Optional[dict] = None) -> FakeCursor:
        return FakeCursor([copy.deepcopy(d) for d in self.docs.values() if self._matches(d, query or {})])

    async def replace_one(self, query: dict, doc: dict, upsert: bool = False) -> None:
        existing = await self.find_one(query)
        if existing is None and not upsert:
            return
        doc_id = existing["_id"] if existing else query["_id"]
        self.docs[doc_id] = dict(copy.deepcopy(doc), _id=doc_id)

    async def find_one_and_update(self, query: dict, update: dict, upsert: bool = False,
                                  return_document: bool = False) -> Optional[dict]:
        doc = self.docs.get(query["_id"])
        before = copy.deepcopy(doc) if doc is not None else None
        if doc is None:
            if not upsert:
                return None
            doc = self.docs[query["_id"]] = {"_id": query["_id"]}
        for field, amount in update.get("$inc", {}).items():
            doc[field] = doc.get(field, 0) + amount
        return copy.deepcopy(doc) if return_document else before


class FakeDatabase:
    def __init__(self) -> None:
        self.events = FakeCollection()
        self.counters = FakeCollection()
        self.sessions = FakeCollection()


def make_record(kind: EventKind, session_id: str = "s1", offset: float = 0.0,
                confidence: Optional[float] = None) -> EventRecord:
    return classify(StabilizedTransition(
        session_id=session_id,
        kind=kind,
        timestamp=BASE_TIME + timedelta(seconds=offset),
        confidence=confidence,
    ))


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def stores():
    return InMemorySessionStore(), InMemoryEventStore()


@pytest.fixture
def service(stores, scheduler, settings):
    session_store, event_store = stores
    return ProctorService(session_store, event_store, scheduler=scheduler, settings=settings)
