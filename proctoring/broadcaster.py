"""
Real-time broadcaster - session topics fanned out to subscribed observers.

Every observer gets a bounded mailbox drained by its own task, so ``publish``
only enqueues and never waits on a client. A full mailbox drops the message;
a failed send disconnects the observer from every topic.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket  # type: ignore

logger = logging.getLogger(__name__)

NEW_EVENT = "new-event"
FOCUS_STATUS = "focus-status"
SUSPICIOUS_ACTIVITY = "suspicious-activity"
SESSION_ENDED = "session-ended"


class Observer:
    def __init__(self, observer_id: Optional[str] = None) -> None:
        self.observer_id = observer_id or str(uuid.uuid4())

    async def send(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError


class WebSocketObserver(Observer):
    def __init__(self, websocket: WebSocket, observer_id: Optional[str] = None) -> None:
        super().__init__(observer_id)
        self.websocket = websocket

    async def send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_json(message)


class _Mailbox:
    def __init__(self, observer: Observer, queue_size: int) -> None:
        self.observer = observer
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.task: Optional[asyncio.Task] = None


class Broadcaster:
    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._topics: Dict[str, Set[str]] = {}
        self._mailboxes: Dict[str, _Mailbox] = {}
        self.dropped = 0

    def subscribers(self, session_id: str) -> Set[str]:
        return set(self._topics.get(session_id, ()))

    def topics(self) -> Set[str]:
        return set(self._topics)

    def subscribe(self, session_id: str, observer: Observer) -> None:
        mailbox = self._mailboxes.get(observer.observer_id)
        if mailbox is None:
            mailbox = _Mailbox(observer, self.queue_size)
            mailbox.task = asyncio.get_running_loop().create_task(self._pump(mailbox))
            self._mailboxes[observer.observer_id] = mailbox
        self._topics.setdefault(session_id, set()).add(observer.observer_id)
        logger.info("Observer %s joined session %s", observer.observer_id, session_id)

    def unsubscribe(self, session_id: str, observer: Observer) -> None:
        members = self._topics.get(session_id)
        if members is not None:
            members.discard(observer.observer_id)
            if not members:
                del self._topics[session_id]
        logger.info("Observer %s left session %s", observer.observer_id, session_id)
        if not any(observer.observer_id in m for m in self._topics.values()):
            self._close_mailbox(observer.observer_id)

    def disconnect(self, observer: Observer) -> None:
        self._drop_observer(observer.observer_id)

    def _drop_observer(self, observer_id: str) -> None:
        for session_id in [s for s, m in self._topics.items() if observer_id in m]:
            members = self._topics[session_id]
            members.discard(observer_id)
            if not members:
                del self._topics[session_id]
        self._close_mailbox(observer_id)

    def _close_mailbox(self, observer_id: str) -> None:
        mailbox = self._mailboxes.pop(observer_id, None)
        if mailbox is not None and mailbox.task is not None and mailbox.task is not asyncio.current_task():
            mailbox.task.cancel()

    def publish(
        self,
        session_id: str,
        channel: str,
        payload: Dict[str, Any],
        exclude: Optional[str] = None,
    ) -> int:
        """
        Queue ``payload`` for every subscriber of the session except ``exclude``.

        Returns how many observers it was queued for.
        """
        message = {"channel": channel, "data": payload}
        delivered = 0
        for observer_id in list(self._topics.get(session_id, ())):
            if observer_id == exclude:
                continue
            mailbox = self._mailboxes.get(observer_id)
            if mailbox is None:
                continue
            try:
                mailbox.queue.put_nowait(message)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning("Dropping %s for slow observer %s", channel, observer_id)
                continue
            delivered += 1
        return delivered

    async def _pump(self, mailbox: _Mailbox) -> None:
        observer = mailbox.observer
        while True:
            message = await mailbox.queue.get()
            try:
                await observer.send(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.info("Observer %s disconnected: %s", observer.observer_id, exc)
                self._drop_observer(observer.observer_id)
                return

    async def close(self) -> None:
        tasks = [m.task for m in self._mailboxes.values() if m.task is not None]
        self._mailboxes.clear()
        self._topics.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
