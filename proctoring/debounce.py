"""
Debounce/hysteresis filter - turns noisy detector samples into stable transitions.

Signal polarity: ``active=True`` means the anomalous condition holds for that
sample (gaze off-screen for focus_lost, no face for face_missing, object seen
for phone_detected, ...).

Timing policy per kind:
- focus_lost: emits once the condition has held for ``focus_lost_seconds``.
- face_missing: a timer is armed only after ``face_missing_min_samples``
  consecutive absent samples and fires ``face_missing_seconds`` after the
  first of them.
- everything else: edge-triggered, one emission per false->true edge.

Any inactive sample resets the kind and cancels its pending timer.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .config import Settings, settings as default_settings
from .logger import log_proctor_event
from .models import DetectionSignal, EventKind, FocusStatus, StabilizedTransition

logger = logging.getLogger(__name__)

TransitionHandler = Callable[[StabilizedTransition], Awaitable[Any]]
FocusHandler = Callable[[FocusStatus], Awaitable[Any]]
TimerCallback = Callable[[], Awaitable[None]]


class Scheduler:
    """Clock plus cancellable delayed callbacks."""

    def now(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, callback: TimerCallback) -> Any:
        """Run ``callback`` after ``delay`` seconds; the returned handle has ``cancel()``."""
        raise NotImplementedError


class AsyncioScheduler(Scheduler):
    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: TimerCallback) -> asyncio.Task:
        async def _run() -> None:
            await asyncio.sleep(delay)
            await callback()

        return asyncio.get_running_loop().create_task(_run())


@dataclass
class _KindState:
    active: bool = False
    emitted: bool = False
    samples: int = 0
    since: Optional[float] = None
    first_seen: Optional[datetime] = None
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def reset(self) -> None:
        self.active = False
        self.emitted = False
        self.samples = 0
        self.since = None
        self.first_seen = None
        self.confidence = None
        self.metadata = {}


class SignalFilter:
    """
    Per-(session, kind) debounce state and the timers it owns.

    ``on_transition`` is awaited for every stabilized transition. Closing a
    session with ``cancel_session`` cancels its timers and drops anything that
    arrives for it afterwards. Only the most recent closed sessions are
    remembered; late signals for older ones reach the session state machine,
    which drops them there.
    """

    def __init__(
        self,
        on_transition: TransitionHandler,
        scheduler: Optional[Scheduler] = None,
        settings: Settings = default_settings,
        on_focus_change: Optional[FocusHandler] = None,
    ) -> None:
        self.on_transition = on_transition
        self.on_focus_change = on_focus_change
        self.scheduler = scheduler or AsyncioScheduler()
        self.settings = settings
        self._states: Dict[Tuple[str, EventKind], _KindState] = {}
        self._timers: Dict[Tuple[str, EventKind], Any] = {}
        # Recently closed sessions, oldest first, capped at closed_sessions_retained
        self._closed: "OrderedDict[str, None]" = OrderedDict()

    def _state(self, key: Tuple[str, EventKind]) -> _KindState:
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = _KindState()
        return state

    def pending(self, session_id: str) -> List[EventKind]:
        return [kind for (sid, kind) in self._timers if sid == session_id]

    def is_closed(self, session_id: str) -> bool:
        return session_id in self._closed

    async def submit(self, signal: DetectionSignal) -> Optional[StabilizedTransition]:
        """
        Feed one detector sample.

        Returns the transition when this sample itself produced one (edge
        kinds only); timed kinds emit later from their timers.
        """
        if signal.session_id in self._closed:
            log_proctor_event(signal.session_id, "signal_dropped", level="debug", kind=signal.kind.value)
            return None

        if signal.kind == EventKind.FOCUS_LOST:
            await self._on_focus_sample(signal)
            return None
        if signal.kind == EventKind.FACE_MISSING:
            self._on_face_sample(signal)
            return None
        return await self._on_edge_sample(signal)

    async def _on_focus_sample(self, signal: DetectionSignal) -> None:
        key = (signal.session_id, signal.kind)
        state = self._state(key)
        if not signal.active:
            self._cancel_timer(key)
            was_lost = state.emitted
            state.reset()
            if was_lost:
                await self._notify_focus(signal.session_id, True, signal.timestamp)
            return

        if state.active:
            return
        self._begin(state, signal)
        self._arm(key, self.settings.focus_lost_seconds)

    def _on_face_sample(self, signal: DetectionSignal) -> None:
        key = (signal.session_id, signal.kind)
        state = self._state(key)
        if not signal.active:
            self._cancel_timer(key)
            state.reset()
            return

        if not state.active:
            self._begin(state, signal)
        state.samples += 1
        if state.emitted or key in self._timers:
            return
        if state.samples >= self.settings.face_missing_min_samples:
            elapsed = self.scheduler.now() - state.since
            self._arm(key, max(0.0, self.settings.face_missing_seconds - elapsed))

    async def _on_edge_sample(self, signal: DetectionSignal) -> Optional[StabilizedTransition]:
        state = self._state((signal.session_id, signal.kind))
        if not signal.active:
            state.reset()
            return None
        if state.active:
            return None
        self._begin(state, signal)
        state.emitted = True
        transition = StabilizedTransition(
            session_id=signal.session_id,
            kind=signal.kind,
            timestamp=signal.timestamp,
            confidence=signal.confidence,
            metadata=dict(signal.metadata),
        )
        try:
            await self.on_transition(transition)
        except Exception:
            # The edge stays consumed; the next one starts after the condition clears
            logger.exception("Failed to deliver %s transition for session %s", signal.kind.value, signal.session_id)
        return transition

    def _begin(self, state: _KindState, signal: DetectionSignal) -> None:
        state.active = True
        state.emitted = False
        state.samples = 0
        state.since = self.scheduler.now()
        state.first_seen = signal.timestamp
        state.confidence = signal.confidence
        state.metadata = dict(signal.metadata)

    def _arm(self, key: Tuple[str, EventKind], delay: float) -> None:
        self._cancel_timer(key)
        self._timers[key] = self.scheduler.call_later(delay, lambda: self._fire(key))

    def _cancel_timer(self, key: Tuple[str, EventKind]) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    async def _fire(self, key: Tuple[str, EventKind]) -> None:
        session_id, kind = key
        self._timers.pop(key, None)
        state = self._states.get(key)
        if session_id in self._closed or state is None or not state.active or state.emitted:
            return
        state.emitted = True

        hold = (
            self.settings.focus_lost_seconds
            if kind == EventKind.FOCUS_LOST
            else self.settings.face_missing_seconds
        )
        metadata = dict(state.metadata)
        metadata["sustained_seconds"] = hold
        if kind == EventKind.FACE_MISSING:
            metadata["absent_samples"] = state.samples
        transition = StabilizedTransition(
            session_id=session_id,
            kind=kind,
            timestamp=state.first_seen + timedelta(seconds=hold),
            confidence=state.confidence,
            metadata=metadata,
        )
        try:
            await self.on_transition(transition)
            if kind == EventKind.FOCUS_LOST:
                await self._notify_focus(session_id, False, transition.timestamp)
        except Exception:
            logger.exception("Failed to deliver %s transition for session %s", kind.value, session_id)

    async def _notify_focus(self, session_id: str, focused: bool, timestamp: datetime) -> None:
        if self.on_focus_change is None:
            return
        await self.on_focus_change(FocusStatus(session_id=session_id, focused=focused, timestamp=timestamp))

    def cancel_session(self, session_id: str) -> int:
        """Cancel every pending timer for the session and close it. Returns the number cancelled."""
        self._closed[session_id] = None
        self._closed.move_to_end(session_id)
        while len(self._closed) > self.settings.closed_sessions_retained:
            self._closed.popitem(last=False)
        cancelled = 0
        for key in [k for k in self._timers if k[0] == session_id]:
            self._cancel_timer(key)
            cancelled += 1
        for key in [k for k in self._states if k[0] == session_id]:
            del self._states[key]
        if cancelled:
            log_proctor_event(session_id, "timers_cancelled", count=cancelled)
        return cancelled
