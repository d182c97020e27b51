from datetime import timedelta

import pytest

from proctoring.config import Settings
from proctoring.debounce import SignalFilter
from proctoring.models import DetectionSignal, EventKind

from conftest import BASE_TIME


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def focus_changes():
    return []


@pytest.fixture
def signal_filter(scheduler, settings, emitted, focus_changes):
    async def on_transition(transition):
        emitted.append(transition)

    async def on_focus_change(status):
        focus_changes.append(status.focused)

    return SignalFilter(on_transition, scheduler=scheduler, settings=settings, on_focus_change=on_focus_change)


def signal(kind, active, at, session_id="s1"):
    return DetectionSignal(
        session_id=session_id,
        kind=kind,
        active=active,
        timestamp=BASE_TIME + timedelta(seconds=at),
    )


async def hold(signal_filter, scheduler, kind, active, start, seconds, rate=10, session_id="s1"):
    """Feed ``rate`` samples per second from ``start`` for ``seconds``; returns the end time."""
    for i in range(int(round(seconds * rate))):
        at = start + i / rate
        await scheduler.advance_to(at)
        await signal_filter.submit(signal(kind, active, at, session_id))
    end = start + seconds
    await scheduler.advance_to(end)
    return end


def kinds(transitions):
    return [t.kind for t in transitions]


async def test_focus_loss_under_threshold_never_fires(signal_filter, scheduler, emitted):
    t = await hold(signal_filter, scheduler, EventKind.FOCUS_LOST, True, 0.0, 4.9)
    t = await hold(signal_filter, scheduler, EventKind.FOCUS_LOST, False, t, 1.0)
    await scheduler.advance(30)
    assert emitted == []
    assert scheduler.pending == []


async def test_focus_loss_at_threshold_fires_once(signal_filter, scheduler, emitted, focus_changes):
    t = await hold(signal_filter, scheduler, EventKind.FOCUS_LOST, True, 0.0, 5.0)
    assert kinds(emitted) == [EventKind.FOCUS_LOST]
    assert emitted[0].timestamp == BASE_TIME + timedelta(seconds=5)

    await hold(signal_filter, scheduler, EventKind.FOCUS_LOST, True, t, 20.0)
    assert len(emitted) == 1
    assert focus_changes == [False]


async def test_focus_loss_rearms_after_refocus(signal_filter, scheduler, emitted, focus_changes):
    t = await hold(signal_filter, scheduler, EventKind.FOCUS_LOST, True, 0.0, 6.0)
    t = await hold(signal_filter, scheduler, EventKind.FOCUS_LOST, False, t, 1.0)
    t = await hold(signal_filter, scheduler, EventKind.FOCUS_LOST, True, t, 6.0)
    assert kinds(emitted) == [EventKind.FOCUS_LOST, EventKind.FOCUS_LOST]
    assert focus_changes == [False, True, False]


async def test_intermittent_face_presence_never_fires(signal_filter, scheduler, emitted):
    t = await hold(signal_filter, scheduler, EventKind.FACE_MISSING, True, 0.0, 6.0)
    t = await hold(signal_filter, scheduler, EventKind.FACE_MISSING, False, t, 1.0)
    t = await hold(signal_filter, scheduler, EventKind.FACE_MISSING, True, t, 6.0)
    await hold(signal_filter, scheduler, EventKind.FACE_MISSING, False, t, 1.0)
    await scheduler.advance(30)
    assert emitted == []


async def test_continuous_face_absence_fires_once(signal_filter, scheduler, emitted):
    t = await hold(signal_filter, scheduler, EventKind.FACE_MISSING, True, 0.0, 10.5)
    assert kinds(emitted) == [EventKind.FACE_MISSING]
    await hold(signal_filter, scheduler, EventKind.FACE_MISSING, True, t, 20.0)
    assert len(emitted) == 1
    assert emitted[0].metadata["absent_samples"] >= 30


async def test_face_timer_needs_enough_consecutive_samples(signal_filter, scheduler, emitted):
    # 20 absent samples and then the detector goes quiet
    await hold(signal_filter, scheduler, EventKind.FACE_MISSING, True, 0.0, 2.0)
    assert scheduler.pending == []
    await scheduler.advance(30)
    assert emitted == []


async def test_edge_kinds_fire_once_per_active_interval(signal_filter, scheduler, emitted):
    for i in range(5):
        await signal_filter.submit(signal(EventKind.PHONE_DETECTED, True, i))
    assert kinds(emitted) == [EventKind.PHONE_DETECTED]

    await signal_filter.submit(signal(EventKind.PHONE_DETECTED, False, 6))
    await signal_filter.submit(signal(EventKind.PHONE_DETECTED, True, 7))
    assert kinds(emitted) == [EventKind.PHONE_DETECTED, EventKind.PHONE_DETECTED]


async def test_edge_kinds_are_independent(signal_filter, emitted):
    await signal_filter.submit(signal(EventKind.PHONE_DETECTED, True, 0))
    await signal_filter.submit(signal(EventKind.BOOK_DETECTED, True, 0))
    await signal_filter.submit(signal(EventKind.PHONE_DETECTED, True, 1, session_id="s2"))
    assert len(emitted) == 3


async def test_cancel_session_drops_pending_and_late_signals(signal_filter, scheduler, emitted):
    t = await hold(signal_filter, scheduler, EventKind.FOCUS_LOST, True, 0.0, 3.0)
    assert signal_filter.pending("s1") == [EventKind.FOCUS_LOST]

    assert signal_filter.cancel_session("s1") == 1
    assert signal_filter.pending("s1") == []
    await scheduler.advance(30)
    assert await signal_filter.submit(signal(EventKind.PHONE_DETECTED, True, t)) is None
    assert emitted == []


async def test_cancel_session_leaves_other_sessions_alone(signal_filter, scheduler, emitted):
    await signal_filter.submit(signal(EventKind.FOCUS_LOST, True, 0, session_id="s1"))
    await signal_filter.submit(signal(EventKind.FOCUS_LOST, True, 0, session_id="s2"))
    signal_filter.cancel_session("s1")
    await scheduler.advance(6)
    assert [t.session_id for t in emitted] == ["s2"]


async def test_failed_edge_delivery_is_contained(scheduler, settings):
    delivered = []

    async def on_transition(transition):
        if not delivered:
            delivered.append(None)
            raise ConnectionError("store down")
        delivered.append(transition.kind)

    signal_filter = SignalFilter(on_transition, scheduler=scheduler, settings=settings)
    first = await signal_filter.submit(signal(EventKind.PHONE_DETECTED, True, 0))
    assert first is not None
    assert await signal_filter.submit(signal(EventKind.PHONE_DETECTED, True, 1)) is None

    await signal_filter.submit(signal(EventKind.PHONE_DETECTED, False, 2))
    await signal_filter.submit(signal(EventKind.PHONE_DETECTED, True, 3))
    assert delivered == [None, EventKind.PHONE_DETECTED]


async def test_closed_sessions_are_bounded(scheduler, emitted):
    async def on_transition(transition):
        emitted.append(transition)

    signal_filter = SignalFilter(on_transition, scheduler=scheduler, settings=Settings(closed_sessions_retained=2))
    for session_id in ("a", "b", "c"):
        signal_filter.cancel_session(session_id)

    assert not signal_filter.is_closed("a")
    assert signal_filter.is_closed("b") and signal_filter.is_closed("c")
    assert len(signal_filter._closed) == 2
