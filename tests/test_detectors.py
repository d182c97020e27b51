from proctoring.detectors import ScriptedDetector, map_object_label, object_signals
from proctoring.models import EventKind


def test_object_labels():
    assert map_object_label("cell phone") == EventKind.PHONE_DETECTED
    assert map_object_label(" Book ") == EventKind.BOOK_DETECTED
    assert map_object_label("keyboard") == EventKind.DEVICE_DETECTED
    assert map_object_label("person") is None


def test_object_signals_one_per_kind():
    signals = object_signals("s1", [
        {"class": "cell phone", "confidence": 0.6},
        {"class": "cell phone", "confidence": 0.9},
        {"class": "person", "confidence": 0.99},
    ])
    by_kind = {s.kind: s for s in signals}
    assert set(by_kind) == {EventKind.PHONE_DETECTED, EventKind.BOOK_DETECTED, EventKind.DEVICE_DETECTED}
    assert by_kind[EventKind.PHONE_DETECTED].active
    assert by_kind[EventKind.PHONE_DETECTED].confidence == 0.9
    assert not by_kind[EventKind.BOOK_DETECTED].active


async def test_scripted_detector_replays_frames():
    detector = ScriptedDetector("s1", [
        {EventKind.FOCUS_LOST: True, EventKind.FACE_MISSING: False},
        {EventKind.FOCUS_LOST: False},
    ])
    assert detector.kinds == {EventKind.FOCUS_LOST, EventKind.FACE_MISSING}

    first = await detector.poll()
    assert [(s.kind, s.active) for s in first] == [(EventKind.FOCUS_LOST, True), (EventKind.FACE_MISSING, False)]
    await detector.poll()
    assert detector.exhausted
    assert await detector.poll() == []
