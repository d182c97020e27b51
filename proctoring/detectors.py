"""
Detector capability - what a face/object/audio model must provide to the core.

Real models live behind ``Detector``; ``ScriptedDetector`` replays canned
frames for demos and tests.
"""

from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from .models import DetectionSignal, EventKind, utcnow


# Object detector class labels we care about
OBJECT_LABELS: Dict[str, EventKind] = {
    "cell phone": EventKind.PHONE_DETECTED,
    "book": EventKind.BOOK_DETECTED,
    "laptop": EventKind.DEVICE_DETECTED,
    "mouse": EventKind.DEVICE_DETECTED,
    "keyboard": EventKind.DEVICE_DETECTED,
    "remote": EventKind.DEVICE_DETECTED,
}


def map_object_label(label: str) -> Optional[EventKind]:
    return OBJECT_LABELS.get(label.strip().lower())


def object_signals(
    session_id: str,
    detections: Iterable[Dict[str, object]],
    kinds: Iterable[EventKind] = (
        EventKind.PHONE_DETECTED,
        EventKind.BOOK_DETECTED,
        EventKind.DEVICE_DETECTED,
    ),
) -> List[DetectionSignal]:
    """
    Convert one frame of object detections (``{"class": ..., "confidence": ...}``)
    into a signal per watched kind, inactive when the kind is absent.
    """
    timestamp = utcnow()
    best: Dict[EventKind, float] = {}
    for det in detections:
        kind = map_object_label(str(det.get("class", "")))
        if kind is None:
            continue
        confidence = float(det.get("confidence", 0.0))  # type: ignore
        best[kind] = max(best.get(kind, 0.0), confidence)

    return [
        DetectionSignal(
            session_id=session_id,
            kind=kind,
            active=kind in best,
            confidence=best.get(kind),
            timestamp=timestamp,
        )
        for kind in kinds
    ]


class Detector:
    """Produces detection signals at its own cadence."""

    kinds: FrozenSet[EventKind] = frozenset()
    rate_hz: float = 1.0

    async def poll(self) -> List[DetectionSignal]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ScriptedDetector(Detector):
    """Replays a fixed sequence of frames, then reports nothing."""

    def __init__(
        self,
        session_id: str,
        frames: Sequence[Dict[EventKind, bool]],
        rate_hz: float = 10.0,
        confidence: Optional[float] = None,
    ) -> None:
        self.session_id = session_id
        self.frames = list(frames)
        self.rate_hz = rate_hz
        self.confidence = confidence
        self.kinds = frozenset(k for frame in self.frames for k in frame)
        self._cursor = 0

    @property
    def exhausted(self) -> bool:
        return self._cursor >= len(self.frames)

    async def poll(self) -> List[DetectionSignal]:
        if self.exhausted:
            return []
        frame = self.frames[self._cursor]
        self._cursor += 1
        timestamp = utcnow()
        return [
            DetectionSignal(
                session_id=self.session_id,
                kind=kind,
                active=active,
                confidence=self.confidence,
                timestamp=timestamp,
            )
            for kind, active in frame.items()
        ]
