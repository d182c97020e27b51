from typing import Dict, Iterable, List

from .models import EventKind, EventRecord


MAX_SCORE = 100

SUSPICIOUS_KINDS = frozenset({
    EventKind.PHONE_DETECTED,
    EventKind.BOOK_DETECTED,
    EventKind.DEVICE_DETECTED,
    EventKind.MULTIPLE_FACES,
})

EVENT_WEIGHTS: Dict[EventKind, int] = {
    EventKind.FOCUS_LOST: 2,
    EventKind.PHONE_DETECTED: 5,
    EventKind.BOOK_DETECTED: 5,
    EventKind.DEVICE_DETECTED: 5,
    EventKind.MULTIPLE_FACES: 5,
    EventKind.FACE_MISSING: 15,
}


def deduction(kind: EventKind) -> int:
    return EVENT_WEIGHTS.get(EventKind(kind), 0)


def summarize_events(events: Iterable[EventRecord]) -> Dict[str, int]:
    """Per-kind counts, keyed by the kind's string value; absent kinds are omitted."""
    counts: Dict[str, int] = {}
    for e in events:
        key = e.kind.value
        counts[key] = counts.get(key, 0) + 1
    return counts


def total_deductions(counts: Dict[str, int]) -> int:
    return sum(v * deduction(EventKind(k)) for k, v in counts.items())


def compute_integrity_score(counts: Dict[str, int]) -> int:
    return max(0, MAX_SCORE - total_deductions(counts))


def score_events(events: Iterable[EventRecord]) -> int:
    """Integrity score as a pure fold over the event list."""
    return compute_integrity_score(summarize_events(events))


def running_scores(events: Iterable[EventRecord]) -> List[int]:
    """Score after each appended event, in order."""
    scores: List[int] = []
    deducted = 0
    for e in events:
        deducted += deduction(e.kind)
        scores.append(max(0, MAX_SCORE - deducted))
    return scores


def is_suspicious(kind: EventKind) -> bool:
    return kind in SUSPICIOUS_KINDS
