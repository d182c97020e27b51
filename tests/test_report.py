import csv
import io
from datetime import timedelta

from proctoring.models import EventKind, Session
from proctoring.report import (
    CRITICAL_VIOLATIONS,
    EXCESSIVE_FOCUS_LOSS,
    FOCUS_MONITORING,
    LOW_INTEGRITY,
    NO_VIOLATIONS,
    PHONE_VIOLATION,
    TABLE_COLUMNS,
    build_csv_report_content,
    build_html_report_content,
    build_narrative,
    build_stats,
    build_summary,
    build_table,
    recent_events,
    render_text,
)
from proctoring.scoring import score_events

from conftest import BASE_TIME, make_record


def session():
    return Session(id="s1", candidate_name="Ada <script>", start_time=BASE_TIME)


def records(*kinds):
    return [make_record(k, offset=i) for i, k in enumerate(kinds)]


def test_empty_session_summary():
    summary = build_summary(session(), [])
    assert summary.integrity_score == 100
    assert summary.risk_level == "LOW"
    assert summary.total_events == 0
    assert summary.event_breakdown == {}
    assert summary.recommendations == [NO_VIOLATIONS]


def test_focus_and_phone_scenario():
    summary = build_summary(session(), records(EventKind.FOCUS_LOST, EventKind.FOCUS_LOST, EventKind.PHONE_DETECTED))
    assert summary.integrity_score == 91
    assert summary.risk_level == "HIGH"
    assert PHONE_VIOLATION in summary.recommendations
    assert summary.event_breakdown == {"focus_lost": 2, "phone_detected": 1}
    assert summary.suspicious_activity.critical_events == 1


def test_six_focus_losses_scenario():
    summary = build_summary(session(), records(*[EventKind.FOCUS_LOST] * 6))
    assert summary.integrity_score == 88
    assert summary.risk_level == "MEDIUM"
    assert CRITICAL_VIOLATIONS not in summary.recommendations
    assert PHONE_VIOLATION not in summary.recommendations
    assert summary.recommendations == [FOCUS_MONITORING]
    assert summary.focus_pattern.pattern == "MODERATE"


def test_book_alone_is_not_high_risk():
    summary = build_summary(session(), records(EventKind.BOOK_DETECTED))
    assert summary.risk_level == "LOW"
    assert NO_VIOLATIONS not in summary.recommendations


def test_low_score_and_excessive_focus_loss():
    summary = build_summary(session(), records(*[EventKind.FOCUS_LOST] * 11, EventKind.FACE_MISSING))
    assert summary.integrity_score == 63
    assert EXCESSIVE_FOCUS_LOSS in summary.recommendations
    assert LOW_INTEGRITY in summary.recommendations
    assert summary.focus_pattern.pattern == "FREQUENT"


def test_recomputed_score_matches_scorer_not_cached_field():
    events = records(EventKind.FACE_MISSING, EventKind.DEVICE_DETECTED, EventKind.TAB_SWITCH)
    stale = session().model_copy(update={"integrity_score": 100})
    assert build_summary(stale, events).integrity_score == score_events(events) == 80


def test_table_has_fixed_columns_and_one_row_per_event():
    events = records(EventKind.TAB_SWITCH, EventKind.PHONE_DETECTED)
    rows = build_table(events)
    assert TABLE_COLUMNS == ("timestamp", "eventKind", "description", "severity", "confidence")
    assert len(rows) == 2
    assert rows[1][1:4] == ("phone_detected", "Mobile phone detected in frame", "critical")
    assert rows[0][0] == "2024-05-01 09:00:00"


def test_csv_export():
    content = build_csv_report_content(records(EventKind.FOCUS_LOST))
    rows = list(csv.reader(io.StringIO(content)))
    assert rows[0] == list(TABLE_COLUMNS)
    assert rows[1][1] == "focus_lost"
    assert float(rows[1][4]) == 0.8


def test_narrative_sections():
    events = records(EventKind.FOCUS_LOST, EventKind.PHONE_DETECTED)
    sections = build_narrative(build_summary(session(), events), events)
    assert [s.title for s in sections] == [
        "Interview", "Interview Statistics", "Event Breakdown", "Recommendations", "Timeline",
    ]
    text = render_text(sections)
    assert "Integrity Score: 93/100" in text
    assert "PHONE DETECTED: 1" in text


def test_html_escapes_candidate_name():
    html = build_html_report_content(build_summary(session(), []), [])
    assert "Ada &lt;script&gt;" in html
    assert "<script>" not in html


def test_stats_count_and_average_confidence_per_kind():
    events = [
        make_record(EventKind.FOCUS_LOST, confidence=0.6),
        make_record(EventKind.FOCUS_LOST, confidence=0.9),
        make_record(EventKind.PHONE_DETECTED),
    ]
    stats = build_stats(events)
    assert stats.total_events == 3
    assert stats.event_counts["focus_lost"].count == 2
    assert stats.event_counts["focus_lost"].average_confidence == 0.75
    assert stats.event_counts["phone_detected"].average_confidence == 0.8
    assert "book_detected" not in stats.event_counts


def test_stats_for_empty_session():
    stats = build_stats([])
    assert stats.total_events == 0
    assert stats.event_counts == {}


def test_recent_events_window_and_limit():
    now = BASE_TIME + timedelta(minutes=10)
    events = [make_record(EventKind.TAB_SWITCH, offset=i * 10) for i in range(61)]

    recent = recent_events(events, now=now)
    assert len(recent) == 20
    assert recent[0].timestamp == now
    assert all(a.timestamp >= b.timestamp for a, b in zip(recent, recent[1:]))

    window = recent_events(events, now=now, limit=100)
    assert len(window) == 31
    assert window[-1].timestamp == now - timedelta(minutes=5)
