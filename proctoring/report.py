import csv
import html
import io
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from .models import EventKind, EventRecord, Session, Severity, ensure_utc, utcnow
from .scoring import SUSPICIOUS_KINDS, compute_integrity_score, summarize_events, total_deductions


class ReportEncoding(str, Enum):
    STRUCTURED = "structured"
    TABULAR = "tabular"
    NARRATIVE = "narrative"


HIGH_RISK_KINDS = (EventKind.PHONE_DETECTED, EventKind.DEVICE_DETECTED, EventKind.MULTIPLE_FACES)
MEDIUM_RISK_FOCUS_LOST = 5
EXCESSIVE_FOCUS_LOST = 10
LOW_SCORE_THRESHOLD = 70

TABLE_COLUMNS = ("timestamp", "eventKind", "description", "severity", "confidence")
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

RECENT_WINDOW_SECONDS = 300
RECENT_LIMIT = 20

CRITICAL_VIOLATIONS = "Critical violations detected - manual review required"
PHONE_VIOLATION = "Mobile phone usage detected - violation of exam rules"
MULTIPLE_FACES_VIOLATION = "Multiple faces detected - unauthorized person present"
BOOK_VIOLATION = "Books or notes detected - unauthorized reference material"
DEVICE_VIOLATION = "Additional electronic device detected - verify candidate environment"
FACE_MISSING_NOTICE = "Candidate left the camera frame - verify identity continuity"
EXCESSIVE_FOCUS_LOSS = "Excessive focus loss - candidate attention issues"
FOCUS_MONITORING = "Multiple focus loss incidents - candidate may need additional monitoring"
LOW_INTEGRITY = "Low integrity score detected - manual review recommended"
NO_VIOLATIONS = "No significant violations detected - interview appears legitimate"


class FocusPattern(BaseModel):
    total_focus_loss: int
    average_confidence: float
    pattern: str


class SuspiciousActivity(BaseModel):
    total_suspicious_events: int
    critical_events: int
    risk_level: str


class ReportSummary(BaseModel):
    session_id: str
    candidate_name: str
    status: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    total_events: int
    event_breakdown: Dict[str, int]
    integrity_score: int
    total_deductions: int
    risk_level: str
    recommendations: List[str]
    focus_pattern: FocusPattern
    suspicious_activity: SuspiciousActivity
    generated_at: datetime = Field(default_factory=utcnow)


class ReportSection(BaseModel):
    title: str
    lines: List[str]


class KindStats(BaseModel):
    count: int
    average_confidence: float


class EventStats(BaseModel):
    event_counts: Dict[str, KindStats]
    total_events: int
    last_updated: datetime = Field(default_factory=utcnow)


def risk_level(counts: Dict[str, int]) -> str:
    if any(counts.get(k.value, 0) > 0 for k in HIGH_RISK_KINDS):
        return "HIGH"
    if counts.get(EventKind.FOCUS_LOST.value, 0) > MEDIUM_RISK_FOCUS_LOST:
        return "MEDIUM"
    return "LOW"


def generate_recommendations(counts: Dict[str, int], integrity_score: int) -> List[str]:
    recommendations: List[str] = []
    focus_lost = counts.get(EventKind.FOCUS_LOST.value, 0)

    if any(counts.get(k.value, 0) > 0 for k in HIGH_RISK_KINDS):
        recommendations.append(CRITICAL_VIOLATIONS)
    if counts.get(EventKind.PHONE_DETECTED.value, 0) > 0:
        recommendations.append(PHONE_VIOLATION)
    if counts.get(EventKind.MULTIPLE_FACES.value, 0) > 0:
        recommendations.append(MULTIPLE_FACES_VIOLATION)
    if counts.get(EventKind.BOOK_DETECTED.value, 0) > 0:
        recommendations.append(BOOK_VIOLATION)
    if counts.get(EventKind.DEVICE_DETECTED.value, 0) > 0:
        recommendations.append(DEVICE_VIOLATION)
    if counts.get(EventKind.FACE_MISSING.value, 0) > 0:
        recommendations.append(FACE_MISSING_NOTICE)
    if focus_lost > EXCESSIVE_FOCUS_LOST:
        recommendations.append(EXCESSIVE_FOCUS_LOSS)
    elif focus_lost > MEDIUM_RISK_FOCUS_LOST:
        recommendations.append(FOCUS_MONITORING)
    if integrity_score < LOW_SCORE_THRESHOLD:
        recommendations.append(LOW_INTEGRITY)

    if not recommendations:
        recommendations.append(NO_VIOLATIONS)
    return recommendations


def analyze_focus_pattern(events: Sequence[EventRecord]) -> FocusPattern:
    focus_lost = [e for e in events if e.kind == EventKind.FOCUS_LOST]
    total = len(focus_lost)
    average = sum(e.confidence for e in focus_lost) / total if total else 0.0
    if total > EXCESSIVE_FOCUS_LOST:
        pattern = "FREQUENT"
    elif total > MEDIUM_RISK_FOCUS_LOST:
        pattern = "MODERATE"
    else:
        pattern = "MINIMAL"
    return FocusPattern(total_focus_loss=total, average_confidence=round(average, 3), pattern=pattern)


def analyze_suspicious_activity(events: Sequence[EventRecord]) -> SuspiciousActivity:
    suspicious = [e for e in events if e.kind in SUSPICIOUS_KINDS]
    if len(suspicious) > 3:
        level = "HIGH"
    elif len(suspicious) > 1:
        level = "MEDIUM"
    else:
        level = "LOW"
    return SuspiciousActivity(
        total_suspicious_events=len(suspicious),
        critical_events=sum(1 for e in suspicious if e.severity == Severity.CRITICAL),
        risk_level=level,
    )


def build_summary(session: Session, events: Sequence[EventRecord]) -> ReportSummary:
    """Reduce a session's events into the report summary; the score is always recomputed."""
    counts = summarize_events(events)
    integrity_score = compute_integrity_score(counts)
    return ReportSummary(
        session_id=session.id,
        candidate_name=session.candidate_name,
        status=session.status.value,
        start_time=session.start_time,
        end_time=session.end_time,
        duration_seconds=session.duration_seconds,
        total_events=len(events),
        event_breakdown=counts,
        integrity_score=integrity_score,
        total_deductions=total_deductions(counts),
        risk_level=risk_level(counts),
        recommendations=generate_recommendations(counts, integrity_score),
        focus_pattern=analyze_focus_pattern(events),
        suspicious_activity=analyze_suspicious_activity(events),
    )


def build_stats(events: Sequence[EventRecord]) -> EventStats:
    """Count and mean confidence per event kind."""
    grouped: Dict[str, List[float]] = {}
    for e in events:
        grouped.setdefault(e.kind.value, []).append(e.confidence)
    return EventStats(
        event_counts={
            kind: KindStats(count=len(values), average_confidence=round(sum(values) / len(values), 3))
            for kind, values in grouped.items()
        },
        total_events=len(events),
    )


def recent_events(
    events: Sequence[EventRecord],
    now: Optional[datetime] = None,
    window_seconds: float = RECENT_WINDOW_SECONDS,
    limit: int = RECENT_LIMIT,
) -> List[EventRecord]:
    """Events from the last ``window_seconds``, newest first, at most ``limit``."""
    since = (ensure_utc(now) if now is not None else utcnow()) - timedelta(seconds=window_seconds)
    recent = [e for e in events if e.timestamp >= since]
    recent.sort(key=lambda e: (e.timestamp, e.sequence or 0), reverse=True)
    return recent[:limit]


def build_table(events: Sequence[EventRecord]) -> List[Tuple[str, str, str, str, float]]:
    """One row per event, columns in ``TABLE_COLUMNS`` order."""
    return [
        (
            e.timestamp.strftime(TIMESTAMP_FORMAT),
            e.kind.value,
            e.description,
            e.severity.value,
            e.confidence,
        )
        for e in events
    ]


def _label(kind: str) -> str:
    return kind.replace("_", " ").upper()


def build_narrative(summary: ReportSummary, events: Sequence[EventRecord]) -> List[ReportSection]:
    duration = summary.duration_seconds or 0
    sections = [
        ReportSection(title="Interview", lines=[
            f"Session ID: {summary.session_id}",
            f"Candidate: {summary.candidate_name}",
            f"Status: {summary.status}",
            f"Date: {summary.start_time.strftime(TIMESTAMP_FORMAT)}",
            f"Duration: {duration // 60} minutes",
        ]),
        ReportSection(title="Interview Statistics", lines=[
            f"Integrity Score: {summary.integrity_score}/100",
            f"Total Events: {summary.total_events}",
            f"Risk Level: {summary.risk_level}",
            f"Focus Pattern: {summary.focus_pattern.pattern}",
        ]),
        ReportSection(
            title="Event Breakdown",
            lines=[f"{_label(k)}: {v}" for k, v in sorted(summary.event_breakdown.items())] or ["No events"],
        ),
        ReportSection(title="Recommendations", lines=[f"- {r}" for r in summary.recommendations]),
        ReportSection(
            title="Timeline",
            lines=[
                f"{ts} [{severity}] {description}"
                for ts, _, description, severity, _ in build_table(events)
            ] or ["No events recorded"],
        ),
    ]
    return sections


def render_text(sections: Sequence[ReportSection]) -> str:
    out = ["Video Proctoring Report", ""]
    for section in sections:
        out.append(section.title)
        out.append("-" * len(section.title))
        out.extend(section.lines)
        out.append("")
    return "\n".join(out)


def build_csv_report_content(events: Sequence[EventRecord]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(TABLE_COLUMNS)
    writer.writerows(build_table(events))
    return buffer.getvalue()


def build_html_report_content(summary: ReportSummary, events: Sequence[EventRecord]) -> str:
    esc = html.escape
    breakdown = "".join(
        f"<li>{esc(_label(k))}: {v}</li>" for k, v in sorted(summary.event_breakdown.items())
    ) or "<li>No events</li>"
    recommendations = "".join(f"<li>{esc(r)}</li>" for r in summary.recommendations)
    rows = "".join(
        "<tr>" + "".join(f"<td>{esc(str(cell))}</td>" for cell in row) + "</tr>"
        for row in build_table(events)
    )
    header = "".join(f"<th>{esc(c)}</th>" for c in TABLE_COLUMNS)

    return f"""
    <!doctype html>
    <html>
    <head>
        <meta charset='utf-8' />
        <title>Proctoring Report</title>
        <style>
            body {{ font-family: Arial, sans-serif; padding: 24px; }}
            h1 {{ margin-top: 0; }}
            .grid {{ display: grid; grid-template-columns: 240px 1fr; gap: 8px 16px; }}
            .card {{ border: 1px solid #e5e7eb; border-radius: 8px; padding: 16px; margin-top: 16px; }}
            td, th {{ text-align: left; padding: 4px 8px; }}
        </style>
    </head>
    <body>
        <h1>Proctoring Report</h1>
        <div class='grid'>
            <div><strong>Candidate Name</strong></div><div>{esc(summary.candidate_name)}</div>
            <div><strong>Session ID</strong></div><div>{esc(summary.session_id)}</div>
            <div><strong>Start Time</strong></div><div>{summary.start_time}</div>
            <div><strong>End Time</strong></div><div>{summary.end_time or ''}</div>
            <div><strong>Duration (s)</strong></div><div>{summary.duration_seconds or 0}</div>
            <div><strong>Integrity Score</strong></div><div>{summary.integrity_score}</div>
            <div><strong>Risk Level</strong></div><div>{summary.risk_level}</div>
        </div>

        <div class='card'>
            <h3>Event Summary</h3>
            <ul>{breakdown}</ul>
        </div>

        <div class='card'>
            <h3>Recommendations</h3>
            <ul>{recommendations}</ul>
        </div>

        <div class='card'>
            <h3>Timeline</h3>
            <table><thead><tr>{header}</tr></thead><tbody>{rows}</tbody></table>
        </div>
    </body>
    </html>
    """
