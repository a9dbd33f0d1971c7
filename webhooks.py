import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import func
from sqlmodel import Session, select

from errors import AuthError, NotFoundError, ValidationError
from models import Candidate, Interview, Report, INTERVIEW_VIDEO_READY, REPORT_COMPLETE
from reports import render_report
from scheduler import find_interview, upsert_interview
from scoring import ScoreRecord, get_or_create_report, reconcile
from utils import score_from_parts

logger = logging.getLogger(__name__)

RECORDING_READY_EVENTS = {
    "application.recording_ready",
    "recording_ready",
    "recording-ready",
    "recording.ready",
}


@dataclass
class RecordingEvent:
    session_id: str
    video_url: str
    candidate_id: str
    role_id: Optional[str] = None
    duration_seconds: Optional[float] = None
    completed_at: Optional[datetime] = None
    analysis: Optional[Dict[str, Any]] = None


def check_secret(expected: Optional[str], provided: Optional[str]) -> None:
    # no configured secret means no webhook can authenticate
    if not expected or not provided or not hmac.compare_digest(expected.encode(), provided.encode()):
        logger.warning("webhook rejected: shared secret missing or mismatched")
        raise AuthError("Invalid webhook secret.")


def _pick(body: Dict[str, Any], *names: str):
    # top level first, then nested properties
    scopes = [body]
    for nested in ("properties", "data"):
        if isinstance(body.get(nested), dict):
            scopes.append(body[nested])
    for scope in scopes:
        for name in names:
            value = scope.get(name)
            if value not in (None, ""):
                return value
    return None


def _parse_time(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"completed_at is not an ISO timestamp: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def event_type(body: Dict[str, Any]) -> Optional[str]:
    return body.get("event_type") or body.get("type")


def parse_event(body: Dict[str, Any]) -> RecordingEvent:
    session_id = _pick(body, "conversation_id", "session_id", "sessionId")
    video_url = _pick(body, "video_url", "recording_url", "videoUrl")
    candidate_id = _pick(body, "candidate_id", "candidateId")
    missing = [
        name for name, value in (
            ("conversation_id", session_id), ("video_url", video_url), ("candidate_id", candidate_id)
        ) if not value
    ]
    if missing:
        raise ValidationError(f"Missing required fields in webhook payload: {', '.join(missing)}")

    duration = _pick(body, "duration_seconds", "durationSeconds")
    try:
        duration = float(duration) if duration is not None else None
    except (TypeError, ValueError):
        raise ValidationError(f"duration_seconds is not a number: {duration!r}")

    analysis = body.get("analysis")
    return RecordingEvent(
        session_id=str(session_id),
        video_url=str(video_url),
        candidate_id=str(candidate_id),
        role_id=_pick(body, "role_id", "roleId"),
        duration_seconds=duration,
        completed_at=_parse_time(_pick(body, "completed_at", "completedAt")),
        analysis=analysis if isinstance(analysis, dict) else None,
    )


def is_redelivery(interview: Optional[Interview], event: RecordingEvent) -> bool:
    return (
        interview is not None
        and interview.status == INTERVIEW_VIDEO_READY
        and interview.conversation_id == event.session_id
        and interview.recording_url == event.video_url
        and interview.analysis_key is not None
    )


async def analyze_recording(ctx, event: RecordingEvent) -> Dict[str, Any]:
    # scores supplied in the payload win; failure leaves scores as None
    if event.analysis:
        try:
            return {"transcript": None, "prosody": None, "scores": score_from_parts(event.analysis)}
        except ValueError as e:
            logger.warning("ignoring malformed analysis in payload for candidate %s: %s", event.candidate_id, e)
    try:
        return await ctx.interview_analyzer.analyze(event.video_url)
    except Exception as e:
        logger.warning("interview analysis failed for candidate %s (non-fatal): %s", event.candidate_id, e)
        return {"transcript": None, "prosody": None, "scores": None, "error": str(e)}


async def store_artifacts(ctx, candidate_id: str, session_id: str, meta: Dict[str, Any],
                          analysis: Dict[str, Any]):
    key = f"interviews/{candidate_id}/{session_id}.json"
    transcript_key = None
    if analysis.get("transcript"):
        await ctx.storage.put(
            ctx.settings.buckets["transcripts"], key,
            json.dumps(analysis["transcript"]).encode(), "application/json",
        )
        transcript_key = key
    doc = {**meta, "prosody": analysis.get("prosody"), "scores": analysis.get("scores"),
           "error": analysis.get("error")}
    await ctx.storage.put(
        ctx.settings.buckets["analysis"], key, json.dumps(doc, default=str).encode(), "application/json",
    )
    return transcript_key, key


def apply_interview_scores(session: Session, candidate_id: str, role_id: str,
                           scores: Optional[Dict[str, Any]]) -> ScoreRecord:
    report = get_or_create_report(session, candidate_id, role_id)
    if scores is not None:
        report.interview_breakdown = scores
        report.interview_summary = scores.get("summary")
    record = reconcile(report)
    session.add(report)
    return record


async def handle_recording_ready(ctx, session: Session, body: Dict[str, Any],
                                 provided_secret: Optional[str]) -> Dict[str, Any]:
    check_secret(ctx.settings.webhook_secret, provided_secret)

    kind = event_type(body)
    if kind and kind not in RECORDING_READY_EVENTS:
        logger.info("acknowledged webhook event %s without changes", kind)
        return {"ok": True, "ignored": kind}

    event = parse_event(body)
    candidate = session.get(Candidate, event.candidate_id)
    if candidate is None:
        raise NotFoundError("Candidate not found.")
    if event.role_id and event.role_id != candidate.role_id:
        raise ValidationError("Webhook role does not match the candidate's role.")
    role_id = candidate.role_id

    existing = find_interview(session, candidate.id, role_id)
    if is_redelivery(existing, event):
        report = get_or_create_report(session, candidate.id, role_id)
        reconcile(report)
        session.add(report)
        session.commit()
        logger.info("duplicate recording-ready for interview %s", existing.id)
        return {"ok": True, "interview_id": existing.id, "status": existing.status, "duplicate": True}

    analysis = await analyze_recording(ctx, event)
    meta = {
        "conversation_id": event.session_id,
        "video_url": event.video_url,
        "duration_seconds": event.duration_seconds,
        "completed_at": event.completed_at,
    }
    transcript_key, analysis_key = await store_artifacts(ctx, candidate.id, event.session_id, meta, analysis)

    interview = upsert_interview(
        session, candidate.id, role_id,
        insert_values={"video_url": event.video_url},
        conflict_values={"video_url": func.coalesce(Interview.video_url, event.video_url)},
        conversation_id=event.session_id,
        recording_url=event.video_url,
        duration_seconds=event.duration_seconds,
        completed_at=event.completed_at,
        status=INTERVIEW_VIDEO_READY,
        transcript_key=transcript_key,
        analysis_key=analysis_key,
        scheduling_started_at=None,
    )
    record = apply_interview_scores(session, candidate.id, role_id, analysis.get("scores"))
    session.commit()
    logger.info("interview %s is video_ready (report %s)", interview.id, record.status)

    if ctx.settings.generate_pdf_automatic and record.status == REPORT_COMPLETE:
        try:
            await render_report(ctx, session, candidate.id)
        except Exception as e:
            session.rollback()
            logger.warning("automatic report render failed for candidate %s: %s", candidate.id, e)

    return {"ok": True, "interview_id": interview.id, "status": interview.status, "duplicate": False}


async def backfill_interview_scores(ctx) -> Dict[str, int]:
    """Analyze video_ready interviews whose report has no interview scores yet."""
    counts = {"scanned": 0, "updated": 0, "failed": 0}
    with Session(ctx.engine) as session:
        interviews = session.exec(
            select(Interview).where(Interview.status == INTERVIEW_VIDEO_READY)
        ).all()
        for interview in interviews:
            counts["scanned"] += 1
            report = session.exec(
                select(Report).where(
                    Report.candidate_id == interview.candidate_id, Report.role_id == interview.role_id
                )
            ).first()
            if (report is not None and report.interview_breakdown) or not interview.recording_url:
                continue
            try:
                analysis = await ctx.interview_analyzer.analyze(interview.recording_url)
                transcript_key, analysis_key = await store_artifacts(
                    ctx, interview.candidate_id, interview.conversation_id or interview.id,
                    {"conversation_id": interview.conversation_id, "video_url": interview.recording_url},
                    analysis,
                )
            except Exception as e:
                counts["failed"] += 1
                logger.warning("backfill skipped interview %s: %s", interview.id, e)
                continue
            interview.transcript_key = transcript_key or interview.transcript_key
            interview.analysis_key = analysis_key
            session.add(interview)
            apply_interview_scores(session, interview.candidate_id, interview.role_id, analysis["scores"])
            session.commit()
            counts["updated"] += 1
            logger.info("backfilled interview scores for candidate %s", interview.candidate_id)
    return counts
