"""
Report rendering: reconciled scores -> template payload -> PDF -> object storage.

Every call renders a fresh artifact under a new key; earlier PDFs stay in
storage and only the latest key is kept on the Report row.
"""
import uuid
import asyncio
import logging
from typing import Dict, Any

from sqlmodel import Session

import errors
from errors import NotFoundError, UpstreamError
from models import Candidate, Report, Role, utcnow
from scoring import ScoreRecord, get_or_create_report, reconcile

logger = logging.getLogger(__name__)


def _score_text(value) -> str:
    return "N/A" if value is None else str(round(value))


def build_payload(candidate: Candidate, role: Role, record: ScoreRecord) -> Dict[str, Any]:
    resume = record.resume_breakdown or {}
    interview = record.interview_breakdown or {}
    return {
        "candidate_name": candidate.name,
        "candidate_email": candidate.email,
        "candidate_phone": candidate.phone,
        "role_title": role.title if role else "",
        "interview_questions": [item.get("question") for item in ((role.rubric if role else None) or [])],
        "status": record.status,
        "overall_score": _score_text(record.overall_score),
        "resume_score": _score_text(record.resume_score),
        "interview_score": _score_text(record.interview_score),
        "skills_match": resume.get("skills_match_percent"),
        "experience_match": resume.get("experience_match_percent"),
        "education_match": resume.get("education_match_percent"),
        "resume_summary": resume.get("summary") or "",
        "clarity": interview.get("clarity"),
        "confidence": interview.get("confidence"),
        "body_language": interview.get("body_language"),
        "interview_summary": record.interview_summary or "",
        "generated_at": utcnow().strftime("%Y-%m-%d %H:%M UTC"),
    }


async def wait_for_pdf(ctx, job_id: str) -> str:
    """Poll the renderer a bounded number of times; return the download URL."""
    attempts = ctx.settings.pdf_poll_attempts
    for attempt in range(1, attempts + 1):
        await asyncio.sleep(ctx.settings.pdf_poll_delay)
        status = await ctx.pdf_renderer.poll(job_id)
        if status["status"] == "success":
            if not status.get("download_url"):
                raise UpstreamError("PDF renderer reported success without a download URL")
            return status["download_url"]
        if status["status"] == "failure":
            raise UpstreamError(f"PDF rendering failed for job {job_id}")
        logger.debug("pdf job %s still pending (attempt %d/%d)", job_id, attempt, attempts)
    raise errors.TimeoutError(f"PDF job {job_id} not ready after {attempts} attempts")


async def render_report(ctx, session: Session, candidate_id: str) -> Dict[str, Any]:
    candidate = session.get(Candidate, candidate_id)
    if candidate is None:
        raise NotFoundError("Candidate not found.")
    role = session.get(Role, candidate.role_id)

    report = get_or_create_report(session, candidate.id, candidate.role_id)
    record = reconcile(report)
    session.add(report)
    session.commit()

    payload = build_payload(candidate, role, record)
    filename = f"report_{candidate.id}.pdf"
    job_id = await ctx.pdf_renderer.submit(payload, filename)
    logger.info("pdf job %s submitted for candidate %s", job_id, candidate.id)

    download_url = await wait_for_pdf(ctx, job_id)
    pdf = await ctx.pdf_renderer.download(download_url)

    bucket = ctx.settings.buckets["reports"]
    key = f"{candidate.id}/{candidate.role_id}/{uuid.uuid4().hex}.pdf"
    await ctx.storage.put(bucket, key, pdf, "application/pdf")

    report.pdf_key = key
    report.rendered_at = utcnow()
    report.updated_at = report.rendered_at
    session.add(report)
    session.commit()

    signed_url = await ctx.storage.signed_url(bucket, key, ctx.settings.signed_url_ttl)
    logger.info("report %s rendered to %s/%s", report.id, bucket, key)
    return {
        "report_id": report.id,
        "location": f"{bucket}/{key}",
        "signed_url": signed_url,
        "status": record.status,
        "overall_score": record.overall_score,
    }


async def report_download_url(ctx, session: Session, report_id: str) -> str:
    report = session.get(Report, report_id)
    if report is None or not report.pdf_key:
        raise NotFoundError("Report PDF not found.")
    return await ctx.storage.signed_url(ctx.settings.buckets["reports"], report.pdf_key, ctx.settings.signed_url_ttl)
