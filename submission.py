import secrets
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from errors import ConflictError, NotFoundError, ValidationError
from models import Candidate, OneTimeToken, Role, new_id, utcnow
from normalize import normalize_email, normalize_name, normalize_phone
from notify import otp_message
from scoring import get_or_create_report, reconcile

logger = logging.getLogger(__name__)

FALLBACK_RESUME_BREAKDOWN = {
    "resume_score": 0,
    "skills_match_percent": 0,
    "experience_match_percent": 0,
    "education_match_percent": 0,
    "overall_resume_match_percent": 0,
    "summary": "Automated analysis unavailable; manual review recommended.",
    "fallback": True,
}


@dataclass
class Submission:
    first_name: str
    last_name: str
    email: str
    phone: str
    role_token: str
    resume: bytes
    resume_filename: str = "resume.pdf"
    resume_mime: str = "application/pdf"


def generate_code() -> str:
    """Six digits drawn uniformly from 100000-999999, so there is never a leading zero."""
    return str(100000 + secrets.randbelow(900000))


def _resume_extension(filename: str, mime_type: str) -> str:
    name = (filename or "").lower()
    if "pdf" in (mime_type or "").lower() or name.endswith(".pdf"):
        return "pdf"
    if name.endswith(".docx") or "word" in (mime_type or "").lower():
        return "docx"
    return name.rsplit(".", 1)[-1] if "." in name else "bin"


def validate(sub: Submission) -> None:
    missing = [
        name for name, value in (
            ("first_name", sub.first_name),
            ("last_name", sub.last_name),
            ("email", sub.email),
            ("phone", sub.phone),
            ("role_token", sub.role_token),
        )
        if not (value or "").strip()
    ]
    if not sub.resume:
        missing.append("resume")
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    if "@" not in sub.email:
        raise ValidationError("Invalid email address.")


async def issue_code(ctx, session: Session, email: str, role_id: str, phone: Optional[str]) -> Dict[str, Any]:
    """Store a fresh code for (email, role) and dispatch it by email and SMS."""
    code = generate_code()
    now = utcnow()
    ttl = ctx.settings.otp_ttl_minutes
    session.add(OneTimeToken(
        email=email, role_id=role_id, code=code,
        created_at=now, expires_at=now + timedelta(minutes=ttl),
    ))
    session.commit()

    message = otp_message(ctx.settings.app_name, code, ttl)
    subject = f"Your {ctx.settings.app_name} verification code"
    outcome: Dict[str, Any] = {"email_sent": False, "sms_sent": False, "dispatch_error": None}
    errors = []

    try:
        await ctx.email_sender.send(email, message, subject=subject)
        outcome["email_sent"] = True
    except Exception as e:
        errors.append(f"email: {getattr(e, 'detail', None) or e}")
    if phone:
        try:
            await ctx.sms_sender.send(phone, message)
            outcome["sms_sent"] = True
        except Exception as e:
            errors.append(f"sms: {getattr(e, 'detail', None) or e}")

    if errors:
        outcome["dispatch_error"] = "; ".join(errors)
        logger.warning("verification code dispatch for %s had failures: %s", email, outcome["dispatch_error"])
    return outcome


async def analyze_resume(ctx, sub: Submission, role: Role, candidate_id: str) -> Dict[str, Any]:
    try:
        return await ctx.resume_analyzer.analyze(sub.resume, sub.resume_mime, role.description)
    except Exception as e:
        logger.warning("resume analysis failed for candidate %s (non-fatal): %s", candidate_id, e)
        return dict(FALLBACK_RESUME_BREAKDOWN)


async def submit_candidate(ctx, session: Session, sub: Submission) -> Dict[str, Any]:
    validate(sub)
    email = normalize_email(sub.email)
    first_name = normalize_name(sub.first_name)
    last_name = normalize_name(sub.last_name)
    phone = normalize_phone(sub.phone) or "".join(c for c in sub.phone if c.isdigit())

    role = session.exec(select(Role).where(Role.token == sub.role_token.strip())).first()
    if role is None:
        raise NotFoundError("Role not found.")

    existing = session.exec(
        select(Candidate).where(
            Candidate.role_id == role.id,
            Candidate.email == email,
            Candidate.duplicate_of.is_(None),
        )
    ).first()
    if existing is not None:
        raise ConflictError("You have already started an interview for this role.")

    candidate_id = new_id()
    ext = _resume_extension(sub.resume_filename, sub.resume_mime)
    resume_key = f"{candidate_id}.{ext}"
    await ctx.storage.put(ctx.settings.buckets["resumes"], resume_key, sub.resume, sub.resume_mime)

    candidate = Candidate(
        id=candidate_id,
        role_id=role.id,
        first_name=first_name,
        last_name=last_name,
        name=f"{first_name} {last_name}",
        email=email,
        phone=phone,
        resume_key=resume_key,
        resume_mime=sub.resume_mime,
    )
    session.add(candidate)
    try:
        session.commit()
    except IntegrityError:
        # lost a race with a concurrent submission; the unique index decides
        session.rollback()
        raise ConflictError("You have already started an interview for this role.")
    logger.info("candidate %s created for role %s", candidate_id, role.id)

    breakdown = await analyze_resume(ctx, sub, role, candidate_id)
    report = get_or_create_report(session, candidate_id, role.id)
    report.resume_breakdown = breakdown
    reconcile(report)
    candidate.analysis_summary = breakdown.get("summary")
    session.add(report)
    session.add(candidate)
    session.commit()

    dispatch = await issue_code(ctx, session, email, role.id, sub.phone.strip())

    return {
        "message": "Verification code sent.",
        "candidate_id": candidate_id,
        "role_id": role.id,
        "email": email,
        **dispatch,
    }
