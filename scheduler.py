import logging
from datetime import timedelta
from typing import Dict, Any, Optional

from sqlalchemy import update, or_
from sqlmodel import Session, select

from errors import NotFoundError, ServiceError, UpstreamError, ValidationError
from models import (
    Candidate, Interview, Role, VERIFIED, INTERVIEW_PENDING, INTERVIEW_VIDEO_READY, dialect_insert, new_id, utcnow,
)

logger = logging.getLogger(__name__)

# a caller must hold this lease on the row before calling the vendor
SCHEDULING_LEASE = timedelta(minutes=2)


def find_interview(session: Session, candidate_id: str, role_id: str) -> Optional[Interview]:
    return session.exec(
        select(Interview).where(Interview.candidate_id == candidate_id, Interview.role_id == role_id)
    ).first()


def has_video(interview: Optional[Interview]) -> bool:
    return interview is not None and bool(
        interview.video_url or interview.recording_url or interview.status == INTERVIEW_VIDEO_READY
    )


def upsert_interview(session: Session, candidate_id: str, role_id: str,
                     insert_values: Optional[Dict[str, Any]] = None,
                     conflict_values: Optional[Dict[str, Any]] = None, **values) -> Interview:
    # insert_values only apply to a new row, conflict_values only to an existing one; caller commits
    now = utcnow()
    row = {
        "id": new_id(),
        "candidate_id": candidate_id,
        "role_id": role_id,
        "status": INTERVIEW_PENDING,
        "created_at": now,
        "updated_at": now,
        **(insert_values or {}),
        **values,
    }
    stmt = dialect_insert(session, Interview).values(**row)
    if values or conflict_values:
        stmt = stmt.on_conflict_do_update(
            index_elements=["candidate_id", "role_id"],
            set_={**values, **(conflict_values or {}), "updated_at": now},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=["candidate_id", "role_id"])
    session.connection().execute(stmt)

    interview = find_interview(session, candidate_id, role_id)
    session.refresh(interview)
    return interview


def _result(interview: Interview) -> Dict[str, Any]:
    return {
        "interview_id": interview.id,
        "status": interview.status,
        "video_url": interview.video_url,
    }


def _unscheduled():
    return (
        Interview.video_url.is_(None),
        Interview.recording_url.is_(None),
        Interview.status != INTERVIEW_VIDEO_READY,
    )


def _claim_lease(session: Session, interview: Interview) -> bool:
    now = utcnow()
    stmt = (
        update(Interview)
        .where(
            Interview.id == interview.id,
            *_unscheduled(),
            or_(
                Interview.scheduling_started_at.is_(None),
                Interview.scheduling_started_at < now - SCHEDULING_LEASE,
            ),
        )
        .values(scheduling_started_at=now, updated_at=now)
    )
    claimed = session.connection().execute(stmt).rowcount == 1
    session.commit()
    return claimed


def _release_lease(session: Session, interview: Interview) -> None:
    session.connection().execute(
        update(Interview)
        .where(Interview.id == interview.id, Interview.video_url.is_(None))
        .values(scheduling_started_at=None, updated_at=utcnow())
    )
    session.commit()


async def ensure_interview(ctx, session: Session, candidate: Candidate, role: Role) -> Dict[str, Any]:
    """
    Return the interview for (candidate, role), creating a vendor session only
    when no video exists yet. video_url is None while another caller holds
    the scheduling lease.
    """
    if candidate.verification_state != VERIFIED:
        raise ValidationError("Candidate is not verified.")

    existing = find_interview(session, candidate.id, role.id)
    if has_video(existing):
        return _result(existing)

    interview = upsert_interview(session, candidate.id, role.id)
    session.commit()

    if not _claim_lease(session, interview):
        session.refresh(interview)
        logger.info("interview %s is already being scheduled", interview.id)
        return _result(interview)

    try:
        created = await ctx.video_vendor.create_session(candidate, role, ctx.settings.webhook_url)
    except Exception as e:
        _release_lease(session, interview)
        logger.warning("vendor session creation failed for candidate %s: %s", candidate.id, e)
        if isinstance(e, ServiceError):
            raise
        raise UpstreamError(f"Interview creation failed: {e}") from e

    now = utcnow()
    session.connection().execute(
        update(Interview)
        .where(Interview.id == interview.id, Interview.video_url.is_(None))
        .values(
            conversation_id=created["session_id"],
            video_url=created["session_url"],
            scheduling_started_at=None,
            updated_at=now,
        )
    )
    session.commit()
    session.refresh(interview)
    logger.info("interview %s scheduled (conversation %s)", interview.id, interview.conversation_id)
    return _result(interview)


def _load_pair(session: Session, candidate_id: str, role_id: Optional[str] = None):
    candidate = session.get(Candidate, candidate_id)
    if candidate is None:
        raise NotFoundError("Candidate not found.")
    role = session.get(Role, role_id or candidate.role_id)
    if role is None:
        raise NotFoundError("Role not found.")
    return candidate, role


async def create_interview(ctx, session: Session, candidate_id: str, role_id: Optional[str] = None) -> Dict[str, Any]:
    candidate, role = _load_pair(session, candidate_id, role_id)
    return await ensure_interview(ctx, session, candidate, role)


async def retry_interview(ctx, session: Session, interview_id: str) -> Dict[str, Any]:
    interview = session.get(Interview, interview_id)
    if interview is None:
        raise NotFoundError("Interview not found.")
    if has_video(interview):
        return {**_result(interview), "message": "Already available"}

    candidate, role = _load_pair(session, interview.candidate_id, interview.role_id)
    return await ensure_interview(ctx, session, candidate, role)
