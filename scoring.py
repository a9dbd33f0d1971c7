"""
Merging resume-side and interview-side scores into one record per candidate.

The merge is a pure function of what is stored on the Report row, so running
it again over unchanged data yields an identical record.
"""
import math
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, Tuple

from sqlmodel import Session, select

from errors import NotFoundError
from models import (
    Candidate, Report, REPORT_PENDING, REPORT_PARTIAL, REPORT_COMPLETE, dialect_insert, new_id, utcnow,
)


@dataclass
class ScoreRecord:
    candidate_id: str
    role_id: Optional[str]
    resume_score: Optional[float]
    interview_score: Optional[float]
    overall_score: Optional[int]
    status: str
    resume_breakdown: Optional[Dict[str, Any]] = None
    interview_breakdown: Optional[Dict[str, Any]] = None
    interview_summary: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def resume_side(breakdown: Optional[Dict[str, Any]]) -> Optional[float]:
    # the fallback breakdown recorded when analysis failed is not a score
    if not breakdown or breakdown.get("fallback"):
        return None
    score = breakdown.get("resume_score")
    return float(score) if score is not None else None


def interview_side(breakdown: Optional[Dict[str, Any]]) -> Optional[float]:
    if not breakdown:
        return None
    score = breakdown.get("total_score")
    return float(score) if score is not None else None


def merge_scores(resume_score: Optional[float], interview_score: Optional[float]) -> Tuple[Optional[int], str]:
    if resume_score is not None and interview_score is not None:
        return round_half_up((resume_score + interview_score) / 2), REPORT_COMPLETE
    if resume_score is not None:
        return round_half_up(resume_score), REPORT_PARTIAL
    if interview_score is not None:
        return round_half_up(interview_score), REPORT_PARTIAL
    return None, REPORT_PENDING


def reconcile(report: Report) -> ScoreRecord:
    """Recompute the derived score fields of a report in place."""
    resume_score = resume_side(report.resume_breakdown)
    interview_score = interview_side(report.interview_breakdown)
    overall, status = merge_scores(resume_score, interview_score)

    derived = (resume_score, interview_score, overall, status)
    if derived != (report.resume_score, report.interview_score, report.overall_score, report.status):
        report.resume_score = resume_score
        report.interview_score = interview_score
        report.overall_score = overall
        report.status = status
        report.updated_at = utcnow()

    return ScoreRecord(
        candidate_id=report.candidate_id,
        role_id=report.role_id,
        resume_score=resume_score,
        interview_score=interview_score,
        overall_score=overall,
        status=status,
        resume_breakdown=report.resume_breakdown,
        interview_breakdown=report.interview_breakdown,
        interview_summary=report.interview_summary,
    )


def get_or_create_report(session: Session, candidate_id: str, role_id: str) -> Report:
    """Fetch the (candidate, role) report, inserting an empty one if absent."""
    now = utcnow()
    stmt = dialect_insert(session, Report).values(
        id=new_id(),
        candidate_id=candidate_id,
        role_id=role_id,
        status=REPORT_PENDING,
        created_at=now,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=["candidate_id", "role_id"])
    session.connection().execute(stmt)
    return session.exec(
        select(Report).where(Report.candidate_id == candidate_id, Report.role_id == role_id)
    ).one()


def reconcile_candidate(session: Session, candidate_id: str) -> ScoreRecord:
    candidate = session.get(Candidate, candidate_id)
    if candidate is None:
        raise NotFoundError("Candidate not found.")

    report = session.exec(
        select(Report).where(Report.candidate_id == candidate.id, Report.role_id == candidate.role_id)
    ).first()
    if report is None:
        return ScoreRecord(
            candidate_id=candidate.id,
            role_id=candidate.role_id,
            resume_score=None,
            interview_score=None,
            overall_score=None,
            status=REPORT_PENDING,
        )

    record = reconcile(report)
    session.add(report)
    session.commit()
    return record
