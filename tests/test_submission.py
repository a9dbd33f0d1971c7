import pytest
from sqlmodel import Session, select

from conftest import latest_code, make_submission, submit
from errors import ConflictError, NotFoundError, StorageError, ValidationError
from models import Candidate, OneTimeToken, Report, utcnow
from submission import generate_code, submit_candidate


async def test_submit_creates_candidate_report_and_token(ctx, session, role):
    result = await submit(ctx, session)

    assert result["message"] == "Verification code sent."
    assert result["email"] == "jane@x.com"
    assert result["email_sent"] and result["sms_sent"]
    assert result["dispatch_error"] is None

    candidate = session.get(Candidate, result["candidate_id"])
    assert candidate.verification_state == "unverified"
    assert candidate.first_name == "Jane"
    assert candidate.phone == "5551234567"
    assert candidate.resume_key == f"{candidate.id}.pdf"
    assert ("resumes", candidate.resume_key) in ctx.storage.objects

    report = session.exec(select(Report).where(Report.candidate_id == candidate.id)).one()
    assert 0 <= report.resume_score <= 100
    assert report.status == "partial"
    assert report.interview_score is None

    token = session.exec(select(OneTimeToken)).one()
    assert token.expires_at > utcnow()
    assert token.role_id == role.id
    code = latest_code(session)
    assert any(code in message for _, message in ctx.email_sender.sent)


async def test_missing_fields_rejected(ctx, session, role):
    with pytest.raises(ValidationError):
        await submit(ctx, session, phone="  ")
    with pytest.raises(ValidationError):
        await submit(ctx, session, resume=b"")
    assert session.exec(select(Candidate)).all() == []


async def test_unknown_role_token(ctx, session, role):
    with pytest.raises(NotFoundError):
        await submit(ctx, session, role_token="nope")


async def test_duplicate_email_for_role_conflicts(ctx, session, role):
    await submit(ctx, session)
    with pytest.raises(ConflictError):
        await submit(ctx, session, email="JANE@x.com")
    assert len(session.exec(select(Candidate)).all()) == 1


async def test_concurrent_insert_after_precheck_conflicts(ctx, session, role):
    def competing_submission(bucket, key):
        with Session(ctx.engine) as other:
            other.add(Candidate(role_id=role.id, first_name="Jane", last_name="Doe", name="Jane Doe",
                                email="jane@x.com", phone="5551234567"))
            other.commit()

    ctx.storage.on_put = competing_submission
    with pytest.raises(ConflictError):
        await submit(ctx, session)

    live = session.exec(select(Candidate).where(Candidate.duplicate_of.is_(None))).all()
    assert len(live) == 1
    assert live[0].resume_key is None
    assert session.exec(select(OneTimeToken)).all() == []


async def test_resume_storage_failure_is_fatal(ctx, session, role):
    ctx.storage.fail = True
    with pytest.raises(StorageError):
        await submit(ctx, session)
    assert session.exec(select(Candidate)).all() == []
    assert session.exec(select(OneTimeToken)).all() == []


async def test_analysis_failure_records_fallback(ctx, session, role):
    ctx.resume_analyzer.fail = True
    result = await submit(ctx, session)

    report = session.exec(select(Report).where(Report.candidate_id == result["candidate_id"])).one()
    assert report.resume_breakdown["fallback"] is True
    assert report.resume_score is None
    assert report.status == "pending"
    assert result["email_sent"]


async def test_dispatch_failure_is_reported_but_token_kept(ctx, session, role):
    ctx.email_sender.fail = True
    result = await submit_candidate(ctx, session, make_submission())

    assert result["email_sent"] is False
    assert result["sms_sent"] is True
    assert "email" in result["dispatch_error"]
    assert session.exec(select(OneTimeToken)).one().email == "jane@x.com"


def test_generated_codes_are_six_digits():
    codes = [generate_code() for _ in range(500)]
    assert all(len(c) == 6 and c.isdigit() and c[0] != "0" for c in codes)
