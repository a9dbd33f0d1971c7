import asyncio
from datetime import timedelta

import pytest
from sqlmodel import Session, select

from conftest import latest_code, submit
from errors import AuthError, ExpiredError, ValidationError
from models import Candidate, Interview, OneTimeToken, utcnow
from verification import verify_code


async def test_correct_code_verifies_and_schedules(ctx, session, role):
    submitted = await submit(ctx, session)

    result = await verify_code(ctx, session, " JANE@x.com", latest_code(session))

    assert result["message"] == "Verified"
    assert result["already_verified"] is False
    assert result["interview"]["video_url"] == "https://video.test/conv-1"
    assert result["scheduling_error"] is None
    candidate = session.get(Candidate, submitted["candidate_id"])
    assert candidate.verification_state == "verified"
    assert candidate.verified_at is not None
    assert ctx.video_vendor.calls == [(candidate.id, role.id, "https://api.test/webhook/recording-ready")]


async def test_wrong_code_and_unknown_email_look_the_same(ctx, session, role):
    await submit(ctx, session)
    code = latest_code(session)
    wrong = "111111" if code != "111111" else "222222"

    with pytest.raises(AuthError) as wrong_code:
        await verify_code(ctx, session, "jane@x.com", wrong)
    with pytest.raises(AuthError) as no_token:
        await verify_code(ctx, session, "nobody@x.com", code)
    assert wrong_code.value.detail == no_token.value.detail


async def test_malformed_code_fails_like_a_wrong_code(ctx, session, role):
    await submit(ctx, session)
    with pytest.raises(AuthError) as short:
        await verify_code(ctx, session, "jane@x.com", "12345")
    with pytest.raises(AuthError) as letters:
        await verify_code(ctx, session, "jane@x.com", "12ab56")
    with pytest.raises(AuthError) as wrong:
        await verify_code(ctx, session, "jane@x.com", "000000")
    assert short.value.detail == letters.value.detail == wrong.value.detail
    with pytest.raises(ValidationError):
        await verify_code(ctx, session, "  ", latest_code(session))


async def test_expired_token_fails_and_candidate_stays_unverified(ctx, session, role):
    submitted = await submit(ctx, session)
    token = session.exec(select(OneTimeToken)).one()
    token.expires_at = utcnow() - timedelta(seconds=1)
    session.add(token)
    session.commit()

    with pytest.raises(ExpiredError):
        await verify_code(ctx, session, "jane@x.com", token.code)

    assert session.get(Candidate, submitted["candidate_id"]).verification_state == "unverified"
    assert ctx.video_vendor.calls == []


async def test_only_newest_token_is_compared(ctx, session, role):
    await submit(ctx, session)
    old = session.exec(select(OneTimeToken)).one()
    newer = OneTimeToken(
        email="jane@x.com", role_id=role.id,
        code="999999" if old.code != "999999" else "888888",
        created_at=old.created_at + timedelta(seconds=5),
        expires_at=utcnow() + timedelta(minutes=10),
    )
    session.add(newer)
    session.commit()

    with pytest.raises(AuthError):
        await verify_code(ctx, session, "jane@x.com", old.code)
    result = await verify_code(ctx, session, "jane@x.com", newer.code)
    assert result["already_verified"] is False


async def test_replay_is_already_verified_without_new_session(ctx, session, role):
    await submit(ctx, session)
    code = latest_code(session)
    first = await verify_code(ctx, session, "jane@x.com", code)
    second = await verify_code(ctx, session, "jane@x.com", code)

    assert second["already_verified"] is True
    assert second["interview"]["video_url"] == first["interview"]["video_url"]
    assert len(ctx.video_vendor.calls) == 1


async def test_scheduling_failure_does_not_fail_verification(ctx, session, role):
    submitted = await submit(ctx, session)
    ctx.video_vendor.fail = True

    result = await verify_code(ctx, session, "jane@x.com", latest_code(session))

    assert result["message"] == "Verified"
    assert result["interview"] is None
    assert "vendor down" in result["scheduling_error"]
    interview = session.exec(select(Interview)).one()
    assert interview.video_url is None
    assert interview.scheduling_started_at is None
    assert session.get(Candidate, submitted["candidate_id"]).verification_state == "verified"


async def test_concurrent_verifications_transition_once(ctx, session, role):
    submitted = await submit(ctx, session)
    code = latest_code(session)

    with Session(ctx.engine) as first, Session(ctx.engine) as second:
        results = await asyncio.gather(
            verify_code(ctx, first, "jane@x.com", code),
            verify_code(ctx, second, "jane@x.com", code),
        )

    assert sorted(r["already_verified"] for r in results) == [False, True]
    assert len(ctx.video_vendor.calls) == 1
    assert len(session.exec(select(Interview)).all()) == 1
    session.expire_all()
    assert session.get(Candidate, submitted["candidate_id"]).verification_state == "verified"
