import re
import hmac
import logging
from typing import Dict, Any

from sqlalchemy import update
from sqlmodel import Session, select

from errors import AuthError, ExpiredError, NotFoundError, ValidationError
from models import Candidate, OneTimeToken, Role, UNVERIFIED, VERIFIED, utcnow
from normalize import normalize_email
from scheduler import ensure_interview

logger = logging.getLogger(__name__)

_CODE_RE = re.compile(r"^\d{6}$")
INVALID_CODE = "Invalid or unknown verification code."


def latest_token(session: Session, email: str):
    return session.exec(
        select(OneTimeToken)
        .where(OneTimeToken.email == email)
        .order_by(OneTimeToken.created_at.desc(), OneTimeToken.id.desc())
    ).first()


def check_code(session: Session, email: str, code: str) -> OneTimeToken:
    """
    Only the newest token for the email is compared. Unknown email and wrong
    code raise the same AuthError; a matching code past expires_at raises
    ExpiredError.
    """
    token = latest_token(session, email)
    if token is None or not hmac.compare_digest(token.code.encode(), code.encode()):
        raise AuthError(INVALID_CODE)
    if utcnow() > token.expires_at:
        raise ExpiredError("Verification code has expired. Please request a new one.")
    return token


async def verify_code(ctx, session: Session, email: str, code: str) -> Dict[str, Any]:
    email = normalize_email(email)
    code = (code or "").strip()
    if not email:
        raise ValidationError("Email is required.")
    if not _CODE_RE.match(code):
        raise AuthError(INVALID_CODE)

    token = check_code(session, email, code)

    candidate = session.exec(
        select(Candidate).where(
            Candidate.email == email,
            Candidate.role_id == token.role_id,
            Candidate.duplicate_of.is_(None),
        )
    ).first()
    if candidate is None:
        raise NotFoundError("Candidate not found.")

    now = utcnow()
    conn = session.connection()
    transitioned = conn.execute(
        update(Candidate)
        .where(Candidate.id == candidate.id, Candidate.verification_state == UNVERIFIED)
        .values(verification_state=VERIFIED, verified_at=now)
    ).rowcount == 1
    conn.execute(
        update(OneTimeToken)
        .where(OneTimeToken.id == token.id, OneTimeToken.consumed_at.is_(None))
        .values(consumed_at=now)
    )
    session.commit()
    session.refresh(candidate)

    if transitioned:
        logger.info("candidate %s verified", candidate.id)

    result: Dict[str, Any] = {
        "message": "Verified",
        "candidate_id": candidate.id,
        "role_id": candidate.role_id,
        "email": email,
        "already_verified": not transitioned,
        "interview": None,
        "scheduling_error": None,
    }

    role = session.get(Role, candidate.role_id)
    try:
        result["interview"] = await ensure_interview(ctx, session, candidate, role)
    except Exception as e:
        session.rollback()
        logger.warning("auto-scheduling failed for candidate %s: %s", candidate.id, e)
        result["scheduling_error"] = getattr(e, "detail", None) or str(e)
    return result
