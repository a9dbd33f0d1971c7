import secrets
import logging
import mimetypes
from contextlib import asynccontextmanager
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, UploadFile, File, Form, Depends, Header, Request, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel
from sqlmodel import Session

from deps import AppContext, build_context, get_context, get_session, init_db, require_user
from errors import NotFoundError, ServiceError, ValidationError
from log import setup_logging
from models import Role
from reports import render_report, report_download_url
from scheduler import create_interview, retry_interview
from scoring import reconcile_candidate
from submission import Submission, submit_candidate
from utils import baseline_rubric, extract_document_text
from verification import verify_code
from webhooks import handle_recording_ready

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "ctx", None) is None:
        app.state.ctx = build_context()
        setup_logging(app.state.ctx.settings.log_level, app.state.ctx.settings.log_file)
    init_db(app.state.ctx.engine)
    yield


app = FastAPI(title="AI Interview Screener", lifespan=lifespan)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail})


class RubricItem(BaseModel):
    question: str
    category: str = "general"


class RoleIn(BaseModel):
    title: str
    description: str = ""
    rubric: List[RubricItem] = []
    kb_document_id: Optional[str] = None


class RolePatch(BaseModel):
    rubric: Optional[List[RubricItem]] = None
    kb_document_id: Optional[str] = None


class VerifyIn(BaseModel):
    email: str = ""
    code: str = ""


class InterviewIn(BaseModel):
    candidate_id: str
    role_id: Optional[str] = None


def role_out(role: Role) -> Dict[str, Any]:
    return {
        "id": role.id,
        "title": role.title,
        "description": role.description,
        "rubric": role.rubric,
        "kb_document_id": role.kb_document_id,
        "token": role.token,
    }


async def generate_rubric(ctx: AppContext, jd_text: str) -> List[Dict[str, Any]]:
    if not jd_text.strip():
        return baseline_rubric()
    try:
        return await ctx.rubric_generator.generate(jd_text)
    except Exception as e:
        logger.warning("rubric generation failed, using baseline questions: %s", e)
        return baseline_rubric()


@app.get("/_ping")
async def ping():
    return {"ok": True}


@app.post("/roles")
async def create_role(body: RoleIn, session: Session = Depends(get_session),
                      ctx: AppContext = Depends(get_context), user: dict = Depends(require_user)):
    if not body.title.strip():
        raise ValidationError("Role title is required.")
    rubric = [item.model_dump() for item in body.rubric]
    if not rubric:
        rubric = await generate_rubric(ctx, body.description)
    role = Role(
        title=body.title.strip(),
        description=body.description,
        rubric=rubric,
        kb_document_id=body.kb_document_id,
        token=secrets.token_urlsafe(16),
    )
    session.add(role)
    session.commit()
    session.refresh(role)
    logger.info("role %s created by %s", role.id, user.get("user_id"))
    return role_out(role)


@app.patch("/roles/{role_id}")
async def update_role(role_id: str, body: RolePatch, session: Session = Depends(get_session),
                      user: dict = Depends(require_user)):
    role = session.get(Role, role_id)
    if role is None:
        raise NotFoundError("Role not found.")
    if body.rubric is not None:
        role.rubric = [item.model_dump() for item in body.rubric]
    if body.kb_document_id is not None:
        role.kb_document_id = body.kb_document_id or None
    session.add(role)
    session.commit()
    session.refresh(role)
    return role_out(role)


@app.post("/roles/{role_id}/job-description")
async def upload_job_description(role_id: str, file: UploadFile = File(...), session: Session = Depends(get_session),
                                 ctx: AppContext = Depends(get_context), user: dict = Depends(require_user)):
    role = session.get(Role, role_id)
    if role is None:
        raise NotFoundError("Role not found.")
    data = await file.read()
    if not data:
        raise ValidationError("Job description file is empty.")
    try:
        jd_text = extract_document_text(data, file.content_type or mimetypes.guess_type(file.filename or "")[0])
    except Exception as e:
        logger.warning("job description parse failed for role %s: %s", role_id, e)
        jd_text = ""
    role.rubric = await generate_rubric(ctx, jd_text)
    session.add(role)
    session.commit()
    session.refresh(role)
    logger.info("rubric regenerated for role %s from %s", role.id, file.filename)
    return role_out(role)


@app.post("/candidate/submit")
async def candidate_submit(
    first_name: str = Form(""),
    last_name: str = Form(""),
    email: str = Form(""),
    phone: str = Form(""),
    role_token: str = Form(""),
    resume: Optional[UploadFile] = File(None),
    session: Session = Depends(get_session),
    ctx: AppContext = Depends(get_context),
):
    data = await resume.read() if resume is not None else b""
    sub = Submission(
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=phone,
        role_token=role_token,
        resume=data,
        resume_filename=(resume.filename if resume is not None else "") or "resume.pdf",
        resume_mime=(resume.content_type if resume is not None else None) or "application/pdf",
    )
    return await submit_candidate(ctx, session, sub)


@app.post("/verify-otp")
async def verify_otp(body: VerifyIn, session: Session = Depends(get_session), ctx: AppContext = Depends(get_context)):
    return await verify_code(ctx, session, body.email, body.code)


@app.post("/interviews")
async def interviews_create(body: InterviewIn, session: Session = Depends(get_session),
                            ctx: AppContext = Depends(get_context), user: dict = Depends(require_user)):
    return await create_interview(ctx, session, body.candidate_id, body.role_id)


@app.post("/interviews/{interview_id}/retry-create")
async def interviews_retry(interview_id: str, session: Session = Depends(get_session),
                           ctx: AppContext = Depends(get_context), user: dict = Depends(require_user)):
    return await retry_interview(ctx, session, interview_id)


@app.post("/webhook/recording-ready")
async def recording_ready(
    request: Request,
    x_webhook_secret: Optional[str] = Header(None),
    session: Session = Depends(get_session),
    ctx: AppContext = Depends(get_context),
):
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        # the secret is still checked before the payload is rejected
        body = {}
    return await handle_recording_ready(ctx, session, body, x_webhook_secret)


@app.get("/candidates/{candidate_id}/score")
def candidate_score(candidate_id: str, session: Session = Depends(get_session), user: dict = Depends(require_user)):
    return reconcile_candidate(session, candidate_id).to_dict()


@app.post("/reports/{candidate_id}/render")
async def reports_render(candidate_id: str, session: Session = Depends(get_session),
                         ctx: AppContext = Depends(get_context), user: dict = Depends(require_user)):
    return await render_report(ctx, session, candidate_id)


@app.get("/reports/{report_id}/download")
async def reports_download(report_id: str, session: Session = Depends(get_session),
                           ctx: AppContext = Depends(get_context), user: dict = Depends(require_user)):
    url = await report_download_url(ctx, session, report_id)
    return RedirectResponse(url, status_code=302)


@app.get("/files/{bucket}/{key:path}")
async def signed_file(bucket: str, key: str, expires: int = Query(...), sig: str = Query(...),
                      ctx: AppContext = Depends(get_context)):
    """Serves objects from local storage behind an expiring signature."""
    verify = getattr(ctx.storage, "verify", None)
    if verify is None or not verify(bucket, key, expires, sig):
        raise NotFoundError("File not found.")
    data = await ctx.storage.get(bucket, key)
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)
