import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, Header, Request
from sqlmodel import Session, SQLModel, create_engine

from config import Settings, get_settings
from errors import AuthError
from notify import SmtpEmailSender, TwilioSmsSender
from storage import build_storage
from utils import InterviewAnalyzer, ResumeAnalyzer, RubricGenerator
from vendors import PdfMonkeyClient, SupabaseAuthVerifier, TavusClient

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything a request handler needs; tests swap in fakes."""
    settings: Settings
    engine: Any
    storage: Any
    resume_analyzer: Any
    interview_analyzer: Any
    rubric_generator: Any
    video_vendor: Any
    pdf_renderer: Any
    email_sender: Any
    sms_sender: Any
    auth_verifier: Any


def build_engine(database_url: str):
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


def init_db(engine) -> None:
    SQLModel.metadata.create_all(engine, checkfirst=True)


def build_context(settings: Optional[Settings] = None) -> AppContext:
    settings = settings or get_settings()
    timeout = settings.http_timeout
    return AppContext(
        settings=settings,
        engine=build_engine(settings.database_url),
        storage=build_storage(settings),
        resume_analyzer=ResumeAnalyzer(settings.ollama_api_url, settings.llm_model, timeout=timeout * 2),
        interview_analyzer=InterviewAnalyzer(
            settings.ollama_api_url, settings.llm_model, settings.whisper_model, timeout=timeout * 2
        ),
        rubric_generator=RubricGenerator(settings.ollama_api_url, settings.llm_model, timeout=timeout * 2),
        video_vendor=TavusClient(
            settings.tavus_api_key,
            settings.tavus_persona_id,
            settings.tavus_replica_id,
            settings.tavus_document_strategy,
            timeout=timeout,
        ),
        pdf_renderer=PdfMonkeyClient(settings.pdfmonkey_api_key, settings.pdfmonkey_template_id, timeout=timeout),
        email_sender=SmtpEmailSender(settings.smtp_host, settings.smtp_port, settings.smtp_user, settings.smtp_password),
        sms_sender=TwilioSmsSender(
            settings.twilio_sid, settings.twilio_token, settings.twilio_phone_number, settings.default_dial_prefix
        ),
        auth_verifier=SupabaseAuthVerifier(settings.supabase_url, settings.supabase_service_key),
    )


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


def get_session(ctx: AppContext = Depends(get_context)):
    with Session(ctx.engine) as session:
        yield session


async def require_user(
    authorization: Optional[str] = Header(None),
    ctx: AppContext = Depends(get_context),
) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthError()
    return await ctx.auth_verifier.verify(authorization[7:].strip())
