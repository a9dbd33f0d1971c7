"""
Service configuration.

Everything comes from environment variables (a local .env is honoured).
Defaults are chosen so the app boots against SQLite and local file storage.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

OTP_TTL_MINUTES = 10
PDF_POLL_ATTEMPTS = 10
PDF_POLL_DELAY_SECONDS = 2.0
SIGNED_URL_TTL_SECONDS = 300
HTTP_TIMEOUT_SECONDS = 30.0

DEFAULT_BUCKETS = {
    "resumes": "resumes",
    "videos": "videos",
    "transcripts": "transcripts",
    "analysis": "analysis",
    "reports": "reports",
}


def _flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "sqlite:///./recruiting.db"
    public_backend_url: str = ""
    app_name: str = "Interview Agent"
    webhook_secret: Optional[str] = None
    otp_ttl_minutes: int = OTP_TTL_MINUTES
    http_timeout: float = HTTP_TIMEOUT_SECONDS

    # LLM / transcription
    ollama_api_url: str = "http://localhost:11434/api/generate"
    llm_model: str = "mistral:latest"
    whisper_model: str = "base"

    # Video interview vendor
    tavus_api_key: Optional[str] = None
    tavus_persona_id: Optional[str] = None
    tavus_replica_id: Optional[str] = None
    tavus_document_strategy: str = "balanced"

    # PDF rendering
    pdfmonkey_api_key: Optional[str] = None
    pdfmonkey_template_id: Optional[str] = None
    pdf_poll_attempts: int = PDF_POLL_ATTEMPTS
    pdf_poll_delay: float = PDF_POLL_DELAY_SECONDS
    generate_pdf_automatic: bool = False

    # Storage
    storage_backend: str = "local"
    storage_dir: str = "./_storage"
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    buckets: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_BUCKETS))
    signed_url_ttl: int = SIGNED_URL_TTL_SECONDS
    signing_secret: str = "dev-signing-secret"

    # Notifications
    twilio_sid: Optional[str] = None
    twilio_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    default_dial_prefix: str = "+1"
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 465
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def webhook_url(self) -> str:
        return f"{self.public_backend_url.rstrip('/')}/webhook/recording-ready"


def get_settings() -> Settings:
    """Load settings from the environment."""
    buckets = {
        key: os.getenv(f"SUPABASE_{key.upper()}_BUCKET", default)
        for key, default in DEFAULT_BUCKETS.items()
    }
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./recruiting.db"),
        public_backend_url=os.getenv("PUBLIC_BACKEND_URL", ""),
        app_name=os.getenv("APP_NAME", "Interview Agent"),
        webhook_secret=os.getenv("WEBHOOK_SECRET") or None,
        otp_ttl_minutes=int(os.getenv("OTP_TTL_MINUTES", OTP_TTL_MINUTES)),
        http_timeout=float(os.getenv("HTTP_TIMEOUT_SECONDS", HTTP_TIMEOUT_SECONDS)),
        ollama_api_url=os.getenv("OLLAMA_API_URL", "http://localhost:11434/api/generate"),
        llm_model=os.getenv("LLM_MODEL", "mistral:latest"),
        whisper_model=os.getenv("WHISPER_MODEL", "base"),
        tavus_api_key=os.getenv("TAVUS_API_KEY"),
        tavus_persona_id=os.getenv("TAVUS_PERSONA_ID"),
        tavus_replica_id=os.getenv("TAVUS_REPLICA_ID"),
        tavus_document_strategy=os.getenv("TAVUS_DOCUMENT_STRATEGY", "balanced"),
        pdfmonkey_api_key=os.getenv("PDFMONKEY_API_KEY"),
        pdfmonkey_template_id=os.getenv("PDFMONKEY_TEMPLATE_ID"),
        pdf_poll_attempts=int(os.getenv("PDF_POLL_ATTEMPTS", PDF_POLL_ATTEMPTS)),
        pdf_poll_delay=float(os.getenv("PDF_POLL_DELAY_SECONDS", PDF_POLL_DELAY_SECONDS)),
        generate_pdf_automatic=_flag("GENERATE_PDF_AUTOMATIC"),
        storage_backend=os.getenv("STORAGE_BACKEND", "local"),
        storage_dir=os.getenv("STORAGE_DIR", "./_storage"),
        supabase_url=os.getenv("SUPABASE_URL"),
        supabase_service_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
        buckets=buckets,
        signed_url_ttl=int(os.getenv("SIGNED_URL_TTL_SECONDS", SIGNED_URL_TTL_SECONDS)),
        signing_secret=os.getenv("SIGNING_SECRET", "dev-signing-secret"),
        twilio_sid=os.getenv("TWILIO_SID"),
        twilio_token=os.getenv("TWILIO_TOKEN"),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER"),
        default_dial_prefix=os.getenv("DEFAULT_DIAL_PREFIX", "+1"),
        smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=int(os.getenv("SMTP_PORT", "465")),
        smtp_user=os.getenv("SMTP_USER"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE") or None,
    )
