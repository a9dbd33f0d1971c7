import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from config import Settings
from deps import AppContext
from errors import AuthError, StorageError, UpstreamError
from models import OneTimeToken, Role
from submission import Submission, submit_candidate

RESUME_RESULT = {
    "resume_score": 80,
    "skills_match_percent": 85,
    "experience_match_percent": 75,
    "education_match_percent": 70,
    "overall_resume_match_percent": 80,
    "summary": "Solid Python background.",
}

INTERVIEW_RESULT = {
    "transcript": {"text": "I built APIs with FastAPI for three years.", "segments": []},
    "prosody": {"wpm": 130, "filler_rate_pct": 1.0, "long_pauses": 0, "longest_pause_ms": 0},
    "scores": {"clarity": 72, "confidence": 68, "body_language": 70, "total_score": 71, "summary": "Clear answers."},
}


class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.fail = False
        self.on_put = None

    async def put(self, bucket, key, data, content_type="application/octet-stream"):
        if self.fail:
            raise StorageError("disk full")
        if self.on_put is not None:
            self.on_put(bucket, key)
        self.objects[(bucket, key)] = data
        return f"{bucket}/{key}"

    async def get(self, bucket, key):
        if (bucket, key) not in self.objects:
            raise StorageError(f"{bucket}/{key} not found")
        return self.objects[(bucket, key)]

    async def signed_url(self, bucket, key, ttl_seconds):
        if (bucket, key) not in self.objects:
            raise StorageError(f"{bucket}/{key} not found")
        return f"https://files.test/{bucket}/{key}?ttl={ttl_seconds}"


class FakeAnalyzer:
    def __init__(self, result):
        self.result = result
        self.fail = False
        self.calls = 0

    async def analyze(self, *args):
        self.calls += 1
        if self.fail:
            raise UpstreamError("model offline")
        return dict(self.result)


class FakeRubricGenerator:
    def __init__(self):
        self.fail = False
        self.texts = []

    async def generate(self, jd_text, count=5):
        self.texts.append(jd_text)
        if self.fail:
            raise UpstreamError("model offline")
        return [{"question": f"Question {i} about the role", "category": "technical"} for i in range(1, count + 1)]


class FakeVideoVendor:
    def __init__(self):
        self.calls = []
        self.fail = False

    async def create_session(self, candidate, role, webhook_url):
        self.calls.append((candidate.id, role.id, webhook_url))
        if self.fail:
            raise UpstreamError("vendor down")
        n = len(self.calls)
        return {"session_id": f"conv-{n}", "session_url": f"https://video.test/conv-{n}"}


class FakePdfRenderer:
    def __init__(self, statuses=None):
        self.statuses = list(statuses or ["success"])
        self.submitted = []
        self.polls = 0

    async def submit(self, payload, filename):
        self.submitted.append(payload)
        return f"job-{len(self.submitted)}"

    async def poll(self, job_id):
        self.polls += 1
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return {"status": status, "download_url": "https://pdf.test/doc.pdf" if status == "success" else None}

    async def download(self, url):
        return b"%PDF-1.4 report"


class FakeSender:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, destination, message, subject=None):
        if self.fail:
            raise UpstreamError("provider rejected message")
        self.sent.append((destination, message))


class FakeAuth:
    async def verify(self, token):
        if token != "staff-token":
            raise AuthError()
        return {"user_id": "staff-1", "email": "staff@x.com"}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        public_backend_url="https://api.test",
        webhook_secret="s3cret",
        pdf_poll_attempts=3,
        pdf_poll_delay=0.0,
    )


@pytest.fixture
def ctx(engine, settings):
    return AppContext(
        settings=settings,
        engine=engine,
        storage=FakeStorage(),
        resume_analyzer=FakeAnalyzer(RESUME_RESULT),
        interview_analyzer=FakeAnalyzer(INTERVIEW_RESULT),
        rubric_generator=FakeRubricGenerator(),
        video_vendor=FakeVideoVendor(),
        pdf_renderer=FakePdfRenderer(),
        email_sender=FakeSender(),
        sms_sender=FakeSender(),
        auth_verifier=FakeAuth(),
    )


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def role(session):
    role = Role(title="Backend Engineer", description="Python, FastAPI, SQL", token="T1")
    session.add(role)
    session.commit()
    session.refresh(role)
    return role


@pytest.fixture
def client(ctx):
    from main import app

    app.state.ctx = ctx
    with TestClient(app) as c:
        yield c
    app.state.ctx = None


def make_submission(**overrides):
    values = dict(
        first_name=" Jane ",
        last_name="Doe",
        email="Jane@X.com ",
        phone="+1 (555) 123-4567",
        role_token="T1",
        resume=b"%PDF-1.4 resume",
        resume_filename="jane.pdf",
        resume_mime="application/pdf",
    )
    values.update(overrides)
    return Submission(**values)


async def submit(ctx, session, **overrides):
    return await submit_candidate(ctx, session, make_submission(**overrides))


def latest_code(session, email="jane@x.com"):
    token = session.exec(
        select(OneTimeToken).where(OneTimeToken.email == email).order_by(OneTimeToken.created_at.desc())
    ).first()
    return token.code
