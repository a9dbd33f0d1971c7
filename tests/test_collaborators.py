import time

import pytest
from fastapi.testclient import TestClient

from errors import StorageError, UpstreamError, ValidationError
from models import Candidate, Role
from notify import SmtpEmailSender, TwilioSmsSender, otp_message, to_e164
from storage import LocalObjectStorage
from utils import (
    clamp_percent, extract_document_text, parse_json_object, parse_questions, prosody_from_segments, score_from_parts,
)
from vendors import TavusClient


async def test_local_storage_roundtrip_and_signing(tmp_path):
    storage = LocalObjectStorage(str(tmp_path), "https://api.test", "secret")
    await storage.put("reports", "c1/r1/a.pdf", b"%PDF")
    assert await storage.get("reports", "c1/r1/a.pdf") == b"%PDF"

    url = await storage.signed_url("reports", "c1/r1/a.pdf", 60)
    assert url.startswith("https://api.test/files/reports/c1/r1/a.pdf?expires=")
    expires = int(url.split("expires=")[1].split("&")[0])
    sig = url.split("sig=")[1]
    assert storage.verify("reports", "c1/r1/a.pdf", expires, sig)
    assert not storage.verify("reports", "c1/r1/b.pdf", expires, sig)
    assert not storage.verify("reports", "c1/r1/a.pdf", int(time.time()) - 1, sig)


async def test_local_storage_rejects_escaping_keys(tmp_path):
    storage = LocalObjectStorage(str(tmp_path))
    with pytest.raises(StorageError):
        await storage.put("resumes", "../etc/passwd", b"x")
    with pytest.raises(StorageError):
        await storage.get("resumes", "missing.pdf")


async def test_signed_file_route(ctx, tmp_path):
    from main import app

    ctx.storage = LocalObjectStorage(str(tmp_path), "", "secret")
    await ctx.storage.put("reports", "c1/a.pdf", b"%PDF-1.4")
    url = await ctx.storage.signed_url("reports", "c1/a.pdf", 60)

    app.state.ctx = ctx
    with TestClient(app) as client:
        ok = client.get(url)
        assert ok.status_code == 200
        assert ok.content == b"%PDF-1.4"
        assert ok.headers["content-type"] == "application/pdf"
        assert client.get(url.replace("sig=", "sig=0")).status_code == 404
    app.state.ctx = None


def test_to_e164():
    assert to_e164("(415) 555-2671") == "+14155552671"
    assert to_e164("+44 20 7946 0958") == "+442079460958"
    with pytest.raises(ValidationError):
        to_e164("123")


async def test_unconfigured_senders_raise_upstream():
    with pytest.raises(UpstreamError):
        await TwilioSmsSender(None, None, None).send("+14155552671", "hi")
    with pytest.raises(UpstreamError):
        await SmtpEmailSender("smtp.test", 465, None, None).send("a@b.c", "hi")


def test_otp_message():
    assert otp_message("Interview Agent", "123456", 10) == (
        "Your Interview Agent verification code is 123456. It expires in 10 minutes."
    )


def test_parse_json_object_salvages_wrapped_reply():
    assert parse_json_object('Sure! {"resume_score": 70} Hope that helps') == {"resume_score": 70}
    with pytest.raises(ValueError):
        parse_json_object("no json here")
    with pytest.raises(ValueError):
        parse_json_object("[1, 2]")


def test_clamp_percent():
    assert clamp_percent("104.6") == 100
    assert clamp_percent(-3) == 0
    assert clamp_percent(49.5) == 50
    with pytest.raises(ValueError):
        clamp_percent("n/a")


def test_score_from_parts_averages_when_total_missing():
    scores = score_from_parts({"clarity": 90, "confidence": 0, "body_language": 70, "summary": "x" * 700})
    assert scores["total_score"] == 80
    assert len(scores["summary"]) == 600


def test_prosody_from_segments():
    segments = [
        {"start": 0.0, "end": 10.0, "text": "um I built the billing service"},
        {"start": 12.0, "end": 30.0, "text": "and uh scaled it to many regions"},
    ]
    prosody = prosody_from_segments(segments)
    assert prosody["long_pauses"] == 1
    assert prosody["longest_pause_ms"] == 2000
    assert prosody["wpm"] == 26
    assert prosody["filler_rate_pct"] == 15.4
    assert prosody_from_segments([])["wpm"] == 0


def test_extract_plain_text_resume():
    assert extract_document_text(b"  Jane Doe\nPython  ", "text/plain") == "Jane Doe\nPython"


def test_tavus_payload_includes_knowledge_base():
    candidate = Candidate(id="c1", role_id="r1", first_name="Jane", last_name="Doe", name="Jane Doe", email="j@x.com")
    role = Role(id="r1", title="Backend", token="T1", kb_document_id="doc-9")
    client = TavusClient("key", persona_id="p1", document_strategy="speed")

    payload = client.build_payload(candidate, role, "https://api.test/webhook/recording-ready")

    assert payload["callback_url"] == "https://api.test/webhook/recording-ready"
    assert payload["properties"] == {"candidate_id": "c1", "role_id": "r1"}
    assert payload["document_ids"] == ["doc-9"]
    assert payload["document_retrieval_strategy"] == "speed"
    assert payload["persona_id"] == "p1"
    assert "replica_id" not in payload
    assert "conversational_context" not in payload


def test_tavus_payload_carries_rubric_questions():
    candidate = Candidate(id="c1", role_id="r1", first_name="Jane", last_name="Doe", name="Jane Doe", email="j@x.com")
    role = Role(id="r1", title="Backend", token="T1",
                rubric=[{"question": "Describe an API you designed.", "category": "technical"},
                        {"question": "Why this team?", "category": "culture"}])

    payload = TavusClient("key", persona_id="p1").build_payload(candidate, role, "")

    context = payload["conversational_context"]
    assert "Backend role" in context
    assert context.endswith("1. Describe an API you designed.\n2. Why this team?")


def test_parse_questions_accepts_object_or_lines():
    assert parse_questions('{"Q1": "What is a goroutine?", "Q2": "Explain gRPC."}', 5) == [
        "What is a goroutine?", "Explain gRPC.",
    ]
    assert parse_questions("- First?\n\n- Second?\n- Third?", 2) == ["First?", "Second?"]
    assert parse_questions("[1, 2]", 3) == []


async def test_tavus_requires_configuration():
    with pytest.raises(UpstreamError):
        await TavusClient(None).create_session(None, None, "")


def test_setup_logging_writes_file(tmp_path):
    import logging
    from log import setup_logging

    log_file = tmp_path / "logs" / "app.log"
    setup_logging("debug", str(log_file))
    logging.getLogger("scheduler").info("interview %s scheduled", "i-1")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "INFO scheduler - interview i-1 scheduled" in log_file.read_text()
    assert logging.getLogger("httpx").level == logging.WARNING
    logging.getLogger().handlers.clear()
