import os, io, re, json, asyncio, logging, tempfile
from typing import Optional, Dict, Any, List

import httpx
import pdfplumber
from docx import Document

from errors import UpstreamError

logger = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 15000
MAX_TRANSCRIPT_CHARS = 12000

RESUME_FIELDS = (
    "resume_score",
    "skills_match_percent",
    "experience_match_percent",
    "education_match_percent",
    "overall_resume_match_percent",
)
INTERVIEW_FIELDS = ("clarity", "confidence", "body_language", "total_score")


def clamp_percent(value) -> int:
    try:
        n = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"not a number: {value!r}")
    return max(0, min(100, int(round(n))))


def parse_json_object(txt: str) -> Dict[str, Any]:
    """Parse an LLM reply, salvaging the outermost {...} if it is wrapped in prose."""
    try:
        parsed = json.loads(txt)
    except json.JSONDecodeError:
        m = re.search(r"\{.*\}", txt, re.S)
        if not m:
            raise ValueError("no JSON object in reply")
        parsed = json.loads(m.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("reply is not a JSON object")
    return parsed


def extract_document_text(data: bytes, mime_type: str) -> str:
    mime_type = (mime_type or "").lower()
    if "pdf" in mime_type:
        text = ""
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            for p in pdf.pages:
                text += (p.extract_text() or "") + "\n"
    elif "word" in mime_type or "docx" in mime_type or "officedocument" in mime_type:
        doc = Document(io.BytesIO(data))
        text = "\n".join(p.text for p in doc.paragraphs)
    else:
        text = data.decode("utf-8", errors="ignore")
    text = text.strip()
    if len(text) > MAX_DOCUMENT_CHARS:
        text = text[:MAX_DOCUMENT_CHARS] + "\n\n[Truncated for analysis]"
    return text


async def llm_resp(api_url: str, model: str, prompt: str, timeout: float = 60.0) -> str:
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                api_url,
                json={"model": model, "prompt": prompt, "stream": False, "format": "json"},
                timeout=timeout,
            )
            resp.raise_for_status()
            data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise UpstreamError(f"LLM request failed: {e}") from e
    return data.get("response", "").strip()


class ResumeAnalyzer:
    def __init__(self, api_url: str, model: str, timeout: float = 60.0):
        self.api_url = api_url
        self.model = model
        self.timeout = timeout

    async def analyze(self, document: bytes, mime_type: str, role_description: str) -> Dict[str, Any]:
        try:
            resume_text = extract_document_text(document, mime_type)
        except Exception as e:
            logger.warning("resume text extraction failed: %s", e)
            resume_text = ""

        prompt = f"""
You are an unbiased, compliance-aware assistant. Do not infer protected attributes.

Role Description:
{role_description or '[none provided]'}

Resume:
{resume_text or '[no extractable text]'}

Return ONLY JSON with these keys, all numbers between 0 and 100 except summary:
{{"resume_score": 0, "skills_match_percent": 0, "experience_match_percent": 0,
  "education_match_percent": 0, "overall_resume_match_percent": 0, "summary": "100-150 words"}}
"""
        txt = await llm_resp(self.api_url, self.model, prompt, self.timeout)
        try:
            parsed = parse_json_object(txt)
            result = {k: clamp_percent(parsed[k]) for k in RESUME_FIELDS}
        except (ValueError, KeyError) as e:
            raise UpstreamError(f"malformed resume analysis: {e}") from e
        result["summary"] = str(parsed.get("summary") or "").strip()
        return result


RUBRIC_QUESTIONS = 5
BASELINE_QUESTIONS = [
    "Describe a project you are proud of. What was your role and what was the outcome?",
    "Tell me about a time you worked across teams to deliver something. How did you keep it on track?",
    "How do you make sure the work you ship is well tested and easy for others to maintain?",
    "Walk me through a hard problem you debugged or optimized. What steps did you take?",
    "How do you keep your skills current, and where have you applied something new recently?",
]


def baseline_rubric() -> List[Dict[str, str]]:
    return [{"question": q, "category": "general"} for q in BASELINE_QUESTIONS]


def parse_questions(txt: str, count: int) -> List[str]:
    try:
        parsed = json.loads(txt)
    except json.JSONDecodeError:
        return [line.strip("-* ").strip() for line in txt.splitlines() if line.strip("-* ").strip()][:count]
    if isinstance(parsed, dict):
        values = list(parsed.values())
    elif isinstance(parsed, list):
        values = parsed
    else:
        values = []
    return [str(v).strip() for v in values if isinstance(v, str) and v.strip()][:count]


class RubricGenerator:
    def __init__(self, api_url: str, model: str, timeout: float = 60.0):
        self.api_url = api_url
        self.model = model
        self.timeout = timeout

    async def generate(self, jd_text: str, count: int = RUBRIC_QUESTIONS) -> List[Dict[str, str]]:
        prompt = f"""
You are an AI interview question generator.
JD:
{jd_text[:MAX_DOCUMENT_CHARS]}

Generate exactly {count} interview questions based on the JD, mostly technical.

Return the result strictly as a JSON object with keys Q1, Q2, ..., Q{count}, each mapping to a string question.
Do not include any extra text, explanation, or formatting outside of the JSON.
"""
        txt = await llm_resp(self.api_url, self.model, prompt, self.timeout)
        questions = parse_questions(txt, count)
        if not questions:
            raise UpstreamError("rubric generation returned no questions")
        return [{"question": q, "category": "technical"} for q in questions]


FILLER_WORDS = {"um", "uh", "like", "hmm", "er"}
LONG_PAUSE_SECONDS = 1.2


def prosody_from_segments(segments: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Speaking pace, filler rate and long pauses estimated from segment timings."""
    words = []
    long_pauses, longest_pause, prev_end = 0, 0.0, None
    for seg in segments:
        words.extend(seg.get("text", "").split())
        if prev_end is not None and seg.get("start") is not None:
            gap = seg["start"] - prev_end
            if gap > LONG_PAUSE_SECONDS:
                long_pauses += 1
                longest_pause = max(longest_pause, gap)
        if seg.get("end") is not None:
            prev_end = seg["end"]

    start = (segments[0].get("start") or 0) if segments else 0
    end = prev_end or 0
    minutes = max(0.001, (end - start) / 60)
    fillers = sum(1 for w in words if re.sub(r"[^a-z]", "", w.lower()) in FILLER_WORDS)
    return {
        "wpm": round(len(words) / minutes),
        "filler_rate_pct": round(100 * fillers / max(1, len(words)), 1),
        "long_pauses": long_pauses,
        "longest_pause_ms": round(longest_pause * 1000),
    }


def score_from_parts(parts: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: clamp_percent(parts.get(k, 0) or 0) for k in INTERVIEW_FIELDS}
    if not out["total_score"]:
        nonzero = [out[k] for k in ("clarity", "confidence", "body_language") if out[k] > 0]
        out["total_score"] = round(sum(nonzero) / len(nonzero)) if nonzero else 0
    out["summary"] = str(parts.get("summary") or "")[:600]
    return out


class InterviewAnalyzer:
    """Download a recording, transcribe it with faster-whisper and score the transcript."""

    def __init__(self, api_url: str, model: str, whisper_size: str = "base", timeout: float = 60.0):
        self.api_url = api_url
        self.model = model
        self.whisper_size = whisper_size
        self.timeout = timeout
        self._whisper = None

    def _get_whisper(self):
        if self._whisper is None:
            os.environ.setdefault("HF_HUB_DISABLE_SYMLINKS", "1")
            from faster_whisper import WhisperModel
            self._whisper = WhisperModel(self.whisper_size, device="cpu", compute_type="int8")
        return self._whisper

    def _transcribe(self, path: str) -> Dict[str, Any]:
        segments, info = self._get_whisper().transcribe(path, language="en")
        segs: List[Dict[str, Any]] = [
            {"start": s.start, "end": s.end, "text": s.text.strip()} for s in segments
        ]
        return {"text": " ".join(s["text"] for s in segs).strip(), "segments": segs}

    async def transcribe(self, recording_url: str) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                media = await client.get(recording_url, timeout=self.timeout)
                media.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamError(f"recording download failed: {e}") from e

        with tempfile.NamedTemporaryFile(suffix=".mp4", delete=False) as f:
            f.write(media.content)
            fname = f.name
        try:
            return await asyncio.to_thread(self._transcribe, fname)
        except Exception as e:
            raise UpstreamError(f"transcription failed: {e}") from e
        finally:
            os.unlink(fname)

    async def score(self, transcript: str, prosody: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        prompt = f"""
You are an interview evaluator. Read the interview transcript and return JSON with:
clarity, confidence, body_language (estimate from wording and the prosody features:
pace, fillers, hesitations), total_score (holistic, not a simple average), all integers
0-100, and summary (1-3 sentences).

Prosody features: {json.dumps(prosody or {})}

Transcript:
\"\"\"{transcript[:MAX_TRANSCRIPT_CHARS]}\"\"\"

Return only valid JSON: {{"clarity": 0, "confidence": 0, "body_language": 0, "total_score": 0, "summary": "..."}}
"""
        txt = await llm_resp(self.api_url, self.model, prompt, self.timeout)
        try:
            return score_from_parts(parse_json_object(txt))
        except ValueError as e:
            raise UpstreamError(f"malformed interview analysis: {e}") from e

    async def analyze(self, recording_url: str) -> Dict[str, Any]:
        transcript = await self.transcribe(recording_url)
        if len(transcript["text"]) < 10:
            raise UpstreamError("transcript is empty")
        prosody = prosody_from_segments(transcript["segments"])
        scores = await self.score(transcript["text"], prosody)
        return {"transcript": transcript, "prosody": prosody, "scores": scores}
