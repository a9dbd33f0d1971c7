"""
HTTP clients for the third-party services: Tavus (video interviews),
PDFMonkey (report rendering) and Supabase Auth (staff bearer tokens).
"""
import logging
from typing import Optional, Dict, Any

import httpx

from errors import AuthError, UpstreamError

logger = logging.getLogger(__name__)

TAVUS_API_URL = "https://tavusapi.com/v2/conversations"
PDFMONKEY_API_URL = "https://api.pdfmonkey.io/api/v1/documents"


def _error_detail(resp: httpx.Response) -> str:
    try:
        return str(resp.json())
    except ValueError:
        return resp.text[:500]


def interview_context(role) -> str:
    questions = [item.get("question") for item in (role.rubric or []) if item.get("question")]
    if not questions:
        return ""
    lines = [f"You are interviewing a candidate for the {role.title} role. Cover these questions in order:"]
    lines += [f"{i}. {q}" for i, q in enumerate(questions, 1)]
    return "\n".join(lines)


class TavusClient:
    def __init__(self, api_key: Optional[str], persona_id: Optional[str] = None,
                 replica_id: Optional[str] = None, document_strategy: str = "balanced",
                 timeout: float = 30.0):
        self.api_key = (api_key or "").strip()
        self.persona_id = (persona_id or "").strip()
        self.replica_id = (replica_id or "").strip()
        self.document_strategy = document_strategy
        self.timeout = timeout

    def build_payload(self, candidate, role, webhook_url: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "callback_url": webhook_url or None,
            "conversation_name": candidate.name or candidate.email or "Interview",
            "properties": {"candidate_id": candidate.id, "role_id": role.id},
        }
        context = interview_context(role)
        if context:
            payload["conversational_context"] = context
        if self.persona_id:
            payload["persona_id"] = self.persona_id
        if self.replica_id:
            payload["replica_id"] = self.replica_id
        if role.kb_document_id:
            payload["document_ids"] = [role.kb_document_id]
            payload["document_retrieval_strategy"] = self.document_strategy
        return payload

    async def create_session(self, candidate, role, webhook_url: str) -> Dict[str, str]:
        if not self.api_key:
            raise UpstreamError("TAVUS_API_KEY is not set")
        if not (self.persona_id or self.replica_id):
            raise UpstreamError("Tavus requires TAVUS_PERSONA_ID or TAVUS_REPLICA_ID")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    TAVUS_API_URL,
                    json=self.build_payload(candidate, role, webhook_url),
                    headers={"x-api-key": self.api_key},
                )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Tavus request failed: {e}") from e
        if resp.status_code >= 400:
            raise UpstreamError(f"Tavus returned {resp.status_code}: {_error_detail(resp)}")

        data = resp.json()
        session_id = data.get("conversation_id") or data.get("id")
        session_url = data.get("conversation_url") or data.get("url")
        if not session_id or not session_url:
            raise UpstreamError("Tavus response missing conversation id or url")
        return {"session_id": session_id, "session_url": session_url}


class PdfMonkeyClient:
    def __init__(self, api_key: Optional[str], template_id: Optional[str], timeout: float = 30.0):
        self.api_key = api_key
        self.template_id = template_id
        self.timeout = timeout

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def submit(self, payload: Dict[str, Any], filename: str) -> str:
        if not (self.api_key and self.template_id):
            raise UpstreamError("PDFMonkey is not configured")
        body = {
            "document": {
                "document_template_id": self.template_id,
                "payload": payload,
                "status": "pending",
                "meta": {"_filename": filename},
            }
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(PDFMONKEY_API_URL, json=body, headers=self.headers)
                resp.raise_for_status()
                return resp.json()["document"]["id"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise UpstreamError(f"PDF submit failed: {e}") from e

    async def poll(self, job_id: str) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{PDFMONKEY_API_URL}/{job_id}", headers=self.headers)
                resp.raise_for_status()
                doc = resp.json()["document"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise UpstreamError(f"PDF status check failed: {e}") from e
        status = doc.get("status")
        if status not in ("success", "failure"):
            status = "pending"
        return {"status": status, "download_url": doc.get("download_url")}

    async def download(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                return resp.content
        except httpx.HTTPError as e:
            raise UpstreamError(f"PDF download failed: {e}") from e


class SupabaseAuthVerifier:
    def __init__(self, url: Optional[str], api_key: Optional[str], timeout: float = 10.0):
        self.url = (url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def verify(self, bearer_token: str) -> Dict[str, str]:
        if not (self.url and self.api_key and bearer_token):
            raise AuthError()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(
                    f"{self.url}/auth/v1/user",
                    headers={"Authorization": f"Bearer {bearer_token}", "apikey": self.api_key},
                )
        except httpx.HTTPError as e:
            raise UpstreamError(f"auth provider unreachable: {e}") from e
        if resp.status_code != 200:
            raise AuthError()
        user = resp.json()
        if not user.get("id"):
            raise AuthError()
        return {"user_id": user["id"], "email": user.get("email")}
