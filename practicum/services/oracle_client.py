"""
oracle_client.py - Adapters for the external assessment oracle

Provides:
- HttpOracleClient - remote scoring service over HTTP (httpx)
- LlmOracleClient - scores directly through ai_chat
- build_oracle_client() / get_oracle() - selected by ORACLE_BACKEND

Every oracle failure surfaces as UpstreamUnavailable (timeout, network,
5xx) or ValidationFailure (request rejected), never as a raw httpx error.
Calls are safe to repeat for the same session.
"""

import json
import uuid
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from practicum.config import settings
from practicum.errors import UpstreamUnavailable, ValidationFailure

logger = logging.getLogger(__name__)

GENERATE_FEEDBACK_PATH = "/internship/supervisor/generate-feedback"
INITIALIZE_PATHS = {
    "patient_interview": "/internship/patient/initialize",
    "therapist_consultation": "/internship/therapist/initialize",
}
END_SESSION_PATH = "/internship/session/end"


class HttpOracleClient:
    """HTTP client for the remote scoring/simulation service."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 120.0,
        connect_timeout_seconds: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            follow_redirects=True,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def initialize_session(self, case: Dict[str, Any], session_type: str) -> Optional[str]:
        """Open a remote simulation session and return its handle.

        Session types without a remote simulator get no handle.
        """
        path = INITIALIZE_PATHS.get(session_type)
        if path is None:
            return None
        sim_config = case.get("patient_simulation_config") or {}
        data = await self._post(path, {
            "case_id": str(case["id"]),
            "patient_profile": sim_config.get("patient_profile"),
            "scenario_config": {
                "scenario_type": sim_config.get("scenario_type"),
                "difficulty_level": sim_config.get("difficulty_level"),
            },
        })
        return data.get("session_id")

    async def generate_feedback(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Score a completed session. Returns the oracle's feedback object."""
        data = await self._post(GENERATE_FEEDBACK_PATH, request)
        feedback = data.get("feedback", data)
        if not isinstance(feedback, dict):
            logger.error(f"Oracle feedback payload is {type(feedback).__name__}, expected an object")
            raise UpstreamUnavailable("Assessment service returned a malformed feedback payload")
        if "overall_score" not in feedback and "score" in data:
            feedback = {**feedback, "overall_score": data["score"]}
        return feedback

    async def end_session(self, handle: str, session_type: str) -> None:
        await self._post(END_SESSION_PATH, {"session_id": handle, "session_type": session_type})

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.info(f"Oracle POST {path}")
        try:
            response = await self._send(url, payload)
        except httpx.TimeoutException as e:
            logger.error(f"Oracle timed out after {self.timeout_seconds}s on {path}")
            raise UpstreamUnavailable(f"Assessment service timed out on {path}") from e
        except httpx.RequestError as e:
            logger.error(f"Oracle unreachable on {path}: {e}")
            raise UpstreamUnavailable(f"Assessment service unreachable: {e}") from e

        if response.status_code >= 500:
            logger.error(f"Oracle server error {response.status_code} on {path}")
            raise UpstreamUnavailable(f"Assessment service error {response.status_code}")
        if response.status_code >= 400:
            detail, fields = _error_detail(response)
            logger.error(f"Oracle rejected request on {path}: {detail}")
            raise ValidationFailure(detail, fields)

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamUnavailable("Assessment service returned malformed JSON") from e
        if not isinstance(data, dict):
            raise UpstreamUnavailable("Assessment service returned a malformed response body")
        if data.get("success") is False:
            raise UpstreamUnavailable(data.get("message") or "Assessment service reported failure")
        return data

    @retry(
        stop=stop_after_attempt(settings.oracle_connect_retries),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(httpx.ConnectError),
        before_sleep=lambda retry_state: logger.warning(
            "Oracle connection failed (attempt %d), retrying: %s",
            retry_state.attempt_number,
            retry_state.outcome.exception(),
        ),
        reraise=True,
    )
    async def _send(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        return await self.client.post(url, json=payload)


def _error_detail(response: httpx.Response) -> tuple[str, dict]:
    """Pull a message and field errors out of a 4xx body (FastAPI or free-form)."""
    try:
        body = response.json()
    except ValueError:
        return f"Assessment service rejected the request ({response.status_code})", {}
    if not isinstance(body, dict):
        return str(body), {}
    detail = body.get("detail") or body.get("message") or f"Rejected ({response.status_code})"
    fields = {}
    if isinstance(detail, list):
        # FastAPI/pydantic: [{"loc": [...], "msg": "..."}]
        for err in detail:
            if isinstance(err, dict):
                loc = ".".join(str(p) for p in err.get("loc", []) if p != "body")
                fields[loc or "request"] = err.get("msg", "invalid")
        detail = "Assessment request failed validation"
    return str(detail), fields


class LlmOracleClient:
    """Scores sessions with a language model via ai_chat.

    There is no remote simulator session; handles are local identifiers.
    """

    def __init__(self, timeout_seconds: float = 120.0):
        self.timeout_seconds = timeout_seconds

    async def close(self) -> None:
        pass

    async def initialize_session(self, case: Dict[str, Any], session_type: str) -> Optional[str]:
        return f"llm-{uuid.uuid4().hex}"

    async def end_session(self, handle: str, session_type: str) -> None:
        pass

    async def generate_feedback(self, request: Dict[str, Any]) -> Dict[str, Any]:
        from practicum.services.ai_client import ai_chat
        from practicum.services.prompts import load_prompt

        prompt = load_prompt("supervisor_feedback.yaml")
        user_message = prompt["user_template"].format(**_prompt_fields(request))

        try:
            raw = await asyncio.wait_for(
                ai_chat(
                    messages=[
                        {"role": "system", "content": prompt["system_prompt"]},
                        {"role": "user", "content": user_message},
                    ],
                    use_case="assessment",
                    temperature=0.2,
                    json_mode=True,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"LLM scoring timed out after {self.timeout_seconds}s")
            raise UpstreamUnavailable("Assessment model timed out") from e
        except Exception as e:
            logger.error(f"LLM scoring failed: {e}")
            raise UpstreamUnavailable(f"Assessment model unavailable: {e}") from e

        try:
            result = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"LLM scoring returned invalid JSON: {e}")
            raise UpstreamUnavailable("Assessment model returned malformed JSON") from e
        if not isinstance(result, dict):
            raise UpstreamUnavailable("Assessment model returned a malformed feedback payload")
        return result


def _prompt_fields(request: Dict[str, Any]) -> Dict[str, Any]:
    session = request.get("session_data") or {}
    transcript = "\n".join(
        f"{m.get('role', '?').upper()}: {m.get('content', '')}" for m in session.get("messages", [])
    )
    rubric = request.get("assessment_criteria") or request.get("evaluation_criteria") or []
    rubric_text = "\n".join(
        f"- {c.get('criterion_id') or c.get('criterion')}: {c.get('name', '')} "
        f"({c.get('max_points', c.get('weight'))} pts) {c.get('description', '')}".rstrip()
        for c in rubric
    )
    literature = request.get("literature_references") or []
    attempts = request.get("previous_attempts") or {}
    return {
        "case_title": request.get("case_title", ""),
        "pass_threshold": request.get("pass_threshold"),
        "rubric_text": rubric_text or "No rubric provided.",
        "literature_text": "\n".join(f"- {ref.get('title')}" for ref in literature) or "None.",
        "attempts_text": json.dumps(attempts, default=str) if attempts else "First attempt.",
        "memory_text": json.dumps(request.get("memory"), default=str) if request.get("memory") else "None.",
        "patient_profile": json.dumps(request.get("patient_profile"), default=str),
        "session_duration_minutes": session.get("session_duration_minutes", 0),
        "transcript_text": transcript or "(empty transcript)",
    }


def build_oracle_client():
    if settings.oracle_backend == "llm":
        return LlmOracleClient(timeout_seconds=settings.oracle_timeout_seconds)
    return HttpOracleClient(settings.oracle_url, timeout_seconds=settings.oracle_timeout_seconds)


async def get_oracle():
    """FastAPI dependency yielding an oracle client for the request."""
    client = build_oracle_client()
    try:
        yield client
    finally:
        await client.close()
