"""Client for the continuity (memory) store.

The store keeps cross-session context per (student, internship): techniques
the patient has learned, trauma targets with SUD readings, VoC scores.
It is read before scoring and written after every assessment. A missing
record is normal for a first session and comes back as None.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from practicum.config import settings
from practicum.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class MemoryStoreClient:
    def __init__(self, base_url: str, timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def close(self) -> None:
        await self.client.aclose()

    async def get_memory(self, student_id: int, internship_id: Optional[int]) -> Optional[Dict[str, Any]]:
        if not self.enabled or internship_id is None:
            return None
        url = f"{self.base_url}/memory/internships/{internship_id}/students/{student_id}"
        try:
            response = await self.client.get(url)
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"Memory store unreachable: {e}") from e
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise UpstreamUnavailable(f"Memory store error {response.status_code}")
        try:
            memory = response.json()
        except ValueError as e:
            raise UpstreamUnavailable("Memory store returned malformed JSON") from e
        if not isinstance(memory, dict):
            raise UpstreamUnavailable("Memory store returned a malformed memory document")
        return memory

    async def record_session(self, payload: Dict[str, Any]) -> bool:
        """Push a session summary. Returns False when the store is disabled."""
        if not self.enabled:
            logger.debug("Memory store disabled; skipping session %s", payload.get("session_id"))
            return False
        try:
            response = await self.client.post(f"{self.base_url}/memory/sessions", json=payload)
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"Memory store unreachable: {e}") from e
        if response.status_code >= 400:
            raise UpstreamUnavailable(f"Memory store error {response.status_code}")
        return True


def build_memory_client() -> MemoryStoreClient:
    return MemoryStoreClient(settings.memory_url, timeout_seconds=settings.memory_timeout_seconds)


async def get_memory_store():
    """FastAPI dependency yielding a memory store client for the request."""
    client = build_memory_client()
    try:
        yield client
    finally:
        await client.close()


def patient_memory(memory: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """The patient_memory section of a memory document, tolerating either shape."""
    if not memory:
        return {}
    snapshot = memory.get("memory_snapshot") or {}
    return memory.get("patient_memory") or snapshot.get("patient_memory") or {}
