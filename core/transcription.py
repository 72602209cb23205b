# =============================================================================
# RealtyVoice Agent - Transcription Client
# =============================================================================
"""
Sends one captured audio payload to the transcription service.

An empty or whitespace transcript is returned as "" and means nothing was
understood; the orchestrator then skips the reasoning call. Failures raise
TranscriptionFailed. There are no retries: a failed step ends the turn.
"""

import logging
from typing import Optional, Protocol

import httpx

from .errors import TranscriptionFailed

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    async def transcribe(self, payload: bytes, mime_type: str) -> str: ...


class TranscriptionClient:
    """HTTP client for the `/api/ai/speech` endpoint."""

    def __init__(
        self,
        base_url: str = "http://localhost:9876",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        path: str = "/api/ai/speech",
    ):
        self.base_url = base_url.rstrip("/")
        self.path = path
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_seconds)

    async def transcribe(self, payload: bytes, mime_type: str) -> str:
        """
        Transcribe an encoded audio payload.

        Args:
            payload: Encoded audio bytes
            mime_type: Codec tag sent as Content-Type

        Returns:
            Stripped transcript text ("" if nothing was understood)
        """
        try:
            response = await self._client.post(
                self.path,
                content=payload,
                headers={"Content-Type": mime_type},
            )
        except httpx.HTTPError as e:
            raise TranscriptionFailed(f"Transcription request failed: {e}") from e

        if response.status_code != 200:
            raise TranscriptionFailed(
                f"Transcription service error: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TranscriptionFailed("Transcription service returned invalid JSON") from e

        transcript = (data.get("transcript") or "").strip() if isinstance(data, dict) else ""
        logger.debug(f"Transcript: {transcript!r}")
        return transcript

    async def close(self) -> None:
        await self._client.aclose()
