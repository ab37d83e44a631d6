"""
Talking-head video synthesis via D-ID.

Key public pieces:
  DIdVideoProvider.submit(audio_url=... | text=...)  — POST /talks, returns the talk id
  DIdVideoProvider.status(talk_id)                   — GET /talks/{id}, normalized VideoStatus

The poll loop itself (fixed interval, attempt cap) lives in the pipeline's
animating stage; this module only shapes requests and reads responses.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from errors import ProviderError
from providers import VIDEO_DONE, VIDEO_FAILED, VIDEO_PENDING, VideoStatus

logger = logging.getLogger(__name__)

# D-ID talk states → pipeline states
_DONE_STATES = {"done"}
_FAILED_STATES = {"error", "rejected", "failed"}


class DIdVideoProvider:
    """Animates the Franklin portrait with either an audio URL or a text script."""

    name = "d-id"
    accepts_text = True

    def __init__(
        self,
        *,
        api_key: str,
        source_url: str,
        base_url: str = "https://api.d-id.com",
        text_voice: str = "en-US-GuyNeural",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.source_url = source_url
        self.base_url = base_url
        self.text_voice = text_voice
        self._headers = {
            "Authorization": f"Basic {api_key}",
            "Content-Type": "application/json",
        }
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    def build_script(self, *, audio_url: Optional[str] = None, text: Optional[str] = None) -> Dict[str, Any]:
        """Audio script when a voiceover exists, otherwise a text script spoken by a Microsoft voice."""
        if audio_url:
            return {"type": "audio", "audio_url": audio_url}
        if text:
            return {
                "type": "text",
                "input": text,
                "provider": {"type": "microsoft", "voice_id": self.text_voice},
            }
        raise ValueError("Either audio_url or text is required")

    async def submit(self, *, audio_url: Optional[str] = None, text: Optional[str] = None) -> str:
        payload = {
            "script": self.build_script(audio_url=audio_url, text=text),
            "source_url": self.source_url,
        }
        try:
            async with self._client() as client:
                response = await client.post("/talks", json=payload)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(self.name, "Failed to start video generation", exc) from exc

        talk_id = data.get("id")
        if not talk_id:
            raise ProviderError(self.name, f"No talk id in response: {data!r}")
        logger.info("[D-ID] Created talk %s", talk_id)
        return talk_id

    async def status(self, talk_id: str) -> VideoStatus:
        try:
            async with self._client() as client:
                response = await client.get(f"/talks/{talk_id}")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(self.name, f"Failed to poll talk {talk_id}", exc) from exc

        state = (data.get("status") or "").lower()
        if state in _DONE_STATES:
            return VideoStatus(VIDEO_DONE, result_url=data.get("result_url"))
        if state in _FAILED_STATES:
            error = data.get("error") or {}
            description = error.get("description") if isinstance(error, dict) else str(error)
            return VideoStatus(VIDEO_FAILED, error=description or state)
        return VideoStatus(VIDEO_PENDING)
