"""
Speech synthesis for Franklin's voice.

Primary:  ElevenLabs (cloned Franklin voice) or OpenAI TTS, per SPEECH_PROVIDER
Fallback: Edge TTS (regional male neural voice), used when the primary call
          fails and SPEECH_FALLBACK_EDGE is on, or when SPEECH_PROVIDER=edge.

The audio is written to the media directory and its public URL is returned,
because the video provider fetches it over HTTP.
"""

import asyncio
import logging
from typing import Optional

import httpx

from errors import ProviderError
from storage import MediaStorage

logger = logging.getLogger(__name__)

ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1"

# Edge TTS voice map: ISO 639-1 language code → regional neural voice.
# Only used by the Edge path; ElevenLabs and OpenAI handle language themselves.
_EDGE_TTS_VOICES: dict[str, str] = {
    "en": "en-US-GuyNeural",
    "fr": "fr-FR-HenriNeural",
    "es": "es-ES-AlvaroNeural",
    "de": "de-DE-ConradNeural",
    "it": "it-IT-DiegoNeural",
    "pt": "pt-BR-AntonioNeural",
    "nl": "nl-NL-MaartenNeural",
    "pl": "pl-PL-MarekNeural",
    "ru": "ru-RU-DmitryNeural",
    "ja": "ja-JP-KeitaNeural",
    "zh": "zh-CN-YunxiNeural",
}
_EDGE_TTS_DEFAULT: str = "en-US-GuyNeural"


class FileSpeechProvider:
    """Synthesizes ``<job_id>.mp3`` into media storage and returns its URL."""

    def __init__(
        self,
        settings,
        storage: MediaStorage,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.name = settings.speech_provider
        self._transport = transport

    async def synthesize(self, text: str, job_id: str) -> str:
        filename = f"{job_id}.mp3"
        output_path = self.storage.path_for(filename)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            await self._primary(text, filename)
        except Exception as exc:
            if self.name == "edge" or not self.settings.speech_fallback_edge:
                raise ProviderError(self.name, "Failed to generate speech", exc) from exc
            logger.warning("[TTS] %s failed for job %s: %r, falling back to Edge TTS", self.name, job_id, exc)
            try:
                await _edge_tts(text, str(output_path))
            except Exception as edge_exc:
                raise ProviderError("edge", "Failed to generate speech (fallback)", edge_exc) from edge_exc

        return self.storage.url_for(filename)

    async def _primary(self, text: str, filename: str) -> None:
        output_path = self.storage.path_for(filename)
        if self.name == "elevenlabs":
            audio = await _elevenlabs_tts(
                text,
                api_key=self.settings.elevenlabs_api_key,
                voice_id=self.settings.elevenlabs_voice_id,
                model_id=self.settings.elevenlabs_model,
                transport=self._transport,
            )
            await self.storage.save(filename, audio)
        elif self.name == "openai":
            await _openai_tts(
                text,
                str(output_path),
                api_key=self.settings.openai_api_key,
                model=self.settings.tts_model,
                voice=self.settings.tts_voice,
            )
        else:
            await _edge_tts(text, str(output_path))


# ---------------------------------------------------------------------------
# Private implementations
# ---------------------------------------------------------------------------

async def _elevenlabs_tts(
    text: str,
    *,
    api_key: str,
    voice_id: str,
    model_id: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bytes:
    """Generate audio via the ElevenLabs text-to-speech endpoint and return the MP3 bytes."""
    async with httpx.AsyncClient(base_url=ELEVENLABS_API_URL, timeout=60.0, transport=transport) as client:
        response = await client.post(
            f"/text-to-speech/{voice_id}",
            headers={"xi-api-key": api_key, "Accept": "audio/mpeg"},
            json={
                "text": text,
                "model_id": model_id,
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.8},
            },
        )
        response.raise_for_status()
        audio = response.content

    if not audio:
        raise RuntimeError("ElevenLabs returned no audio")
    return audio


async def _openai_tts(text: str, output_path: str, *, api_key: str, model: str, voice: str) -> None:
    """Generate audio via OpenAI TTS API and write to disk."""
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key)

    response = await client.audio.speech.create(
        model=model,
        voice=voice,  # type: ignore[arg-type]
        input=text,
    )
    # write_to_file is synchronous; run in thread to avoid blocking the event loop
    await asyncio.to_thread(response.write_to_file, output_path)


async def _edge_tts(text: str, output_path: str) -> None:
    """
    Generate audio via Microsoft Edge TTS (free, no API key required).
    Auto-detects the answer's language and picks a matching regional voice.
    """
    import edge_tts

    voice = _pick_edge_voice(text)
    logger.info("[EdgeTTS] Using voice: %s", voice)
    communicate = edge_tts.Communicate(text, voice)
    await communicate.save(output_path)


def _pick_edge_voice(text: str) -> str:
    """
    Detect the language of *text* and return the best matching Edge TTS voice.
    Falls back to English if detection fails or the language isn't in the map.
    """
    from langdetect import LangDetectException, detect

    try:
        lang = detect(text)
    except LangDetectException as exc:
        logger.info("[EdgeTTS] Language detection failed: %r, using default voice", exc)
        return _EDGE_TTS_DEFAULT

    if lang not in _EDGE_TTS_VOICES:
        logger.info("[EdgeTTS] Language '%s' not in voice map, using default", lang)
    return _EDGE_TTS_VOICES.get(lang, _EDGE_TTS_DEFAULT)
