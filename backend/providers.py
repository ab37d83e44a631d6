"""
Stage provider contracts and provider selection.

Each pipeline stage talks to one capability provider through a small
protocol, so real services and the canned stubs are interchangeable:

  TextProvider    — question      -> Franklin's answer
  SpeechProvider  — answer text   -> public audio URL
  VideoProvider   — audio URL or text + portrait -> talk id, polled for a video URL

``build_providers(settings)`` decides the stage sequence at start-up: when
speech is disabled the video provider must accept raw text.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from errors import ConfigurationError

VIDEO_PENDING = "pending"
VIDEO_DONE = "done"
VIDEO_FAILED = "failed"


@dataclass
class VideoStatus:
    """Normalized answer from a video status poll."""

    state: str  # pending | done | failed
    result_url: Optional[str] = None
    error: Optional[str] = None


@runtime_checkable
class TextProvider(Protocol):
    name: str

    async def generate(self, question: str) -> str: ...


@runtime_checkable
class SpeechProvider(Protocol):
    name: str

    async def synthesize(self, text: str, job_id: str) -> str:
        """Speak *text* and return a publicly retrievable audio URL."""
        ...


@runtime_checkable
class VideoProvider(Protocol):
    name: str
    accepts_text: bool

    async def submit(self, *, audio_url: Optional[str] = None, text: Optional[str] = None) -> str:
        """Start a render and return the provider's handle for it."""
        ...

    async def status(self, talk_id: str) -> VideoStatus: ...


@dataclass
class Providers:
    text: TextProvider
    video: VideoProvider
    speech: Optional[SpeechProvider] = None

    @property
    def stages(self) -> tuple:
        if self.speech is None:
            return ("thinking", "animating")
        return ("thinking", "speaking", "animating")


def build_providers(settings) -> Providers:
    """Instantiate the provider set selected by *settings*."""
    if settings.use_stub_providers:
        from stubs import StubSpeechProvider, StubTextProvider, StubVideoProvider

        delay = settings.stub_stage_delay
        return Providers(
            text=StubTextProvider(delay=delay),
            speech=StubSpeechProvider(delay=delay) if settings.speech_enabled else None,
            video=StubVideoProvider(delay=delay),
        )

    from llm import OpenAIAnswerProvider
    from storage import MediaStorage
    from tts import FileSpeechProvider
    from video import DIdVideoProvider

    speech = None
    if settings.speech_enabled:
        speech = FileSpeechProvider(
            settings,
            MediaStorage(settings.temp_dir, settings.public_base_url),
        )

    video = DIdVideoProvider(
        api_key=settings.did_api_key,
        source_url=settings.franklin_image_url,
        base_url=settings.did_api_url,
        text_voice=settings.did_text_voice,
    )
    if speech is None and not video.accepts_text:
        raise ConfigurationError(f"{video.name} needs audio input but SPEECH_ENABLED is false")

    return Providers(text=OpenAIAnswerProvider(settings), speech=speech, video=video)
