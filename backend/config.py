"""
Application settings.

All configuration is resolved once from the environment (a ``.env`` file is
loaded first in development) into a validated ``Settings`` object. Provider
credentials are never given hardcoded fallbacks: when something is missing,
``missing_credentials()`` says so and submissions fail fast.
"""

import os
from typing import Callable, List

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

load_dotenv()


def _env(name: str, default: str = "") -> Callable[[], str]:
    """Default factory reading *name* at construction time, so tests can patch the env."""
    return lambda: os.getenv(name, default)


SPEECH_PROVIDERS = ("elevenlabs", "openai", "edge")
JOB_STORES = ("memory", "file", "redis")


class Settings(BaseModel):
    """Every tunable of the service, read from environment variables of the same name (upper-cased)."""

    model_config = ConfigDict(validate_default=True)

    # Pipeline shape
    use_stub_providers: bool = Field(default_factory=_env("USE_STUB_PROVIDERS", "false"))
    speech_enabled: bool = Field(default_factory=_env("SPEECH_ENABLED", "true"))
    speech_provider: str = Field(default_factory=_env("SPEECH_PROVIDER", "elevenlabs"))
    speech_fallback_edge: bool = Field(default_factory=_env("SPEECH_FALLBACK_EDGE", "true"))

    # Text generation (OpenAI)
    openai_api_key: str = Field(default_factory=_env("OPENAI_API_KEY"))
    chat_model: str = Field(default_factory=_env("CHAT_MODEL", "gpt-4o"))
    max_answer_tokens: int = Field(default_factory=_env("MAX_ANSWER_TOKENS", "300"))
    answer_temperature: float = Field(default_factory=_env("ANSWER_TEMPERATURE", "0.7"))

    # Speech synthesis
    tts_model: str = Field(default_factory=_env("TTS_MODEL", "tts-1"))
    tts_voice: str = Field(default_factory=_env("TTS_VOICE", "onyx"))
    elevenlabs_api_key: str = Field(default_factory=_env("ELEVENLABS_API_KEY"))
    elevenlabs_voice_id: str = Field(default_factory=_env("ELEVENLABS_VOICE_ID"))
    elevenlabs_model: str = Field(default_factory=_env("ELEVENLABS_MODEL", "eleven_monolingual_v1"))

    # Video synthesis (D-ID)
    did_api_key: str = Field(default_factory=_env("DID_API_KEY"))
    did_api_url: str = Field(default_factory=_env("DID_API_URL", "https://api.d-id.com"))
    did_text_voice: str = Field(default_factory=_env("DID_TEXT_VOICE", "en-US-GuyNeural"))
    franklin_image_url: str = Field(default_factory=_env("FRANKLIN_IMAGE_URL"))
    video_poll_interval: float = Field(default_factory=_env("VIDEO_POLL_INTERVAL", "2.0"))
    video_max_poll_attempts: int = Field(default_factory=_env("VIDEO_MAX_POLL_ATTEMPTS", "30"))

    # Media hosting: generated audio is served from TEMP_DIR under PUBLIC_BASE_URL/media/
    public_base_url: str = Field(default_factory=_env("PUBLIC_BASE_URL"))
    temp_dir: str = Field(default_factory=_env("TEMP_DIR", "/tmp/franklin"))

    # Job store
    job_store: str = Field(default_factory=_env("JOB_STORE", "memory"))
    job_store_dir: str = Field(default_factory=_env("JOB_STORE_DIR", "/tmp/franklin/jobs"))
    redis_url: str = Field(default_factory=_env("REDIS_URL"))
    redis_prefix: str = Field(default_factory=_env("REDIS_PREFIX", "franklin:"))
    job_retention_seconds: int = Field(default_factory=_env("JOB_RETENTION_SECONDS", "3600"))
    # Slack on top of the longest video poll before a silent processing job counts as abandoned
    stale_job_margin: int = Field(default_factory=_env("STALE_JOB_MARGIN", "300"))

    # Server
    host: str = Field(default_factory=_env("HOST", "0.0.0.0"))
    port: int = Field(default_factory=_env("PORT", "8000"))

    # Housekeeping and misc
    stub_stage_delay: float = Field(default_factory=_env("STUB_STAGE_DELAY", "1.0"))
    cleanup_interval: int = Field(default_factory=_env("CLEANUP_INTERVAL", "1800"))
    max_file_age: int = Field(default_factory=_env("MAX_FILE_AGE", "3600"))
    max_question_chars: int = Field(default_factory=_env("MAX_QUESTION_CHARS", "1000"))
    log_level: str = Field(default_factory=_env("LOG_LEVEL", "INFO"))

    @field_validator(
        "max_answer_tokens",
        "video_max_poll_attempts",
        "cleanup_interval",
        "max_file_age",
        "max_question_chars",
        "port",
    )
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("video_poll_interval")
    @classmethod
    def interval_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("job_retention_seconds", "stub_stage_delay", "stale_job_margin")
    @classmethod
    def must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("speech_provider")
    @classmethod
    def known_speech_provider(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in SPEECH_PROVIDERS:
            raise ValueError(f"must be one of {', '.join(SPEECH_PROVIDERS)}")
        return v

    @field_validator("job_store")
    @classmethod
    def known_job_store(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in JOB_STORES:
            raise ValueError(f"must be one of {', '.join(JOB_STORES)}")
        return v

    @field_validator("public_base_url", "did_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    def stale_job_seconds(self) -> float:
        """Seconds without an update after which a ``processing`` job is treated as abandoned."""
        return self.video_poll_interval * self.video_max_poll_attempts + self.stale_job_margin

    def missing_credentials(self) -> List[str]:
        """Names of environment variables the selected real providers still need."""
        if self.use_stub_providers:
            return []

        missing: List[str] = []
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if self.speech_enabled:
            if self.speech_provider == "elevenlabs":
                if not self.elevenlabs_api_key:
                    missing.append("ELEVENLABS_API_KEY")
                if not self.elevenlabs_voice_id:
                    missing.append("ELEVENLABS_VOICE_ID")
            # The video provider fetches the audio over HTTP, so it must be public.
            if not self.public_base_url:
                missing.append("PUBLIC_BASE_URL")

        if not self.did_api_key:
            missing.append("DID_API_KEY")
        if not self.franklin_image_url:
            missing.append("FRANKLIN_IMAGE_URL")

        return missing
