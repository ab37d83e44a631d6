import pytest
from pydantic import ValidationError

from config import Settings
from jobs import InMemoryJobStore
from notify import ProgressChannel
from pipeline import Orchestrator
from providers import build_providers
from stubs import StubTextProvider

ENV_KEYS = (
    "USE_STUB_PROVIDERS",
    "SPEECH_ENABLED",
    "SPEECH_PROVIDER",
    "OPENAI_API_KEY",
    "ELEVENLABS_API_KEY",
    "ELEVENLABS_VOICE_ID",
    "DID_API_KEY",
    "FRANKLIN_IMAGE_URL",
    "PUBLIC_BASE_URL",
    "JOB_STORE",
    "VIDEO_POLL_INTERVAL",
    "VIDEO_MAX_POLL_ATTEMPTS",
    "STALE_JOB_MARGIN",
    "HOST",
    "PORT",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_values_come_from_environment(clean_env):
    clean_env.setenv("USE_STUB_PROVIDERS", "true")
    clean_env.setenv("VIDEO_POLL_INTERVAL", "0.5")
    clean_env.setenv("VIDEO_MAX_POLL_ATTEMPTS", "12")
    clean_env.setenv("SPEECH_PROVIDER", "OpenAI")
    clean_env.setenv("PUBLIC_BASE_URL", "https://franklin.example/")
    clean_env.setenv("JOB_STORE", "Redis")

    settings = Settings()
    assert settings.use_stub_providers is True
    assert settings.video_poll_interval == 0.5
    assert settings.video_max_poll_attempts == 12
    assert settings.speech_provider == "openai"
    assert settings.public_base_url == "https://franklin.example"
    assert settings.job_store == "redis"


def test_defaults(clean_env):
    settings = Settings()
    assert settings.use_stub_providers is False
    assert settings.speech_enabled is True
    assert settings.speech_provider == "elevenlabs"
    assert settings.video_poll_interval == 2.0
    assert settings.video_max_poll_attempts == 30
    assert settings.job_store == "memory"
    assert settings.host == "0.0.0.0"
    assert settings.port == 8000


@pytest.mark.parametrize(
    "key, value",
    [
        ("VIDEO_POLL_INTERVAL", "0"),
        ("VIDEO_MAX_POLL_ATTEMPTS", "-1"),
        ("SPEECH_PROVIDER", "polly"),
        ("JOB_STORE", "postgres"),
        ("USE_STUB_PROVIDERS", "maybe"),
        ("PORT", "0"),
        ("STALE_JOB_MARGIN", "-5"),
    ],
)
def test_invalid_values_are_rejected(clean_env, key, value):
    clean_env.setenv(key, value)
    with pytest.raises(ValidationError):
        Settings()


def test_stale_job_threshold_outlasts_video_polling(clean_env):
    settings = Settings(video_poll_interval=2.0, video_max_poll_attempts=30, stale_job_margin=300)
    assert settings.stale_job_seconds() == 360

    clean_env.setenv("STALE_JOB_MARGIN", "0")
    assert Settings().stale_job_seconds() == 60


def test_stub_mode_needs_no_credentials(clean_env):
    assert Settings(use_stub_providers=True).missing_credentials() == []


def test_missing_credentials_for_full_pipeline(clean_env):
    assert Settings().missing_credentials() == [
        "OPENAI_API_KEY",
        "ELEVENLABS_API_KEY",
        "ELEVENLABS_VOICE_ID",
        "PUBLIC_BASE_URL",
        "DID_API_KEY",
        "FRANKLIN_IMAGE_URL",
    ]


def test_missing_credentials_without_speech(clean_env):
    settings = Settings(speech_enabled=False, openai_api_key="sk", did_api_key="d", franklin_image_url="https://i")
    assert settings.missing_credentials() == []


def test_edge_speech_needs_no_elevenlabs_key(clean_env):
    settings = Settings(
        speech_provider="edge",
        openai_api_key="sk",
        did_api_key="d",
        franklin_image_url="https://i",
    )
    assert settings.missing_credentials() == ["PUBLIC_BASE_URL"]


def test_stub_providers_follow_speech_toggle(clean_env):
    with_speech = build_providers(Settings(use_stub_providers=True, stub_stage_delay=0))
    without_speech = build_providers(Settings(use_stub_providers=True, speech_enabled=False))

    assert isinstance(with_speech.text, StubTextProvider)
    assert with_speech.stages == ("thinking", "speaking", "animating")
    assert without_speech.speech is None
    assert without_speech.stages == ("thinking", "animating")


def test_real_providers_are_built_when_configured(clean_env, tmp_path):
    settings = Settings(
        openai_api_key="sk",
        elevenlabs_api_key="xi",
        elevenlabs_voice_id="v",
        did_api_key="d",
        franklin_image_url="https://img.example/franklin.jpg",
        public_base_url="https://franklin.example",
        temp_dir=str(tmp_path),
    )
    providers = build_providers(settings)
    assert providers.text.name == "openai"
    assert providers.speech.name == "elevenlabs"
    assert providers.video.name == "d-id"


def test_orchestrator_records_configuration_errors(clean_env):
    orchestrator = Orchestrator.from_settings(Settings(), InMemoryJobStore(), ProgressChannel())
    assert orchestrator.providers is None
    assert "OPENAI_API_KEY is not set" in orchestrator.config_errors

    ready = Orchestrator.from_settings(
        Settings(use_stub_providers=True, video_poll_interval=0.25), InMemoryJobStore(), ProgressChannel()
    )
    assert ready.config_errors == []
    assert ready.poll_interval == 0.25
