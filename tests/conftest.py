import asyncio
import sys
import time
from pathlib import Path

import pytest

# Ensure backend/ is on sys.path so `import main` etc. work in tests
BACKEND = Path(__file__).resolve().parents[1] / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from config import Settings  # noqa: E402
from jobs import is_terminal  # noqa: E402
from providers import Providers  # noqa: E402
from stubs import StubSpeechProvider, StubTextProvider, StubVideoProvider  # noqa: E402


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Stub providers with near-zero latency, in-memory store, no retention timers."""
    return Settings(
        use_stub_providers=True,
        speech_enabled=True,
        stub_stage_delay=0.01,
        video_poll_interval=0.01,
        video_max_poll_attempts=10,
        job_store="memory",
        job_retention_seconds=0,
        temp_dir=str(tmp_path / "media"),
        public_base_url="http://testserver",
        cleanup_interval=3600,
        log_level="INFO",
    )


def fast_providers(
    *,
    delay: float = 0.01,
    speech: bool = True,
    video_outcome: str = "done",
    polls_until_done: int = 1,
) -> Providers:
    return Providers(
        text=StubTextProvider(delay=delay),
        speech=StubSpeechProvider(delay=delay) if speech else None,
        video=StubVideoProvider(delay=delay, polls_until_done=polls_until_done, outcome=video_outcome),
    )


async def wait_terminal(store, job_id: str, timeout: float = 5.0) -> dict:
    """Await until the stored job is terminal (async code paths)."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = store.get(job_id)
        if job is not None and is_terminal(job):
            return job
        await asyncio.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish within {timeout}s")


def poll_until_terminal(client, job_id: str, attempts: int = 200, interval: float = 0.05) -> dict:
    """Poll the HTTP status endpoint until the job is terminal (TestClient code paths)."""
    for _ in range(attempts):
        resp = client.get(f"/question/{job_id}/status")
        assert resp.status_code == 200, resp.text
        status = resp.json()
        if status["status"] in ("completed", "failed"):
            return status
        time.sleep(interval)
    pytest.fail(f"Job {job_id} did not finish")
