import json
import uuid

import pytest
from fastapi.testclient import TestClient

from conftest import fast_providers, poll_until_terminal
from errors import JobStoreError
from jobs import InMemoryJobStore
from main import create_app


class BrokenStore(InMemoryJobStore):
    def get(self, job_id):
        raise JobStoreError("connection refused")

    def put(self, job_id, job):
        raise JobStoreError("connection refused")

    def list_all(self):
        raise JobStoreError("connection refused")


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


def _submit(client, question="What is the national debt?") -> str:
    resp = client.post("/question", json={"question": question})
    assert resp.status_code == 202, resp.text
    return resp.json()["jobId"]


def _sse_events(body: str) -> list:
    return [json.loads(line[len("data:"):]) for line in body.splitlines() if line.startswith("data:")]


def test_health(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "Ask Franklin API", "stubProviders": True}


def test_question_runs_to_completion(client):
    resp = client.post("/question", json={"question": "What is the national debt?"})
    assert resp.status_code == 202
    body = resp.json()
    job_id = body["jobId"]
    assert uuid.UUID(job_id)
    assert body["status"] == "processing"
    assert body["statusUrl"] == f"/question/{job_id}/status"
    assert body["resultUrl"] == f"/question/{job_id}/result"
    assert body["eventsUrl"] == f"/question/{job_id}/events"

    status = poll_until_terminal(client, job_id)
    assert status["status"] == "completed"
    assert status["progress"] == 100
    assert status["resultReady"] is True
    assert status["jobId"] == job_id
    assert "result" not in status

    result = client.get(f"/question/{job_id}/result")
    assert result.status_code == 200
    payload = result.json()
    assert payload["jobId"] == job_id
    assert payload["status"] == "completed"
    assert payload["answer"]
    assert payload["audioUrl"]
    assert payload["videoUrl"].startswith("https://")


def test_terminal_reads_are_stable(client):
    job_id = _submit(client)
    poll_until_terminal(client, job_id)

    first = client.get(f"/question/{job_id}/result").json()
    second = client.get(f"/question/{job_id}/result").json()
    assert first == second

    assert client.get(f"/question/{job_id}/status").json() == client.get(f"/question/{job_id}/status").json()


@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"json": {}},
        {"json": {"question": ""}},
        {"json": {"question": "   "}},
        {"content": "not json", "headers": {"Content-Type": "application/json"}},
    ],
)
def test_bad_submissions_are_rejected_without_a_job(client, kwargs):
    resp = client.post("/question", **kwargs)
    assert resp.status_code == 400

    jobs = client.get("/debug/jobs").json()
    assert jobs["totalJobs"] == 0
    assert jobs["jobs"] == {}


def test_overlong_question_is_rejected(settings):
    limited = settings.model_copy(update={"max_question_chars": 10})
    with TestClient(create_app(limited)) as client:
        resp = client.post("/question", json={"question": "x" * 11})
        assert resp.status_code == 400
        assert "limit" in resp.json()["detail"]


def test_unknown_job_is_404(client):
    unknown = str(uuid.uuid4())
    assert client.get(f"/question/{unknown}/status").status_code == 404
    assert client.get(f"/question/{unknown}/result").status_code == 404
    assert client.get(f"/question/{unknown}/events").status_code == 404


def test_result_before_completion_is_400(settings):
    with TestClient(create_app(settings, providers=fast_providers(delay=5))) as client:
        job_id = _submit(client)

        resp = client.get(f"/question/{job_id}/result")
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "Result not yet available"
        assert body["status"] == "processing"
        assert body["jobId"] == job_id
        assert "jobError" not in body


def test_failed_job_result_carries_the_error(settings):
    app = create_app(settings, providers=fast_providers(video_outcome="failed"))
    with TestClient(app) as client:
        job_id = _submit(client)
        status = poll_until_terminal(client, job_id)
        assert status["status"] == "failed"
        assert status["error"]["kind"] == "provider"

        resp = client.get(f"/question/{job_id}/result")
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "Job failed"
        assert body["status"] == "failed"
        assert body["jobError"]["stage"] == "animating"
        assert "Video generation failed" in body["jobError"]["message"]


def test_missing_credentials_fail_the_job_immediately(settings):
    unconfigured = settings.model_copy(
        update={
            "use_stub_providers": False,
            "openai_api_key": "",
            "elevenlabs_api_key": "",
            "elevenlabs_voice_id": "",
            "did_api_key": "",
            "franklin_image_url": "",
        }
    )
    with TestClient(create_app(unconfigured)) as client:
        job_id = _submit(client)

        status = client.get(f"/question/{job_id}/status").json()
        assert status["status"] == "failed"
        assert status["error"]["kind"] == "configuration"
        assert "OPENAI_API_KEY" in status["error"]["message"]
        assert "DID_API_KEY" in status["error"]["message"]

        config = client.get("/debug/config").json()
        assert config["ready"] is False
        assert "OPENAI_API_KEY" in config["missing"]


def test_store_outage_is_503_not_404(settings):
    with TestClient(create_app(settings, store=BrokenStore())) as client:
        resp = client.post("/question", json={"question": "q"})
        assert resp.status_code == 503

        resp = client.get(f"/question/{uuid.uuid4()}/status")
        assert resp.status_code == 503
        assert "retry" in resp.json()["detail"]

        assert client.get("/debug/jobs").status_code == 503


def test_event_stream_follows_job_to_the_end(client):
    job_id = _submit(client, "Tell me about inflation")

    resp = client.get(f"/question/{job_id}/events")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")

    events = _sse_events(resp.text)
    assert events
    assert all(e["jobId"] == job_id for e in events)
    progress = [e["progress"] for e in events]
    assert progress == sorted(progress)
    assert events[-1]["status"] == "completed"
    assert events[-1]["progress"] == 100


def test_event_stream_of_finished_job_is_a_single_snapshot(client):
    job_id = _submit(client)
    poll_until_terminal(client, job_id)

    events = _sse_events(client.get(f"/question/{job_id}/events").text)
    assert len(events) == 1
    assert events[0]["status"] == "completed"


def test_websocket_join_updates_and_leave(settings):
    with TestClient(create_app(settings, providers=fast_providers(delay=0.2))) as client:
        job_id = _submit(client)

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "jobId": job_id})
            assert ws.receive_json() == {"type": "joined", "jobId": job_id}

            updates = []
            while True:
                message = ws.receive_json()
                assert message["type"] == "update"
                assert message["jobId"] == job_id
                updates.append(message)
                if message["status"] in ("completed", "failed"):
                    break

            assert updates[-1]["status"] == "completed"
            assert [u["progress"] for u in updates] == sorted(u["progress"] for u in updates)

            ws.send_json({"type": "leave", "jobId": job_id})
            assert ws.receive_json() == {"type": "left", "jobId": job_id}


def test_websocket_rejects_malformed_messages(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"

        ws.send_text("[1, 2]")
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "join"})
        assert ws.receive_json() == {"type": "error", "message": "jobId is required"}

        ws.send_json({"type": "dance", "jobId": "abc"})
        assert ws.receive_json()["type"] == "error"


def test_media_is_served_and_traversal_blocked(client, settings):
    audio = b"ID3fake-mp3-bytes"
    with open(f"{settings.temp_dir}/answer.mp3", "wb") as fh:
        fh.write(audio)

    resp = client.get("/media/answer.mp3")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "audio/mpeg"
    assert resp.content == audio

    assert client.get("/media/missing.mp3").status_code == 404
    assert client.get("/media/..%2F..%2Fetc%2Fpasswd").status_code == 404


def test_debug_jobs_lists_without_results(client):
    job_id = _submit(client)
    poll_until_terminal(client, job_id)

    body = client.get("/debug/jobs").json()
    assert body["totalJobs"] == 1
    entry = body["jobs"][job_id]
    assert entry["status"] == "completed"
    assert entry["resultAvailable"] is True
    assert "result" not in entry


def test_debug_config_never_leaks_secrets(settings):
    secret = settings.model_copy(update={"openai_api_key": "sk-test-very-secret", "did_api_key": "did-secret"})
    with TestClient(create_app(secret)) as client:
        resp = client.get("/debug/config")
        assert resp.status_code == 200
        body = resp.json()
        assert "sk-test-very-secret" not in resp.text
        assert "did-secret" not in resp.text
        assert body["stubProviders"] is True
        assert body["ready"] is True
        assert body["jobStore"] == "memory"
        assert body["stages"] == ["thinking", "speaking", "animating"]
        assert body["configured"]["openai"] is True
        assert body["missing"] == []


def test_run_serves_module_app_with_uvicorn(monkeypatch):
    import uvicorn

    import main

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    main.run()

    (app, kwargs), = calls
    assert app is main.app
    assert kwargs["host"] == main.app.state.settings.host
    assert kwargs["port"] == main.app.state.settings.port
    assert kwargs["log_level"] == main.app.state.settings.log_level.lower()
