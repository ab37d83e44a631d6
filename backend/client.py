"""
Client for the Ask Franklin API.

``FranklinClient.wait(job_id)`` follows a job two ways at once:

  push — the /question/{id}/events Server-Sent Events stream
  poll — GET /question/{id}/status every ``poll_interval`` seconds

Whichever sees the terminal state first wins and the other is cancelled, so
the caller gets exactly one outcome: the result payload, ``JobFailedError``,
or ``WaitTimeoutError``. If the push stream cannot be opened the poll path
carries on alone, and the other way round. Polling rides out 5xx answers
and connection errors; anything else surfaces as a ``FranklinClientError``.
Retrying means asking again, which creates a new job.

Also usable from the shell:  ask-franklin "What is the national debt?"
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[Dict[str, Any]], None]

TERMINAL = ("completed", "failed")


class FranklinClientError(Exception):
    """Base class for client-side failures."""


class QuestionRejected(FranklinClientError):
    """The server refused the submission (HTTP 400)."""


class JobNotFound(FranklinClientError):
    """The server does not know the job id (HTTP 404)."""


class JobFailedError(FranklinClientError):
    def __init__(self, job_id: str, error: Optional[Dict[str, Any]]) -> None:
        self.job_id = job_id
        self.error = error or {}
        super().__init__(self.error.get("message") or "Failed to process your question")


class WaitTimeoutError(FranklinClientError):
    """Neither path saw a terminal state in time."""


class PushUnavailable(FranklinClientError):
    """The push stream could not be opened or ended early."""


class FranklinClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        poll_interval: float = 1.0,
        max_polls: int = 300,
        timeout: float = 300.0,
        use_push: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout = timeout
        self.use_push = use_push
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=None, transport=self._transport)

    def _events_path(self, job_id: str) -> str:
        return f"/question/{job_id}/events"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, question: str) -> str:
        try:
            async with self._client() as client:
                response = await client.post("/question", json={"question": question})
        except httpx.HTTPError as exc:
            raise FranklinClientError(f"Could not reach {self.base_url}: {exc}") from exc
        if response.status_code == 400:
            raise QuestionRejected(response.json().get("detail", "Question rejected"))
        if response.is_error:
            raise FranklinClientError(f"Submission failed with HTTP {response.status_code}")
        return response.json()["jobId"]

    async def ask(self, question: str, on_update: Optional[UpdateCallback] = None) -> Dict[str, Any]:
        job_id = await self.submit(question)
        return await self.wait(job_id, on_update=on_update)

    async def wait(self, job_id: str, on_update: Optional[UpdateCallback] = None) -> Dict[str, Any]:
        """Resolve to the result payload of *job_id*, or raise once it fails or times out."""
        async with self._client() as client:
            try:
                terminal = await asyncio.wait_for(self._race(client, job_id, on_update), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise WaitTimeoutError(f"Job {job_id} did not finish within {self.timeout:g}s")

            try:
                if terminal.get("status") == "failed":
                    raise JobFailedError(job_id, await self._job_error(client, job_id, terminal))

                response = await client.get(f"/question/{job_id}/result")
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise FranklinClientError(f"Could not fetch the outcome of job {job_id}: {exc}") from exc
            return response.json()

    # ------------------------------------------------------------------
    # Push and poll paths
    # ------------------------------------------------------------------

    async def _race(self, client: httpx.AsyncClient, job_id: str, on_update: Optional[UpdateCallback]) -> Dict[str, Any]:
        """First path to see a terminal state wins; a failed path leaves the other one running."""
        poll_task = asyncio.create_task(self._poll(client, job_id, on_update))
        tasks = {poll_task}
        if self.use_push:
            tasks.add(asyncio.create_task(self._listen(client, job_id, on_update)))

        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    exc = task.exception()
                    if exc is None:
                        return task.result()
                    path = "Poll" if task is poll_task else "Push"
                    logger.info("%s path for job %s gave up (%s)", path, job_id, exc)

            error = poll_task.exception()
            if isinstance(error, FranklinClientError):
                raise error
            raise FranklinClientError(f"Could not follow job {job_id}: {error}") from error
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll(self, client: httpx.AsyncClient, job_id: str, on_update: Optional[UpdateCallback]) -> Dict[str, Any]:
        for _ in range(self.max_polls):
            try:
                response = await client.get(f"/question/{job_id}/status")
            except httpx.TransportError as exc:
                logger.warning("Status poll for job %s failed: %r", job_id, exc)
            else:
                if response.status_code == 404:
                    raise JobNotFound(job_id)
                if response.status_code >= 500:
                    # 503 is a store outage, other 5xx a proxy or server hiccup: state unknown, keep polling
                    logger.warning("Status for job %s unavailable (HTTP %d)", job_id, response.status_code)
                else:
                    response.raise_for_status()
                    status = response.json()
                    if on_update:
                        on_update(status)
                    if status.get("status") in TERMINAL:
                        return status
            await asyncio.sleep(self.poll_interval)
        raise WaitTimeoutError(f"Job {job_id} still running after {self.max_polls} polls")

    async def _listen(self, client: httpx.AsyncClient, job_id: str, on_update: Optional[UpdateCallback]) -> Dict[str, Any]:
        try:
            async with client.stream("GET", self._events_path(job_id)) as response:
                if response.status_code != 200:
                    raise PushUnavailable(f"events endpoint returned {response.status_code}")
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    event = json.loads(line[5:].strip())
                    if on_update:
                        on_update(event)
                    if event.get("status") in TERMINAL:
                        return event
        except httpx.HTTPError as exc:
            raise PushUnavailable(str(exc)) from exc
        raise PushUnavailable("event stream closed before the job finished")

    async def _job_error(self, client: httpx.AsyncClient, job_id: str, terminal: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if terminal.get("error"):
            return terminal["error"]
        # Push events carry no error details; read them from the status endpoint
        response = await client.get(f"/question/{job_id}/status")
        if response.status_code == 200:
            return response.json().get("error")
        return None


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Ask Benjamin Franklin a question.")
    parser.add_argument("question", help="The question to ask")
    parser.add_argument("--base-url", default="http://localhost:8000", help="Ask Franklin API base URL")
    parser.add_argument("--no-push", action="store_true", help="Poll only, skip the event stream")
    parser.add_argument("--timeout", type=float, default=300.0, help="Overall wait ceiling in seconds")
    args = parser.parse_args(argv)

    client = FranklinClient(args.base_url, use_push=not args.no_push, timeout=args.timeout)

    def show(update: Dict[str, Any]) -> None:
        print(f"[{update.get('progress', 0):>3}%] {update.get('message') or update.get('stage')}", file=sys.stderr)

    try:
        result = asyncio.run(client.ask(args.question, on_update=show))
    except FranklinClientError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(result.get("answer", ""))
    print(f"Video: {result.get('videoUrl')}")
    if result.get("audioUrl"):
        print(f"Audio: {result.get('audioUrl')}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
