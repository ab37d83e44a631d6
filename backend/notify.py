"""
Progress notification channel.

In-process publish/subscribe keyed by job id. The orchestrator publishes an
event after every state write; push transports (the WebSocket and SSE
endpoints in main.py) subscribe on behalf of their clients.

Delivery is best effort: events for a job nobody is watching are dropped,
and late subscribers catch up by reading the job store.
"""

import itertools
import logging
import threading
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
Handler = Callable[[Event], None]


def build_event(job: Dict[str, Any]) -> Event:
    """The progress event published for a job record."""
    return {
        "jobId": job["id"],
        "stage": job.get("stage"),
        "message": job.get("message"),
        "progress": job.get("progress"),
        "status": job.get("status"),
    }


class ProgressChannel:
    """Fan-out of job events to per-job subscribers. Handlers must not block."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Dict[int, Handler]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, job_id: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *job_id*; call the returned function to stop."""
        token = next(self._ids)
        with self._lock:
            self._subscribers.setdefault(job_id, {})[token] = handler

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(job_id)
                if handlers is None:
                    return
                handlers.pop(token, None)
                if not handlers:
                    del self._subscribers[job_id]

        return unsubscribe

    def publish(self, job_id: str, event: Event) -> int:
        """Deliver *event* to every current subscriber of *job_id*. Returns how many were reached."""
        with self._lock:
            handlers = list(self._subscribers.get(job_id, {}).values())

        delivered = 0
        for handler in handlers:
            try:
                handler(dict(event))
                delivered += 1
            except Exception as exc:
                logger.warning("Progress handler for job %s raised %r, skipping", job_id, exc)
        return delivered

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, {}))
