"""
Job store.

A job is a plain dict (JSON-compatible, camelCase keys) keyed by its id:

    { id, status, stage, progress, message, question,
      result, error, startTime, lastUpdated, endTime }

Three interchangeable backends implement the same contract:

  InMemoryJobStore  — a dict in this process (single long-lived process only)
  FileJobStore      — one JSON file per job in a shared directory
  RedisJobStore     — one JSON value per job in Redis

``get_job_store(settings)`` picks one from configuration. Backend failures
raise ``JobStoreError``; an unknown id is simply ``None``.
"""

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from errors import JobStoreError

logger = logging.getLogger(__name__)

Job = Dict[str, Any]

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

STAGE_THINKING = "thinking"
STAGE_SPEAKING = "speaking"
STAGE_ANIMATING = "animating"
STAGE_COMPLETED = "completed"

# Fields a merge may never change once the job exists
_IMMUTABLE_FIELDS = ("id", "question", "startTime")


def now_ms() -> int:
    return int(time.time() * 1000)


def is_terminal(job: Job) -> bool:
    return job.get("status") in TERMINAL_STATUSES


def new_job(question: str) -> Job:
    """Build the initial record for a freshly submitted question."""
    now = now_ms()
    return {
        "id": str(uuid.uuid4()),
        "status": STATUS_PROCESSING,
        "stage": STAGE_THINKING,
        "progress": 0,
        "message": "Waiting to start...",
        "question": question,
        "result": None,
        "error": None,
        "startTime": now,
        "lastUpdated": now,
        "endTime": None,
    }


def merge_fields(current: Job, fields: Dict[str, Any]) -> Job:
    """
    Shallow-merge *fields* into a copy of *current*.

    Terminal records come back unchanged. ``progress`` and ``lastUpdated``
    never move backwards, and identity fields are kept from *current*.
    """
    if is_terminal(current):
        return dict(current)

    updated = {**current, **fields}
    for key in _IMMUTABLE_FIELDS:
        if key in current:
            updated[key] = current[key]

    updated["progress"] = max(int(current.get("progress") or 0), int(updated.get("progress") or 0))
    updated["lastUpdated"] = max(int(current.get("lastUpdated") or 0), now_ms())
    return updated


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class JobStore:
    """Keyed job storage. Subclasses must make ``merge`` atomic per id."""

    name = "abstract"

    def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    def put(self, job_id: str, job: Job) -> None:
        raise NotImplementedError

    def merge(self, job_id: str, fields: Dict[str, Any]) -> Optional[Job]:
        """Read-modify-write. Returns the updated job, or None if *job_id* is unknown."""
        raise NotImplementedError

    def delete(self, job_id: str) -> None:
        raise NotImplementedError

    def list_all(self) -> List[Job]:
        """Every stored job, newest update first. Diagnostics only."""
        raise NotImplementedError


def _newest_first(jobs: List[Job]) -> List[Job]:
    return sorted(jobs, key=lambda j: j.get("lastUpdated") or 0, reverse=True)


# ---------------------------------------------------------------------------
# In-memory (local dev, tests)
# ---------------------------------------------------------------------------

class InMemoryJobStore(JobStore):
    """
    All state lives in this dict. A restart clears every job, and a second
    process will never see these records.
    """

    name = "memory"

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job is not None else None

    def put(self, job_id: str, job: Job) -> None:
        with self._lock:
            self._jobs[job_id] = dict(job)

    def merge(self, job_id: str, fields: Dict[str, Any]) -> Optional[Job]:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                return None
            updated = merge_fields(current, fields)
            self._jobs[job_id] = updated
            return dict(updated)

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def list_all(self) -> List[Job]:
        with self._lock:
            return _newest_first([dict(j) for j in self._jobs.values()])


# ---------------------------------------------------------------------------
# Flat files (several processes sharing one directory)
# ---------------------------------------------------------------------------

class FileJobStore(JobStore):
    """One ``<id>.json`` per job. Writes go to a temp file and are renamed into place."""

    name = "file"

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise JobStoreError(f"Cannot create job directory {self.directory}", exc) from exc

    def _path(self, job_id: str) -> Optional[Path]:
        # Prevent path traversal: ids are uuids, anything else cannot exist
        safe = Path(job_id).name
        if not safe or safe != job_id or safe.startswith("."):
            return None
        return self.directory / f"{safe}.json"

    def _read(self, path: Path) -> Optional[Job]:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise JobStoreError(f"Cannot read {path.name}", exc) from exc
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise JobStoreError(f"Corrupt job document {path.name}", exc) from exc

    def _write(self, path: Path, job: Job) -> None:
        try:
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(job, fh)
            os.replace(tmp, path)
        except OSError as exc:
            raise JobStoreError(f"Cannot write {path.name}", exc) from exc

    def get(self, job_id: str) -> Optional[Job]:
        path = self._path(job_id)
        if path is None:
            return None
        return self._read(path)

    def put(self, job_id: str, job: Job) -> None:
        path = self._path(job_id)
        if path is None:
            raise JobStoreError(f"Invalid job id {job_id!r}")
        with self._lock:
            self._write(path, job)

    def merge(self, job_id: str, fields: Dict[str, Any]) -> Optional[Job]:
        path = self._path(job_id)
        if path is None:
            return None
        with self._lock:
            current = self._read(path)
            if current is None:
                return None
            updated = merge_fields(current, fields)
            self._write(path, updated)
            return updated

    def delete(self, job_id: str) -> None:
        path = self._path(job_id)
        if path is None:
            return
        with self._lock:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise JobStoreError(f"Cannot delete {path.name}", exc) from exc

    def list_all(self) -> List[Job]:
        jobs: List[Job] = []
        try:
            paths = list(self.directory.glob("*.json"))
        except OSError as exc:
            raise JobStoreError(f"Cannot list {self.directory}", exc) from exc
        for path in paths:
            try:
                job = self._read(path)
            except JobStoreError as exc:
                logger.warning("Skipping unreadable job file %s: %s", path.name, exc)
                continue
            if job is not None:
                jobs.append(job)
        return _newest_first(jobs)


# ---------------------------------------------------------------------------
# Redis (production)
# ---------------------------------------------------------------------------

class RedisJobStore(JobStore):
    """
    JSON values under ``<prefix><id>``. ``merge`` runs as a WATCH/MULTI
    transaction; terminal jobs get a TTL equal to the retention window.
    """

    name = "redis"

    def __init__(self, redis_url: str, prefix: str = "franklin:", ttl_seconds: int = 0, client=None) -> None:
        import redis  # lazy import

        if client is None:
            if not redis_url:
                raise RuntimeError("REDIS_URL is required when JOB_STORE=redis")
            client = redis.from_url(redis_url, decode_responses=True)

        self.client = client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self._errors = (redis.RedisError, ValueError)

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}{job_id}"

    def _expiry(self, job: Job) -> Optional[int]:
        if self.ttl_seconds > 0 and is_terminal(job):
            return self.ttl_seconds
        return None

    def get(self, job_id: str) -> Optional[Job]:
        try:
            raw = self.client.get(self._key(job_id))
            return json.loads(raw) if raw else None
        except self._errors as exc:
            raise JobStoreError(f"Redis read failed for job {job_id}", exc) from exc

    def put(self, job_id: str, job: Job) -> None:
        try:
            self.client.set(self._key(job_id), json.dumps(job), ex=self._expiry(job))
        except self._errors as exc:
            raise JobStoreError(f"Redis write failed for job {job_id}", exc) from exc

    def merge(self, job_id: str, fields: Dict[str, Any]) -> Optional[Job]:
        key = self._key(job_id)

        def _apply(pipe) -> Optional[Job]:
            raw = pipe.get(key)
            if not raw:
                return None
            updated = merge_fields(json.loads(raw), fields)
            pipe.multi()
            pipe.set(key, json.dumps(updated), ex=self._expiry(updated))
            return updated

        try:
            return self.client.transaction(_apply, key, value_from_callable=True)
        except self._errors as exc:
            raise JobStoreError(f"Redis update failed for job {job_id}", exc) from exc

    def delete(self, job_id: str) -> None:
        try:
            self.client.delete(self._key(job_id))
        except self._errors as exc:
            raise JobStoreError(f"Redis delete failed for job {job_id}", exc) from exc

    def list_all(self) -> List[Job]:
        try:
            keys = list(self.client.scan_iter(match=f"{self.prefix}*"))
            raws = self.client.mget(keys) if keys else []
            return _newest_first([json.loads(raw) for raw in raws if raw])
        except self._errors as exc:
            raise JobStoreError("Redis listing failed", exc) from exc


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def get_job_store(settings) -> JobStore:
    if settings.job_store == "redis":
        return RedisJobStore(
            settings.redis_url,
            prefix=settings.redis_prefix,
            ttl_seconds=settings.job_retention_seconds,
        )
    if settings.job_store == "file":
        return FileJobStore(settings.job_store_dir)
    return InMemoryJobStore()
