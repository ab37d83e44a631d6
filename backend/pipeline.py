"""
Job orchestrator.

``submit()`` writes the initial job record and returns its id at once; the
stages then run in a background asyncio task:

  1. thinking   — text provider writes Franklin's answer        (10 → 30%)
  2. speaking   — speech provider voices it (when enabled)      (40 → 55%)
  3. animating  — video provider renders; fixed-interval polling (60 → 95%)
  4. completed  — result = {answer, audioUrl, videoUrl}         (100%)

Every state write is followed by a progress event on the channel. Any
failure marks the job ``failed`` with a structured error and stops; nothing
is retried across stages. Terminal jobs are deleted after the retention
window.
"""

import asyncio
import logging
from typing import Any, Optional, Sequence, Set

from errors import (
    ConfigurationError,
    FranklinError,
    InputError,
    JobStoreError,
    VideoGenerationError,
    VideoTimeoutError,
)
from jobs import (
    STAGE_ANIMATING,
    STAGE_COMPLETED,
    STAGE_SPEAKING,
    STAGE_THINKING,
    STATUS_COMPLETED,
    STATUS_FAILED,
    Job,
    JobStore,
    new_job,
    now_ms,
)
from notify import ProgressChannel, build_event
from providers import VIDEO_DONE, VIDEO_FAILED, Providers

logger = logging.getLogger(__name__)

# Progress band of the animating stage while polling the video provider
_ANIMATE_START = 60
_ANIMATE_SUBMITTED = 65
_ANIMATE_CEILING = 95


class Orchestrator:
    def __init__(
        self,
        store: JobStore,
        channel: ProgressChannel,
        providers: Optional[Providers],
        *,
        poll_interval: float = 2.0,
        max_poll_attempts: int = 30,
        retention_seconds: int = 3600,
        max_question_chars: int = 1000,
        config_errors: Sequence[str] = (),
        terminal_write_attempts: int = 5,
        terminal_write_delay: float = 1.0,
    ) -> None:
        self.store = store
        self.channel = channel
        self.providers = providers
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.retention_seconds = retention_seconds
        self.max_question_chars = max_question_chars
        self.config_errors = list(config_errors)
        self.terminal_write_attempts = max(1, terminal_write_attempts)
        self.terminal_write_delay = terminal_write_delay
        if providers is None and not self.config_errors:
            self.config_errors = ["no providers configured"]
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, store: JobStore, channel: ProgressChannel, providers=None) -> "Orchestrator":
        """Resolve providers from *settings*, recording configuration problems instead of raising."""
        config_errors = [f"{name} is not set" for name in settings.missing_credentials()]
        if providers is None and not config_errors:
            from providers import build_providers

            try:
                providers = build_providers(settings)
            except ConfigurationError as exc:
                config_errors.append(exc.message)

        if config_errors:
            logger.warning("Provider configuration incomplete: %s", "; ".join(config_errors))

        return cls(
            store,
            channel,
            providers,
            poll_interval=settings.video_poll_interval,
            max_poll_attempts=settings.video_max_poll_attempts,
            retention_seconds=settings.job_retention_seconds,
            max_question_chars=settings.max_question_chars,
            config_errors=config_errors,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, question: Optional[str]) -> str:
        """Create a job for *question* and start it in the background. Returns the job id."""
        question = (question or "").strip() if isinstance(question, str) else ""
        if not question:
            raise InputError("Question is required")
        if len(question) > self.max_question_chars:
            raise InputError(
                f"Question is {len(question)} characters, over the {self.max_question_chars} character limit"
            )

        job = new_job(question)
        job_id = job["id"]
        await asyncio.to_thread(self.store.put, job_id, job)
        logger.info("[Job %s] Submitted: %r", job_id, question[:80])

        if self.config_errors:
            error = ConfigurationError("Service is not configured: " + "; ".join(self.config_errors))
            await self._fail(job_id, STAGE_THINKING, error)
            return job_id

        self._spawn(self.run(job_id, question))
        return job_id

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Stage sequence
    # ------------------------------------------------------------------

    async def run(self, job_id: str, question: str) -> None:
        """Drive one job from thinking to a terminal state."""
        stage = STAGE_THINKING
        try:
            # ---- 1. Answer -----------------------------------------------------
            answer = await self._think(job_id, question)

            # ---- 2. Voiceover (skipped when speech is disabled) ----------------
            audio_url = None
            if self.providers.speech is not None:
                stage = STAGE_SPEAKING
                audio_url = await self._speak(job_id, answer)

            # ---- 3. Talking-head video -----------------------------------------
            stage = STAGE_ANIMATING
            video_url = await self._animate(job_id, answer, audio_url)

            # ---- Done ----------------------------------------------------------
            await self._complete(job_id, answer, audio_url, video_url)
        except asyncio.CancelledError:
            raise
        except FranklinError as exc:
            await self._fail(job_id, stage, exc)
        except Exception as exc:
            await self._fail(job_id, stage, FranklinError(f"Unexpected error during {stage}", exc))

    async def _think(self, job_id: str, question: str) -> str:
        await self._update(job_id, stage=STAGE_THINKING, progress=10, message="Generating Franklin's response")
        answer = await self.providers.text.generate(question)
        await self._update(job_id, progress=30, message="Franklin has composed his answer")
        return answer

    async def _speak(self, job_id: str, answer: str) -> str:
        await self._update(job_id, stage=STAGE_SPEAKING, progress=40, message="Converting text to speech")
        audio_url = await self.providers.speech.synthesize(answer, job_id)
        await self._update(job_id, progress=55, message="Franklin's voice is ready")
        return audio_url

    async def _animate(self, job_id: str, answer: str, audio_url: Optional[str]) -> str:
        """Submit the render, then poll at a fixed interval until done, failed, or out of attempts."""
        video = self.providers.video
        await self._update(job_id, stage=STAGE_ANIMATING, progress=_ANIMATE_START, message="Animating Benjamin Franklin")

        if audio_url:
            talk_id = await video.submit(audio_url=audio_url)
        else:
            talk_id = await video.submit(text=answer)
        await self._update(job_id, progress=_ANIMATE_SUBMITTED)
        logger.info("[Job %s] %s talk %s submitted", job_id, video.name, talk_id)

        for attempt in range(1, self.max_poll_attempts + 1):
            state = await video.status(talk_id)
            if state.state == VIDEO_DONE:
                if not state.result_url:
                    raise VideoGenerationError(video.name, f"Talk {talk_id} finished without a video URL")
                return state.result_url
            if state.state == VIDEO_FAILED:
                raise VideoGenerationError(video.name, f"Video generation failed: {state.error or 'unknown error'}")

            span = _ANIMATE_CEILING - _ANIMATE_SUBMITTED
            await self._update(job_id, progress=_ANIMATE_SUBMITTED + span * attempt // self.max_poll_attempts)
            await asyncio.sleep(self.poll_interval)

        raise VideoTimeoutError(
            video.name,
            f"Video generation timed out after {self.max_poll_attempts} polls "
            f"({self.max_poll_attempts * self.poll_interval:g}s)",
        )

    async def _complete(self, job_id: str, answer: str, audio_url: Optional[str], video_url: str) -> None:
        await self._write_terminal(
            job_id,
            status=STATUS_COMPLETED,
            stage=STAGE_COMPLETED,
            progress=100,
            message="Done!",
            result={"answer": answer, "audioUrl": audio_url, "videoUrl": video_url},
            error=None,
            endTime=now_ms(),
        )
        logger.info("[Job %s] Completed", job_id)
        self._schedule_expiry(job_id)

    async def _fail(self, job_id: str, stage: str, exc: FranklinError) -> None:
        logger.error(
            "[Job %s] Failed during %s (provider=%s, kind=%s): %s",
            job_id,
            stage,
            getattr(exc, "provider", None),
            exc.kind,
            exc.message,
            exc_info=exc.cause if exc.kind == "internal" else None,
        )
        try:
            await self._write_terminal(
                job_id,
                status=STATUS_FAILED,
                message=exc.message,
                result=None,
                error=exc.to_dict(stage),
                endTime=now_ms(),
            )
        except FranklinError as store_exc:
            logger.error(
                "[Job %s] Could not record failure, leaving it to the stale-job sweep: %s",
                job_id,
                store_exc.message,
            )
            return
        self._schedule_expiry(job_id)

    async def _write_terminal(self, job_id: str, **fields: Any) -> Optional[Job]:
        """``_update`` for the final write, retrying store failures at a fixed delay."""
        for attempt in range(1, self.terminal_write_attempts + 1):
            try:
                return await self._update(job_id, **fields)
            except JobStoreError as exc:
                if attempt == self.terminal_write_attempts:
                    raise
                logger.warning(
                    "[Job %s] Terminal write failed (attempt %d/%d): %s",
                    job_id,
                    attempt,
                    self.terminal_write_attempts,
                    exc.message,
                )
                await asyncio.sleep(self.terminal_write_delay)
        return None

    # ------------------------------------------------------------------
    # State writes, notification, expiry
    # ------------------------------------------------------------------

    async def _update(self, job_id: str, **fields: Any) -> Optional[Job]:
        """Merge *fields* into the stored job and publish the new state."""
        job = await asyncio.to_thread(self.store.merge, job_id, fields)
        if job is None:
            logger.warning("[Job %s] Update dropped, job no longer in the store", job_id)
            return None
        try:
            self.channel.publish(job_id, build_event(job))
        except Exception as exc:
            logger.warning("[Job %s] Progress publish failed: %r", job_id, exc)
        return job

    def _schedule_expiry(self, job_id: str) -> None:
        if self.retention_seconds > 0:
            self._spawn(self._expire(job_id, self.retention_seconds))

    async def _expire(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await asyncio.to_thread(self.store.delete, job_id)
            logger.info("[Job %s] Expired after %ss", job_id, delay)
        except FranklinError as exc:
            logger.warning("[Job %s] Expiry failed, the cleanup sweep will retry: %s", job_id, exc.message)

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Cancel outstanding pipelines and expiry timers (application shutdown)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
