"""
Stub providers for running without credentials (USE_STUB_PROVIDERS=true).

Canned answers and sample media with synthetic latency. The pipeline runs the
same stages and poll loop as with the real providers.
"""

import asyncio
import random
import uuid
from typing import Dict, Optional

from providers import VIDEO_DONE, VIDEO_FAILED, VIDEO_PENDING, VideoStatus

SAMPLE_VIDEOS = [
    "https://storage.googleapis.com/gtv-videos-bucket/sample/BigBuckBunny.mp4",
    "https://storage.googleapis.com/gtv-videos-bucket/sample/ElephantsDream.mp4",
    "https://storage.googleapis.com/gtv-videos-bucket/sample/ForBiggerBlazes.mp4",
    "https://storage.googleapis.com/gtv-videos-bucket/sample/ForBiggerEscapes.mp4",
    "https://storage.googleapis.com/gtv-videos-bucket/sample/ForBiggerFun.mp4",
]

SAMPLE_AUDIO = "https://storage.googleapis.com/gtv-videos-bucket/sample/ForBiggerFun.mp4"

SAMPLE_ANSWERS = {
    "default": (
        "The national debt is a burden we place upon future generations. As I once wrote, "
        "'Think what you do when you run in debt; you give to another power over your liberty.' "
        "Today's debt, exceeding $34 trillion, would be incomprehensible in my day. We fought for "
        "economic freedom from Britain, yet now America binds itself with chains of financial "
        "obligation. Remember, a penny saved is a penny earned, but trillions borrowed is liberty spurned."
    ),
    "economy": (
        "The economy of our young nation was built on fiscal responsibility. I advised in Poor "
        "Richard's Almanack, 'Beware of little expenses; a small leak will sink a great ship.' "
        "Today's national debt would appear as an unfathomable leak. Your federal government now "
        "spends far beyond its means, creating obligations your children must honor. This practice "
        "contradicts the very principles of liberty we fought to establish."
    ),
    "inflation": (
        "Inflation is taxation without legislation. When money loses value, it is the common citizen "
        "who suffers most. In my day, we struggled with the devaluation of Continental currency, which "
        "led to the phrase 'not worth a Continental.' Today's monetary policies of unlimited printing "
        "would horrify the founders who understood that sound money is essential to a republic's survival."
    ),
}


def sample_answer(question: str) -> str:
    lowered = (question or "").lower()
    for topic in ("economy", "inflation"):
        if topic in lowered:
            return SAMPLE_ANSWERS[topic]
    return SAMPLE_ANSWERS["default"]


class StubTextProvider:
    name = "stub-text"

    def __init__(self, delay: float = 1.0) -> None:
        self.delay = delay

    async def generate(self, question: str) -> str:
        await asyncio.sleep(self.delay)
        return sample_answer(question)


class StubSpeechProvider:
    name = "stub-speech"

    def __init__(self, delay: float = 1.0) -> None:
        self.delay = delay

    async def synthesize(self, text: str, job_id: str) -> str:
        await asyncio.sleep(self.delay)
        return SAMPLE_AUDIO


class StubVideoProvider:
    """
    Reports ``pending`` for *polls_until_done* polls, then *outcome*:
    ``done`` (a sample video), ``failed``, or ``never`` (pending forever).

    ``submissions`` holds in-flight renders only; a talk is forgotten once it
    reports ``done`` or ``failed``. ``last_submission`` keeps the most recent one.
    """

    name = "stub-video"
    accepts_text = True

    def __init__(self, delay: float = 1.0, polls_until_done: int = 2, outcome: str = VIDEO_DONE) -> None:
        self.delay = delay
        self.polls_until_done = polls_until_done
        self.outcome = outcome
        self.submissions: Dict[str, Dict[str, Optional[str]]] = {}
        self.last_submission: Optional[Dict[str, Optional[str]]] = None
        self._polls: Dict[str, int] = {}

    async def submit(self, *, audio_url: Optional[str] = None, text: Optional[str] = None) -> str:
        if not audio_url and not text:
            raise ValueError("Either audio_url or text is required")
        await asyncio.sleep(self.delay)
        talk_id = f"stub-{uuid.uuid4().hex[:12]}"
        self.last_submission = {"audio_url": audio_url, "text": text}
        self.submissions[talk_id] = self.last_submission
        self._polls[talk_id] = 0
        return talk_id

    async def status(self, talk_id: str) -> VideoStatus:
        polls = self._polls.get(talk_id, 0) + 1
        if self.outcome == "never" or polls <= self.polls_until_done:
            self._polls[talk_id] = polls
            return VideoStatus(VIDEO_PENDING)

        self._polls.pop(talk_id, None)
        self.submissions.pop(talk_id, None)
        if self.outcome == VIDEO_FAILED:
            return VideoStatus(VIDEO_FAILED, error="Stub render rejected")
        return VideoStatus(VIDEO_DONE, result_url=random.choice(SAMPLE_VIDEOS))
