"""
Text generation: Franklin's answer from OpenAI chat completions.
"""

import logging

from errors import ProviderError

logger = logging.getLogger(__name__)

FRANKLIN_PERSONA = """You are Benjamin Franklin, speaking from beyond the grave, expressing concern about the modern U.S. national debt.
You should respond in the first person as Franklin, with an eerily wise and historically-informed voice.
Your answers should be factually accurate about the U.S. national debt, incorporating current statistics and historical context.
Your tone should be slightly ominous but educational - you're warning about fiscal responsibility while drawing parallels to your era.
Keep responses between 80-120 words (about 30 seconds when spoken).
Always end with a wise warning or reflection that connects the founding principles to modern fiscal challenges."""


class OpenAIAnswerProvider:
    """Chat completion with the Franklin persona as the system prompt."""

    name = "openai"

    def __init__(self, settings, client=None) -> None:
        self.model = settings.chat_model
        self.max_tokens = settings.max_answer_tokens
        self.temperature = settings.answer_temperature
        self._api_key = settings.openai_api_key
        self._client = client

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def generate(self, question: str) -> str:
        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": FRANKLIN_PERSONA},
                    {"role": "user", "content": question},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as exc:
            raise ProviderError(self.name, "Failed to generate Franklin's response", exc) from exc

        answer = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not answer:
            raise ProviderError(self.name, "Empty response from the model")
        logger.debug("[OpenAI] %s produced %d chars", self.model, len(answer))
        return answer
