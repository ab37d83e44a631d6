import asyncio
from types import SimpleNamespace

import pytest

from errors import ProviderError
from llm import FRANKLIN_PERSONA, OpenAIAnswerProvider


class FakeCompletions:
    def __init__(self, content=None, exc=None):
        self.content = content
        self.exc = exc
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.exc is not None:
            raise self.exc
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _provider(settings, completions):
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIAnswerProvider(settings, client=fake)


def test_generate_uses_persona_and_settings(settings):
    completions = FakeCompletions(content="  Beware of little expenses.  ")
    answer = asyncio.run(_provider(settings, completions).generate("Should I borrow?"))

    assert answer == "Beware of little expenses."
    (call,) = completions.calls
    assert call["model"] == settings.chat_model
    assert call["max_tokens"] == settings.max_answer_tokens
    assert call["messages"] == [
        {"role": "system", "content": FRANKLIN_PERSONA},
        {"role": "user", "content": "Should I borrow?"},
    ]


def test_api_failure_is_provider_error(settings):
    completions = FakeCompletions(exc=RuntimeError("429 Too Many Requests"))
    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_provider(settings, completions).generate("q"))

    assert excinfo.value.provider == "openai"
    assert "429" in excinfo.value.to_dict("thinking")["details"]


@pytest.mark.parametrize("content", [None, "", "   "])
def test_empty_answer_is_provider_error(settings, content):
    with pytest.raises(ProviderError, match="Empty response"):
        asyncio.run(_provider(settings, FakeCompletions(content=content)).generate("q"))
