import asyncio

import httpx

from cortex_chat.services.completion_client import CompletionClient
from cortex_chat.services.errors import UpstreamError
from cortex_chat.services.title_generator import (
    MAX_TITLE_LENGTH,
    TITLE_PROMPT_TEMPLATE,
    TitleGenerator,
    generate_title,
)

from support import make_settings, mock_client


class FakeCompletion:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def request_completion(self, messages, **overrides):
        self.calls.append((messages, overrides))
        if self.error:
            raise self.error
        return self.result


def test_generated_title_is_cleaned():
    completion = FakeCompletion(result='  "Reversing   Lists in Python"\n')
    title = asyncio.run(generate_title("How do I reverse a list in Python?", completion, model="gpt-title"))

    assert title == "Reversing Lists in Python"
    messages, overrides = completion.calls[0]
    assert messages == [{
        "role": "user",
        "content": 'Generate a short 5-word title for this conversation: "How do I reverse a list in Python?"',
    }]
    assert overrides == {"model": "gpt-title", "max_tokens": 20, "temperature": 0.3}


def test_prompt_preview_and_title_are_truncated():
    completion = FakeCompletion(result="x" * 80)
    title = asyncio.run(generate_title("a" * 500, completion))

    assert len(title) == MAX_TITLE_LENGTH
    prompt = completion.calls[0][0][0]["content"]
    assert prompt == TITLE_PROMPT_TEMPLATE.format(message="a" * 200)


def test_blank_message_skips_upstream():
    completion = FakeCompletion(result="anything")
    assert asyncio.run(generate_title("   ", completion)) is None
    assert completion.calls == []


def test_suggest_title_falls_back_to_default():
    failing = TitleGenerator(FakeCompletion(error=UpstreamError("timeout")), default_title="New Chat")
    empty = TitleGenerator(FakeCompletion(result='""'), default_title="New Chat")
    working = TitleGenerator(FakeCompletion(result="Python Lists"))

    assert asyncio.run(failing.suggest_title("Hello")) == "New Chat"
    assert asyncio.run(empty.suggest_title("Hello")) == "New Chat"
    assert asyncio.run(working.suggest_title("Hello")) == "Python Lists"


def test_suggest_title_survives_malformed_upstream_body():
    client = CompletionClient(
        make_settings(),
        http_client=mock_client(lambda request: httpx.Response(200, json={"choices": [{"message": "oops"}]})),
    )
    titles = TitleGenerator(client, default_title="New Chat")

    assert asyncio.run(titles.suggest_title("Hello")) == "New Chat"
