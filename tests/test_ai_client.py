"""Tests for the language-model transport behind the llm scoring backend."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import anthropic
import httpx
import openai
import pytest
from tenacity import wait_none

from practicum.config import settings
from practicum.services import ai_client

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"

MESSAGES = [
    {"role": "system", "content": "You are a clinical supervisor."},
    {"role": "user", "content": "Score this transcript."},
]


def _status_error(cls, status_code, url=OPENAI_URL):
    request = httpx.Request("POST", url)
    return cls("provider error", response=httpx.Response(status_code, request=request), body=None)


def _openai_response(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def _fake_openai(create):
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


@pytest.fixture
def no_wait(monkeypatch):
    monkeypatch.setattr(ai_client._openai_chat.retry, "wait", wait_none())
    monkeypatch.setattr(ai_client._anthropic_chat.retry, "wait", wait_none())


class TestTransient:

    def test_connection_errors_are_transient(self):
        assert ai_client.is_transient(openai.APIConnectionError(request=httpx.Request("POST", OPENAI_URL)))
        assert ai_client.is_transient(anthropic.APIConnectionError(request=httpx.Request("POST", ANTHROPIC_URL)))

    @pytest.mark.parametrize("status_code, expected", [(429, True), (500, True), (503, True), (400, False), (401, False), (404, False)])
    def test_status_errors(self, status_code, expected):
        assert ai_client.is_transient(_status_error(openai.APIStatusError, status_code)) is expected

    def test_other_errors_are_not_transient(self):
        assert ai_client.is_transient(ValueError("bad")) is False


class TestOpenAI:

    @pytest.mark.asyncio
    async def test_json_mode_request(self, monkeypatch):
        create = AsyncMock(return_value=_openai_response('```json\n{"overall_score": 80}\n```'))
        monkeypatch.setattr(ai_client, "_openai_client", lambda: _fake_openai(create))

        text = await ai_client.ai_chat(MESSAGES, use_case="assessment", json_mode=True)

        assert text == '{"overall_score": 80}'
        kwargs = create.call_args.kwargs
        assert kwargs["model"] == settings.assessment_model
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"] == MESSAGES

    @pytest.mark.asyncio
    async def test_auth_error_is_not_retried(self, monkeypatch, no_wait):
        create = AsyncMock(side_effect=_status_error(openai.AuthenticationError, 401))
        monkeypatch.setattr(ai_client, "_openai_client", lambda: _fake_openai(create))

        with pytest.raises(openai.AuthenticationError):
            await ai_client.ai_chat(MESSAGES, use_case="assessment")
        assert create.call_count == 1

    @pytest.mark.asyncio
    async def test_dropped_connection_is_retried(self, monkeypatch, no_wait):
        create = AsyncMock(side_effect=[
            openai.APIConnectionError(request=httpx.Request("POST", OPENAI_URL)),
            _openai_response('{"overall_score": 64}'),
        ])
        monkeypatch.setattr(ai_client, "_openai_client", lambda: _fake_openai(create))

        assert await ai_client.ai_chat(MESSAGES, use_case="assessment") == '{"overall_score": 64}'
        assert create.call_count == 2

    @pytest.mark.asyncio
    async def test_server_errors_give_up_after_three_attempts(self, monkeypatch, no_wait):
        create = AsyncMock(side_effect=_status_error(openai.InternalServerError, 500))
        monkeypatch.setattr(ai_client, "_openai_client", lambda: _fake_openai(create))

        with pytest.raises(openai.InternalServerError):
            await ai_client.ai_chat(MESSAGES)
        assert create.call_count == 3


class TestAnthropic:

    @pytest.mark.asyncio
    async def test_system_prompt_is_separate(self, monkeypatch, no_wait):
        monkeypatch.setattr(settings, "assessment_model", "claude-sonnet-4-5")
        response = SimpleNamespace(content=[SimpleNamespace(type="text", text='{"overall_score": 91}')])
        create = AsyncMock(side_effect=[_status_error(anthropic.RateLimitError, 429, ANTHROPIC_URL), response])
        monkeypatch.setattr(ai_client, "_anthropic_client", lambda: SimpleNamespace(messages=SimpleNamespace(create=create)))

        text = await ai_client.ai_chat(MESSAGES, use_case="assessment", json_mode=True)

        assert text == '{"overall_score": 91}'
        assert create.call_count == 2
        kwargs = create.call_args.kwargs
        assert kwargs["model"] == "claude-sonnet-4-5"
        assert kwargs["messages"] == [{"role": "user", "content": "Score this transcript."}]
        assert kwargs["system"].startswith("You are a clinical supervisor.")
        assert "JSON" in kwargs["system"]


class TestCodeFence:

    @pytest.mark.parametrize("raw, expected", [
        ('{"a": 1}', '{"a": 1}'),
        ('```json\n{"a": 1}\n```', '{"a": 1}'),
        ('```\n{"a": 1}```', '{"a": 1}'),
        ("  plain text  ", "plain text"),
    ])
    def test_strip_code_fence(self, raw, expected):
        assert ai_client.strip_code_fence(raw) == expected
