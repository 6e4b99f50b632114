"""Language-model transport for the "llm" oracle backend.

    from practicum.services.ai_client import ai_chat

    raw = await ai_chat(
        messages=[
            {"role": "system", "content": "You are a clinical supervisor."},
            {"role": "user", "content": "Score this transcript ..."},
        ],
        use_case="assessment",
        temperature=0.2,
        json_mode=True,
    )

Models starting with "claude-" go to Anthropic; everything else follows
AI_PROVIDER (default OpenAI). The SDKs' own retries are switched off:
tenacity retries connection drops, rate limits and 5xx only, so an auth
or request error fails at once instead of eating the scoring timeout.
"""

import logging
from enum import Enum

import anthropic
import openai
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from practicum.config import settings

logger = logging.getLogger(__name__)


class AIProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


_ANTHROPIC_PREFIXES = ("claude-",)

RETRYABLE_STATUS = {408, 409, 429}

_CONNECTION_ERRORS = (openai.APIConnectionError, anthropic.APIConnectionError)
_STATUS_ERRORS = (openai.APIStatusError, anthropic.APIStatusError)


def is_transient(exc: BaseException) -> bool:
    """Whether a provider error is worth retrying."""
    if isinstance(exc, _CONNECTION_ERRORS):
        return True
    if isinstance(exc, _STATUS_ERRORS):
        return exc.status_code in RETRYABLE_STATUS or exc.status_code >= 500
    return False


def _provider_retry(provider: str):
    return retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception(is_transient),
        before_sleep=lambda retry_state: logger.warning(
            "%s call failed (attempt %d), retrying: %s",
            provider,
            retry_state.attempt_number,
            retry_state.outcome.exception(),
        ),
        reraise=True,
    )


def _resolve_model(use_case: str | None) -> str:
    if use_case == "assessment" and settings.assessment_model:
        return settings.assessment_model
    return settings.model_name


def _detect_provider(model: str) -> AIProvider:
    if model.lower().startswith(_ANTHROPIC_PREFIXES):
        return AIProvider.ANTHROPIC
    try:
        return AIProvider(settings.ai_provider.lower())
    except ValueError:
        return AIProvider.OPENAI


def _openai_client() -> openai.AsyncOpenAI:
    return openai.AsyncOpenAI(api_key=settings.api_key, max_retries=0)


def _anthropic_client() -> anthropic.AsyncAnthropic:
    return anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key, max_retries=0)


def strip_code_fence(text: str) -> str:
    """Drop a ```json ... ``` wrapper some models put around JSON answers."""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    body = stripped.split("\n", 1)[1] if "\n" in stripped else ""
    if body.rstrip().endswith("```"):
        body = body.rstrip()[:-3]
    return body.strip()


async def ai_chat(
    messages: list[dict],
    *,
    use_case: str | None = None,
    temperature: float = 0.2,
    json_mode: bool = False,
    max_tokens: int = 4096,
) -> str:
    """Send a chat completion and return the assistant text."""
    model = _resolve_model(use_case)
    provider = _detect_provider(model)
    logger.debug(f"Scoring call to {provider.value} model {model}")

    if provider == AIProvider.ANTHROPIC:
        text = await _anthropic_chat(messages, model, temperature, json_mode, max_tokens)
    else:
        text = await _openai_chat(messages, model, temperature, json_mode, max_tokens)
    return strip_code_fence(text) if json_mode else text


@_provider_retry("OpenAI")
async def _openai_chat(
    messages: list[dict],
    model: str,
    temperature: float,
    json_mode: bool,
    max_tokens: int,
) -> str:
    kwargs: dict = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    response = await _openai_client().chat.completions.create(**kwargs)
    return response.choices[0].message.content or ""


@_provider_retry("Anthropic")
async def _anthropic_chat(
    messages: list[dict],
    model: str,
    temperature: float,
    json_mode: bool,
    max_tokens: int,
) -> str:
    # System prompts go in their own parameter
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    if json_mode:
        system_parts.append("Answer with a single JSON object and nothing else.")
    chat_messages = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]

    kwargs: dict = {
        "model": model,
        "messages": chat_messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if system_parts:
        kwargs["system"] = "\n\n".join(system_parts)

    response = await _anthropic_client().messages.create(**kwargs)
    return "".join(block.text for block in response.content if getattr(block, "type", "text") == "text")
