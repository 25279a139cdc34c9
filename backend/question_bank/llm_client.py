from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol, Sequence

import openai
import requests
from openai import OpenAI
from requests import HTTPError, RequestException

from .config import Settings
from .utils import RandomSource

logger = logging.getLogger(__name__)

# Sampling is fixed for every call; low randomness keeps verdicts stable.
TEMPERATURE = 0.3
TOP_P = 0.9
MAX_OUTPUT_TOKENS = 1024

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


class LLMClientError(RuntimeError):
    """Raised when the configured LLM provider cannot fulfil a request."""


class AIUnavailable(LLMClientError):
    """No credential is configured, so no request can be made."""


class AIRequestFailed(LLMClientError):
    """The provider answered with a non-success status or could not be reached."""


class AIResponseMalformed(LLMClientError):
    """The provider answered successfully but without the expected text."""


class CompletionClient(Protocol):
    def complete(self, prompt: str) -> str: ...


@dataclass(frozen=True)
class LLMConfig:
    provider: str
    api_keys: tuple[str, ...]
    model: str
    timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMConfig":
        provider = (settings.llm_provider or "gemini").lower()
        if provider == "openai":
            return cls(
                provider=provider,
                api_keys=settings.openai_api_keys,
                model=settings.openai_model,
                timeout_seconds=settings.ai_timeout_seconds,
            )
        return cls(
            provider=provider,
            api_keys=settings.gemini_api_keys,
            model=settings.gemini_model,
            timeout_seconds=settings.ai_timeout_seconds,
        )


def pick_api_key(keys: Sequence[str], rng: RandomSource) -> str:
    """Pick one credential uniformly at random from the pool."""
    if not keys:
        raise AIUnavailable("No API keys are configured in the key pool.")
    return rng.choice(list(keys))


def _key_suffix(api_key: str) -> str:
    return api_key[-4:] if len(api_key) > 4 else "****"


@lru_cache(maxsize=16)
def _get_openai_client(api_key: str, timeout: float) -> OpenAI:
    return OpenAI(api_key=api_key, timeout=timeout, max_retries=0)


def _call_openai(prompt: str, api_key: str, config: LLMConfig) -> str:
    client = _get_openai_client(api_key, config.timeout_seconds)
    try:
        response = client.responses.create(
            model=config.model,
            input=prompt,
            temperature=TEMPERATURE,
            top_p=TOP_P,
            max_output_tokens=MAX_OUTPUT_TOKENS,
        )
    except openai.APIStatusError as exc:
        raise AIRequestFailed(f"OpenAI request failed with status {exc.status_code}") from exc
    except openai.APIConnectionError as exc:
        raise AIRequestFailed(f"OpenAI request failed: {exc}") from exc

    text = getattr(response, "output_text", None)
    if not text or not text.strip():
        raise AIResponseMalformed("OpenAI response did not contain any text output.")
    return text.strip()


def _call_gemini(prompt: str, api_key: str, config: LLMConfig) -> str:
    payload = {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": {
            "temperature": TEMPERATURE,
            "topP": TOP_P,
            "maxOutputTokens": MAX_OUTPUT_TOKENS,
        },
    }
    try:
        response = requests.post(
            GEMINI_ENDPOINT.format(model=config.model),
            params={"key": api_key},
            json=payload,
            timeout=config.timeout_seconds,
        )
        response.raise_for_status()
    except HTTPError as exc:
        status_code = exc.response.status_code if exc.response is not None else "unknown"
        raise AIRequestFailed(f"Gemini request failed with status {status_code}") from exc
    except RequestException as exc:
        raise AIRequestFailed(f"Gemini request failed: {exc.__class__.__name__}") from exc

    try:
        data = response.json()
    except ValueError as exc:
        raise AIResponseMalformed("Gemini response was not valid JSON.") from exc

    if not isinstance(data, dict):
        raise AIResponseMalformed("Gemini response had an unexpected shape.")
    if "error" in data:
        raise AIRequestFailed(f"Gemini returned an error: {json.dumps(data['error'])}")

    candidates = data.get("candidates")
    if not isinstance(candidates, list):
        candidates = []
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content")
        if not isinstance(content, dict):
            continue
        parts = content.get("parts")
        if not isinstance(parts, list):
            continue
        texts = [part.get("text") for part in parts if isinstance(part, dict) and part.get("text")]
        if texts:
            return "\n".join(texts).strip()
    raise AIResponseMalformed("Gemini response did not contain any text output.")


class LLMClient:
    """Single-shot text completion against the configured provider.

    Every call picks a fresh credential from the pool. Failures are raised
    as ``LLMClientError`` subclasses; retrying is left to the caller.
    """

    def __init__(self, config: LLMConfig, rng: RandomSource | None = None) -> None:
        self.config = config
        self._rng = rng or random.SystemRandom()

    def complete(self, prompt: str) -> str:
        api_key = pick_api_key(self.config.api_keys, self._rng)
        provider = self.config.provider
        try:
            if provider in {"gemini", "google"}:
                return _call_gemini(prompt, api_key, self.config)
            if provider == "openai":
                return _call_openai(prompt, api_key, self.config)
            raise LLMClientError(
                f"Unsupported LLM provider '{provider}'. Supported providers: gemini, openai."
            )
        except LLMClientError as exc:
            logger.warning(
                "%s call with key ending in ...%s failed: %s",
                provider,
                _key_suffix(api_key),
                exc,
            )
            raise
