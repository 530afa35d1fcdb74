from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from .config import (
    DEFAULT_LLM_MAX_TOKENS,
    DEFAULT_LLM_RETRIES,
    DEFAULT_LLM_RETRY_BACKOFF_SECONDS,
    DEFAULT_LLM_TIMEOUT_SECONDS,
)

logger = logging.getLogger("regenerator.llm")

RETRYABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}


class LLMError(RuntimeError):
    pass


@dataclass(frozen=True)
class LLMConfig:
    provider: str = "openai"
    api_key: str = ""
    model: str = ""
    base_url: str = ""
    timeout_seconds: int = DEFAULT_LLM_TIMEOUT_SECONDS
    max_tokens: int = DEFAULT_LLM_MAX_TOKENS
    temperature: float = 0.4
    retries: int = DEFAULT_LLM_RETRIES
    backoff_seconds: float = DEFAULT_LLM_RETRY_BACKOFF_SECONDS

    @classmethod
    def from_runtime_config(cls, config: Dict[str, Any]) -> "LLMConfig":
        return cls(
            provider=config.get("llm_provider") or "openai",
            api_key=config.get("llm_api_key") or "",
            model=config.get("llm_model") or "",
            base_url=config.get("llm_base_url") or "",
            timeout_seconds=int(config.get("llm_timeout_seconds") or DEFAULT_LLM_TIMEOUT_SECONDS),
            max_tokens=int(config.get("llm_max_tokens") or DEFAULT_LLM_MAX_TOKENS),
            retries=int(config.get("llm_retries", DEFAULT_LLM_RETRIES)),
            backoff_seconds=float(config.get("llm_retry_backoff_seconds", DEFAULT_LLM_RETRY_BACKOFF_SECONDS)),
        )


def _is_retryable_error(error: LLMError) -> bool:
    message = str(error).lower()
    if "llm request failed" in message:
        return True
    match = re.search(r"llm http (\d+)", message)
    if match:
        return int(match.group(1)) in RETRYABLE_STATUS_CODES
    if "timed out" in message:
        return True
    return False


def _post_json(url: str, *, headers: Dict[str, str], payload: Dict[str, Any], timeout_seconds: int) -> Dict[str, Any]:
    try:
        response = requests.post(url, headers=headers, json=payload, timeout=timeout_seconds)
    except requests.RequestException as exc:
        raise LLMError(f"LLM request failed: {exc}") from exc

    if response.status_code >= 400:
        raise LLMError(f"LLM HTTP {response.status_code}: {response.text[:400]}")

    try:
        body = response.json()
    except ValueError as exc:
        raise LLMError("LLM returned non-JSON response.") from exc
    if not isinstance(body, dict):
        raise LLMError("LLM returned an unexpected payload.")
    return body


def _call_openai(*, system_prompt: str, user_prompt: str, config: LLMConfig, base_url: str, model: str) -> str:
    url = base_url.rstrip("/") + "/chat/completions"
    headers = {
        "Authorization": f"Bearer {config.api_key}",
        "Content-Type": "application/json",
    }
    payload = {
        "model": model,
        "temperature": config.temperature,
        "max_tokens": config.max_tokens,
        "response_format": {"type": "json_object"},
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
    }
    body = _post_json(url, headers=headers, payload=payload, timeout_seconds=config.timeout_seconds)

    content: Optional[str] = None
    choices = body.get("choices")
    if isinstance(choices, list) and choices:
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if isinstance(message, dict):
            content = message.get("content")
    if not content:
        raise LLMError("LLM response missing content.")
    return str(content)


def _call_anthropic(*, system_prompt: str, user_prompt: str, config: LLMConfig, base_url: str, model: str) -> str:
    url = base_url.rstrip("/") + "/messages"
    headers = {
        "x-api-key": config.api_key,
        "anthropic-version": "2023-06-01",
        "Content-Type": "application/json",
    }
    payload = {
        "model": model,
        "max_tokens": config.max_tokens,
        "temperature": config.temperature,
        "system": system_prompt,
        "messages": [{"role": "user", "content": user_prompt}],
    }
    body = _post_json(url, headers=headers, payload=payload, timeout_seconds=config.timeout_seconds)

    content_blocks = body.get("content")
    if isinstance(content_blocks, list):
        texts = []
        for block in content_blocks:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str) and text.strip():
                    texts.append(text.strip())
        if texts:
            return "\n".join(texts)
    raise LLMError("LLM response missing content.")


def _call_gemini(*, system_prompt: str, user_prompt: str, config: LLMConfig, base_url: str, model: str) -> str:
    url = f"{base_url.rstrip('/')}/models/{model}:generateContent"
    headers = {
        "x-goog-api-key": config.api_key,
        "Content-Type": "application/json",
    }
    payload = {
        "systemInstruction": {"parts": [{"text": system_prompt}]},
        "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
        "generationConfig": {
            "responseMimeType": "application/json",
            "maxOutputTokens": config.max_tokens,
            "temperature": config.temperature,
        },
    }
    body = _post_json(url, headers=headers, payload=payload, timeout_seconds=config.timeout_seconds)

    candidates = body.get("candidates")
    if isinstance(candidates, list) and candidates:
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if isinstance(parts, list):
            texts = [str(part.get("text")) for part in parts if isinstance(part, dict) and part.get("text")]
            if texts:
                return "".join(texts)
    raise LLMError("LLM response missing content.")


@dataclass(frozen=True)
class ProviderSpec:
    call: Callable[..., str]
    base_url: str
    model: str


PROVIDERS: Dict[str, ProviderSpec] = {
    "openai": ProviderSpec(_call_openai, "https://api.openai.com/v1", "gpt-4.1-mini"),
    "openrouter": ProviderSpec(_call_openai, "https://openrouter.ai/api/v1", "openai/gpt-4.1-mini"),
    "groq": ProviderSpec(_call_openai, "https://api.groq.com/openai/v1", "llama-3.3-70b-versatile"),
    "anthropic": ProviderSpec(_call_anthropic, "https://api.anthropic.com/v1", "claude-sonnet-4-5-20250929"),
    "gemini": ProviderSpec(_call_gemini, "https://generativelanguage.googleapis.com/v1beta", "gemini-2.5-flash"),
}


class LLMClient:
    """Provider-agnostic ``generate(system, user) -> text`` with bounded retries."""

    def __init__(self, config: LLMConfig, *, sleep: Callable[[float], None] = time.sleep):
        provider = (config.provider or "").strip().lower()
        if provider not in PROVIDERS:
            raise LLMError(f"Unsupported LLM provider: {config.provider!r}.")
        self.config = config
        self._spec = PROVIDERS[provider]
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self.config.model or self._spec.model

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        if not self.config.api_key:
            raise LLMError("Missing LLM API key.")
        base_url = self.config.base_url or self._spec.base_url

        last_error: Optional[LLMError] = None
        attempts = max(0, self.config.retries) + 1
        for attempt in range(attempts):
            try:
                return self._spec.call(
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    config=self.config,
                    base_url=base_url,
                    model=self.model,
                )
            except LLMError as exc:
                last_error = exc
                if attempt >= attempts - 1 or not _is_retryable_error(exc):
                    break
                sleep_seconds = self.config.backoff_seconds * (2 ** attempt)
                logger.warning(
                    "regenerator.llm_retry attempt=%s/%s sleep=%.1fs error=%s",
                    attempt + 1,
                    attempts,
                    sleep_seconds,
                    exc,
                )
                self._sleep(sleep_seconds)

        raise last_error or LLMError("LLM request failed.")
