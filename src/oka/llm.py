from __future__ import annotations

import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import httpx

from oka.config import LLMSettings


class CompletionError(RuntimeError):
    """The completion service could not produce a reply."""


@lru_cache(maxsize=1)
def _shared_http_client() -> httpx.Client:
    return httpx.Client()


@dataclass(frozen=True)
class LLMResponse:
    content: str
    model: str


class LLMClient(Protocol):
    def generate(self, prompt: str, *, temperature: float | None = None) -> LLMResponse:
        ...


def _describe_http_error(exc: httpx.HTTPStatusError) -> str:
    status = exc.response.status_code
    try:
        payload = exc.response.json()
    except ValueError:
        payload = None
    detail = ""
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = str(error.get("message") or "")
        detail = detail or str(payload.get("message") or "")
    if not detail:
        detail = exc.response.text.strip()
    return f"HTTP {status}. {detail[:500]}".strip()


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout_s: float) -> Any:
    client = _shared_http_client()
    response = client.post(url, headers=headers, json=payload, timeout=timeout_s)
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise CompletionError(_describe_http_error(exc)) from exc
    return response.json()


@dataclass(frozen=True)
class OpenAIClient:
    base_url: str
    api_key: str
    model: str
    timeout_s: float = 120.0
    default_temperature: float = 0.2

    def generate(self, prompt: str, *, temperature: float | None = None) -> LLMResponse:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature if temperature is not None else self.default_temperature,
        }
        data = _post_json(
            url, payload, {"Authorization": f"Bearer {self.api_key}"}, self.timeout_s
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionError(f"unexpected completion payload: {exc}") from exc
        return LLMResponse(content=str(content or ""), model=self.model)


@dataclass(frozen=True)
class OllamaClient:
    base_url: str
    model: str
    timeout_s: float = 300.0
    default_temperature: float = 0.2
    max_retries: int = 2
    retry_delay_s: float = 1.0

    def generate(self, prompt: str, *, temperature: float | None = None) -> LLMResponse:
        url = f"{self.base_url.rstrip('/')}/api/chat"
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
            "format": "json",
            "options": {
                "temperature": temperature if temperature is not None else self.default_temperature
            },
        }
        attempts = max(0, self.max_retries) + 1
        for attempt in range(attempts):
            try:
                data = _post_json(url, payload, {}, self.timeout_s)
            except httpx.TimeoutException as exc:
                if attempt >= attempts - 1:
                    raise CompletionError(f"timed out after {attempts} attempts") from exc
                if self.retry_delay_s > 0:
                    time.sleep(self.retry_delay_s * (attempt + 1))
                continue
            try:
                content = data["message"]["content"]
            except (KeyError, TypeError) as exc:
                raise CompletionError(f"unexpected completion payload: {exc}") from exc
            return LLMResponse(content=str(content or ""), model=self.model)
        raise CompletionError("Ollama request failed without response")


def build_llm_client(settings: LLMSettings) -> LLMClient:
    if settings.provider == "openai":
        if not settings.api_key:
            raise CompletionError("OpenAI API key is required.")
        return OpenAIClient(base_url=settings.base_url, api_key=settings.api_key, model=settings.model)
    if settings.provider == "ollama":
        return OllamaClient(base_url=settings.base_url, model=settings.model)
    raise CompletionError(f"Unsupported LLM provider: {settings.provider}")
