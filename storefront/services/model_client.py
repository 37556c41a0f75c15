# storefront/services/model_client.py
"""
Chat-completions client for the design model (OpenRouter, OpenAI-compatible).
"""
from __future__ import annotations

import time
from dataclasses import dataclass

import requests

from ..config import logger
from ..errors import StorefrontError, UpstreamTimeout, UpstreamUnavailable


@dataclass(frozen=True)
class DesignerSettings:
    api_key: str
    model: str = "moonshotai/kimi-k2"
    fallback_model: str | None = None
    url: str = "https://openrouter.ai/api/v1/chat/completions"
    referer: str = "https://localhost"
    timeout: int = 45
    max_retries: int = 3
    temperature: float = 0.5
    max_tokens: int = 2000

    @property
    def models(self) -> list[str]:
        if self.fallback_model and self.fallback_model != self.model:
            return [self.model, self.fallback_model]
        return [self.model]

    @classmethod
    def from_config(cls, config) -> "DesignerSettings":
        return cls(
            api_key=config.get("OPENROUTER_API_KEY") or "",
            model=config.get("OPENROUTER_MODEL") or cls.model,
            fallback_model=config.get("OPENROUTER_FALLBACK_MODEL") or None,
            url=config.get("OPENROUTER_URL") or cls.url,
            referer=config.get("OPENROUTER_REFERER") or cls.referer,
            timeout=int(config.get("AI_REQUEST_TIMEOUT") or cls.timeout),
            max_retries=max(int(config.get("AI_MAX_RETRIES", cls.max_retries)), 1),
        )


@dataclass
class Completion:
    content: str
    model: str


class _ModelFailed(Exception):
    pass


class OpenRouterClient:
    def __init__(self, settings: DesignerSettings, session=None, sleep=time.sleep):
        self.settings = settings
        self.session = session or requests.Session()
        self._sleep = sleep

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.settings.referer,
            "X-Title": "Storefront AI Designer",
        }

    def _post(self, model: str, payload: dict) -> requests.Response:
        """POST with exponential backoff on 5xx and connection errors. Timeouts are not retried."""
        last_error = None
        for attempt in range(self.settings.max_retries):
            try:
                resp = self.session.post(
                    self.settings.url,
                    json={**payload, "model": model},
                    headers=self._headers(),
                    timeout=self.settings.timeout,
                )
            except requests.Timeout:
                raise UpstreamTimeout()
            except requests.RequestException as e:
                last_error = e
            else:
                if resp.status_code < 500:
                    return resp
                last_error = f"HTTP {resp.status_code}"

            if attempt < self.settings.max_retries - 1:
                self._sleep(2 ** attempt)
        raise _ModelFailed(last_error)

    def complete(self, system_prompt: str, messages: list[dict]) -> Completion:
        if not self.settings.api_key:
            raise StorefrontError("AI designer is not configured", 503)

        payload = {
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "response_format": {"type": "json_object"},
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_tokens,
        }

        for model in self.settings.models:
            try:
                resp = self._post(model, payload)
            except _ModelFailed as e:
                logger.warning(f"model {model} failed: {e}")
                continue
            if resp.status_code >= 400:
                logger.warning(f"model {model} rejected request: {resp.status_code} {resp.text[:200]}")
                continue

            if model != self.settings.model:
                logger.warning(f"design model fallback used: {self.settings.model} -> {model}")
            try:
                data = resp.json()
                content = ((data.get("choices") or [{}])[0].get("message") or {}).get("content")
            except (ValueError, AttributeError, IndexError):
                content = None
            return Completion(content=content or "", model=model)

        raise UpstreamUnavailable()
