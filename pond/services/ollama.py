"""
Shared HTTP plumbing for the Ollama-backed services.
"""

from __future__ import annotations

import random
import time
from typing import Callable, Optional

import httpx

import pond.config as config

logger = config.logger.getChild("ollama")

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class OllamaHttpService:
    """Pooled ``httpx`` client with retry, backoff and jitter.

    Subclasses set ``provider_error`` and ``provider_name`` so failures surface
    as the error type their callers expect.
    """

    provider_error: type[Exception] = RuntimeError
    provider_name = "ollama"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        jitter_seconds: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.max_retries = config.OLLAMA_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = config.OLLAMA_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.jitter_seconds = config.OLLAMA_RETRY_JITTER_SECONDS if jitter_seconds is None else jitter_seconds
        self._sleep = sleep
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds or config.OLLAMA_TIMEOUT_SECONDS),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
            headers={"Content-Type": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def is_healthy(self) -> bool:
        try:
            response = self._client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError as exc:
            logger.warning(f"Ollama health check failed: {exc}")
            return False
        return response.status_code < 400

    def _post_with_retry(self, path: str, payload: dict) -> httpx.Response:
        url = f"{self.base_url}{path}"
        for attempt in range(self.max_retries + 1):
            try:
                response = self._client.post(url, json=payload)
            except httpx.RequestError as exc:
                if attempt >= self.max_retries:
                    self._raise_unavailable(f"request error: {exc}")
                self._sleep_backoff(attempt)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES:
                if attempt >= self.max_retries:
                    self._raise_unavailable(f"status {response.status_code}")
                self._sleep_backoff(attempt)
                continue
            if response.status_code >= 400:
                self._raise_unavailable(f"status {response.status_code}: {response.text[:200]}")
            return response
        self._raise_unavailable("retries exhausted")

    def _sleep_backoff(self, attempt: int) -> None:
        base = self.backoff_seconds * (2 ** attempt)
        jitter = random.uniform(0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        self._sleep(base + jitter)

    def _raise_unavailable(self, detail: str) -> None:
        logger.warning(f"{self.provider_name} unavailable ({detail})")
        raise self.provider_error(f"{self.provider_name} unavailable: {detail}")
