"""
HTTP Generation Gateway Provider
================================

Calls the model gateway over HTTP (httpx):

    POST {provider_url}/v1/generate
    Authorization: Bearer <provider_api_key>
    {"kind", "mode", "model", "prompt", "images", "style_images",
     "aspect_ratio", "upsampler_model"?}

    200 -> {"result_url": "..."} or {"data_url": "data:image/png;base64,..."}

429 and 5xx responses, timeouts and connection errors are retried with
exponential backoff (base * 2^n, capped) plus jitter, waiting at least the
server's Retry-After. Other statuses fail immediately.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Optional

import httpx

from app.config import settings
from app.services.providers.base import GenerationProvider, ProviderError, ProviderRequest
from app.services.result_store import ResultStore, result_store

logger = logging.getLogger(__name__)

MAX_ERROR_DETAIL_CHARS = 2500


def parse_retry_after(value: Optional[str], cap_s: float) -> Optional[float]:
    """Retry-After in delta-seconds form, capped; anything else is ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds <= 0:
        return None
    return min(cap_s, seconds)


def backoff_seconds(attempt: int, retry_after_s: Optional[float] = None) -> float:
    """Delay before retry ``attempt`` (1-based)."""
    exp_ms = min(settings.provider_backoff_max_ms, settings.provider_backoff_base_ms * (2 ** (attempt - 1)))
    jitter_ms = random.randint(0, settings.provider_backoff_jitter_ms)
    return max((retry_after_s or 0) * 1000, exp_ms) / 1000 + jitter_ms / 1000


class GatewayProvider(GenerationProvider):
    """Async client for the generation gateway."""

    name = "gateway"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
        store: Optional[ResultStore] = None,
    ):
        self._base_url = (base_url or settings.provider_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.provider_api_key
        self._max_attempts = max(1, max_attempts or settings.provider_max_attempts)
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.provider_timeout_s)
        self._store = store or result_store

    async def generate(self, request: ProviderRequest) -> str:
        data = await self._post("/v1/generate", request.to_payload())
        result_url = data.get("result_url")
        if result_url:
            return str(result_url)
        data_url = data.get("data_url")
        if data_url:
            return self._store.save_data_url(request.job_id, str(data_url))
        raise ProviderError("Gateway response has no result", status_code=200, retryable=False)

    async def _post(self, path: str, payload: dict) -> dict:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        url = f"{self._base_url}{path}"
        last_error: Optional[ProviderError] = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._client.post(url, json=payload, headers=headers)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_error = ProviderError(f"{type(exc).__name__}: {exc}", retryable=True)
            else:
                if response.status_code == 200:
                    try:
                        return response.json()
                    except ValueError:
                        raise ProviderError("Gateway returned invalid JSON", status_code=200, retryable=False)
                last_error = ProviderError(
                    _error_detail(response),
                    status_code=response.status_code,
                    retry_after_s=parse_retry_after(
                        response.headers.get("retry-after"), settings.provider_retry_after_max_s
                    ),
                )

            if not last_error.retryable or attempt >= self._max_attempts:
                break
            delay = backoff_seconds(attempt, last_error.retry_after_s)
            logger.warning(
                "Provider retry %d/%d for %s: %s (wait %.2fs)",
                attempt, self._max_attempts - 1, path, last_error, delay,
            )
            await asyncio.sleep(delay)

        raise last_error

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    text = response.text or response.reason_phrase or ""
    if len(text) > MAX_ERROR_DETAIL_CHARS:
        text = text[:MAX_ERROR_DETAIL_CHARS] + "..."
    return text or f"HTTP {response.status_code}"
