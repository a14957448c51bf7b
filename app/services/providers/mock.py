"""
Local provider for development and tests: no network, deterministic URLs.

Prompts containing ``fail_marker`` raise a non-retryable ProviderError so
partial and failed batches can be produced on purpose.
"""

import asyncio
from typing import Optional

from app.config import settings
from app.services.providers.base import GenerationProvider, ProviderError, ProviderRequest


class MockProvider(GenerationProvider):

    name = "mock"

    def __init__(self, delay_s: float = 0.0, fail_marker: Optional[str] = "[fail]"):
        self.delay_s = delay_s
        self.fail_marker = fail_marker
        self.calls = []

    async def generate(self, request: ProviderRequest) -> str:
        self.calls.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail_marker and self.fail_marker in request.prompt:
            raise ProviderError("Mock generation failed", status_code=400)
        extension = "mp4" if request.kind == "video" else "png"
        return f"{settings.public_base_url.rstrip('/')}/{request.job_id}.{extension}"
