"""
Process-wide bound on concurrent provider calls.

One gate per worker process, shared by every slot loop. The semaphore is
released on every exit path, including cancellation.
"""

import asyncio
import logging

from app.services.providers.base import GenerationProvider, ProviderRequest

logger = logging.getLogger(__name__)


class ProviderGate:

    def __init__(self, provider: GenerationProvider, max_in_flight: int):
        self.provider = provider
        self.max_in_flight = max(1, max_in_flight)
        self._semaphore = asyncio.Semaphore(self.max_in_flight)
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def generate(self, request: ProviderRequest) -> str:
        async with self._semaphore:
            self._in_flight += 1
            try:
                return await self.provider.generate(request)
            finally:
                self._in_flight -= 1
