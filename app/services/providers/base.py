"""
Generation Provider Interface
=============================

A provider turns one claimed job into one output URL:

    async generate(ProviderRequest) -> result_url

Failures raise ProviderError carrying the upstream status code and whether
a retry could succeed. The worker stores the message on the job; it never
propagates past the slot loop.
"""

from dataclasses import dataclass, field
from typing import List, Optional

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class ProviderRequest:
    job_id: str
    kind: str
    mode: str
    model: str
    prompt: str
    product_images: List[str] = field(default_factory=list)
    style_images: List[str] = field(default_factory=list)
    aspect_ratio: Optional[str] = None
    upsampler_model: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {
            "kind": self.kind,
            "mode": self.mode,
            "model": self.model,
            "prompt": self.prompt,
            "images": list(self.product_images),
            "style_images": list(self.style_images),
            "aspect_ratio": self.aspect_ratio,
        }
        if self.upsampler_model:
            payload["upsampler_model"] = self.upsampler_model
        return payload


class ProviderError(Exception):
    """Upstream generation failure."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        retry_after_s: Optional[float] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.retryable = (status_code in RETRYABLE_STATUS_CODES) if retryable is None else retryable
        self.retry_after_s = retry_after_s
        super().__init__(message)

    def __str__(self):
        if self.status_code:
            return f"Provider error ({self.status_code}): {self.message}"
        return f"Provider error: {self.message}"


class GenerationProvider:
    """Base class; subclasses implement ``generate``."""

    name = "base"

    async def generate(self, request: ProviderRequest) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
