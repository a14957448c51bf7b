from typing import Optional

from app.config import settings

from .base import GenerationProvider, ProviderError, ProviderRequest
from .gate import ProviderGate
from .gateway import GatewayProvider
from .mock import MockProvider


def build_provider(kind: Optional[str] = None) -> GenerationProvider:
    """Provider selected by ``settings.provider_kind`` unless ``kind`` is given."""
    kind = kind or settings.provider_kind
    if kind == "mock":
        return MockProvider()
    return GatewayProvider()


__all__ = [
    "GenerationProvider",
    "ProviderError",
    "ProviderRequest",
    "ProviderGate",
    "GatewayProvider",
    "MockProvider",
    "build_provider",
]
