"""Embedding gateway.

Turns chunk and query texts into vectors through a configured hosted
provider (SiliconFlow by default; OpenAI and Cohere supported).
"""
from .gateway import EmbeddingGateway, create_provider
from .provider import EmbeddingProvider
from .schemas import EmbeddingConfig

__all__ = [
    "EmbeddingConfig",
    "EmbeddingGateway",
    "EmbeddingProvider",
    "create_provider",
]
