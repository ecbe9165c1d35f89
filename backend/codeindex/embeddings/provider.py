"""Abstract EmbeddingProvider interface.

Every embedding back-end (OpenAI-compatible, Cohere, test doubles, …) must
implement this interface so the gateway stays provider-agnostic.
"""
from abc import ABC, abstractmethod
from typing import Optional


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers.

    Implementations must be safe to call concurrently: the sync engine embeds
    several files at once from its worker pool.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (``openai``, ``cohere``, ``siliconflow``, …)."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Provider-internal model identifier (used for logging and cache keys)."""

    @property
    def dim(self) -> Optional[int]:
        """Dimensionality of the produced vectors, when known in advance."""
        return None

    @abstractmethod
    async def embed(self, texts: list[str], input_type: str = "search_document") -> list[list[float]]:
        """Generate embedding vectors for a batch of texts.

        Args:
            texts: Non-empty list of strings to embed.  The gateway
                   guarantees ``len(texts) <= batch_size``.
            input_type: Embedding input type hint.  Use ``"search_document"``
                        when indexing and ``"search_query"`` when querying.

        Returns:
            A list of float vectors, one per input text, in input order.

        Raises:
            ProviderError: On provider error (network, auth, quota, …).
        """

    async def aclose(self) -> None:
        """Release any network resources held by the provider."""
