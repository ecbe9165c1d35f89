"""EmbeddingGateway — batching, timeouts and retries over an EmbeddingProvider.

The gateway is constructed explicitly from an :class:`EmbeddingConfig` and a
provider instance and handed to the sync engine and retriever, so tests can
substitute a deterministic provider without touching process-wide state.
"""
import asyncio
import logging
from typing import Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from codeindex import errors
from codeindex.errors import ProviderError

from .cohere import CohereProvider
from .openai_compat import OpenAICompatibleProvider
from .provider import EmbeddingProvider
from .schemas import EmbeddingConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4


def create_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Build the provider named by ``config.provider``."""
    if config.provider == "cohere":
        return CohereProvider(config)
    if config.provider in ("openai", "siliconflow"):
        return OpenAICompatibleProvider(config)
    raise ProviderError(f"unknown provider '{config.provider}'", errors.CONFIG, config.provider)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class EmbeddingGateway:
    """Splits texts into provider-sized batches and embeds them.

    Args:
        config:          Batch size, timeout and retry policy.
        provider:        Concrete provider.  Built from *config* when omitted.
        max_concurrency: Maximum provider calls in flight at once.  Callers
                         beyond this wait, which throttles the sync workers
                         when the provider is slow.
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        provider: Optional[EmbeddingProvider] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self._config = config
        self._provider = provider or create_provider(config)
        self._slots = asyncio.Semaphore(max_concurrency)

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    @property
    def config(self) -> EmbeddingConfig:
        return self._config

    @property
    def provider_id(self) -> str:
        return f"{self._provider.name}:{self._provider.model_id}"

    @property
    def batch_size(self) -> int:
        return self._config.batch_size

    async def embed(self, texts: list[str], input_type: str = "search_document") -> list[list[float]]:
        """Embed *texts* in batches of at most ``batch_size``.

        Returns:
            Vectors parallel to *texts*.

        Raises:
            ProviderError: When a batch fails after retries, or immediately
                           for auth/config failures.
        """
        if not texts:
            return []

        size = self._config.batch_size
        total_batches = (len(texts) + size - 1) // size
        vectors: list[list[float]] = []
        for i in range(0, len(texts), size):
            batch = texts[i:i + size]
            logger.debug(
                "[EmbeddingGateway] batch %d/%d (%d texts) via %s",
                i // size + 1, total_batches, len(batch), self.provider_id,
            )
            vectors.extend(await self._embed_batch(batch, input_type))
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query string."""
        vectors = await self.embed([text], input_type="search_query")
        return vectors[0]

    async def aclose(self) -> None:
        await self._provider.aclose()

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    async def _embed_batch(self, batch: list[str], input_type: str) -> list[list[float]]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries + 1),
            wait=wait_exponential(
                multiplier=self._config.backoff_base_seconds,
                max=self._config.backoff_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                vectors = await self._call_once(batch, input_type)
        return vectors

    async def _call_once(self, batch: list[str], input_type: str) -> list[list[float]]:
        async with self._slots:
            try:
                vectors = await asyncio.wait_for(
                    self._provider.embed(batch, input_type=input_type),
                    timeout=self._config.timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise ProviderError(
                    f"no response within {self._config.timeout_seconds}s",
                    errors.TIMEOUT, self._provider.name,
                ) from exc
            except ProviderError:
                raise
            except Exception as exc:
                raise ProviderError(str(exc), errors.SERVER, self._provider.name) from exc

        if len(vectors) != len(batch):
            raise ProviderError(
                f"returned {len(vectors)} vectors for {len(batch)} texts",
                errors.MALFORMED, self._provider.name,
            )
        expected_dim = self._config.dim
        for vec in vectors:
            if not vec or (expected_dim is not None and len(vec) != expected_dim):
                raise ProviderError(
                    f"vector of dimension {len(vec)} does not match expected {expected_dim}",
                    errors.MALFORMED, self._provider.name,
                )
        return [[float(x) for x in vec] for vec in vectors]

    def _log_retry(self, retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "[EmbeddingGateway] attempt %d failed (%s), retrying",
            retry_state.attempt_number, exc,
        )
