"""OpenAI-compatible embedding provider (OpenAI, SiliconFlow).

Request body
------------
::

    { "model": "text-embedding-3-large", "input": ["text1", "text2"] }

Response body
-------------
::

    { "data": [ { "embedding": [...], "index": 0 }, ... ], "model": "..." }

``data`` entries are re-ordered by ``index`` before being returned, since the
API does not promise to preserve input order.
"""
import logging

from codeindex import errors
from codeindex.errors import ProviderError

from .http_base import HttpEmbeddingProvider

logger = logging.getLogger(__name__)


class OpenAICompatibleProvider(HttpEmbeddingProvider):
    """Embedding provider for any endpoint speaking the OpenAI embeddings API."""

    async def embed(self, texts: list[str], input_type: str = "search_document") -> list[list[float]]:
        logger.debug(
            "[embeddings/%s] invoking model=%s texts=%d",
            self.name, self.model_id, len(texts),
        )
        data = await self._post_json({"model": self.model_id, "input": list(texts)})

        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ProviderError(
                "response is missing the 'data' list", errors.MALFORMED, self.name,
            )
        try:
            ordered = sorted(items, key=lambda item: item.get("index", 0))
            vectors = [item["embedding"] for item in ordered]
        except (KeyError, TypeError, AttributeError) as exc:
            raise ProviderError(
                f"unexpected 'data' entry shape: {exc}", errors.MALFORMED, self.name,
            ) from exc

        self._check_count(vectors, texts)
        return vectors
