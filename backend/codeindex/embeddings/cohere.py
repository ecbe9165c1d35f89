"""Cohere embedding provider (hosted API).

Cohere request body
-------------------
::

    {
        "model":      "embed-english-v3.0",
        "texts":      ["text1", "text2"],
        "input_type": "search_document",   # or "search_query"
        "truncate":   "END"
    }

Cohere response body (both flat and nested float formats are handled)
---------------------------------------------------------------------
::

    # Flat format (Cohere Embed v2/v3):
    { "embeddings": [[...], [...]], ... }

    # Nested format (Cohere Embed v4 with explicit type):
    { "embeddings": { "float": [[...], [...]] }, ... }
"""
import logging

from codeindex import errors
from codeindex.errors import ProviderError

from .http_base import HttpEmbeddingProvider

logger = logging.getLogger(__name__)


class CohereProvider(HttpEmbeddingProvider):
    """Embedding provider backed by the Cohere embed endpoint."""

    async def embed(self, texts: list[str], input_type: str = "search_document") -> list[list[float]]:
        logger.debug(
            "[embeddings/cohere] invoking model=%s texts=%d input_type=%s",
            self.model_id, len(texts), input_type,
        )
        data = await self._post_json({
            "model":      self.model_id,
            "texts":      list(texts),
            "input_type": input_type,
            "truncate":   "END",
        })

        raw = data.get("embeddings") if isinstance(data, dict) else None
        if raw is None:
            raise ProviderError(
                "'embeddings' key missing from response", errors.MALFORMED, self.name,
            )

        if isinstance(raw, dict):
            # Cohere Embed v4 nested format: {"float": [[...], ...]}
            if "float" not in raw:
                raise ProviderError(
                    f"unexpected nested embeddings format, keys: {list(raw.keys())}",
                    errors.MALFORMED, self.name,
                )
            vectors = raw["float"]
        else:
            vectors = raw

        self._check_count(vectors, texts)
        return vectors
