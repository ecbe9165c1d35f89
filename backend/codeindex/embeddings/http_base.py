"""Shared HTTP plumbing for hosted embedding providers.

Maps transport failures and HTTP status codes onto :class:`ProviderError`
kinds so the gateway can decide whether a retry can possibly succeed.
"""
import logging
from typing import Any, Optional

import httpx

from codeindex import errors
from codeindex.errors import ProviderError

from .provider import EmbeddingProvider
from .schemas import EmbeddingConfig

logger = logging.getLogger(__name__)


def _kind_for_status(status_code: int) -> str:
    if status_code in (401, 403):
        return errors.AUTH
    if status_code == 429:
        return errors.RATE_LIMIT
    if status_code == 408:
        return errors.TIMEOUT
    if status_code >= 500:
        return errors.SERVER
    return errors.CONFIG


class HttpEmbeddingProvider(EmbeddingProvider):
    """Base class for providers reached over JSON/HTTP with a bearer token.

    Args:
        config: Embedding configuration (URL, key, model, timeout).
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject a
                client backed by ``httpx.MockTransport``).
    """

    def __init__(self, config: EmbeddingConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return self._config.provider

    @property
    def model_id(self) -> str:
        return self._config.model

    @property
    def dim(self) -> Optional[int]:
        return self._config.dim

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_seconds)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        headers.update(self._config.additional_headers)
        return headers

    async def _post_json(self, payload: dict[str, Any]) -> Any:
        """POST *payload* to the configured URL and return the decoded body."""
        client = self._get_client()
        try:
            response = await client.post(
                self._config.api_url, json=payload, headers=self._headers(),
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(f"request timed out: {exc}", errors.TIMEOUT, self.name) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"transport error: {exc}", errors.SERVER, self.name) from exc

        if response.status_code >= 400:
            kind = _kind_for_status(response.status_code)
            logger.error(
                "[embeddings/%s] HTTP %d from %s: %s",
                self.name, response.status_code, self._config.api_url, response.text[:500],
            )
            raise ProviderError(
                f"HTTP {response.status_code} from embedding API", kind, self.name,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"response is not JSON: {exc}", errors.MALFORMED, self.name) from exc

    def _check_count(self, vectors: list, texts: list[str]) -> None:
        if len(vectors) != len(texts):
            raise ProviderError(
                f"returned {len(vectors)} vectors for {len(texts)} texts",
                errors.MALFORMED, self.name,
            )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
