"""Embedding gateway configuration."""
from typing import Dict, Optional

from pydantic import BaseModel, Field

from codeindex.config import AppSettings

# provider → (default API URL, default model)
PROVIDER_DEFAULTS: Dict[str, tuple[str, str]] = {
    "openai":      ("https://api.openai.com/v1/embeddings", "text-embedding-3-large"),
    "cohere":      ("https://api.cohere.ai/v1/embed", "embed-english-v3.0"),
    "siliconflow": ("https://api.siliconflow.cn/v1/embeddings", "Qwen/Qwen3-Embedding-8B"),
}

DEFAULT_BATCH_SIZE = 10
DEFAULT_TIMEOUT_SECONDS = 30.0


class EmbeddingConfig(BaseModel):
    """Explicit configuration handed to a provider and the gateway.

    Attributes:
        provider:   One of ``PROVIDER_DEFAULTS``.
        api_url:    Endpoint URL (per-provider default when omitted).
        api_key:    Bearer token.
        model:      Model name (per-provider default when omitted).
        dim:        Expected vector dimensionality, if known up front.
        batch_size: Maximum texts per provider call.
        timeout_seconds: Per-call timeout.
    """
    provider:             str = "siliconflow"
    api_url:              str = ""
    api_key:              str = ""
    model:                str = ""
    dim:                  Optional[int] = None
    batch_size:           int = Field(default=DEFAULT_BATCH_SIZE, gt=0)
    timeout_seconds:      float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    max_retries:          int = Field(default=3, ge=0)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds:  float = Field(default=30.0, ge=0)
    additional_headers:   Dict[str, str] = Field(default_factory=dict)

    def model_post_init(self, __context) -> None:
        default_url, default_model = PROVIDER_DEFAULTS.get(
            self.provider, PROVIDER_DEFAULTS["siliconflow"]
        )
        if not self.api_url:
            self.api_url = default_url
        if not self.model:
            self.model = default_model

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "EmbeddingConfig":
        emb = settings.embedding
        return cls(
            provider=emb.provider,
            api_url=emb.api_url or "",
            api_key=settings.secrets.embedding.api_key or "",
            model=emb.model or "",
            dim=emb.dim,
            batch_size=emb.batch_size,
            timeout_seconds=emb.timeout_seconds,
            max_retries=emb.max_retries,
            backoff_base_seconds=emb.backoff_base_seconds,
            backoff_max_seconds=emb.backoff_max_seconds,
            additional_headers=dict(emb.additional_headers),
        )

    @property
    def provider_id(self) -> str:
        """Stable identifier recorded alongside every stored vector."""
        return f"{self.provider}:{self.model}"
