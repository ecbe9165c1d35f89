"""codeindex application configuration.

Loads settings from two YAML files:
  * codeindex.settings.yaml  — non-secret configuration
  * codeindex.secrets.yaml   — secrets (never committed)

Selected embedding and vector-store fields can also be overridden through
``CODEINDEX_*`` environment variables, which take precedence over both files.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("codeindex.settings.yaml")
SECRETS_FILE  = Path("codeindex.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class EmbeddingSecrets(BaseModel):
    api_key: Optional[str] = None


class VectorStoreSecrets(BaseModel):
    api_key: Optional[str] = None


class Secrets(BaseModel):
    embedding:    EmbeddingSecrets   = Field(default_factory=EmbeddingSecrets)
    vector_store: VectorStoreSecrets = Field(default_factory=VectorStoreSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------

# Directories and files the walker never descends into.
DEFAULT_IGNORE_PATTERNS: List[str] = [
    "target/",
    "build/",
    "dist/",
    "node_modules/",
    ".git/",
    ".svn/",
    ".hg/",
    "__pycache__/",
    ".pytest_cache/",
    ".mypy_cache/",
    ".venv/",
    "venv/",
    ".env/",
    "coverage/",
    ".coverage/",
    ".nyc_output/",
    ".cache/",
    "tmp/",
    "temp/",
    ".tmp/",
    ".DS_Store",
    "Thumbs.db",
]


class ServerSettings(BaseModel):
    host:      str = "127.0.0.1"
    port:      int = 8000
    log_level: str = "info"


class LoggingSettings(BaseModel):
    level: str = "info"


class EmbeddingSettings(BaseModel):
    """Which embedding provider to call and how."""
    provider:             Literal["openai", "cohere", "siliconflow"] = "siliconflow"
    api_url:              Optional[str] = None
    model:                Optional[str] = None
    dim:                  Optional[int] = None
    batch_size:           int   = 10
    timeout_seconds:      float = 30.0
    max_retries:          int   = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds:  float = 30.0
    additional_headers:   Dict[str, str] = Field(default_factory=dict)

    @field_validator("batch_size")
    @classmethod
    def _positive_batch(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("batch_size must be positive")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class VectorStoreSettings(BaseModel):
    backend:           Literal["faiss", "qdrant"] = "qdrant"
    url:               str   = "http://localhost:6333"
    data_dir:          str   = "./.codeindex/vectors"
    collection_prefix: str   = "cix_"
    timeout_seconds:   float = 30.0


class ChunkingSettings(BaseModel):
    """Chunk size policy, in bytes."""
    min_size: int = 256
    max_size: int = 4096
    overlap:  int = 256

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkingSettings":
        if not 0 <= self.min_size <= self.max_size:
            raise ValueError("chunking requires 0 <= min_size <= max_size")
        if not 0 <= self.overlap < self.max_size:
            raise ValueError("chunking requires 0 <= overlap < max_size")
        return self


class SyncSettings(BaseModel):
    workers:         int = 4
    state_dir_name:  str = ".codeindex"
    ignore_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    max_file_bytes:  int = 1024 * 1024
    file_retries:    int = 2

    @field_validator("workers")
    @classmethod
    def _positive_workers(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("workers must be positive")
        return v


class RetrievalSettings(BaseModel):
    default_top_k:     int             = 10
    over_fetch_factor: int             = 3
    min_score:         Optional[float] = None
    name_match_boost:  float           = 0.0
    cache_ttl_seconds: float           = 300.0
    cache_max_entries: int             = 256


class AppSettings(BaseModel):
    server:       ServerSettings      = Field(default_factory=ServerSettings)
    logging:      LoggingSettings     = Field(default_factory=LoggingSettings)
    embedding:    EmbeddingSettings   = Field(default_factory=EmbeddingSettings)
    vector_store: VectorStoreSettings = Field(default_factory=VectorStoreSettings)
    chunking:     ChunkingSettings    = Field(default_factory=ChunkingSettings)
    sync:         SyncSettings        = Field(default_factory=SyncSettings)
    retrieval:    RetrievalSettings   = Field(default_factory=RetrievalSettings)
    secrets:      Secrets             = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_OVERRIDES = {
    "CODEINDEX_EMBEDDING_PROVIDER":   ("embedding", "provider"),
    "CODEINDEX_EMBEDDING_API_URL":    ("embedding", "api_url"),
    "CODEINDEX_EMBEDDING_MODEL":      ("embedding", "model"),
    "CODEINDEX_EMBEDDING_BATCH_SIZE": ("embedding", "batch_size"),
    "CODEINDEX_EMBEDDING_TIMEOUT":    ("embedding", "timeout_seconds"),
    "CODEINDEX_VECTOR_STORE_URL":     ("vector_store", "url"),
}


def _apply_env_overrides(data: Dict[str, Any]) -> None:
    """Overlay ``CODEINDEX_*`` environment variables onto raw settings data."""
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data.setdefault(section, {})[key] = value
            logger.debug("Config override from %s", env_name)

    api_key = os.environ.get("CODEINDEX_EMBEDDING_API_KEY")
    provider = data.get("embedding", {}).get("provider", "siliconflow")
    if not api_key and provider == "openai":
        api_key = os.environ.get("OPENAI_API_KEY")
    if api_key:
        secrets = data.setdefault("secrets", {})
        secrets.setdefault("embedding", {})["api_key"] = api_key


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file or SETTINGS_FILE)
    secrets_data  = _load_yaml(secrets_file or SECRETS_FILE)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data
    _apply_env_overrides(settings_data)

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (embedding=%s batch=%d, vector_store=%s@%s, workers=%d)",
        app_settings.embedding.provider,
        app_settings.embedding.batch_size,
        app_settings.vector_store.backend,
        app_settings.vector_store.url,
        app_settings.sync.workers,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Forget the cached settings so the next ``get_config`` reloads them."""
    global _config
    _config = None
