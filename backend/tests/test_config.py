"""Tests for settings loading, env-var overrides and validation."""
import pytest
from pydantic import ValidationError

from codeindex.config import (
    DEFAULT_IGNORE_PATTERNS,
    AppSettings,
    ChunkingSettings,
    EmbeddingSettings,
    SyncSettings,
    get_config,
    load_settings,
    reset_config,
)
from codeindex.embeddings import EmbeddingConfig


_ENV_VARS = (
    "CODEINDEX_EMBEDDING_PROVIDER",
    "CODEINDEX_EMBEDDING_API_URL",
    "CODEINDEX_EMBEDDING_MODEL",
    "CODEINDEX_EMBEDDING_BATCH_SIZE",
    "CODEINDEX_EMBEDDING_TIMEOUT",
    "CODEINDEX_EMBEDDING_API_KEY",
    "CODEINDEX_VECTOR_STORE_URL",
    "OPENAI_API_KEY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


def _write(path, text: str):
    path.write_text(text, encoding="utf-8")
    return path


class TestDefaults:
    def test_defaults(self):
        cfg = AppSettings()
        assert cfg.embedding.provider == "siliconflow"
        assert cfg.vector_store.backend == "qdrant"
        assert (cfg.chunking.min_size, cfg.chunking.max_size, cfg.chunking.overlap) == (256, 4096, 256)
        assert cfg.sync.workers == 4
        assert cfg.sync.ignore_patterns == DEFAULT_IGNORE_PATTERNS
        assert cfg.retrieval.name_match_boost == 0.0
        assert cfg.secrets.embedding.api_key is None

    def test_missing_files_give_defaults(self, tmp_path):
        cfg = load_settings(tmp_path / "none.yaml", tmp_path / "none.secrets.yaml")
        assert cfg == AppSettings()


class TestLoadSettings:
    def test_settings_and_secrets_are_merged(self, tmp_path):
        settings = _write(tmp_path / "codeindex.settings.yaml", (
            "embedding:\n"
            "  provider: cohere\n"
            "  batch_size: 32\n"
            "vector_store:\n"
            "  backend: faiss\n"
            "sync:\n"
            "  workers: 2\n"
            "  ignore_patterns: ['gen/']\n"
        ))
        secrets = _write(tmp_path / "codeindex.secrets.yaml", "embedding:\n  api_key: sk-test\n")

        cfg = load_settings(settings, secrets)
        assert cfg.embedding.provider == "cohere"
        assert cfg.embedding.batch_size == 32
        assert cfg.vector_store.backend == "faiss"
        assert cfg.sync.workers == 2
        assert cfg.sync.ignore_patterns == ["gen/"]
        assert cfg.secrets.embedding.api_key == "sk-test"

    def test_empty_yaml_file(self, tmp_path):
        settings = _write(tmp_path / "s.yaml", "")
        cfg = load_settings(settings, tmp_path / "none.yaml")
        assert cfg.embedding.batch_size == 10

    def test_get_config_is_cached(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first


class TestEnvOverrides:
    def test_env_overrides_file_values(self, tmp_path, monkeypatch):
        settings = _write(tmp_path / "s.yaml", "embedding:\n  provider: cohere\n  batch_size: 8\n")
        monkeypatch.setenv("CODEINDEX_EMBEDDING_PROVIDER", "openai")
        monkeypatch.setenv("CODEINDEX_EMBEDDING_BATCH_SIZE", "64")
        monkeypatch.setenv("CODEINDEX_VECTOR_STORE_URL", "http://qdrant:6333")

        cfg = load_settings(settings, tmp_path / "none.yaml")
        assert cfg.embedding.provider == "openai"
        assert cfg.embedding.batch_size == 64
        assert cfg.vector_store.url == "http://qdrant:6333"

    def test_api_key_from_env(self, tmp_path, monkeypatch):
        secrets = _write(tmp_path / "secrets.yaml", "embedding:\n  api_key: from-file\n")
        monkeypatch.setenv("CODEINDEX_EMBEDDING_API_KEY", "from-env")
        cfg = load_settings(tmp_path / "none.yaml", secrets)
        assert cfg.secrets.embedding.api_key == "from-env"

    def test_openai_key_fallback_only_for_openai(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        cfg = load_settings(tmp_path / "none.yaml", tmp_path / "none.yaml")
        assert cfg.secrets.embedding.api_key is None

        monkeypatch.setenv("CODEINDEX_EMBEDDING_PROVIDER", "openai")
        cfg = load_settings(tmp_path / "none.yaml", tmp_path / "none.yaml")
        assert cfg.secrets.embedding.api_key == "sk-openai"


class TestValidation:
    @pytest.mark.parametrize("kwargs", [
        {"min_size": 500, "max_size": 100},
        {"overlap": 4096},
        {"min_size": -1},
    ])
    def test_chunking_bounds(self, kwargs):
        with pytest.raises(ValidationError):
            ChunkingSettings(**kwargs)

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            EmbeddingSettings(batch_size=0)

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValidationError):
            EmbeddingSettings(provider="acme")

    def test_workers_must_be_positive(self):
        with pytest.raises(ValidationError):
            SyncSettings(workers=0)


class TestEmbeddingConfigFromSettings:
    def test_provider_defaults_fill_url_and_model(self):
        cfg = AppSettings(embedding={"provider": "openai"}, secrets={"embedding": {"api_key": "k"}})
        emb = EmbeddingConfig.from_settings(cfg)
        assert emb.api_key == "k"
        assert emb.api_url
        assert emb.model
        assert emb.provider_id == f"openai:{emb.model}"
