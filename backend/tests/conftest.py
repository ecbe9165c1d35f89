"""Shared test fixtures and configuration for backend tests."""
import hashlib
import re
from pathlib import Path
from typing import Optional

import pytest

from codeindex.embeddings import EmbeddingConfig, EmbeddingGateway, EmbeddingProvider
from codeindex.index.sync import _active_projects

DIM = 16
_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def bag_of_words(text: str, dim: int = DIM) -> list[float]:
    """Deterministic embedding: hashed token counts plus a small constant."""
    vec = [0.01] * dim
    for token in _TOKEN_RE.findall(text.lower()):
        slot = int(hashlib.md5(token.encode()).hexdigest(), 16) % dim
        vec[slot] += 1.0
    return vec


class FakeProvider(EmbeddingProvider):
    """In-memory provider producing bag-of-words vectors.

    Texts containing any string in ``fail_on`` raise ``error`` instead.
    ``aliases`` maps a text to another text whose vector it should get.
    """

    def __init__(self, dim: int = DIM, fail_on: Optional[list[str]] = None, error: Optional[Exception] = None):
        self._dim = dim
        self.fail_on = list(fail_on or [])
        self.error = error
        self.aliases: dict[str, str] = {}
        self.calls: list[list[str]] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def model_id(self) -> str:
        return "bag-of-words"

    @property
    def dim(self) -> int:
        return self._dim

    async def embed(self, texts: list[str], input_type: str = "search_document") -> list[list[float]]:
        self.calls.append(list(texts))
        if self.error is not None and any(marker in t for t in texts for marker in self.fail_on):
            raise self.error
        return [bag_of_words(self.aliases.get(t, t), self._dim) for t in texts]

    @property
    def embedded_texts(self) -> list[str]:
        return [t for call in self.calls for t in call]


def make_gateway(provider: Optional[EmbeddingProvider] = None, **config) -> EmbeddingGateway:
    cfg = {"provider": "openai", "max_retries": 0, "backoff_base_seconds": 0, "backoff_max_seconds": 0}
    cfg.update(config)
    return EmbeddingGateway(EmbeddingConfig(**cfg), provider=provider or FakeProvider())


def write_files(root: Path, files: dict[str, str]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


@pytest.fixture(autouse=True)
def _reset_active_syncs():
    yield
    _active_projects.clear()

