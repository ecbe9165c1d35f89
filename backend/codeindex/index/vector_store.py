"""Vector store adapters for chunk embeddings.

:class:`VectorStoreAdapter` is the storage contract the sync engine and the
retriever program against.  Two implementations ship:

* :class:`FaissVectorStore` (this module): in-process FAISS index persisted
  to a directory.  Good for a single workstation and for tests.
* :class:`codeindex.index.qdrant_store.QdrantVectorStore`: a remote Qdrant
  collection.

Every write is keyed by chunk ID and overwrites any existing entry with the
same ID, so replaying the same upsert is harmless.
"""
import fnmatch
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np

from codeindex.errors import VectorStoreError

logger = logging.getLogger(__name__)

# Characters of chunk text kept in the payload for result excerpts
MAX_PAYLOAD_TEXT = 2000


# ---------------------------------------------------------------------------
# Chunk metadata
# ---------------------------------------------------------------------------

@dataclass
class ChunkMetadata:
    """Payload stored next to each chunk vector."""

    file_path: str
    symbol_path: List[str]
    byte_range: Tuple[int, int]
    sequence_index: int
    partial: bool = False
    language: str = ""
    content_hash: str = ""
    start_line: int = 0
    end_line: int = 0
    text: str = ""

    @property
    def symbol_name(self) -> str:
        return self.symbol_path[-1] if self.symbol_path else ""

    def to_dict(self) -> dict:
        d = asdict(self)
        d["byte_range"] = list(self.byte_range)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "ChunkMetadata":
        fields = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        if "byte_range" in fields:
            fields["byte_range"] = tuple(fields["byte_range"])
        if "symbol_path" in fields:
            fields["symbol_path"] = list(fields["symbol_path"])
        return cls(**fields)

    @classmethod
    def from_chunk(cls, chunk) -> "ChunkMetadata":
        """Build the payload for a :class:`codeindex.index.chunker.Chunk`."""
        return cls(
            file_path=chunk.file_path,
            symbol_path=list(chunk.symbol_path),
            byte_range=tuple(chunk.byte_range),
            sequence_index=chunk.sequence_index,
            partial=chunk.partial,
            language=chunk.language,
            content_hash=chunk.content_hash,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            text=chunk.text[:MAX_PAYLOAD_TEXT],
        )


QueryHit = Tuple[str, float, ChunkMetadata]


def matches_filters(meta: ChunkMetadata, filters: Optional[dict]) -> bool:
    """Return True if *meta* passes *filters*.

    Recognised keys: ``languages`` (list of language IDs), ``file_patterns``
    (glob patterns matched against the relative path) and ``path_prefix``.
    """
    if not filters:
        return True

    languages = filters.get("languages")
    if languages and meta.language not in languages:
        return False

    file_patterns = filters.get("file_patterns")
    if file_patterns and not any(fnmatch.fnmatch(meta.file_path, p) for p in file_patterns):
        return False

    path_prefix = filters.get("path_prefix")
    if path_prefix and not meta.file_path.startswith(path_prefix):
        return False

    return True


# ---------------------------------------------------------------------------
# Adapter contract
# ---------------------------------------------------------------------------

class VectorStoreAdapter(ABC):
    """Storage backend for chunk vectors.

    Implementations raise :class:`VectorStoreError` on failure, with
    ``transient=True`` for conditions worth retrying.
    """

    @abstractmethod
    def upsert_batch(
        self,
        chunk_ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        metadatas: Sequence[ChunkMetadata],
    ) -> None:
        """Insert or overwrite many chunks."""

    def upsert(self, chunk_id: str, vector: Sequence[float], metadata: ChunkMetadata) -> None:
        self.upsert_batch([chunk_id], [vector], [metadata])

    @abstractmethod
    def delete(self, chunk_ids: Sequence[str]) -> int:
        """Remove chunks by ID; unknown IDs are ignored.  Returns the count removed."""

    @abstractmethod
    def delete_by_file(self, file_path: str) -> int:
        """Remove every chunk of *file_path*.  Returns the count removed."""

    @abstractmethod
    def ids_for_file(self, file_path: str) -> List[str]:
        """IDs of the chunks currently stored for *file_path*."""

    @abstractmethod
    def query(
        self,
        vector: Sequence[float],
        top_k: int = 10,
        filters: Optional[dict] = None,
    ) -> List[QueryHit]:
        """Nearest chunks as ``(chunk_id, score, metadata)``, best first."""

    @property
    @abstractmethod
    def size(self) -> int:
        """Number of stored chunks."""

    def flush(self) -> None:
        """Make preceding writes durable.  No-op for stores that write through."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every chunk."""

    def close(self) -> None:
        """Release connections or file handles."""


# ---------------------------------------------------------------------------
# FAISS vector store
# ---------------------------------------------------------------------------

class FaissVectorStore(VectorStoreAdapter):
    """FAISS ``IndexFlatIP`` over L2-normalised vectors, wrapped in an ID map.

    Inner product on normalised vectors is cosine similarity.  The
    ``IndexIDMap2`` wrapper lets single vectors be removed without
    rebuilding the index.

    Args:
        dim:      Vector dimensionality.  When ``None`` it is taken from the
                  first upsert.
        data_dir: Optional directory for persistence (``flush`` / ``load``).
    """

    INDEX_FILE = "index.faiss"
    METADATA_FILE = "metadata.json"

    def __init__(self, dim: Optional[int] = None, data_dir: Optional[Path] = None) -> None:
        self._dim = dim
        self._data_dir = Path(data_dir) if data_dir else None
        self._index = self._new_index(dim) if dim else None
        self._metadata: dict[str, ChunkMetadata] = {}
        self._labels: dict[str, int] = {}    # chunk_id → FAISS label
        self._chunk_ids: dict[int, str] = {}  # FAISS label → chunk_id
        self._next_label = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def dim(self) -> Optional[int]:
        return self._dim

    @property
    def size(self) -> int:
        return 0 if self._index is None else self._index.ntotal

    # ------------------------------------------------------------------
    # Write operations (under lock)
    # ------------------------------------------------------------------

    def upsert_batch(
        self,
        chunk_ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        metadatas: Sequence[ChunkMetadata],
    ) -> None:
        """Insert chunks, replacing any that already exist under the same ID.

        Vectors are L2-normalised before insertion so that inner-product
        search produces cosine similarity scores.
        """
        if not chunk_ids:
            return
        if not (len(chunk_ids) == len(vectors) == len(metadatas)):
            raise VectorStoreError("chunk_ids, vectors and metadatas differ in length")
        if len(set(chunk_ids)) != len(chunk_ids):
            # last write for an ID wins
            latest = {cid: i for i, cid in enumerate(chunk_ids)}
            keep = sorted(latest.values())
            chunk_ids = [chunk_ids[i] for i in keep]
            vectors = [vectors[i] for i in keep]
            metadatas = [metadatas[i] for i in keep]

        vecs = np.array(vectors, dtype=np.float32)
        if vecs.ndim != 2:
            raise VectorStoreError("vectors must all have the same dimension")

        with self._lock:
            if self._index is None:
                self._dim = int(vecs.shape[1])
                self._index = self._new_index(self._dim)
            if vecs.shape[1] != self._dim:
                raise VectorStoreError(
                    f"vector dimension {vecs.shape[1]} does not match index dimension {self._dim}"
                )
            self._remove_locked(chunk_ids)

            labels = np.arange(self._next_label, self._next_label + len(chunk_ids), dtype=np.int64)
            self._next_label += len(chunk_ids)
            self._index.add_with_ids(self._normalise(vecs), labels)
            for label, cid, meta in zip(labels.tolist(), chunk_ids, metadatas):
                self._labels[cid] = label
                self._chunk_ids[label] = cid
                self._metadata[cid] = meta

    def delete(self, chunk_ids: Sequence[str]) -> int:
        with self._lock:
            return self._remove_locked(chunk_ids)

    def delete_by_file(self, file_path: str) -> int:
        with self._lock:
            ids = [cid for cid, meta in self._metadata.items() if meta.file_path == file_path]
            return self._remove_locked(ids)

    def clear(self) -> None:
        """Reset the index and all metadata."""
        with self._lock:
            self._index = self._new_index(self._dim) if self._dim else None
            self._metadata.clear()
            self._labels.clear()
            self._chunk_ids.clear()
            self._next_label = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def ids_for_file(self, file_path: str) -> List[str]:
        with self._lock:
            return [cid for cid, meta in self._metadata.items() if meta.file_path == file_path]

    def get(self, chunk_id: str) -> Optional[ChunkMetadata]:
        return self._metadata.get(chunk_id)

    def query(
        self,
        vector: Sequence[float],
        top_k: int = 10,
        filters: Optional[dict] = None,
    ) -> List[QueryHit]:
        """Search for the nearest chunks.

        Args:
            vector:  Query embedding (will be L2-normalised).
            top_k:   Maximum results to return.
            filters: See :func:`matches_filters`.

        Returns:
            List of ``(chunk_id, score, metadata)`` tuples sorted by score
            descending.
        """
        with self._lock:
            if self._index is None or self._index.ntotal == 0 or top_k <= 0:
                return []
            vec = np.array([vector], dtype=np.float32)
            if vec.shape[1] != self._dim:
                raise VectorStoreError(
                    f"query dimension {vec.shape[1]} does not match index dimension {self._dim}"
                )
            total = self._index.ntotal
            # Over-fetch when filtering to increase the chance of returning
            # top_k results after post-filtering.
            fetch_k = total if filters else min(top_k, total)
            scores, labels = self._index.search(self._normalise(vec), fetch_k)

            results: List[QueryHit] = []
            for score, label in zip(scores[0], labels[0]):
                if label < 0:
                    continue
                cid = self._chunk_ids.get(int(label))
                meta = self._metadata.get(cid) if cid else None
                if meta is None or not matches_filters(meta, filters):
                    continue
                results.append((cid, float(score), meta))
                if len(results) >= top_k:
                    break
        return results

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def flush(self) -> None:
        """Persist the index and metadata to ``data_dir`` (if configured)."""
        if self._data_dir is not None:
            self.save()

    def save(self) -> None:
        import faiss

        if self._data_dir is None:
            raise ValueError("No data_dir configured for persistence")

        self._data_dir.mkdir(parents=True, exist_ok=True)
        index_path = self._data_dir / self.INDEX_FILE
        meta_path = self._data_dir / self.METADATA_FILE

        with self._lock:
            try:
                if self._index is not None:
                    faiss.write_index(self._index, str(index_path))
                payload = {
                    "dim": self._dim,
                    "next_label": self._next_label,
                    "labels": self._labels,
                    "metadata": {k: v.to_dict() for k, v in self._metadata.items()},
                }
                tmp_path = meta_path.with_suffix(".json.tmp")
                tmp_path.write_text(json.dumps(payload), encoding="utf-8")
                tmp_path.replace(meta_path)
            except (OSError, RuntimeError) as exc:
                raise VectorStoreError(f"cannot write {self._data_dir}: {exc}") from exc

        logger.info("[FaissVectorStore] saved %d vectors to %s", self.size, index_path)

    def load(self) -> bool:
        """Load a previously saved index.  Returns True on success."""
        import faiss

        if self._data_dir is None:
            return False

        index_path = self._data_dir / self.INDEX_FILE
        meta_path = self._data_dir / self.METADATA_FILE
        if not meta_path.exists():
            return False

        try:
            payload = json.loads(meta_path.read_text(encoding="utf-8"))
            loaded_index = faiss.read_index(str(index_path)) if index_path.exists() else None
        except (OSError, ValueError, RuntimeError) as exc:
            logger.warning("[FaissVectorStore] failed to load %s: %s", self._data_dir, exc)
            return False

        with self._lock:
            self._dim = payload.get("dim")
            self._index = loaded_index if loaded_index is not None else (
                self._new_index(self._dim) if self._dim else None
            )
            self._next_label = int(payload.get("next_label", 0))
            self._labels = {k: int(v) for k, v in payload.get("labels", {}).items()}
            self._chunk_ids = {v: k for k, v in self._labels.items()}
            self._metadata = {
                k: ChunkMetadata.from_dict(v) for k, v in payload.get("metadata", {}).items()
            }

        logger.info("[FaissVectorStore] loaded %d vectors from %s", self.size, index_path)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _remove_locked(self, chunk_ids: Sequence[str]) -> int:
        labels = [self._labels.pop(cid) for cid in chunk_ids if cid in self._labels]
        if not labels:
            return 0
        for label in labels:
            cid = self._chunk_ids.pop(label)
            self._metadata.pop(cid, None)
        self._index.remove_ids(np.array(labels, dtype=np.int64))
        return len(labels)

    @staticmethod
    def _new_index(dim: int):
        import faiss

        return faiss.IndexIDMap2(faiss.IndexFlatIP(dim))

    @staticmethod
    def _normalise(vecs: np.ndarray) -> np.ndarray:
        """L2-normalise each row in-place and return the array."""
        import faiss

        faiss.normalize_L2(vecs)
        return vecs
