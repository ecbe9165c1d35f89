"""Qdrant-backed vector store.

One collection per project, named by :func:`fingerprint.collection_id`.  The
collection is created on first write, once the vector dimension is known,
with cosine distance and keyword payload indexes on ``file_path`` and
``language``.

Client errors are mapped to :class:`VectorStoreError`: connection problems,
timeouts and 5xx responses are ``transient``; 4xx responses are not.
"""
import logging
from typing import Callable, List, Optional, Sequence, TypeVar

from qdrant_client import QdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from codeindex.errors import VectorStoreError

from .vector_store import ChunkMetadata, QueryHit, VectorStoreAdapter, matches_filters

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCROLL_PAGE = 256
_INDEXED_FIELDS = ("file_path", "language")


def _file_filter(file_path: str) -> models.Filter:
    return models.Filter(
        must=[models.FieldCondition(key="file_path", match=models.MatchValue(value=file_path))]
    )


class QdrantVectorStore(VectorStoreAdapter):
    """Chunk vectors in a remote Qdrant collection.

    Args:
        collection: Collection name.
        url:        Qdrant endpoint.
        api_key:    Optional API key.
        timeout:    Per-request timeout in seconds.
        client:     Pre-built client (tests pass a mock).
    """

    def __init__(
        self,
        collection: str,
        url: str = "http://localhost:6333",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[QdrantClient] = None,
    ) -> None:
        self._collection = collection
        self._client = client or QdrantClient(url=url, api_key=api_key or None, timeout=int(timeout))
        self._dim: Optional[int] = None

    @property
    def collection(self) -> str:
        return self._collection

    @property
    def dim(self) -> Optional[int]:
        return self._dim

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_batch(
        self,
        chunk_ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        metadatas: Sequence[ChunkMetadata],
    ) -> None:
        if not chunk_ids:
            return
        if not (len(chunk_ids) == len(vectors) == len(metadatas)):
            raise VectorStoreError("chunk_ids, vectors and metadatas differ in length")
        self._ensure_collection(len(vectors[0]))

        points = [
            models.PointStruct(id=cid, vector=list(vec), payload=meta.to_dict())
            for cid, vec, meta in zip(chunk_ids, vectors, metadatas)
        ]
        self._call(
            "upsert",
            lambda: self._client.upsert(
                collection_name=self._collection, points=points, wait=True,
            ),
        )

    def delete(self, chunk_ids: Sequence[str]) -> int:
        if not chunk_ids or not self._exists():
            return 0
        ids = list(chunk_ids)
        self._call(
            "delete",
            lambda: self._client.delete(
                collection_name=self._collection,
                points_selector=models.PointIdsList(points=ids),
                wait=True,
            ),
        )
        return len(ids)

    def delete_by_file(self, file_path: str) -> int:
        if not self._exists():
            return 0
        flt = _file_filter(file_path)
        count = self._call(
            "count",
            lambda: self._client.count(
                collection_name=self._collection, count_filter=flt, exact=True,
            ).count,
        )
        if count:
            self._call(
                "delete",
                lambda: self._client.delete(
                    collection_name=self._collection,
                    points_selector=models.FilterSelector(filter=flt),
                    wait=True,
                ),
            )
        return count

    def clear(self) -> None:
        if self._exists():
            self._call(
                "delete_collection",
                lambda: self._client.delete_collection(collection_name=self._collection),
            )
            logger.info("[QdrantVectorStore] dropped collection %s", self._collection)
        self._dim = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def ids_for_file(self, file_path: str) -> List[str]:
        if not self._exists():
            return []
        flt = _file_filter(file_path)
        ids: List[str] = []
        offset = None
        while True:
            points, offset = self._call(
                "scroll",
                lambda: self._client.scroll(
                    collection_name=self._collection,
                    scroll_filter=flt,
                    limit=_SCROLL_PAGE,
                    offset=offset,
                    with_payload=False,
                    with_vectors=False,
                ),
            )
            ids.extend(str(p.id) for p in points)
            if offset is None:
                return ids

    def query(
        self,
        vector: Sequence[float],
        top_k: int = 10,
        filters: Optional[dict] = None,
    ) -> List[QueryHit]:
        if top_k <= 0 or not self._exists():
            return []

        languages = (filters or {}).get("languages")
        query_filter = None
        if languages:
            query_filter = models.Filter(
                must=[models.FieldCondition(key="language", match=models.MatchAny(any=list(languages)))]
            )
        # path filters are applied client-side, so fetch extra candidates
        post_filter = bool(filters and (filters.get("file_patterns") or filters.get("path_prefix")))
        limit = top_k * 3 if post_filter else top_k

        response = self._call(
            "query_points",
            lambda: self._client.query_points(
                collection_name=self._collection,
                query=list(vector),
                query_filter=query_filter,
                limit=limit,
                with_payload=True,
            ),
        )

        results: List[QueryHit] = []
        for point in response.points:
            meta = ChunkMetadata.from_dict(point.payload or {})
            if not matches_filters(meta, filters):
                continue
            results.append((str(point.id), float(point.score), meta))
            if len(results) >= top_k:
                break
        return results

    @property
    def size(self) -> int:
        if not self._exists():
            return 0
        return self._call(
            "count",
            lambda: self._client.count(collection_name=self._collection, exact=True).count,
        )

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _exists(self) -> bool:
        if self._dim is not None:
            return True
        return self._call(
            "collection_exists",
            lambda: self._client.collection_exists(collection_name=self._collection),
        )

    def _ensure_collection(self, dim: int) -> None:
        if self._dim is not None:
            if dim != self._dim:
                raise VectorStoreError(
                    f"vector dimension {dim} does not match collection dimension {self._dim}"
                )
            return

        if self._call(
            "collection_exists",
            lambda: self._client.collection_exists(collection_name=self._collection),
        ):
            info = self._call(
                "get_collection",
                lambda: self._client.get_collection(collection_name=self._collection),
            )
            existing = info.config.params.vectors.size
            if existing != dim:
                raise VectorStoreError(
                    f"collection {self._collection} has dimension {existing}, got {dim}"
                )
        else:
            self._call(
                "create_collection",
                lambda: self._client.create_collection(
                    collection_name=self._collection,
                    vectors_config=models.VectorParams(size=dim, distance=models.Distance.COSINE),
                ),
            )
            for field in _INDEXED_FIELDS:
                self._call(
                    "create_payload_index",
                    lambda: self._client.create_payload_index(
                        collection_name=self._collection,
                        field_name=field,
                        field_schema=models.PayloadSchemaType.KEYWORD,
                    ),
                )
            logger.info("[QdrantVectorStore] created collection %s (dim=%d)", self._collection, dim)
        self._dim = dim

    def _call(self, op: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except UnexpectedResponse as exc:
            status = exc.status_code or 0
            raise VectorStoreError(
                f"{op} on {self._collection} returned HTTP {status}",
                transient=status >= 500 or status == 429,
            ) from exc
        except (ResponseHandlingException, ConnectionError, TimeoutError) as exc:
            raise VectorStoreError(f"{op} on {self._collection} failed: {exc}", transient=True) from exc
