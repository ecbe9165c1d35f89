"""IndexService — the entry point for indexing and searching projects.

One service instance serves any number of project roots.  For each root it
lazily builds a vector store, a sync engine and a retriever that share the
service-wide :class:`EmbeddingGateway`.
"""
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from codeindex.config import AppSettings
from codeindex.embeddings.gateway import EmbeddingGateway
from codeindex.errors import CodeIndexError

from .chunker import ChunkPolicy
from .fingerprint import collection_id
from .qdrant_store import QdrantVectorStore
from .retriever import Retriever, SearchResult
from .session import Session, SessionStore
from .sync import IncrementalSyncEngine, SyncState, SyncSummary
from .vector_store import FaissVectorStore, VectorStoreAdapter

logger = logging.getLogger(__name__)


def create_store(settings: AppSettings, project_root: Path) -> VectorStoreAdapter:
    """Build the configured vector store for *project_root*."""
    vs = settings.vector_store
    name = collection_id(project_root, vs.collection_prefix)
    if vs.backend == "faiss":
        data_dir = Path(vs.data_dir)
        if not data_dir.is_absolute():
            data_dir = project_root / data_dir
        store = FaissVectorStore(dim=settings.embedding.dim, data_dir=data_dir / name)
        store.load()
        return store
    return QdrantVectorStore(
        collection=name,
        url=vs.url,
        api_key=settings.secrets.vector_store.api_key,
        timeout=vs.timeout_seconds,
    )


@dataclass
class ProjectStatus:
    project_root: str
    state: str
    indexed: bool
    files: int
    chunks: int


@dataclass
class _Project:
    root: Path
    store: VectorStoreAdapter
    engine: IncrementalSyncEngine
    retriever: Retriever
    session: Optional[Session] = None


class IndexService:
    """Coordinates sessions, sync runs and searches per project root.

    Args:
        settings:      Application settings.
        gateway:       Shared embedding gateway.
        store_factory: Builds the vector store for a project root; defaults
                       to :func:`create_store`.
    """

    def __init__(
        self,
        settings: AppSettings,
        gateway: EmbeddingGateway,
        store_factory=None,
    ) -> None:
        self._settings = settings
        self._gateway = gateway
        self._store_factory = store_factory or (lambda root: create_store(settings, root))
        self._policy = ChunkPolicy.from_settings(settings.chunking)
        self._projects: Dict[str, _Project] = {}

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def init_session(self, project_root: str) -> Tuple[Session, SyncSummary]:
        """Discard any index for *project_root* and build it from scratch."""
        project = await self._project(project_root)
        logger.info("[IndexService] init_session %s", project.root)
        session, summary = await project.engine.init_session()
        project.session = session
        return session, summary

    async def restore_session(self, project_root: str) -> Tuple[Session, SyncSummary]:
        """Reopen *project_root*, re-indexing only files changed since the last sync."""
        project = await self._project(project_root)
        logger.info("[IndexService] restore_session %s", project.root)
        session, summary = await project.engine.restore_session()
        project.session = session
        return session, summary

    async def search(
        self,
        project_root: str,
        query: str,
        top_k: Optional[int] = None,
        filters: Optional[dict] = None,
        min_score: Optional[float] = None,
    ) -> List[SearchResult]:
        """Semantic search over the chunks indexed for *project_root*."""
        project = await self._project(project_root)
        return await project.retriever.search(query, top_k=top_k, filters=filters, min_score=min_score)

    async def status(self, project_root: str) -> ProjectStatus:
        project = await self._project(project_root)
        session = project.session
        if session is None and project.engine.session_store.exists():
            session = await asyncio.to_thread(project.engine.session_store.load)
        chunks = await asyncio.to_thread(lambda: project.store.size)
        return ProjectStatus(
            project_root=str(project.root),
            state=project.engine.state.value,
            indexed=session is not None,
            files=len(session.files) if session else 0,
            chunks=chunks,
        )

    async def aclose(self) -> None:
        for project in self._projects.values():
            if project.engine.state not in (SyncState.IDLE, SyncState.FAILED):
                logger.warning("[IndexService] closing %s while %s", project.root, project.engine.state.value)
            project.store.close()
        self._projects.clear()
        await self._gateway.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _project(self, project_root: str) -> _Project:
        root = Path(project_root).expanduser().resolve()
        key = str(root)
        project = self._projects.get(key)
        if project is not None:
            return project
        if not root.is_dir():
            raise CodeIndexError(f"project root {root} is not a directory", status_code=404)

        store = await asyncio.to_thread(self._store_factory, root)
        if key in self._projects:
            # opened concurrently while the store was being built
            store.close()
            return self._projects[key]
        sync_settings = self._settings.sync
        timeout = self._settings.vector_store.timeout_seconds
        engine = IncrementalSyncEngine(
            root,
            self._gateway,
            store,
            session_store=SessionStore(root, sync_settings.state_dir_name),
            policy=self._policy,
            settings=sync_settings,
            store_timeout=timeout,
        )
        retriever = Retriever(self._gateway, store, self._settings.retrieval, store_timeout=timeout)
        project = _Project(root=root, store=store, engine=engine, retriever=retriever)
        self._projects[key] = project
        logger.info("[IndexService] opened project %s (store=%s)", root, type(store).__name__)
        return project
