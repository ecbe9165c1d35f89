"""Incremental sync of a project's files into the vector store.

A sync run moves through ``Scanning → Diffing → Processing → Committing``
and back to ``Idle``, or ends in ``Failed``:

1. **Scan** the project tree (:func:`discovery.scan_project`).
2. **Diff** the discovered files against the :class:`Session`: every path is
   ``added``, ``modified``, ``deleted`` or ``unchanged`` by content hash.
3. **Process** changed files on a bounded worker pool.  For a changed file
   the new chunks are upserted first, then stale chunk IDs are deleted, the
   store is flushed, and only then is the file's record committed to the
   session.  A crash at any point leaves either the old record (the file is
   redone next time) or the new one with its vectors already durable.
4. **Commit**: the session is saved after each file, so an interrupted run
   keeps everything committed so far.

Per-file failures (a transient provider or store error that survives the
retries) leave that file's previous record untouched and are reported in
the :class:`SyncSummary`; the file is retried on the next sync.  Fatal
errors (bad credentials, rejected writes, unwritable session) stop the run
at the next file boundary and raise :class:`SyncFailed`.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from codeindex.config import SyncSettings
from codeindex.embeddings.gateway import EmbeddingGateway
from codeindex.errors import (
    CodeIndexError,
    ProviderError,
    SyncFailed,
    SyncInProgressError,
    VectorStoreError,
)

from .chunker import ChunkPolicy, chunk_tree
from .discovery import DiscoveredFile, scan_project
from .fingerprint import content_hash
from .session import FileRecord, Session, SessionStore, commit_record
from .symbols import extract
from .vector_store import ChunkMetadata, VectorStoreAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Seconds between per-file retry attempts, doubled each time
FILE_RETRY_DELAY = 0.5


class SyncState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    PROCESSING = "processing"
    COMMITTING = "committing"
    FAILED = "failed"


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


@dataclass
class FileChange:
    """One path's classification for this run."""

    path: str
    kind: ChangeKind
    discovered: Optional[DiscoveredFile] = None
    record: Optional[FileRecord] = None


@dataclass
class SyncSummary:
    """Counts reported at the end of a run (or at the point it failed)."""

    added: int = 0
    modified: int = 0
    deleted: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    chunks_upserted: int = 0
    chunks_deleted: int = 0
    failed_files: List[str] = field(default_factory=list)
    state: SyncState = SyncState.IDLE
    duration_seconds: float = 0.0

    @property
    def changed(self) -> int:
        return self.added + self.modified + self.deleted


def diff_files(discovered: Dict[str, DiscoveredFile], session: Session) -> List[FileChange]:
    """Classify every path known to either side, ordered by path."""
    changes: List[FileChange] = []
    for path in sorted(set(discovered) | set(session.files)):
        found = discovered.get(path)
        record = session.files.get(path)
        if found is None:
            kind = ChangeKind.DELETED
        elif record is None:
            kind = ChangeKind.ADDED
        elif record.content_hash != found.content_hash:
            kind = ChangeKind.MODIFIED
        else:
            kind = ChangeKind.UNCHANGED
        changes.append(FileChange(path, kind, found, record))
    return changes


class _Abort(Exception):
    """Internal: a fatal error stopped the worker pool."""


# Projects with a sync in flight in this process
_active_projects: set = set()


class IncrementalSyncEngine:
    """Keeps the vector store in step with one project's files.

    Args:
        project_root:  Project directory.
        gateway:       Embedding gateway for chunk texts.
        store:         Vector store for this project.
        session_store: Persistence for the project's session.
        policy:        Chunk size policy.
        settings:      Worker count, ignore rules and retry budget.
        store_timeout: Seconds allowed for each vector store call.
        retry_delay:   Delay before the first per-file retry; doubles after.
    """

    def __init__(
        self,
        project_root: Path,
        gateway: EmbeddingGateway,
        store: VectorStoreAdapter,
        session_store: Optional[SessionStore] = None,
        policy: Optional[ChunkPolicy] = None,
        settings: Optional[SyncSettings] = None,
        store_timeout: float = 30.0,
        retry_delay: float = FILE_RETRY_DELAY,
    ) -> None:
        self._root = Path(project_root).resolve()
        self._gateway = gateway
        self._store = store
        self._settings = settings or SyncSettings()
        self._session_store = session_store or SessionStore(self._root, self._settings.state_dir_name)
        self._policy = policy or ChunkPolicy()
        self._store_timeout = store_timeout
        self._retry_delay = retry_delay
        self._state = SyncState.IDLE
        self._commit_lock = asyncio.Lock()
        self._abort: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def project_root(self) -> Path:
        return self._root

    @property
    def session_store(self) -> SessionStore:
        return self._session_store

    async def init_session(self) -> Tuple[Session, SyncSummary]:
        """Drop all indexed state for the project and index it from scratch."""
        async with self._exclusive():
            return await self._init_locked()

    async def restore_session(self) -> Tuple[Session, SyncSummary]:
        """Load the saved session and sync only what changed since.

        Falls back to :meth:`init_session` when no session was saved or it
        was built with a different embedding provider.

        Raises:
            SessionCorruption: If the saved session cannot be read.
        """
        async with self._exclusive():
            if not self._session_store.exists():
                logger.info("[SyncEngine] %s: no saved session, building index", self._root)
                return await self._init_locked()

            session = await asyncio.to_thread(self._session_store.load)
            provider_id = self._gateway.provider_id
            if session.provider_id and session.provider_id != provider_id:
                logger.warning(
                    "[SyncEngine] %s: embedding provider changed (%s → %s), rebuilding index",
                    self._root, session.provider_id, provider_id,
                )
                return await self._init_locked()

            summary = await self._run(session)
            return session, summary

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _exclusive(self):
        key = str(self._root)
        if key in _active_projects:
            raise SyncInProgressError(key)
        _active_projects.add(key)
        try:
            yield
        finally:
            _active_projects.discard(key)

    async def _init_locked(self) -> Tuple[Session, SyncSummary]:
        await self._store_call(self._store.clear)
        await self._store_call(self._store.flush)
        await asyncio.to_thread(self._session_store.delete)
        session = self._session_store.new(provider_id=self._gateway.provider_id)
        await asyncio.to_thread(self._session_store.save, session)
        logger.info("[SyncEngine] %s: cleared index state", self._root)
        summary = await self._run(session)
        return session, summary

    async def _run(self, session: Session) -> SyncSummary:
        started = time.monotonic()
        summary = SyncSummary()
        self._abort = None
        session.provider_id = self._gateway.provider_id

        try:
            self._set_state(SyncState.SCANNING)
            discovered = await asyncio.to_thread(scan_project, self._root, self._settings)

            self._set_state(SyncState.DIFFING)
            changes = diff_files(discovered, session)
            pending = [c for c in changes if c.kind != ChangeKind.UNCHANGED]
            summary.unchanged = len(changes) - len(pending)
            logger.info(
                "[SyncEngine] %s: %d changed, %d unchanged",
                self._root, len(pending), summary.unchanged,
            )

            self._set_state(SyncState.PROCESSING)
            await self._process_all(pending, session, summary)
        except asyncio.CancelledError:
            self._set_state(SyncState.IDLE)
            logger.warning(
                "[SyncEngine] %s: cancelled; session kept at last committed file", self._root,
            )
            raise
        except _Abort:
            summary.state = self._set_state(SyncState.FAILED)
            summary.duration_seconds = time.monotonic() - started
            cause = self._abort
            logger.error("[SyncEngine] %s: sync failed: %s", self._root, cause)
            raise SyncFailed(str(cause), summary=summary, cause=cause) from cause
        except CodeIndexError as exc:
            summary.state = self._set_state(SyncState.FAILED)
            summary.duration_seconds = time.monotonic() - started
            logger.error("[SyncEngine] %s: sync failed: %s", self._root, exc)
            raise SyncFailed(str(exc), summary=summary, cause=exc) from exc
        except Exception as exc:
            summary.state = self._set_state(SyncState.FAILED)
            summary.duration_seconds = time.monotonic() - started
            logger.exception("[SyncEngine] %s: sync failed: %s", self._root, exc)
            raise SyncFailed(f"{type(exc).__name__}: {exc}", summary=summary, cause=exc) from exc

        summary.state = self._set_state(SyncState.IDLE)
        summary.duration_seconds = time.monotonic() - started
        logger.info(
            "[SyncEngine] %s: done in %.2fs (added=%d modified=%d deleted=%d failed=%d skipped=%d)",
            self._root, summary.duration_seconds, summary.added, summary.modified,
            summary.deleted, summary.failed, summary.skipped,
        )
        return summary

    async def _process_all(self, pending: List[FileChange], session: Session, summary: SyncSummary) -> None:
        queue: asyncio.Queue = asyncio.Queue()
        for change in pending:
            queue.put_nowait(change)

        async def worker() -> None:
            while not queue.empty():
                if self._abort is not None:
                    return
                change = queue.get_nowait()
                await self._process_file(change, session, summary)

        n_workers = min(self._settings.workers, len(pending)) or 1
        tasks = [asyncio.create_task(worker()) for _ in range(n_workers)]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()

        if self._abort is not None:
            raise _Abort()

    # ------------------------------------------------------------------
    # Per-file work
    # ------------------------------------------------------------------

    async def _process_file(self, change: FileChange, session: Session, summary: SyncSummary) -> None:
        attempts = self._settings.file_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                if change.kind == ChangeKind.DELETED:
                    await self._remove_file(change, session, summary)
                else:
                    await self._index_file(change, session, summary)
                return
            except (ProviderError, VectorStoreError) as exc:
                if _is_fatal(exc):
                    self._fail_fast(change.path, exc)
                    return
                if _is_transient(exc) and attempt < attempts:
                    delay = self._retry_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "[SyncEngine] %s: attempt %d/%d failed (%s), retrying in %.1fs",
                        change.path, attempt, attempts, exc, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error("[SyncEngine] %s: failed after %d attempt(s): %s", change.path, attempt, exc)
                summary.failed += 1
                summary.failed_files.append(change.path)
                return
            except CodeIndexError as exc:
                # session writes and other engine errors are not retried
                self._fail_fast(change.path, exc)
                return
            except Exception as exc:
                # unexpected per-file error: counted as failed, other files continue
                logger.exception("[SyncEngine] %s: failed: %s", change.path, exc)
                summary.failed += 1
                summary.failed_files.append(change.path)
                return

    def _fail_fast(self, path: str, exc: BaseException) -> None:
        logger.error("[SyncEngine] %s: fatal error, stopping sync: %s", path, exc)
        if self._abort is None:
            self._abort = exc

    async def _index_file(self, change: FileChange, session: Session, summary: SyncSummary) -> None:
        found = change.discovered
        try:
            data = await asyncio.to_thread(found.abs_path.read_bytes)
        except FileNotFoundError:
            if change.record is not None:
                logger.info("[SyncEngine] %s: vanished during sync, removing", change.path)
                await self._remove_file(change, session, summary)
            else:
                summary.skipped += 1
            return
        except OSError as exc:
            logger.warning("[SyncEngine] %s: unreadable, skipped: %s", change.path, exc)
            summary.skipped += 1
            return

        tree = extract(found.language, data, root_name=change.path)
        chunks = chunk_tree(tree, data, self._policy, file_path=change.path)

        new_ids = [c.id for c in chunks]
        if chunks:
            vectors = await self._gateway.embed([c.text for c in chunks])
            await self._store_call(
                self._store.upsert_batch,
                new_ids, vectors, [ChunkMetadata.from_chunk(c) for c in chunks],
            )
            summary.chunks_upserted += len(chunks)

        # chunks from the previous version, plus any orphaned by an earlier crash
        stored = await self._store_call(self._store.ids_for_file, change.path)
        previous = set(change.record.chunk_ids) if change.record else set()
        stale = sorted((previous | set(stored)) - set(new_ids))
        if stale:
            await self._store_call(self._store.delete, stale)
            summary.chunks_deleted += len(stale)
        await self._store_call(self._store.flush)

        record = FileRecord(
            path=change.path,
            content_hash=content_hash(data),
            chunk_ids=new_ids,
            last_synced_at=datetime.now(timezone.utc),
            language=found.language,
        )
        await self._commit(session, change.path, record)

        if change.kind == ChangeKind.ADDED:
            summary.added += 1
        else:
            summary.modified += 1
        logger.debug(
            "[SyncEngine] %s: %s, %d chunks (%d stale removed)",
            change.path, change.kind.value, len(chunks), len(stale),
        )

    async def _remove_file(self, change: FileChange, session: Session, summary: SyncSummary) -> None:
        ids = list(change.record.chunk_ids) if change.record else []
        if ids:
            await self._store_call(self._store.delete, ids)
        orphans = await self._store_call(self._store.delete_by_file, change.path)
        await self._store_call(self._store.flush)
        await self._commit(session, change.path, None)
        summary.deleted += 1
        summary.chunks_deleted += len(ids) + orphans
        logger.debug("[SyncEngine] %s: deleted, %d chunks removed", change.path, len(ids) + orphans)

    async def _commit(self, session: Session, path: str, record: Optional[FileRecord]) -> None:
        async with self._commit_lock:
            previous_state = self._state
            self._set_state(SyncState.COMMITTING)
            previous = session.files.get(path)
            commit_record(session, record, path)
            try:
                await asyncio.to_thread(self._session_store.save, session)
            except OSError as exc:
                commit_record(session, previous, path)
                raise CodeIndexError(f"cannot write session {self._session_store.path}: {exc}") from exc
            finally:
                self._set_state(previous_state)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _store_call(self, fn: Callable[..., T], *args) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._store_timeout)
        except asyncio.TimeoutError as exc:
            raise VectorStoreError(
                f"{getattr(fn, '__name__', 'call')} timed out after {self._store_timeout}s",
                transient=True,
            ) from exc

    def _set_state(self, state: SyncState) -> SyncState:
        if state != self._state:
            logger.debug("[SyncEngine] %s: %s → %s", self._root, self._state.value, state.value)
        self._state = state
        return state


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, ProviderError):
        return exc.retryable
    if isinstance(exc, VectorStoreError):
        return exc.transient
    return False


def _is_fatal(exc: Exception) -> bool:
    """Errors that would fail the same way for every remaining file."""
    if isinstance(exc, ProviderError):
        return exc.fatal
    if isinstance(exc, VectorStoreError):
        return not exc.transient
    return True
