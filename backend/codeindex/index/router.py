"""Index router — session and search endpoints.

Endpoints:
    POST /index/init     — Drop and rebuild the index for a project
    POST /index/restore  — Reopen a project, syncing only changed files
    POST /index/search   — Semantic code search
    GET  /index/status   — Indexed file and chunk counts for a project
"""
import logging
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from codeindex.errors import CodeIndexError, SyncFailed

from .schemas import (
    SearchRequest,
    SearchResponse,
    SearchResultItem,
    SessionRequest,
    SessionResponse,
    StatusResponse,
    SyncSummaryModel,
)
from .service import IndexService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/index", tags=["index"])

# ---------------------------------------------------------------------------
# Singleton service management
# ---------------------------------------------------------------------------

_service: Optional[IndexService] = None


def get_service() -> Optional[IndexService]:
    """Return the global IndexService, or None if not configured."""
    return _service


def set_service(service: Optional[IndexService]) -> None:
    """Set (or clear) the global IndexService."""
    global _service
    _service = service


def _not_configured(endpoint: str) -> JSONResponse:
    logger.warning("[index/%s] Service not configured — returning 503", endpoint)
    return JSONResponse({"error": "Index service not configured"}, status_code=503)


def _error_response(endpoint: str, exc: Exception) -> JSONResponse:
    if isinstance(exc, CodeIndexError):
        logger.warning("[index/%s] %s", endpoint, exc.message)
        body = {"error": exc.message}
        if isinstance(exc, SyncFailed) and exc.summary is not None:
            body["summary"] = SyncSummaryModel.from_summary(exc.summary).model_dump()
        return JSONResponse(body, status_code=exc.status_code)
    logger.exception("[index/%s] Failed: %s", endpoint, exc)
    return JSONResponse({"error": f"{endpoint} failed: {exc}"}, status_code=500)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/init", response_model=SessionResponse)
async def init_session(request: SessionRequest) -> SessionResponse | JSONResponse:
    """Discard any existing index for the project and build it from scratch."""
    logger.info("[index/init] Received: project=%s", request.project_root)
    service = get_service()
    if service is None:
        return _not_configured("init")

    try:
        session, summary = await service.init_session(request.project_root)
    except Exception as exc:
        return _error_response("init", exc)

    logger.info(
        "[index/init] Success: project=%s files=%d failed=%d",
        request.project_root, len(session.files), summary.failed,
    )
    return SessionResponse.build(session, summary)


@router.post("/restore", response_model=SessionResponse)
async def restore_session(request: SessionRequest) -> SessionResponse | JSONResponse:
    """Reopen a project, re-indexing only files that changed since the last sync."""
    logger.info("[index/restore] Received: project=%s", request.project_root)
    service = get_service()
    if service is None:
        return _not_configured("restore")

    try:
        session, summary = await service.restore_session(request.project_root)
    except Exception as exc:
        return _error_response("restore", exc)

    logger.info(
        "[index/restore] Success: project=%s changed=%d unchanged=%d",
        request.project_root, summary.changed, summary.unchanged,
    )
    return SessionResponse.build(session, summary)


@router.post("/search", response_model=SearchResponse)
async def search_code(request: SearchRequest) -> SearchResponse | JSONResponse:
    """Search the indexed project for chunks relevant to a query."""
    service = get_service()
    if service is None:
        return _not_configured("search")

    filters = request.filters.model_dump(exclude_none=True) if request.filters else None
    try:
        results = await service.search(
            request.project_root,
            request.query,
            top_k=request.top_k,
            filters=filters,
            min_score=request.min_score,
        )
    except Exception as exc:
        return _error_response("search", exc)

    return SearchResponse(
        results=[SearchResultItem.from_result(r) for r in results],
        query=request.query,
        project_root=request.project_root,
    )


@router.get("/status", response_model=StatusResponse)
async def project_status(project_root: str) -> StatusResponse | JSONResponse:
    """Report what is indexed for a project."""
    service = get_service()
    if service is None:
        return _not_configured("status")

    try:
        status = await service.status(project_root)
    except Exception as exc:
        return _error_response("status", exc)

    return StatusResponse(
        project_root=status.project_root,
        state=status.state,
        indexed=status.indexed,
        files=status.files,
        chunks=status.chunks,
    )
