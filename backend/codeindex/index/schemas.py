"""Pydantic schemas for the index API."""
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .retriever import SearchResult
from .session import Session
from .sync import SyncSummary


class SessionRequest(BaseModel):
    """Request body for POST /index/init and POST /index/restore."""

    project_root: str = Field(..., min_length=1, description="Absolute path of the project to index")


class SyncSummaryModel(BaseModel):
    """Outcome of one sync run."""

    added: int
    modified: int
    deleted: int
    unchanged: int
    skipped: int
    failed: int
    chunks_upserted: int
    chunks_deleted: int
    failed_files: List[str] = Field(default_factory=list)
    state: str
    duration_seconds: float

    @classmethod
    def from_summary(cls, summary: SyncSummary) -> "SyncSummaryModel":
        data = asdict(summary)
        data["state"] = summary.state.value
        return cls(**data)


class SessionResponse(BaseModel):
    """Response for session operations."""

    project_root: str
    files_indexed: int
    chunks_indexed: int
    last_synced_at: Optional[datetime] = None
    summary: SyncSummaryModel

    @classmethod
    def build(cls, session: Session, summary: SyncSummary) -> "SessionResponse":
        records = session.files.values()
        return cls(
            project_root=session.project_root,
            files_indexed=len(session.files),
            chunks_indexed=sum(len(r.chunk_ids) for r in records),
            last_synced_at=max((r.last_synced_at for r in records), default=None),
            summary=SyncSummaryModel.from_summary(summary),
        )


class SearchFilters(BaseModel):
    """Optional filters for search queries."""

    languages: Optional[List[str]] = Field(
        default=None, description="Filter by language IDs (e.g. ['python', 'rust'])"
    )
    file_patterns: Optional[List[str]] = Field(
        default=None, description="Filter by glob patterns (e.g. ['src/*.py'])"
    )
    path_prefix: Optional[str] = Field(
        default=None, description="Only files whose relative path starts with this prefix"
    )


class SearchRequest(BaseModel):
    """Request body for POST /index/search."""

    project_root: str = Field(..., min_length=1, description="Absolute path of the indexed project")
    query: str = Field(..., min_length=1, description="Natural language or code query")
    top_k: int = Field(default=10, ge=1, le=100, description="Max results to return")
    filters: Optional[SearchFilters] = Field(default=None, description="Optional search filters")
    min_score: Optional[float] = Field(default=None, description="Drop results scoring below this")


class SearchResultItem(BaseModel):
    """A single search result."""

    chunk_id: str
    file_path: str
    symbol_path: List[str]
    score: float
    text_excerpt: str
    start_line: int
    end_line: int
    language: str = ""
    partial: bool = False

    @classmethod
    def from_result(cls, r: SearchResult) -> "SearchResultItem":
        return cls(
            chunk_id=r.chunk_id,
            file_path=r.file_path,
            symbol_path=r.symbol_path,
            score=r.score,
            text_excerpt=r.text_excerpt,
            start_line=r.start_line,
            end_line=r.end_line,
            language=r.language,
            partial=r.partial,
        )


class SearchResponse(BaseModel):
    """Response for POST /index/search."""

    results: List[SearchResultItem]
    query: str
    project_root: str


class StatusResponse(BaseModel):
    """Response for GET /index/status."""

    project_root: str
    state: str
    indexed: bool
    files: int
    chunks: int
